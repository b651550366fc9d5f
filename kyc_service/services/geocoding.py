"""Address verification against the Google Geocoding API."""

import logging
from typing import Optional, Tuple, Any

import aiohttp

from ..config import get_settings, Settings
from .interfaces import Geocoder

logger = logging.getLogger(__name__)


def interpret_geocode_response(payload: Any, address: str) -> Tuple[bool, str]:
    """
    Map a Geocoding API JSON body to (verified, formatted_address).

    Only status OK with at least one result verifies; anything else keeps
    the input address.
    """
    if not isinstance(payload, dict) or "status" not in payload:
        logger.warning("Geocoding response missing 'status' field")
        return False, address

    status = payload["status"]
    logger.info(f"Geocoding API status: {status}")

    if status == "OK":
        results = payload.get("results") or []
        if results and isinstance(results[0], dict) and results[0].get("formatted_address"):
            formatted = results[0]["formatted_address"]
            logger.info(f"Address verified. Formatted: {formatted}")
            return True, formatted
        logger.warning("Geocoding returned OK without a formatted address")
    elif status == "ZERO_RESULTS":
        logger.warning(f"Geocoding found no results for address: {address}")
    elif status == "OVER_QUERY_LIMIT":
        logger.error("Geocoding API quota exceeded")
    elif status == "REQUEST_DENIED":
        message = payload.get("error_message") or "Check API key and billing."
        logger.error(f"Geocoding API request denied: {message}")
    else:
        logger.warning(f"Geocoding API returned status {status} for address: {address}")

    return False, address


class GoogleGeocoder(Geocoder):
    """Verifies addresses with Google's geocoder. Never raises."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def verify(self, address: str) -> Tuple[bool, str]:
        if not self.settings.google_maps_api_key:
            logger.warning("Google Maps API key not configured")
            return False, address

        if not address or not address.strip() or address.strip().lower() == "none":
            logger.warning("Address is empty or 'None', skipping geocoding")
            return False, address

        params = {"address": address, "key": self.settings.google_maps_api_key}
        timeout = aiohttp.ClientTimeout(total=self.settings.http_timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.settings.geocoding_url, params=params) as response:
                    if response.status != 200:
                        body = await response.text()
                        logger.error(f"Geocoding API returned HTTP {response.status}: {body}")
                        return False, address
                    payload = await response.json(content_type=None)
        except Exception as e:
            logger.error(f"Error verifying address '{address}': {e}")
            return False, address

        return interpret_geocode_response(payload, address)
