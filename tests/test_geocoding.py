"""Tests for Google geocoding verification."""

import asyncio

import aiohttp
import pytest

from kyc_service.config import Settings
from kyc_service.services import geocoding
from kyc_service.services.geocoding import GoogleGeocoder, interpret_geocode_response


ADDRESS = "742 Evergreen Terrace, Ottawa, ON K1A 0B1"


class FakeResponse:
    def __init__(self, status=200, payload=None, body=""):
        self.status = status
        self.payload = payload
        self.body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return self.body

    async def json(self, content_type="application/json"):
        return self.payload


class FakeSession:
    """Stands in for aiohttp.ClientSession; records GET requests."""

    requests = []

    def __init__(self, response=None, error=None, **kwargs):
        self.response = response
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def get(self, url, params=None):
        FakeSession.requests.append((url, params))
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def fake_session(monkeypatch):
    """Patch the HTTP session; returns a setter for the canned response."""
    FakeSession.requests = []

    def install(response=None, error=None):
        monkeypatch.setattr(
            geocoding.aiohttp,
            "ClientSession",
            lambda **kwargs: FakeSession(response=response, error=error, **kwargs),
        )
        return FakeSession.requests

    return install


@pytest.fixture
def geocoder():
    return GoogleGeocoder(Settings(google_maps_api_key="test-key"))


class TestInterpretResponse:
    """Test mapping of Geocoding API bodies."""

    def test_ok_with_result(self):
        payload = {"status": "OK", "results": [{"formatted_address": "742 Evergreen Terrace, Ottawa, ON K1A 0B1, Canada"}]}
        assert interpret_geocode_response(payload, ADDRESS) == (True, "742 Evergreen Terrace, Ottawa, ON K1A 0B1, Canada")

    def test_ok_without_results(self):
        assert interpret_geocode_response({"status": "OK", "results": []}, ADDRESS) == (False, ADDRESS)

    @pytest.mark.parametrize("status", ["ZERO_RESULTS", "OVER_QUERY_LIMIT", "REQUEST_DENIED", "INVALID_REQUEST"])
    def test_failure_statuses(self, status):
        payload = {"status": status, "error_message": "The provided API key is invalid."}
        assert interpret_geocode_response(payload, ADDRESS) == (False, ADDRESS)

    def test_missing_status(self):
        assert interpret_geocode_response({"results": []}, ADDRESS) == (False, ADDRESS)
        assert interpret_geocode_response(["not", "a", "dict"], ADDRESS) == (False, ADDRESS)


class TestGoogleGeocoder:
    """Test GoogleGeocoder.verify."""

    def test_no_api_key(self, fake_session):
        requests = fake_session(FakeResponse(payload={"status": "OK"}))
        geocoder = GoogleGeocoder(Settings(google_maps_api_key=""))

        assert asyncio.run(geocoder.verify(ADDRESS)) == (False, ADDRESS)
        assert requests == []

    @pytest.mark.parametrize("address", ["", "   ", "None", "none"])
    def test_empty_address_not_sent(self, geocoder, fake_session, address):
        requests = fake_session(FakeResponse(payload={"status": "OK"}))

        assert asyncio.run(geocoder.verify(address)) == (False, address)
        assert requests == []

    def test_verified_address(self, geocoder, fake_session):
        payload = {"status": "OK", "results": [{"formatted_address": "Ottawa, ON K1A 0B1, Canada"}]}
        requests = fake_session(FakeResponse(payload=payload))

        assert asyncio.run(geocoder.verify(ADDRESS)) == (True, "Ottawa, ON K1A 0B1, Canada")
        url, params = requests[0]
        assert url == "https://maps.googleapis.com/maps/api/geocode/json"
        assert params == {"address": ADDRESS, "key": "test-key"}

    def test_http_error(self, geocoder, fake_session):
        fake_session(FakeResponse(status=500, body="Internal error"))
        assert asyncio.run(geocoder.verify(ADDRESS)) == (False, ADDRESS)

    def test_transport_error(self, geocoder, fake_session):
        fake_session(error=aiohttp.ClientConnectionError("connection refused"))
        assert asyncio.run(geocoder.verify(ADDRESS)) == (False, ADDRESS)

    def test_zero_results(self, geocoder, fake_session):
        fake_session(FakeResponse(payload={"status": "ZERO_RESULTS", "results": []}))
        assert asyncio.run(geocoder.verify(ADDRESS)) == (False, ADDRESS)
