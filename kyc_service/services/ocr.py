"""Document text extraction.

Two backends behind the TextExtractor contract:
- WhispererTextExtractor: LLMWhisperer HTTP API (upload, poll, retrieve)
- LocalTextExtractor: EasyOCR engine running in-process on images
"""

import asyncio
import json
import logging
import re
import threading
import unicodedata
from typing import Optional, List

import aiohttp
import numpy as np

from ..config import get_settings, Settings
from .interfaces import TextExtractor, ExtractionError
from .preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def is_pdf(content: bytes, content_type: str) -> bool:
    """Whether the upload is a PDF, by declared type or magic bytes."""
    return PDF_CONTENT_TYPE in (content_type or "").lower() or content[:5] == b"%PDF-"


def parse_retrieve_body(body: str, content_type: str) -> str:
    """
    Pull the OCR text out of a whisper-retrieve response.

    text/plain bodies are the text itself. JSON bodies carry it in
    `result_text` or `text`; a JSON body with neither is returned verbatim.
    """
    content_type = (content_type or "").lower()

    if "text/plain" in content_type:
        return body.strip()

    if "application/json" in content_type or body.lstrip().startswith("{"):
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Retrieve body looked like JSON but did not parse, using it as plain text")
            return body.strip()

        if isinstance(payload, dict):
            for key in ("result_text", "text"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value
        return body

    logger.info(f"Retrieve body has content type '{content_type}', treating as plain text")
    return body.strip()


class WhispererTextExtractor(TextExtractor):
    """LLMWhisperer v2 client: POST /whisper, poll /whisper-status, GET /whisper-retrieve."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.whisperer_base_url.rstrip("/")

    @property
    def _headers(self) -> dict:
        return {"unstract-key": self.settings.whisperer_api_key}

    async def extract_text(self, content: bytes, content_type: str) -> str:
        timeout = aiohttp.ClientTimeout(total=self.settings.http_timeout_seconds)
        try:
            async with aiohttp.ClientSession(headers=self._headers, timeout=timeout) as session:
                whisper_hash = await self._upload(session, content, content_type)
                await self._wait_until_processed(session, whisper_hash)
                return await self._retrieve(session, whisper_hash)
        except aiohttp.ClientError as e:
            logger.error(f"OCR request failed: {e}")
            raise ExtractionError(f"OCR request failed: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"OCR request timed out after {self.settings.http_timeout_seconds}s")
            raise ExtractionError(
                f"OCR request timed out after {self.settings.http_timeout_seconds:.0f}s"
            ) from e

    async def _upload(self, session: aiohttp.ClientSession, content: bytes, content_type: str) -> str:
        headers = {"Content-Type": content_type or "application/octet-stream"}
        async with session.post(f"{self.base_url}/whisper", data=content, headers=headers) as response:
            body = await response.text()
            if response.status not in (200, 202):
                raise self._status_error("OCR upload failed", response.status, body)

        payload = self._load_json(body, "OCR upload")
        whisper_hash = payload.get("whisper_hash")
        if not whisper_hash:
            raise ExtractionError(f"No whisper_hash in response: {body}")
        logger.debug(f"Uploaded document, whisper_hash={whisper_hash}")
        return whisper_hash

    async def _wait_until_processed(self, session: aiohttp.ClientSession, whisper_hash: str) -> None:
        url = f"{self.base_url}/whisper-status"
        max_polls = self.settings.ocr_max_polls

        for _ in range(max_polls):
            await asyncio.sleep(self.settings.ocr_poll_interval_seconds)
            async with session.get(url, params={"whisper_hash": whisper_hash}) as response:
                body = await response.text()
                if response.status >= 400:
                    raise self._status_error("Status check failed", response.status, body)

            payload = self._load_json(body, "status check")
            status = payload.get("status")
            if status is None:
                raise ExtractionError(f"No status in response: {body}")
            if status == "processed":
                return
            if status == "failed":
                raise ExtractionError(f"Whisperer processing failed: {payload}")

        waited = max_polls * self.settings.ocr_poll_interval_seconds
        raise ExtractionError(f"OCR timed out after {waited:.0f}s waiting for {whisper_hash}")

    async def _retrieve(self, session: aiohttp.ClientSession, whisper_hash: str) -> str:
        params = {"whisper_hash": whisper_hash, "text_only": "true"}
        async with session.get(f"{self.base_url}/whisper-retrieve", params=params) as response:
            body = await response.text()
            if response.status >= 400:
                raise self._status_error("Failed to retrieve OCR result", response.status, body)
            return parse_retrieve_body(body, response.headers.get("Content-Type", ""))

    @staticmethod
    def _status_error(prefix: str, status: int, body: str) -> ExtractionError:
        if status == 503:
            return ExtractionError(
                "OCR service temporarily unavailable (503). "
                f"Please try again in a few moments. Error: {body}"
            )
        return ExtractionError(f"{prefix} ({status}): {body}")

    @staticmethod
    def _load_json(body: str, what: str) -> dict:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Invalid JSON response from {what}: {body[:100]}") from e
        if not isinstance(payload, dict):
            raise ExtractionError(f"Unexpected response from {what}: {body[:100]}")
        return payload


class OCREngine:
    """EasyOCR wrapper shared by every request (singleton)."""

    _instance: Optional["OCREngine"] = None
    _reader = None
    _initialized = False
    _lock = threading.Lock()
    _semaphore: Optional[threading.Semaphore] = None

    def __new__(cls):
        """Singleton pattern to reuse OCR engine."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        self.settings = get_settings()
        if self._semaphore is None:
            OCREngine._semaphore = threading.Semaphore(self.settings.ocr_max_concurrent)

    def initialize(self) -> bool:
        """
        Load the EasyOCR reader. Call on app startup.
        Thread-safe initialization.

        Returns:
            True if initialization successful
        """
        with self._lock:
            if self._initialized:
                return True

            try:
                import easyocr

                logger.info("Initializing EasyOCR engine...")
                OCREngine._reader = easyocr.Reader(
                    [self.settings.ocr_lang],
                    gpu=False,
                    verbose=False,
                )
                OCREngine._initialized = True
                logger.info("EasyOCR initialized successfully")
                return True

            except Exception as e:
                logger.error(f"Failed to initialize EasyOCR: {e}")
                return False

    @property
    def is_ready(self) -> bool:
        """Check if OCR engine is ready."""
        return self._initialized and self._reader is not None

    def read_text(self, image: np.ndarray) -> str:
        """
        Run a single OCR pass and join the detected lines top-to-bottom.

        Raises:
            ExtractionError: engine not ready or OCR failed
        """
        if not self.is_ready:
            raise ExtractionError("Local OCR engine not initialized")

        with self._semaphore:
            try:
                results = self._reader.readtext(
                    image,
                    decoder="greedy",
                    batch_size=1,
                    paragraph=False,
                )
            except Exception as e:
                logger.error(f"OCR processing failed: {e}")
                raise ExtractionError(f"Local OCR failed: {e}") from e

        if not results:
            logger.warning("OCR returned no results")
            return ""

        return self.join_lines(results)

    @classmethod
    def join_lines(cls, results: List) -> str:
        """
        Group (bbox, text, confidence) detections into lines.

        Detections whose top edges fall in the same band (median box height)
        share a line; lines are ordered top to bottom, words left to right.
        """
        boxes = []
        for bbox, text, _confidence in results:
            text = cls.normalize_text(text)
            if not text:
                continue
            top = min(int(p[1]) for p in bbox)
            bottom = max(int(p[1]) for p in bbox)
            left = min(int(p[0]) for p in bbox)
            boxes.append((top, bottom - top, left, text))

        if not boxes:
            return ""

        line_h = int(np.median([height for _, height, _, _ in boxes]))
        line_h = max(12, min(line_h, 60))

        lines = {}
        for top, _, left, text in sorted(boxes, key=lambda b: (b[0] // line_h, b[2])):
            lines.setdefault(top // line_h, []).append(text)

        return "\n".join(" ".join(words) for _, words in sorted(lines.items()))

    @staticmethod
    def normalize_text(text: str) -> str:
        """
        Normalize OCR text output.
        - Unicode NFKC normalization
        - Collapse whitespace
        - Strip leading/trailing whitespace
        """
        normalized = unicodedata.normalize("NFKC", text)
        normalized = re.sub(r"\s+", " ", normalized)
        return normalized.strip()


class LocalTextExtractor(TextExtractor):
    """In-process OCR over image uploads. PDFs are not supported."""

    def __init__(self, engine: Optional[OCREngine] = None, preprocessor: Optional[ImagePreprocessor] = None):
        self.engine = engine or OCREngine()
        self.preprocessor = preprocessor or ImagePreprocessor()

    async def extract_text(self, content: bytes, content_type: str) -> str:
        if is_pdf(content, content_type):
            raise ExtractionError("PDF documents require the whisperer OCR backend")

        if not self.engine.is_ready and not await asyncio.to_thread(self.engine.initialize):
            raise ExtractionError("Local OCR engine could not be initialized")

        try:
            image, metadata = await asyncio.to_thread(self.preprocessor.prepare_for_ocr, content)
        except Exception as e:
            raise ExtractionError(f"Unable to decode document image: {e}") from e

        logger.debug(f"OCR preprocessing: {metadata['preprocessing_steps']}")
        return await asyncio.to_thread(self.engine.read_text, image)


def create_text_extractor(settings: Optional[Settings] = None) -> TextExtractor:
    """Build the OCR backend selected by `ocr_backend`."""
    settings = settings or get_settings()
    backend = settings.ocr_backend.lower()

    if backend == "easyocr":
        return LocalTextExtractor()
    if backend == "whisperer":
        return WhispererTextExtractor(settings)
    raise ValueError(f"Unknown OCR backend: {settings.ocr_backend}")
