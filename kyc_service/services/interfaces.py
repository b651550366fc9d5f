"""Contracts for the external collaborators used by the verification pipeline."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Tuple, Dict


# Placeholder answers that mean "no value"
MISSING_VALUES = {"", "none", "null", "not provided"}


def is_missing(value: Optional[str]) -> bool:
    """Whether a collaborator answer carries no usable value."""
    return value is None or value.strip().lower() in MISSING_VALUES


class ExtractionError(RuntimeError):
    """OCR collaborator failure (decode error, service unavailable, timeout)."""


@dataclass
class ExtractedFields:
    """
    Structured KYC fields extracted from a document.

    A value of None means the field was not provided. When the extractor
    could not parse its output, `error` is set and the map is unresolved:
    every lookup returns None.
    """
    values: Dict[str, Optional[str]] = field(default_factory=dict)
    error: Optional[str] = None
    raw_output: Optional[str] = None

    @classmethod
    def unresolved(cls, error: str, raw_output: str = "") -> "ExtractedFields":
        """Map carrying only diagnostics."""
        return cls(values={}, error=error, raw_output=raw_output)

    @property
    def is_resolved(self) -> bool:
        return self.error is None

    def get(self, name: str) -> Optional[str]:
        """Field value, or None when missing or unresolved."""
        if not self.is_resolved:
            return None
        return self.values.get(name)

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Provided fields for display, or the diagnostics when unresolved."""
        if not self.is_resolved:
            return {"error": self.error, "raw_output": self.raw_output}
        return {k: v for k, v in self.values.items() if v is not None}


class TextExtractor(ABC):
    """Turns a document (image or PDF) into raw text."""

    @abstractmethod
    async def extract_text(self, content: bytes, content_type: str) -> str:
        """Return the document text. Raises ExtractionError on failure."""


class FieldExtractor(ABC):
    """Extracts structured KYC fields from raw text."""

    @abstractmethod
    async def extract_fields(self, text: str, model_hint: str) -> ExtractedFields:
        """Return the field map; unparseable output yields an unresolved map."""


class AddressExtractor(ABC):
    """Extracts a best-effort mailing address from raw text."""

    @abstractmethod
    async def extract_address(self, text: str, model_hint: str) -> Optional[str]:
        """Return the address, or None when nothing could be recognised."""


class Geocoder(ABC):
    """Validates an address against a map service."""

    @abstractmethod
    async def verify(self, address: str) -> Tuple[bool, str]:
        """
        Return (verified, normalized_address).

        Never raises: failures return (False, address).
        """
