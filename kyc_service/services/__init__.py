"""Services for document OCR, field extraction, similarity scoring, face matching, verification, and the rule-based KYC agent."""

from .preprocessing import ImagePreprocessor
from .interfaces import (
    TextExtractor,
    FieldExtractor,
    AddressExtractor,
    Geocoder,
    ExtractedFields,
    ExtractionError,
)
from .similarity import SimilarityScorer, Region, classify_region, normalize_address
from .face_matching import FaceMatcher, FaceMatchOutcome, load_face_cascade
from .ocr import WhispererTextExtractor, LocalTextExtractor, OCREngine, create_text_extractor
from .extraction import LLMClient, LLMFieldExtractor, LLMAddressExtractor
from .geocoding import GoogleGeocoder
from .verification import (
    RawDocument,
    VerificationRequest,
    DocumentRecord,
    VerificationResult,
    VerificationOrchestrator,
    create_orchestrator,
)
from .agent import KycAgent, AgentDocument, AgentResult, detect_document_type, extract_kyc_fields

__all__ = [
    "ImagePreprocessor",
    "TextExtractor",
    "FieldExtractor",
    "AddressExtractor",
    "Geocoder",
    "ExtractedFields",
    "ExtractionError",
    "SimilarityScorer",
    "Region",
    "classify_region",
    "normalize_address",
    "FaceMatcher",
    "FaceMatchOutcome",
    "load_face_cascade",
    "WhispererTextExtractor",
    "LocalTextExtractor",
    "OCREngine",
    "create_text_extractor",
    "LLMClient",
    "LLMFieldExtractor",
    "LLMAddressExtractor",
    "GoogleGeocoder",
    "RawDocument",
    "VerificationRequest",
    "DocumentRecord",
    "VerificationResult",
    "VerificationOrchestrator",
    "create_orchestrator",
    "KycAgent",
    "AgentDocument",
    "AgentResult",
    "detect_document_type",
    "extract_kyc_fields",
]
