"""Multi-document KYC verification pipeline.

Phases:
0. Validate the request (>= 2 documents, expected address present)
1. Per document, in parallel: OCR, then field + address extraction
   concurrently, then similarity to the expected address
1'. Face matching in a worker thread, started alongside phase 1
2. Address/name consistency between the first two documents
3. Geocoding of every address, only when the documents are consistent
4. Join the face-match task
5. Verdict
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional, List, Dict
import logging

from ..config import get_settings
from .extraction import LLMClient, LLMFieldExtractor, LLMAddressExtractor
from .face_matching import FaceMatcher, FaceMatchOutcome
from .geocoding import GoogleGeocoder
from .interfaces import (
    TextExtractor,
    FieldExtractor,
    AddressExtractor,
    Geocoder,
    ExtractedFields,
    is_missing,
)
from .ocr import create_text_extractor
from .similarity import SimilarityScorer

logger = logging.getLogger(__name__)

STATUS_TOO_FEW_DOCUMENTS = "Please upload at least two documents."
STATUS_MISSING_ADDRESS = "Expected address is required."
STATUS_PASSED = "Verification Passed"
STATUS_FAILED = "Verification Failed"


@dataclass
class RawDocument:
    """An uploaded document as received."""
    content: bytes
    content_type: str = "application/octet-stream"
    filename: Optional[str] = None


@dataclass
class VerificationRequest:
    """Input for one verification run."""
    documents: List[RawDocument]
    expected_address: str
    consistency_threshold: float = 0.82
    model_choice: str = "Mistral"
    license_image: Optional[bytes] = None
    selfie_image: Optional[bytes] = None

    @property
    def has_biometrics(self) -> bool:
        """Face matching runs only when both images are supplied."""
        return bool(self.license_image) and bool(self.selfie_image)


@dataclass
class DocumentRecord:
    """Per-document results, owned by that document's task."""
    index: int
    raw_text: str = ""
    fields: ExtractedFields = field(default_factory=ExtractedFields)
    address: Optional[str] = None
    name: Optional[str] = None
    similarity_to_expected: float = 0.0
    address_match: bool = False
    geocode_verified: bool = False
    normalized_address: Optional[str] = None
    authenticity_score: float = 0.0


@dataclass
class VerificationResult:
    """Aggregated outcome; filled in phase by phase."""
    address_consistency_score: float = 0.0
    name_consistency_score: float = 0.0
    document_consistency_score: float = 0.0
    documents_consistent: bool = False
    average_authenticity_score: float = 0.0
    documents: List[DocumentRecord] = field(default_factory=list)
    face_match: Optional[FaceMatchOutcome] = None
    final_result: bool = False
    status: str = ""
    extracted_fields: Dict[str, Dict[str, Optional[str]]] = field(default_factory=dict)


def resolve_address(extracted: Optional[str], fields: ExtractedFields) -> Optional[str]:
    """First usable address: dedicated extractor, then the field map, else None."""
    for candidate in (extracted, fields.get("address")):
        if not is_missing(candidate):
            return candidate.strip()
    return None


class VerificationOrchestrator:
    """Runs the verification phases against injected collaborators."""

    def __init__(
        self,
        text_extractor: TextExtractor,
        field_extractor: FieldExtractor,
        address_extractor: AddressExtractor,
        geocoder: Geocoder,
        face_matcher: Optional[FaceMatcher] = None,
        scorer: Optional[SimilarityScorer] = None,
    ):
        self.text_extractor = text_extractor
        self.field_extractor = field_extractor
        self.address_extractor = address_extractor
        self.geocoder = geocoder
        self.face_matcher = face_matcher
        self.scorer = scorer or SimilarityScorer()

    def verify_blocking(self, request: VerificationRequest) -> VerificationResult:
        """Run verify() to completion for synchronous callers."""
        return asyncio.run(self.verify(request))

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        """
        Verify a set of identity documents.

        Never raises: validation failures and unexpected errors are reported
        through `status` with `final_result` False.
        """
        result = VerificationResult()

        # Phase 0
        if len(request.documents) < 2:
            result.status = STATUS_TOO_FEW_DOCUMENTS
            return result
        if not request.expected_address or not request.expected_address.strip():
            result.status = STATUS_MISSING_ADDRESS
            return result

        threshold = request.consistency_threshold
        face_task: Optional[asyncio.Task] = None

        try:
            # Phase 1'
            if request.has_biometrics and self.face_matcher is not None:
                face_task = asyncio.create_task(
                    asyncio.to_thread(self.face_matcher.compare, request.license_image, request.selfie_image)
                )

            # Phase 1
            documents = await asyncio.gather(*[
                self._process_document(index, document, request)
                for index, document in enumerate(request.documents, start=1)
            ])
            result.documents = list(documents)
            for record in result.documents:
                result.extracted_fields[f"document_{record.index}"] = record.fields.to_dict()

            # Phase 2
            address_score, name_score, consistent = self.scorer.check_document_consistency(
                [(record.address, record.name) for record in result.documents],
                threshold,
            )
            result.address_consistency_score = address_score
            result.name_consistency_score = name_score
            result.document_consistency_score = address_score
            result.documents_consistent = consistent

            # Phase 3
            if consistent:
                await asyncio.gather(*[self._geocode(record) for record in result.documents])
            else:
                logger.info("Document addresses do not match, skipping geocoding")
                for record in result.documents:
                    record.geocode_verified = False
                    record.normalized_address = record.address

            scores = [record.authenticity_score for record in result.documents]
            result.average_authenticity_score = sum(scores) / len(scores) if scores else 0.0

            # Phase 4
            if face_task is not None:
                result.face_match = await face_task
                face_task = None

            # Phase 5
            all_documents_pass = all(
                record.address_match and record.geocode_verified for record in result.documents
            )
            face_pass = result.face_match is None or result.face_match.match
            result.final_result = all_documents_pass and address_score >= threshold and face_pass
            result.status = STATUS_PASSED if result.final_result else STATUS_FAILED

            logger.info(
                f"KYC verification: {result.status} "
                f"(consistency={address_score:.2f}, documents={len(result.documents)}, "
                f"face={'n/a' if result.face_match is None else result.face_match.match})"
            )
            return result

        except Exception as e:
            logger.exception(f"Error in KYC verification: {e}")
            result.final_result = False
            result.status = f"Error: {e}"
            return result

        finally:
            if face_task is not None and not face_task.done():
                face_task.cancel()

    async def _process_document(
        self,
        index: int,
        document: RawDocument,
        request: VerificationRequest,
    ) -> DocumentRecord:
        record = DocumentRecord(index=index)

        record.raw_text = await self.text_extractor.extract_text(document.content, document.content_type)

        fields, extracted_address = await asyncio.gather(
            self.field_extractor.extract_fields(record.raw_text, request.model_choice),
            self.address_extractor.extract_address(record.raw_text, request.model_choice),
        )
        record.fields = fields
        record.name = fields.get("full_name")
        record.address = resolve_address(extracted_address, fields)
        if record.address and is_missing(extracted_address):
            logger.info(f"Using address from KYC fields for document {index}")

        record.similarity_to_expected, record.address_match = self.scorer.score(
            record.address, request.expected_address, request.consistency_threshold
        )

        # Geocoding deferred until consistency is known
        record.geocode_verified = False
        record.normalized_address = record.address
        record.authenticity_score = 1.0

        logger.info(
            f"Document {index}: similarity to expected={record.similarity_to_expected:.2f} "
            f"match={record.address_match}"
        )
        return record

    async def _geocode(self, record: DocumentRecord) -> None:
        if not record.address:
            record.geocode_verified = False
            record.normalized_address = record.address
            record.authenticity_score = 1.0
            return

        verified, normalized = await self.geocoder.verify(record.address)
        record.geocode_verified = verified
        record.normalized_address = normalized
        record.authenticity_score, _ = self.scorer.score(record.address, normalized, 0.0)


def create_orchestrator(face_matcher: Optional[FaceMatcher] = None) -> VerificationOrchestrator:
    """Wire the orchestrator with the configured production collaborators."""
    settings = get_settings()
    llm = LLMClient(settings)
    return VerificationOrchestrator(
        text_extractor=create_text_extractor(settings),
        field_extractor=LLMFieldExtractor(llm),
        address_extractor=LLMAddressExtractor(llm),
        geocoder=GoogleGeocoder(settings),
        face_matcher=face_matcher or FaceMatcher(),
    )
