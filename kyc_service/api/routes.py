"""API route definitions."""

import asyncio
import time
from functools import lru_cache
from fastapi import APIRouter, UploadFile, File, Form, HTTPException, Depends
from fastapi.responses import JSONResponse
from typing import Optional, List
import logging

from ..models import (
    KycVerificationResponse,
    KycAgentResponse,
    FaceMatchResponse,
    ErrorResponse,
    HealthResponse,
)
from ..services import (
    ImagePreprocessor,
    FaceMatcher,
    RawDocument,
    VerificationRequest,
    VerificationOrchestrator,
    create_orchestrator,
    KycAgent,
    create_text_extractor,
)
from ..services.verification import STATUS_TOO_FEW_DOCUMENTS, STATUS_MISSING_ADDRESS
from ..config import get_settings
from .. import __version__

logger = logging.getLogger(__name__)
router = APIRouter()

preprocessor = ImagePreprocessor()

VALIDATION_STATUSES = {STATUS_TOO_FEW_DOCUMENTS, STATUS_MISSING_ADDRESS}


@lru_cache
def get_face_matcher() -> FaceMatcher:
    """Shared face matcher; the cascade is loaded once."""
    return FaceMatcher()


@lru_cache
def get_orchestrator() -> VerificationOrchestrator:
    """Shared orchestrator wired to the configured collaborators."""
    return create_orchestrator(get_face_matcher())


@lru_cache
def get_agent() -> KycAgent:
    """Shared rule-based agent using the configured OCR backend."""
    return KycAgent(create_text_extractor(get_settings()), get_face_matcher())


def _error(status_code: int, error: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


async def _read_upload(upload: UploadFile, label: str) -> bytes:
    try:
        return await upload.read()
    except Exception as e:
        logger.error(f"Failed to read uploaded {label}: {e}")
        raise HTTPException(status_code=400, detail=f"Failed to read uploaded {label}")


async def _read_image(upload: UploadFile, label: str) -> tuple[Optional[bytes], Optional[str]]:
    """Read and validate an image upload. Returns (bytes, error)."""
    data = await _read_upload(upload, label)
    is_valid, error_msg = preprocessor.validate_image(data, upload.filename or "unknown")
    if not is_valid:
        return None, f"{label}: {error_msg}"
    return data, None


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(face_matcher: FaceMatcher = Depends(get_face_matcher)):
    """Check API health and face detector readiness."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        face_detector_ready=face_matcher.detector_ready,
        ocr_backend=get_settings().ocr_backend,
    )


@router.post(
    "/kyc/verify",
    response_model=KycVerificationResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input"},
    },
    tags=["Verification"]
)
async def verify_kyc(
    documents: List[UploadFile] = File(..., description="Identity documents (images or PDFs), at least two"),
    expected_address: str = Form("", description="Address the applicant claims"),
    model_choice: str = Form("Mistral", description="Extraction model: Mistral or OpenAI"),
    consistency_threshold: Optional[float] = Form(None, description="Minimum address similarity (0-1); defaults to the configured threshold"),
    license_image: Optional[UploadFile] = File(None, description="License photo for face matching"),
    selfie_image: Optional[UploadFile] = File(None, description="Live selfie for face matching"),
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """
    Verify that several identity documents agree with each other and with
    the expected address, and optionally that the license photo matches a selfie.
    """
    start_time = time.time()
    settings = get_settings()

    if consistency_threshold is None:
        consistency_threshold = settings.consistency_threshold
    if not 0.0 <= consistency_threshold <= 1.0:
        return _error(400, "Invalid consistency threshold", "Must be between 0 and 1")

    if len(documents) > settings.max_documents:
        return _error(400, f"Too many documents. Maximum is {settings.max_documents}.")

    raw_documents = []
    max_bytes = settings.max_upload_size_mb * 1024 * 1024
    for upload in documents:
        content = await _read_upload(upload, "document")
        if not content:
            return _error(400, "Empty document", upload.filename)
        if len(content) > max_bytes:
            return _error(400, f"Document exceeds {settings.max_upload_size_mb}MB upload limit", upload.filename)
        raw_documents.append(RawDocument(
            content=content,
            content_type=upload.content_type or "application/octet-stream",
            filename=upload.filename,
        ))

    license_bytes = selfie_bytes = None
    if license_image is not None and selfie_image is not None:
        license_bytes, error = await _read_image(license_image, "License image")
        if error:
            return _error(400, "Invalid image", error)
        selfie_bytes, error = await _read_image(selfie_image, "Selfie image")
        if error:
            return _error(400, "Invalid image", error)

    request = VerificationRequest(
        documents=raw_documents,
        expected_address=expected_address,
        consistency_threshold=consistency_threshold,
        model_choice=model_choice or settings.default_model_choice,
        license_image=license_bytes,
        selfie_image=selfie_bytes,
    )

    result = await orchestrator.verify(request)
    total_ms = int((time.time() - start_time) * 1000)
    logger.info(f"KYC verification finished in {total_ms}ms: {result.status}")

    if result.status in VALIDATION_STATUSES:
        response = KycVerificationResponse.from_result(result, success=False)
        return JSONResponse(status_code=400, content=response.model_dump())

    return KycVerificationResponse.from_result(result, success=not result.status.startswith("Error:"))


@router.post(
    "/face/compare",
    response_model=FaceMatchResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input"},
    },
    tags=["Face Matching"]
)
async def compare_faces(
    license_image: UploadFile = File(..., description="License photo"),
    selfie_image: UploadFile = File(..., description="Live selfie"),
    face_matcher: FaceMatcher = Depends(get_face_matcher),
):
    """Compare a license photo against a selfie."""
    license_bytes, error = await _read_image(license_image, "License image")
    if error:
        return _error(400, "Invalid image", error)
    selfie_bytes, error = await _read_image(selfie_image, "Selfie image")
    if error:
        return _error(400, "Invalid image", error)

    outcome = await asyncio.to_thread(face_matcher.compare, license_bytes, selfie_bytes)
    return FaceMatchResponse.from_outcome(outcome)


@router.post(
    "/kyc/agent",
    response_model=KycAgentResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input or no readable document"},
    },
    tags=["Verification"]
)
async def process_kyc_agent(
    documents: List[UploadFile] = File(..., description="Identity documents (images or PDFs)"),
    license_image: Optional[UploadFile] = File(None, description="License photo for face matching"),
    selfie_image: Optional[UploadFile] = File(None, description="Live selfie for face matching"),
    agent: KycAgent = Depends(get_agent),
):
    """
    Read KYC fields from each document with rule-based extraction
    (document type, name, ID number, dates, address, and father's name
    or gender for PAN and Aadhaar cards). No LLM is involved.
    """
    settings = get_settings()

    if len(documents) > settings.max_documents:
        return _error(400, f"Too many documents. Maximum is {settings.max_documents}.")

    raw_documents = []
    max_bytes = settings.max_upload_size_mb * 1024 * 1024
    for upload in documents:
        content = await _read_upload(upload, "document")
        if len(content) > max_bytes:
            return _error(400, f"Document exceeds {settings.max_upload_size_mb}MB upload limit", upload.filename)
        raw_documents.append(RawDocument(
            content=content,
            content_type=upload.content_type or "application/octet-stream",
            filename=upload.filename,
        ))

    license_bytes = selfie_bytes = None
    if license_image is not None and selfie_image is not None:
        license_bytes, error = await _read_image(license_image, "License image")
        if error:
            return _error(400, "Invalid image", error)
        selfie_bytes, error = await _read_image(selfie_image, "Selfie image")
        if error:
            return _error(400, "Invalid image", error)

    result = await agent.process(raw_documents, license_bytes, selfie_bytes)
    response = KycAgentResponse.from_result(result)
    if not result.success:
        return JSONResponse(status_code=400, content=response.model_dump())
    return response
