"""Pydantic schemas for API requests and responses."""

import base64
from pydantic import BaseModel, Field
from typing import Optional

from ..services.face_matching import FaceMatchOutcome
from ..services.agent import AgentDocument, AgentResult
from ..services.verification import DocumentRecord, VerificationResult


def _b64(data: Optional[bytes]) -> Optional[str]:
    return base64.b64encode(data).decode("ascii") if data else None


class DocumentResult(BaseModel):
    """Verification details for one uploaded document."""
    document_index: int
    extracted_address: Optional[str] = None
    extracted_name: Optional[str] = None
    similarity_to_expected: float = Field(ge=0.0, le=1.0)
    address_match: bool
    geocode_verified: bool
    normalized_address: Optional[str] = None
    authenticity_score: float = Field(ge=0.0, le=1.0)

    @classmethod
    def from_record(cls, record: DocumentRecord) -> "DocumentResult":
        return cls(
            document_index=record.index,
            extracted_address=record.address,
            extracted_name=record.name,
            similarity_to_expected=record.similarity_to_expected,
            address_match=record.address_match,
            geocode_verified=record.geocode_verified,
            normalized_address=record.normalized_address,
            authenticity_score=record.authenticity_score,
        )


class FaceMatchResponse(BaseModel):
    """Face comparison outcome with base64 PNG crops for display."""
    match: bool
    match_score: int = Field(ge=0, le=5)
    message: str
    license_face_image: Optional[str] = None
    selfie_face_image: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: FaceMatchOutcome) -> "FaceMatchResponse":
        return cls(
            match=outcome.match,
            match_score=outcome.score,
            message=outcome.message,
            license_face_image=_b64(outcome.license_face),
            selfie_face_image=_b64(outcome.selfie_face),
        )

    class Config:
        json_schema_extra = {
            "example": {
                "match": True,
                "match_score": 5,
                "message": "Photo verification passed. Match score: 5/5",
                "license_face_image": None,
                "selfie_face_image": None,
            }
        }


class KycVerificationResponse(BaseModel):
    """Response for multi-document KYC verification."""
    success: bool
    final_result: bool
    status: str
    address_consistency_score: float
    name_consistency_score: float
    document_consistency_score: float
    documents_consistent: bool
    average_authenticity_score: float
    documents: list[DocumentResult] = []
    face_match: Optional[FaceMatchResponse] = None
    extracted_fields: dict[str, dict[str, Optional[str]]] = {}

    @classmethod
    def from_result(cls, result: VerificationResult, success: bool = True) -> "KycVerificationResponse":
        return cls(
            success=success,
            final_result=result.final_result,
            status=result.status,
            address_consistency_score=result.address_consistency_score,
            name_consistency_score=result.name_consistency_score,
            document_consistency_score=result.document_consistency_score,
            documents_consistent=result.documents_consistent,
            average_authenticity_score=result.average_authenticity_score,
            documents=[DocumentResult.from_record(record) for record in result.documents],
            face_match=FaceMatchResponse.from_outcome(result.face_match) if result.face_match else None,
            extracted_fields=result.extracted_fields,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "final_result": True,
                "status": "Verification Passed",
                "address_consistency_score": 1.0,
                "name_consistency_score": 1.0,
                "document_consistency_score": 1.0,
                "documents_consistent": True,
                "average_authenticity_score": 1.0,
                "documents": [],
                "face_match": None,
                "extracted_fields": {},
            }
        }


class AgentDocumentResult(BaseModel):
    """Fields the rule-based agent read from one document. Missing fields are null."""
    document_index: int
    document_type: str
    full_name: Optional[str] = None
    id_label: str
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    father_name: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    nationality: Optional[str] = None
    expiry_date: Optional[str] = None
    fields_found: int
    fields_total: int
    complete: bool

    @classmethod
    def from_document(cls, document: AgentDocument) -> "AgentDocumentResult":
        return cls(
            document_index=document.index,
            document_type=document.document_type,
            full_name=document.full_name,
            id_label=document.id_label,
            id_number=document.id_number,
            date_of_birth=document.date_of_birth,
            father_name=document.father_name,
            gender=document.gender,
            address=document.address,
            nationality=document.nationality,
            expiry_date=document.expiry_date,
            fields_found=document.fields_found,
            fields_total=document.fields_total,
            complete=document.complete,
        )


class KycAgentResponse(BaseModel):
    """Response for the rule-based KYC agent."""
    success: bool
    status: str
    documents: list[AgentDocumentResult] = []
    face_match: Optional[FaceMatchResponse] = None

    @classmethod
    def from_result(cls, result: AgentResult) -> "KycAgentResponse":
        return cls(
            success=result.success,
            status=result.status,
            documents=[AgentDocumentResult.from_document(document) for document in result.documents],
            face_match=FaceMatchResponse.from_outcome(result.face_match) if result.face_match else None,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "status": "Processed 1 of 1 documents",
                "documents": [
                    {
                        "document_index": 1,
                        "document_type": "PAN Card",
                        "full_name": "RAVI KUMAR",
                        "id_label": "PAN Number",
                        "id_number": "ABCDE1234F",
                        "date_of_birth": "01/01/1990",
                        "father_name": "SURESH KUMAR",
                        "gender": None,
                        "address": None,
                        "nationality": None,
                        "expiry_date": None,
                        "fields_found": 4,
                        "fields_total": 7,
                        "complete": True,
                    }
                ],
                "face_match": None,
            }
        }


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "success": False,
                "error": "Invalid image format",
                "detail": "Allowed formats: BMP, JPEG, JPG, PNG, WEBP"
            }
        }


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    face_detector_ready: bool
    ocr_backend: str
