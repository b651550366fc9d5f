"""Pydantic models for request/response schemas."""

from .schemas import (
    DocumentResult,
    FaceMatchResponse,
    KycVerificationResponse,
    AgentDocumentResult,
    KycAgentResponse,
    ErrorResponse,
    HealthResponse,
)

__all__ = [
    "DocumentResult",
    "FaceMatchResponse",
    "KycVerificationResponse",
    "AgentDocumentResult",
    "KycAgentResponse",
    "ErrorResponse",
    "HealthResponse",
]
