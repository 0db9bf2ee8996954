"""Schemas for electronic signature APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from gxp_compliance.db.models import SignatureType


class SignatureCreateRequest(BaseModel):
    """Create a signature with a caller-supplied meaning and payload."""

    enrollment_id: str = Field(..., min_length=1, max_length=255)
    signature_type: SignatureType
    signer_name: str = Field(..., min_length=1, max_length=255)
    signer_title: str | None = Field(default=None, max_length=255)
    signature_meaning: str = Field(..., min_length=1)
    signature_data: dict[str, Any] = Field(..., min_length=1)
    geolocation: dict[str, Any] | None = None
    certificate_id: str | None = Field(default=None, max_length=255)


class CompletionSignatureRequest(BaseModel):
    """Sign off a completed training course."""

    enrollment_id: str = Field(..., min_length=1, max_length=255)
    signer_name: str = Field(..., min_length=1, max_length=255)
    signer_title: str | None = Field(default=None, max_length=255)
    course_title: str | None = Field(default=None, max_length=500)
    custom_meaning: str | None = None
    signature_data: dict[str, Any] | None = Field(
        default=None,
        description="Extra payload such as the drawn signature image and browser info",
    )


class AcknowledgmentSignatureRequest(BaseModel):
    """Acknowledge receipt of training material."""

    enrollment_id: str = Field(..., min_length=1, max_length=255)
    signer_name: str = Field(..., min_length=1, max_length=255)
    signer_title: str | None = Field(default=None, max_length=255)
    acknowledgment_text: str | None = None
    course_title: str | None = Field(default=None, max_length=500)
    custom_meaning: str | None = None
    signature_data: dict[str, Any] | None = None


class SignatureInvalidateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class SignatureResponse(BaseModel):
    """Response for electronic signature records."""

    id: UUID
    enrollment_id: str
    user_id: str
    signature_type: SignatureType
    signature_meaning: str
    signed_at: datetime
    signer_name: str
    signer_title: str | None
    signature_hash: str
    signature_data: dict[str, Any]
    ip_address: str | None
    device_fingerprint: str | None
    geolocation: dict[str, Any] | None
    certificate_id: str | None
    is_valid: bool
    invalidated_at: datetime | None
    invalidated_by: str | None
    invalidation_reason: str | None


class SignatureListResponse(BaseModel):
    items: list[SignatureResponse]
    count: int


class SignatureVerificationResponse(BaseModel):
    """Outcome of an integrity check; ``reason`` is set only when invalid."""

    signature_id: UUID
    is_valid: bool
    reason: str | None = None
    message: str | None = None


class SignatureStatisticsResponse(BaseModel):
    total: int
    valid: int
    invalid: int
    by_type: dict[str, int]
