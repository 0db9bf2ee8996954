"""
SQLAlchemy ORM models for the compliance integrity subsystem.
Signatures and audit logs reference users and enrollments by opaque id;
those tables belong to the surrounding portal.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    String,
    Text,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


# =============================================================================
# Enums
# =============================================================================


class SignatureType(str, PyEnum):
    """What an electronic signature attests to."""

    TRAINING_COMPLETION = "training_completion"
    ACKNOWLEDGMENT = "acknowledgment"


# =============================================================================
# Electronic Signatures
# =============================================================================


class ElectronicSignature(Base):
    """
    One signed assertion tied to one training enrollment.

    Rows are never deleted. Invalidation flips ``is_valid`` once and records
    who invalidated the signature and why.
    """

    __tablename__ = "electronic_signatures"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    enrollment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    signature_type: Mapped[SignatureType] = mapped_column(
        Enum(
            SignatureType,
            name="signature_type",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
    )
    signature_meaning: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Legal statement the signer attests to",
    )
    signed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    signer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    signer_title: Mapped[str | None] = mapped_column(String(255))
    signature_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 hex digest of signature_data",
    )
    # Plain JSON keeps nested key order intact; JSONB would reorder it and
    # break the digest of nested payloads.
    signature_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    device_fingerprint: Mapped[str | None] = mapped_column(String(128))
    geolocation: Mapped[dict[str, Any] | None] = mapped_column()
    certificate_id: Mapped[str | None] = mapped_column(String(255))
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    invalidated_by: Mapped[str | None] = mapped_column(String(255))
    invalidation_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_electronic_signatures_enrollment", "enrollment_id", "is_valid"),
        Index("ix_electronic_signatures_user", "user_id", "is_valid"),
        Index("ix_electronic_signatures_type", "signature_type"),
        CheckConstraint(
            "is_valid OR invalidated_at IS NOT NULL",
            name="ck_electronic_signatures_invalidation_recorded",
        ),
    )


# =============================================================================
# Audit Logs
# =============================================================================


class AuditImmutabilityError(RuntimeError):
    """Raised when code attempts to modify or remove a written audit entry."""


class AuditLog(Base):
    """
    Immutable record of a compliance-relevant action.

    Written once by the audit logger; the ORM refuses updates and deletes and
    the database trigger installed by migration 0001 does the same.
    """

    __tablename__ = "audit_logs"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[str | None] = mapped_column(
        String(255),
        comment="Actor reference (NULL for anonymous events such as failed logins)",
    )
    session_id: Mapped[str | None] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Action taxonomy: login, course_completed, signature_captured, etc.",
    )
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255))
    old_values: Mapped[dict[str, Any] | None] = mapped_column()
    new_values: Mapped[dict[str, Any] | None] = mapped_column()
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    request_id: Mapped[str | None] = mapped_column(String(255))
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text)
    additional_data: Mapped[dict[str, Any] | None] = mapped_column()

    __table_args__ = (
        Index("ix_audit_logs_user_id", "user_id"),
        Index("ix_audit_logs_action", "action"),
        Index("ix_audit_logs_resource", "resource_type", "resource_id"),
        Index("ix_audit_logs_timestamp", "timestamp"),
    )


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(_mapper: Any, _connection: Any, target: AuditLog) -> None:
    raise AuditImmutabilityError(f"audit log entry {target.id} is immutable")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(_mapper: Any, _connection: Any, target: AuditLog) -> None:
    raise AuditImmutabilityError(f"audit log entry {target.id} cannot be deleted")
