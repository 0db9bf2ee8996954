"""
Electronic signature capture, verification and invalidation.

Every signature stores the payload it attests to together with the SHA-256
digest of that payload. ``verify`` recomputes the digest from what is
stored, so any later change to ``signature_data`` is detected. Rows are
never deleted; invalidation flips ``is_valid`` exactly once.

Audit entries for capture and invalidation are best-effort: they are
written through ``AuditLogger`` inside a savepoint and their outcome is
logged, never raised.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gxp_compliance.core.audit import AuditLogger
from gxp_compliance.core.client import (
    ClientContextProvider,
    ClientMetadata,
    collect_client_metadata,
)
from gxp_compliance.core.crypto import digests_match, signature_digest
from gxp_compliance.core.logging import get_logger
from gxp_compliance.db.models import ElectronicSignature, SignatureType

logger = get_logger(__name__)

COMPLETION_MEANING_TEMPLATE = (
    'I acknowledge that I have completed the training course "{course_title}" and '
    "understand the content presented. I certify that this training was completed by "
    "me personally and that I understand my responsibilities as outlined in the "
    "training materials."
)
ACKNOWLEDGMENT_MEANING_TEMPLATE = (
    'I acknowledge receipt and understanding of the training materials for "{course_title}".'
)

REASON_NOT_FOUND = "not_found"
REASON_INVALIDATED = "invalidated"
REASON_INTEGRITY_COMPROMISED = "integrity_compromised"


class SignatureValidationError(ValueError):
    """Raised when a signature request is missing required fields."""


class SignaturePersistenceError(RuntimeError):
    """Raised when the database rejects a signature write."""


class SignatureNotFoundError(SignaturePersistenceError):
    """Raised when the referenced signature does not exist."""


class SignatureAlreadyInvalidatedError(SignaturePersistenceError):
    """Raised when invalidating a signature that is already invalid."""


@dataclass(frozen=True)
class SignatureCreate:
    """Everything needed to persist one electronic signature."""

    enrollment_id: str
    user_id: str
    signature_type: SignatureType | str
    signer_name: str
    signature_data: Mapping[str, Any]
    signature_meaning: str
    signer_title: str | None = None
    client: ClientMetadata = field(default_factory=ClientMetadata)
    geolocation: dict[str, Any] | None = None
    certificate_id: str | None = None


@dataclass(frozen=True)
class SignatureVerification:
    """Result of checking a stored signature. Failure is data, not an exception."""

    signature_id: UUID
    is_valid: bool
    reason: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class SignatureStatistics:
    total: int
    valid: int
    invalid: int
    by_type: dict[str, int]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _require_text(value: str | None, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise SignatureValidationError(f"{field_name} is required")
    return str(value).strip()


class SignatureService:
    """Create, verify, invalidate and query electronic signatures."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or _utcnow
        self._audit = audit or AuditLogger(session, clock=self._clock)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def create(self, request: SignatureCreate) -> ElectronicSignature:
        """Persist a signature and its payload digest.

        Raises ``SignatureValidationError`` for malformed requests and
        ``SignaturePersistenceError`` when the insert fails. A failed audit
        write does not affect the returned signature.
        """
        enrollment_id = _require_text(request.enrollment_id, "enrollment_id")
        user_id = _require_text(request.user_id, "user_id")
        signer_name = _require_text(request.signer_name, "signer_name")
        meaning = _require_text(request.signature_meaning, "signature_meaning")
        try:
            signature_type = SignatureType(request.signature_type)
        except ValueError as exc:
            raise SignatureValidationError(
                f"unsupported signature_type: {request.signature_type!r}"
            ) from exc
        if not isinstance(request.signature_data, Mapping) or not request.signature_data:
            raise SignatureValidationError("signature_data must be a non-empty object")

        if any(not isinstance(key, str) for key in request.signature_data):
            raise SignatureValidationError("signature_data keys must be strings")
        try:
            # hash exactly what the JSON column will hand back on reload
            payload = json.loads(
                json.dumps(dict(request.signature_data), ensure_ascii=False, allow_nan=False)
            )
            digest = signature_digest(payload)
        except (TypeError, ValueError) as exc:
            raise SignatureValidationError("signature_data is not JSON-serializable") from exc

        row = ElectronicSignature(
            enrollment_id=enrollment_id,
            user_id=user_id,
            signature_type=signature_type,
            signature_meaning=meaning,
            signed_at=self._clock(),
            signer_name=signer_name,
            signer_title=request.signer_title,
            signature_hash=digest,
            signature_data=payload,
            ip_address=request.client.ip_address,
            device_fingerprint=request.client.device_fingerprint,
            geolocation=request.geolocation,
            certificate_id=request.certificate_id,
            is_valid=True,
        )
        try:
            self._session.add(row)
            await self._session.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "signature_persist_failed",
                enrollment_id=enrollment_id,
                signature_type=signature_type.value,
                exc_info=True,
            )
            raise SignaturePersistenceError("failed to store electronic signature") from exc

        logger.info(
            "signature_created",
            signature_id=str(row.id),
            enrollment_id=enrollment_id,
            signature_type=signature_type.value,
        )

        recorded = await self._audit.log_signature_captured(
            user_id,
            enrollment_id,
            signature_type.value,
            signature_id=str(row.id),
            client=request.client,
        )
        if not recorded:
            logger.warning("signature_audit_not_recorded", signature_id=str(row.id))
        return row

    def _base_payload(
        self,
        signature_type: SignatureType,
        enrollment_id: str,
        user_id: str,
        signer_name: str,
        signer_title: str | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": signature_type.value,
            "timestamp": self._clock().isoformat(),
            "enrollment_id": enrollment_id,
            "user_id": user_id,
            "signer_name": signer_name,
        }
        if signer_title is not None:
            payload["signer_title"] = signer_title
        return payload

    async def create_completion_signature(
        self,
        enrollment_id: str,
        user_id: str,
        signer_name: str,
        course_title: str | None = None,
        *,
        signer_title: str | None = None,
        custom_meaning: str | None = None,
        extra_data: Mapping[str, Any] | None = None,
        context: ClientContextProvider | None = None,
    ) -> ElectronicSignature:
        """Sign off a completed course with the standard attestation text."""
        if custom_meaning and custom_meaning.strip():
            meaning = custom_meaning
        else:
            title = _require_text(course_title, "course_title")
            meaning = COMPLETION_MEANING_TEMPLATE.format(course_title=title)

        payload = self._base_payload(
            SignatureType.TRAINING_COMPLETION, enrollment_id, user_id, signer_name, signer_title
        )
        if extra_data:
            payload.update(extra_data)

        client = await collect_client_metadata(context)
        return await self.create(
            SignatureCreate(
                enrollment_id=enrollment_id,
                user_id=user_id,
                signature_type=SignatureType.TRAINING_COMPLETION,
                signer_name=signer_name,
                signer_title=signer_title,
                signature_data=payload,
                signature_meaning=meaning,
                client=client,
            )
        )

    async def create_acknowledgment_signature(
        self,
        enrollment_id: str,
        user_id: str,
        signer_name: str,
        *,
        acknowledgment_text: str | None = None,
        course_title: str | None = None,
        signer_title: str | None = None,
        custom_meaning: str | None = None,
        extra_data: Mapping[str, Any] | None = None,
        context: ClientContextProvider | None = None,
    ) -> ElectronicSignature:
        """Acknowledge training material.

        The meaning is ``custom_meaning`` if given, else the acknowledgment
        text, else the generic receipt statement for ``course_title``.
        """
        if custom_meaning and custom_meaning.strip():
            meaning = custom_meaning
        elif acknowledgment_text and acknowledgment_text.strip():
            meaning = acknowledgment_text
        else:
            title = _require_text(course_title, "course_title")
            meaning = ACKNOWLEDGMENT_MEANING_TEMPLATE.format(course_title=title)

        payload = self._base_payload(
            SignatureType.ACKNOWLEDGMENT, enrollment_id, user_id, signer_name, signer_title
        )
        payload["acknowledgment_text"] = meaning
        if extra_data:
            payload.update(extra_data)

        client = await collect_client_metadata(context)
        return await self.create(
            SignatureCreate(
                enrollment_id=enrollment_id,
                user_id=user_id,
                signature_type=SignatureType.ACKNOWLEDGMENT,
                signer_name=signer_name,
                signer_title=signer_title,
                signature_data=payload,
                signature_meaning=meaning,
                client=client,
            )
        )

    # ------------------------------------------------------------------
    # Verification and invalidation
    # ------------------------------------------------------------------

    async def verify(self, signature_id: UUID) -> SignatureVerification:
        """Check that a signature exists, is valid and still matches its digest."""
        row = await self.get(signature_id)
        if row is None:
            return SignatureVerification(
                signature_id=signature_id,
                is_valid=False,
                reason=REASON_NOT_FOUND,
                message="Signature not found",
            )

        if not row.is_valid:
            return SignatureVerification(
                signature_id=signature_id,
                is_valid=False,
                reason=REASON_INVALIDATED,
                message=row.invalidation_reason,
            )

        try:
            recomputed = signature_digest(row.signature_data)
        except (TypeError, ValueError):
            recomputed = ""
        if not digests_match(row.signature_hash, recomputed):
            logger.warning("signature_integrity_compromised", signature_id=str(signature_id))
            return SignatureVerification(
                signature_id=signature_id,
                is_valid=False,
                reason=REASON_INTEGRITY_COMPROMISED,
                message="Signature integrity compromised",
            )

        return SignatureVerification(signature_id=signature_id, is_valid=True)

    async def invalidate(self, signature_id: UUID, invalidated_by: str, reason: str) -> bool:
        """Permanently invalidate a signature.

        The flag flips in a single conditional UPDATE, so of two concurrent
        invalidations exactly one succeeds.
        """
        invalidated_by = _require_text(invalidated_by, "invalidated_by")
        reason = _require_text(reason, "reason")

        try:
            result = await self._session.execute(
                update(ElectronicSignature)
                .where(
                    ElectronicSignature.id == signature_id,
                    ElectronicSignature.is_valid.is_(True),
                )
                .values(
                    is_valid=False,
                    invalidated_at=self._clock(),
                    invalidated_by=invalidated_by,
                    invalidation_reason=reason,
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            logger.error("signature_invalidate_failed", signature_id=str(signature_id), exc_info=True)
            raise SignaturePersistenceError("failed to invalidate electronic signature") from exc

        if result.rowcount == 0:
            existing = await self._session.scalar(
                select(ElectronicSignature.id).where(ElectronicSignature.id == signature_id)
            )
            if existing is None:
                raise SignatureNotFoundError(f"signature {signature_id} not found")
            raise SignatureAlreadyInvalidatedError(f"signature {signature_id} is already invalid")

        # refresh any copy already loaded in this session
        await self._session.get(ElectronicSignature, signature_id, populate_existing=True)

        logger.info(
            "signature_invalidated",
            signature_id=str(signature_id),
            invalidated_by=invalidated_by,
        )
        recorded = await self._audit.log_signature_invalidated(
            invalidated_by, str(signature_id), reason
        )
        if not recorded:
            logger.warning("signature_audit_not_recorded", signature_id=str(signature_id))
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, signature_id: UUID) -> ElectronicSignature | None:
        result = await self._session.execute(
            select(ElectronicSignature)
            .where(ElectronicSignature.id == signature_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_enrollment(
        self, enrollment_id: str, *, user_id: str | None = None
    ) -> list[ElectronicSignature]:
        """Valid signatures for an enrollment, newest first, optionally one signer's."""
        stmt = select(ElectronicSignature).where(
            ElectronicSignature.enrollment_id == enrollment_id,
            ElectronicSignature.is_valid.is_(True),
        )
        if user_id is not None:
            stmt = stmt.where(ElectronicSignature.user_id == user_id)
        result = await self._session.execute(stmt.order_by(ElectronicSignature.signed_at.desc()))
        return list(result.scalars().all())

    async def get_by_user(
        self, user_id: str, *, include_invalid: bool = False
    ) -> list[ElectronicSignature]:
        """Signatures made by a user, newest first; invalidated ones only on request."""
        stmt = select(ElectronicSignature).where(ElectronicSignature.user_id == user_id)
        if not include_invalid:
            stmt = stmt.where(ElectronicSignature.is_valid.is_(True))
        result = await self._session.execute(stmt.order_by(ElectronicSignature.signed_at.desc()))
        return list(result.scalars().all())

    async def get_statistics(self) -> SignatureStatistics:
        """Counts across every stored signature, invalidated ones included."""
        result = await self._session.execute(
            select(
                ElectronicSignature.signature_type,
                ElectronicSignature.is_valid,
                func.count(ElectronicSignature.id),
            ).group_by(ElectronicSignature.signature_type, ElectronicSignature.is_valid)
        )

        valid = 0
        invalid = 0
        by_type: dict[str, int] = {}
        for signature_type, is_valid, count in result.all():
            type_key = (
                signature_type.value if isinstance(signature_type, SignatureType) else signature_type
            )
            by_type[type_key] = by_type.get(type_key, 0) + count
            if is_valid:
                valid += count
            else:
                invalid += count

        return SignatureStatistics(
            total=valid + invalid,
            valid=valid,
            invalid=invalid,
            by_type=by_type,
        )
