"""Electronic signature capture, verification and administration APIs."""

from __future__ import annotations

from typing import NoReturn
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status

from gxp_compliance.core.client import RequestClientContext, collect_client_metadata
from gxp_compliance.core.security import Actor, AdminActor, CurrentActor
from gxp_compliance.db.models import ElectronicSignature
from gxp_compliance.db.session import DbSession
from gxp_compliance.modules.signatures.schemas import (
    AcknowledgmentSignatureRequest,
    CompletionSignatureRequest,
    SignatureCreateRequest,
    SignatureInvalidateRequest,
    SignatureListResponse,
    SignatureResponse,
    SignatureStatisticsResponse,
    SignatureVerificationResponse,
)
from gxp_compliance.modules.signatures.service import (
    SignatureAlreadyInvalidatedError,
    SignatureCreate,
    SignatureNotFoundError,
    SignaturePersistenceError,
    SignatureService,
    SignatureValidationError,
)

router = APIRouter()


def _to_response(row: ElectronicSignature) -> SignatureResponse:
    return SignatureResponse(
        id=row.id,
        enrollment_id=row.enrollment_id,
        user_id=row.user_id,
        signature_type=row.signature_type,
        signature_meaning=row.signature_meaning,
        signed_at=row.signed_at,
        signer_name=row.signer_name,
        signer_title=row.signer_title,
        signature_hash=row.signature_hash,
        signature_data=row.signature_data,
        ip_address=row.ip_address,
        device_fingerprint=row.device_fingerprint,
        geolocation=row.geolocation,
        certificate_id=row.certificate_id,
        is_valid=row.is_valid,
        invalidated_at=row.invalidated_at,
        invalidated_by=row.invalidated_by,
        invalidation_reason=row.invalidation_reason,
    )


def _to_list(rows: list[ElectronicSignature]) -> SignatureListResponse:
    return SignatureListResponse(items=[_to_response(row) for row in rows], count=len(rows))


def _ensure_can_read(actor: Actor, owner_id: str) -> None:
    """Signers see their own signatures; admins see everyone's."""
    if owner_id != actor.user_id and not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot access another user's signatures",
        )


def _raise_for_create_error(exc: Exception) -> NoReturn:
    if isinstance(exc, SignatureValidationError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Signature could not be stored",
    ) from exc


@router.post("", response_model=SignatureResponse, status_code=status.HTTP_201_CREATED)
async def create_signature(
    body: SignatureCreateRequest,
    request: Request,
    db: DbSession,
    actor: CurrentActor,
) -> SignatureResponse:
    client = await collect_client_metadata(RequestClientContext(request))
    service = SignatureService(db)
    try:
        row = await service.create(
            SignatureCreate(
                enrollment_id=body.enrollment_id,
                user_id=actor.user_id,
                signature_type=body.signature_type,
                signer_name=body.signer_name,
                signer_title=body.signer_title,
                signature_data=body.signature_data,
                signature_meaning=body.signature_meaning,
                client=client,
                geolocation=body.geolocation,
                certificate_id=body.certificate_id,
            )
        )
    except (SignatureValidationError, SignaturePersistenceError) as exc:
        _raise_for_create_error(exc)
    await db.commit()
    return _to_response(row)


@router.post(
    "/completion", response_model=SignatureResponse, status_code=status.HTTP_201_CREATED
)
async def create_completion_signature(
    body: CompletionSignatureRequest,
    request: Request,
    db: DbSession,
    actor: CurrentActor,
) -> SignatureResponse:
    service = SignatureService(db)
    try:
        row = await service.create_completion_signature(
            body.enrollment_id,
            actor.user_id,
            body.signer_name,
            body.course_title,
            signer_title=body.signer_title,
            custom_meaning=body.custom_meaning,
            extra_data=body.signature_data,
            context=RequestClientContext(request),
        )
    except (SignatureValidationError, SignaturePersistenceError) as exc:
        _raise_for_create_error(exc)
    await db.commit()
    return _to_response(row)


@router.post(
    "/acknowledgment", response_model=SignatureResponse, status_code=status.HTTP_201_CREATED
)
async def create_acknowledgment_signature(
    body: AcknowledgmentSignatureRequest,
    request: Request,
    db: DbSession,
    actor: CurrentActor,
) -> SignatureResponse:
    service = SignatureService(db)
    try:
        row = await service.create_acknowledgment_signature(
            body.enrollment_id,
            actor.user_id,
            body.signer_name,
            acknowledgment_text=body.acknowledgment_text,
            course_title=body.course_title,
            signer_title=body.signer_title,
            custom_meaning=body.custom_meaning,
            extra_data=body.signature_data,
            context=RequestClientContext(request),
        )
    except (SignatureValidationError, SignaturePersistenceError) as exc:
        _raise_for_create_error(exc)
    await db.commit()
    return _to_response(row)


@router.get("/statistics", response_model=SignatureStatisticsResponse)
async def get_signature_statistics(
    db: DbSession,
    _admin: AdminActor,
) -> SignatureStatisticsResponse:
    stats = await SignatureService(db).get_statistics()
    return SignatureStatisticsResponse(
        total=stats.total,
        valid=stats.valid,
        invalid=stats.invalid,
        by_type=stats.by_type,
    )


@router.get("/enrollments/{enrollment_id}", response_model=SignatureListResponse)
async def list_enrollment_signatures(
    enrollment_id: str,
    db: DbSession,
    actor: CurrentActor,
) -> SignatureListResponse:
    rows = await SignatureService(db).get_by_enrollment(
        enrollment_id, user_id=None if actor.is_admin else actor.user_id
    )
    return _to_list(rows)


@router.get("/users/{user_id}", response_model=SignatureListResponse)
async def list_user_signatures(
    user_id: str,
    db: DbSession,
    actor: CurrentActor,
    include_invalid: bool = False,
) -> SignatureListResponse:
    _ensure_can_read(actor, user_id)
    rows = await SignatureService(db).get_by_user(user_id, include_invalid=include_invalid)
    return _to_list(rows)


@router.get("/{signature_id:uuid}", response_model=SignatureResponse)
async def get_signature(
    signature_id: UUID,
    db: DbSession,
    actor: CurrentActor,
) -> SignatureResponse:
    row = await SignatureService(db).get(signature_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Signature not found")
    _ensure_can_read(actor, row.user_id)
    return _to_response(row)


@router.get("/{signature_id:uuid}/verify", response_model=SignatureVerificationResponse)
async def verify_signature(
    signature_id: UUID,
    db: DbSession,
    actor: CurrentActor,
) -> SignatureVerificationResponse:
    service = SignatureService(db)
    row = await service.get(signature_id)
    if row is not None:
        _ensure_can_read(actor, row.user_id)
    result = await service.verify(signature_id)
    return SignatureVerificationResponse(
        signature_id=result.signature_id,
        is_valid=result.is_valid,
        reason=result.reason,
        message=result.message,
    )


@router.post("/{signature_id:uuid}/invalidate", response_model=SignatureResponse)
async def invalidate_signature(
    signature_id: UUID,
    body: SignatureInvalidateRequest,
    db: DbSession,
    admin: AdminActor,
) -> SignatureResponse:
    service = SignatureService(db)
    try:
        await service.invalidate(signature_id, admin.user_id, body.reason)
    except SignatureNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Signature not found"
        ) from exc
    except SignatureAlreadyInvalidatedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Signature is already invalidated"
        ) from exc
    except SignatureValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except SignaturePersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Signature could not be invalidated",
        ) from exc
    await db.commit()
    row = await service.get(signature_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Signature not found")
    return _to_response(row)
