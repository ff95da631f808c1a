"""
Key management endpoints: KEK lifecycle, DEK wrap/unwrap and rotation.
"""
from uuid import UUID
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.database import get_db
from filevault.middleware.jwt import get_current_user
from filevault.models.user import User
from filevault.schemas.envelope import (
    WrapRequest,
    WrapResponse,
    UnwrapRequest,
    UnwrapResponse,
    b64decode,
    b64encode,
)
from filevault.schemas.keys import (
    KeyCreate,
    KeyUpdate,
    KeyResponse,
    KeyUsageResponse,
    KeyDeleteResponse,
)
from filevault.schemas.rotation import RotateRequest, RotateResponse
from filevault.services.envelope_engine import EnvelopeEngine, get_envelope_engine
from filevault.services.key_registry import KeyRegistry, get_key_registry
from filevault.services.key_rotation import KeyRotationService, get_key_rotation_service
from filevault.services.kms.base import WrappedKey
from filevault.utils.http_errors import to_http_exception
from filevault.utils.logger import get_logger

logger = get_logger("keys")
router = APIRouter()


@router.get(
    "/keys",
    response_model=list[KeyResponse],
    summary="List keys",
    description="List the caller's key-encryption keys, newest first",
)
async def list_keys(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    registry: KeyRegistry = Depends(get_key_registry)
) -> list[KeyResponse]:
    keys = await registry.list_keys(db, current_user.id)
    return [KeyResponse.model_validate(kek) for kek in keys]


@router.post(
    "/keys",
    response_model=KeyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create key",
    description="Provision a KMS key and register it as a key-encryption key",
    responses={
        201: {"description": "Key created"},
        409: {"description": "Alias already in use"},
        429: {"description": "KMS quota exceeded"},
        503: {"description": "KMS unavailable"}
    }
)
async def create_key(
    request: KeyCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    registry: KeyRegistry = Depends(get_key_registry)
) -> KeyResponse:
    """
    Create a KEK for the caller.

    When is_primary is set, every other key of the caller loses its primary
    flag in the same transaction.
    """
    try:
        kek = await registry.create_key(
            db,
            owner_id=current_user.id,
            owner_label=current_user.email,
            alias=request.alias,
            description=request.description,
            is_primary=request.is_primary,
            expiry_policy=request.expiry,
        )
    except Exception as e:
        raise to_http_exception(e)

    return KeyResponse.model_validate(kek)


@router.patch(
    "/keys/{kek_id}",
    response_model=KeyResponse,
    summary="Update key",
    description="Change a key's alias, description or primary flag",
    responses={
        404: {"description": "Key not found"},
        409: {"description": "Alias already in use"}
    }
)
async def update_key(
    kek_id: UUID,
    request: KeyUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    registry: KeyRegistry = Depends(get_key_registry)
) -> KeyResponse:
    try:
        kek = await registry.update_key(
            db,
            owner_id=current_user.id,
            kek_id=kek_id,
            alias=request.alias,
            description=request.description,
            is_primary=request.is_primary,
        )
    except Exception as e:
        raise to_http_exception(e)

    return KeyResponse.model_validate(kek)


@router.delete(
    "/keys/{kek_id}",
    response_model=KeyDeleteResponse,
    summary="Delete key",
    description=(
        "Delete a key that no encrypted DEK references. "
        "The KMS key is scheduled for deletion after a grace period."
    ),
    responses={
        404: {"description": "Key not found"},
        409: {"description": "Key still in use"}
    }
)
async def delete_key(
    kek_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    registry: KeyRegistry = Depends(get_key_registry)
) -> KeyDeleteResponse:
    try:
        deletion_date = await registry.delete_key(db, current_user.id, kek_id)
    except Exception as e:
        raise to_http_exception(e)

    return KeyDeleteResponse(
        kek_id=kek_id,
        deletion_date=deletion_date,
        message="Key deleted. KMS key material is scheduled for destruction."
    )


@router.get(
    "/keys/{kek_id}/usage",
    response_model=KeyUsageResponse,
    summary="Key usage",
    description="Count files and encrypted DEKs protected by a key",
    responses={404: {"description": "Key not found"}}
)
async def get_key_usage(
    kek_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    registry: KeyRegistry = Depends(get_key_registry)
) -> KeyUsageResponse:
    try:
        usage = await registry.get_usage(db, current_user.id, kek_id)
    except Exception as e:
        raise to_http_exception(e)

    return KeyUsageResponse(
        kek_id=kek_id,
        file_count=usage.file_count,
        envelope_count=usage.envelope_count
    )


@router.post(
    "/keys/wrap",
    response_model=WrapResponse,
    summary="Wrap DEK",
    description="Wrap a client-generated DEK under the caller's primary key",
    responses={
        400: {"description": "DEK empty or too large"},
        412: {"description": "No primary key"}
    }
)
async def wrap_dek(
    request: WrapRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    engine: EnvelopeEngine = Depends(get_envelope_engine)
) -> WrapResponse:
    try:
        result = await engine.wrap_for_owner(db, current_user.id, b64decode(request.dek))
    except Exception as e:
        raise to_http_exception(e)

    return WrapResponse(
        encrypted_dek=b64encode(result.ciphertext),
        kek_id=result.kek_id,
        kms_key_id=result.kms_key_id
    )


@router.post(
    "/keys/unwrap",
    response_model=UnwrapResponse,
    summary="Unwrap DEK",
    description="Unwrap a DEK with one of the caller's keys. The result must not be stored.",
    responses={
        404: {"description": "Key not found"},
        422: {"description": "Ciphertext does not match the key"}
    }
)
async def unwrap_dek(
    request: UnwrapRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    engine: EnvelopeEngine = Depends(get_envelope_engine)
) -> UnwrapResponse:
    logger.info(
        "DEK unwrap requested",
        user_id=str(current_user.id),
        kek_id=str(request.kek_id)
    )
    try:
        plaintext = await engine.unwrap_for_caller(
            db,
            kek_id=request.kek_id,
            owner_id=current_user.id,
            ciphertext=WrappedKey(b64decode(request.encrypted_dek)),
        )
    except Exception as e:
        raise to_http_exception(e)

    return UnwrapResponse(dek=b64encode(plaintext), kek_id=request.kek_id)


@router.post(
    "/keys/rotate",
    response_model=RotateResponse,
    summary="Rotate key",
    description=(
        "Rewrap every encrypted DEK from one of the caller's keys to another. "
        "Per-file failures are reported, not raised."
    ),
    responses={
        400: {"description": "Source and target are the same key"},
        404: {"description": "Key not found"}
    }
)
async def rotate_key(
    request: RotateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    rotation: KeyRotationService = Depends(get_key_rotation_service)
) -> RotateResponse:
    logger.info(
        "Key rotation requested",
        user_id=str(current_user.id),
        from_kek_id=str(request.from_kek_id),
        to_kek_id=str(request.to_kek_id)
    )
    try:
        summary = await rotation.rotate_kek_for_owner(
            db,
            owner_id=current_user.id,
            from_kek_id=request.from_kek_id,
            to_kek_id=request.to_kek_id,
            make_primary=request.make_primary,
        )
    except Exception as e:
        raise to_http_exception(e)

    return RotateResponse.model_validate(summary)
