"""
File endpoints: register uploads with their owner envelope, fetch the
caller's envelope for download, delete files.
"""
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.database import get_db
from filevault.middleware.jwt import get_current_user
from filevault.models.user import User
from filevault.schemas.envelope import b64decode, b64encode
from filevault.schemas.files import FileCreate, FileResponse, FileEnvelopeResponse
from filevault.services.database import db_service
from filevault.services.envelope_engine import EnvelopeEngine, get_envelope_engine
from filevault.services.kms.base import WrappedKey
from filevault.utils.http_errors import to_http_exception
from filevault.utils.logger import get_logger

logger = get_logger("files")
router = APIRouter()


@router.post(
    "/files",
    response_model=FileResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register file",
    description=(
        "Record a client-side encrypted file together with its DEK wrapped "
        "under one of the caller's keys"
    ),
    responses={
        201: {"description": "File registered"},
        404: {"description": "Key not found"}
    }
)
async def create_file(
    request: FileCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    engine: EnvelopeEngine = Depends(get_envelope_engine)
) -> FileResponse:
    """
    Create the file record and the owner's envelope in one transaction.
    """
    stored_file = await db_service.create_file(
        db,
        owner_id=current_user.id,
        name=request.name,
        storage_path=request.storage_path,
        mime_type=request.mime_type,
        size=request.size
    )

    try:
        await engine.register_file_envelope(
            db,
            owner_id=current_user.id,
            file_id=stored_file.id,
            kek_id=request.kek_id,
            ciphertext=WrappedKey(b64decode(request.encrypted_dek)),
            iv=b64decode(request.iv),
        )
    except Exception as e:
        raise to_http_exception(e)

    return FileResponse.model_validate(stored_file)


@router.get(
    "/files/{file_id}/envelope",
    response_model=FileEnvelopeResponse,
    summary="Get file envelope",
    description="Get the caller's wrapped DEK and IV for a file they own or that was shared with them",
    responses={404: {"description": "File not found"}}
)
async def get_file_envelope(
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    engine: EnvelopeEngine = Depends(get_envelope_engine)
) -> FileEnvelopeResponse:
    try:
        envelope = await engine.get_file_envelope_for_caller(db, file_id, current_user.id)
    except Exception as e:
        raise to_http_exception(e)

    return FileEnvelopeResponse(
        file_id=envelope.file_id,
        kek_id=envelope.kek_id,
        encrypted_dek=b64encode(envelope.dek_ciphertext),
        iv=b64encode(envelope.iv)
    )


@router.delete(
    "/files/{file_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete file",
    description="Permanently delete a file. Every envelope for it is removed with it.",
    responses={404: {"description": "File not found"}}
)
async def delete_file(
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
) -> None:
    deleted = await db_service.delete_file(db, file_id, current_user.id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "file_not_found", "message": f"File {file_id} not found"}
        )
