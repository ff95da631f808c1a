"""
Sharing endpoints.

Creating or extending a share rewraps each file's DEK for each recipient.
The response always carries one result per (file, recipient) pair; a 201
does not mean every pair succeeded, check failed_shares.
"""
from uuid import UUID
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.database import get_db
from filevault.middleware.jwt import get_current_user
from filevault.models.share_group import ShareGroup
from filevault.models.user import User
from filevault.schemas.sharing import (
    ShareCreate,
    ShareExtend,
    ShareBatchResponse,
    ShareGroupResponse,
    ShareResultItem,
    ShareRevokeResponse,
)
from filevault.services.sharing import ShareReport, SharingService, get_sharing_service
from filevault.utils.http_errors import to_http_exception
from filevault.utils.logger import get_logger

logger = get_logger("shares")
router = APIRouter()


def _batch_response(group: ShareGroup, report: ShareReport) -> ShareBatchResponse:
    return ShareBatchResponse(
        share_group=ShareGroupResponse.model_validate(group),
        results=[ShareResultItem.model_validate(r) for r in report.results],
        successful_shares=report.successful_shares,
        failed_shares=report.failed_shares
    )


@router.post(
    "/shares",
    response_model=ShareBatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Share files",
    description="Create a share group and give every recipient their own envelope for every file",
    responses={
        201: {"description": "Share created; inspect per-pair results"},
        400: {"description": "A file is not encrypted or the request is invalid"},
        404: {"description": "File or recipient not found"},
        412: {"description": "A recipient has no encryption key"}
    }
)
async def create_share(
    request: ShareCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    sharing: SharingService = Depends(get_sharing_service)
) -> ShareBatchResponse:
    logger.info(
        "Share requested",
        user_id=str(current_user.id),
        files=len(request.file_ids),
        recipients=len(request.recipient_ids) + len(request.recipient_emails)
    )

    try:
        recipient_ids = await sharing.resolve_recipients(
            db, request.recipient_ids, request.recipient_emails
        )
        group, report = await sharing.create_share_group(
            db,
            owner_id=current_user.id,
            file_ids=request.file_ids,
            recipient_ids=recipient_ids,
            expires_at=request.expires_at,
        )
    except Exception as e:
        raise to_http_exception(e)

    return _batch_response(group, report)


@router.get(
    "/shares",
    response_model=list[ShareGroupResponse],
    summary="List shares",
    description="List share groups created by the caller, newest first"
)
async def list_shares(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    sharing: SharingService = Depends(get_sharing_service)
) -> list[ShareGroupResponse]:
    groups = await sharing.list_share_groups(db, current_user.id)
    return [ShareGroupResponse.model_validate(g) for g in groups]


@router.get(
    "/shares/received",
    response_model=list[ShareGroupResponse],
    summary="List received shares",
    description="List unexpired share groups the caller is a recipient of"
)
async def list_received_shares(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    sharing: SharingService = Depends(get_sharing_service)
) -> list[ShareGroupResponse]:
    groups = await sharing.list_received_share_groups(db, current_user.id)
    return [ShareGroupResponse.model_validate(g) for g in groups]


@router.post(
    "/shares/{share_group_id}/extend",
    response_model=ShareBatchResponse,
    summary="Extend share",
    description="Add files and/or recipients to a share group; new pairs and earlier failed pairs are rewrapped",
    responses={404: {"description": "Share, file or recipient not found"}}
)
async def extend_share(
    share_group_id: UUID,
    request: ShareExtend,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    sharing: SharingService = Depends(get_sharing_service)
) -> ShareBatchResponse:
    try:
        recipient_ids = await sharing.resolve_recipients(
            db, request.recipient_ids, request.recipient_emails
        )
        group, report = await sharing.extend_share_group(
            db,
            owner_id=current_user.id,
            group_id=share_group_id,
            file_ids=request.file_ids,
            recipient_ids=recipient_ids,
        )
    except Exception as e:
        raise to_http_exception(e)

    return _batch_response(group, report)


@router.delete(
    "/shares/{share_group_id}",
    response_model=ShareRevokeResponse,
    summary="Revoke share",
    description="Delete a share group and the recipients' envelopes for its files",
    responses={404: {"description": "Share not found"}}
)
async def revoke_share(
    share_group_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    sharing: SharingService = Depends(get_sharing_service)
) -> ShareRevokeResponse:
    try:
        removed = await sharing.revoke_share_group(db, current_user.id, share_group_id)
    except Exception as e:
        raise to_http_exception(e)

    return ShareRevokeResponse(
        share_group_id=share_group_id,
        envelopes_removed=removed,
        message="Share revoked"
    )


@router.delete(
    "/shares/{share_group_id}/files/{file_id}",
    response_model=ShareRevokeResponse,
    summary="Remove file from share",
    description="Take one file out of a share group and revoke the recipients' envelopes for it",
    responses={404: {"description": "Share or file not found"}}
)
async def remove_file_from_share(
    share_group_id: UUID,
    file_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    sharing: SharingService = Depends(get_sharing_service)
) -> ShareRevokeResponse:
    try:
        removed = await sharing.remove_file_from_share_group(
            db, current_user.id, share_group_id, file_id
        )
    except Exception as e:
        raise to_http_exception(e)

    return ShareRevokeResponse(
        share_group_id=share_group_id,
        envelopes_removed=removed,
        message="File removed from share"
    )
