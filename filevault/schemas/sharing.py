"""
Pydantic schemas for share groups.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


class ShareCreate(BaseModel):
    """Share files with recipients given by id and/or email."""
    file_ids: list[UUID] = Field(..., min_length=1)
    recipient_ids: list[UUID] = Field(default_factory=list)
    recipient_emails: list[EmailStr] = Field(default_factory=list)
    expires_at: Optional[datetime] = None


class ShareExtend(BaseModel):
    """Add files and/or recipients to an existing share group."""
    file_ids: list[UUID] = Field(default_factory=list)
    recipient_ids: list[UUID] = Field(default_factory=list)
    recipient_emails: list[EmailStr] = Field(default_factory=list)


class ShareResultItem(BaseModel):
    file_id: UUID
    recipient_id: UUID
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None

    model_config = {"from_attributes": True}


class ShareRecipient(BaseModel):
    id: UUID
    email: str

    model_config = {"from_attributes": True}


class ShareFile(BaseModel):
    id: UUID
    name: str

    model_config = {"from_attributes": True}


class ShareGroupResponse(BaseModel):
    id: UUID
    owner_id: UUID
    expires_at: Optional[datetime] = None
    created_at: datetime
    recipients: list[ShareRecipient] = Field(default_factory=list)
    files: list[ShareFile] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class ShareBatchResponse(BaseModel):
    """Share group plus per (file, recipient) outcome."""
    share_group: ShareGroupResponse
    results: list[ShareResultItem]
    successful_shares: int
    failed_shares: int


class ShareRevokeResponse(BaseModel):
    share_group_id: UUID
    envelopes_removed: int
    message: str
