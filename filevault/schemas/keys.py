"""
Pydantic schemas for key-encryption key (KEK) management.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from filevault.services.key_registry import ExpiryPolicy


class KeyCreate(BaseModel):
    """Request to create a KEK."""
    alias: str = Field(
        ...,
        min_length=1,
        max_length=200,
        pattern=r"^[a-zA-Z0-9/_-]+$",
        description="Name unique among your keys (letters, digits, '/', '_', '-')"
    )
    description: Optional[str] = Field(None, max_length=8192, description="Optional description")
    is_primary: bool = Field(False, description="Use this key for new uploads")
    expiry: ExpiryPolicy = Field(ExpiryPolicy.NEVER, description="Key lifetime in days or 'never'")


class KeyUpdate(BaseModel):
    """Request to update a KEK. Omitted fields are left unchanged."""
    alias: Optional[str] = Field(
        None,
        min_length=1,
        max_length=200,
        pattern=r"^[a-zA-Z0-9/_-]+$",
    )
    description: Optional[str] = Field(None, max_length=8192)
    is_primary: Optional[bool] = None


class KeyResponse(BaseModel):
    """KEK metadata. Key material never leaves the KMS."""
    id: UUID
    alias: str
    description: Optional[str] = None
    kms_key_id: str
    is_primary: bool
    is_expired: bool
    expires_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class KeyUsageResponse(BaseModel):
    """How much data a KEK protects."""
    kek_id: UUID
    file_count: int = Field(description="Distinct files with an envelope under this key")
    envelope_count: int = Field(description="Envelopes wrapped under this key")


class KeyDeleteResponse(BaseModel):
    """Result of deleting a KEK."""
    kek_id: UUID
    deletion_date: datetime = Field(description="When the KMS destroys the key material")
    message: str
