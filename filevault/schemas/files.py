"""
Pydantic schemas for stored files and their envelopes.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from filevault.schemas.envelope import check_base64


class FileCreate(BaseModel):
    """
    Register an uploaded (client-side encrypted) file with its owner envelope.

    encrypted_dek comes from POST /keys/wrap; iv is the IV the client used
    to encrypt the file bytes with the DEK.
    """
    name: str = Field(..., min_length=1, max_length=1024)
    storage_path: str = Field(..., min_length=1, max_length=1024)
    mime_type: Optional[str] = Field(None, max_length=255)
    size: Optional[int] = Field(None, ge=0)
    encrypted_dek: str = Field(..., description="Wrapped DEK, base64")
    kek_id: UUID = Field(..., description="KEK the DEK was wrapped under")
    iv: str = Field(..., description="File encryption IV, base64")

    @field_validator("encrypted_dek", "iv")
    @classmethod
    def binary_fields_are_base64(cls, v: str) -> str:
        return check_base64(v)


class FileResponse(BaseModel):
    id: UUID
    owner_id: UUID
    name: str
    storage_path: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class FileEnvelopeResponse(BaseModel):
    """The caller's envelope for a file, used to decrypt it after download."""
    file_id: UUID
    kek_id: UUID
    encrypted_dek: str = Field(description="Wrapped DEK, base64")
    iv: str = Field(description="File encryption IV, base64")
