"""
Pydantic schemas for KEK rotation.
"""
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class RotateRequest(BaseModel):
    """Request to move every envelope from one KEK to another."""
    from_kek_id: UUID = Field(..., description="KEK being retired")
    to_kek_id: UUID = Field(..., description="KEK receiving the envelopes")
    make_primary: bool = Field(False, description="Promote the target KEK to primary afterwards")


class RotationFailureItem(BaseModel):
    file_id: UUID
    error: str
    error_code: Optional[str] = None

    model_config = {"from_attributes": True}


class RotateResponse(BaseModel):
    """Rotation counts. Retry while failed > 0."""
    total_to_rewrap: int
    rewrapped: int
    failed: int
    failures: list[RotationFailureItem] = Field(default_factory=list)

    model_config = {"from_attributes": True}
