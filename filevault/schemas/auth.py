"""
Pydantic schemas for bearer token claims.
"""
from uuid import UUID
from pydantic import BaseModel


class TokenData(BaseModel):
    """
    Schema for data encoded in JWT token.
    """
    user_id: UUID | None = None
    email: str | None = None
    token_type: str = "access"
