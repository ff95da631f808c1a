"""
Pydantic schemas for API request/response models.
"""
from filevault.schemas.envelope import (
    WrapRequest,
    WrapResponse,
    UnwrapRequest,
    UnwrapResponse,
)
from filevault.schemas.keys import (
    KeyCreate,
    KeyUpdate,
    KeyResponse,
    KeyUsageResponse,
    KeyDeleteResponse,
)
from filevault.schemas.rotation import RotateRequest, RotateResponse

__all__ = [
    "WrapRequest",
    "WrapResponse",
    "UnwrapRequest",
    "UnwrapResponse",
    "KeyCreate",
    "KeyUpdate",
    "KeyResponse",
    "KeyUsageResponse",
    "KeyDeleteResponse",
    "RotateRequest",
    "RotateResponse",
]
