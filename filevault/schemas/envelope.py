"""
Pydantic schemas for wrapping and unwrapping DEKs.

Binary values travel as standard base64 strings.
"""
import base64
import binascii
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    """Decode strict base64, raising ValueError on malformed input."""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Value is not valid base64") from e


def check_base64(value: str) -> str:
    """Field validator body: non-empty, well-formed base64."""
    if not value:
        raise ValueError("Value cannot be empty")
    b64decode(value)
    return value


class WrapRequest(BaseModel):
    """Request to wrap a DEK under the caller's primary KEK."""
    dek: str = Field(..., description="Plaintext DEK, base64")

    @field_validator("dek")
    @classmethod
    def dek_is_base64(cls, v: str) -> str:
        return check_base64(v)


class WrapResponse(BaseModel):
    """Wrapped DEK and the KEK that produced it."""
    encrypted_dek: str = Field(description="Wrapped DEK, base64")
    kek_id: UUID = Field(description="KEK used for wrapping")
    kms_key_id: str = Field(description="KMS handle of the KEK")


class UnwrapRequest(BaseModel):
    """Request to unwrap a DEK with one of the caller's KEKs."""
    encrypted_dek: str = Field(..., description="Wrapped DEK, base64")
    kek_id: UUID = Field(..., description="KEK the DEK was wrapped under")

    @field_validator("encrypted_dek")
    @classmethod
    def encrypted_dek_is_base64(cls, v: str) -> str:
        return check_base64(v)


class UnwrapResponse(BaseModel):
    """
    Plaintext DEK.

    Ephemeral: the client uses it to decrypt the file and must not store it.
    """
    dek: str = Field(description="Plaintext DEK, base64")
    kek_id: UUID = Field(description="KEK used for unwrapping")
