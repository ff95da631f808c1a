"""
Unit tests for mapping service errors onto HTTP responses.
"""
import pytest
from fastapi import HTTPException

from filevault.services.errors import (
    AliasConflictError,
    AlreadySharedError,
    FileAccessError,
    FileNotEncryptedError,
    InvalidCiphertextError,
    KeyInUseError,
    KeyNotFoundError,
    NoPrimaryKeyError,
    ProviderQuotaExceededError,
    ProviderUnavailableError,
    RecipientHasNoKeyError,
    ShareGroupNotFoundError,
)
from filevault.utils.http_errors import status_for, to_http_exception


@pytest.mark.parametrize("error,expected_status", [
    (NoPrimaryKeyError("no key"), 412),
    (RecipientHasNoKeyError("no key"), 412),
    (AliasConflictError("taken"), 409),
    (FileNotEncryptedError("plain"), 400),
    (KeyInUseError("in use"), 409),
    (AlreadySharedError("shared"), 409),
    (ProviderUnavailableError("down"), 503),
    (ProviderQuotaExceededError("slow down"), 429),
    (KeyNotFoundError("gone"), 404),
    (InvalidCiphertextError("bad"), 422),
    (FileAccessError("missing"), 404),
    (ShareGroupNotFoundError("missing"), 404),
])
def test_status_for_service_errors(error, expected_status):
    """Each error category maps onto one HTTP status."""
    assert status_for(error) == expected_status


def test_service_error_detail_carries_code():
    """Detail body exposes the stable error code and message."""
    exc = to_http_exception(KeyInUseError("Key still wraps 3 DEKs"))

    assert isinstance(exc, HTTPException)
    assert exc.status_code == 409
    assert exc.detail == {"code": "key_in_use", "message": "Key still wraps 3 DEKs"}


def test_value_error_is_bad_request():
    exc = to_http_exception(ValueError("Source and target keys must be different"))

    assert exc.status_code == 400
    assert exc.detail["code"] == "invalid_request"


def test_unexpected_error_is_hidden():
    """Unknown failures never leak their message to the client."""
    exc = to_http_exception(RuntimeError("connection string with password"))

    assert exc.status_code == 500
    assert exc.detail == {"code": "internal_error", "message": "Internal server error"}
