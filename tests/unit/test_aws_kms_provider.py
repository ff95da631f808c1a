"""
Unit tests for the AWS KMS provider.

The boto3 client is replaced with a Mock, so no AWS account is needed.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from filevault.services.errors import (
    AliasConflictError,
    InvalidCiphertextError,
    KeyNotFoundError,
    ProviderQuotaExceededError,
    ProviderUnavailableError,
)
from filevault.services.kms.aws_kms import AWSKMSProvider, translate_client_error
from filevault.services.kms.base import KMSKeyHandle, WrappedKey

KEY_ID = "1234abcd-12ab-34cd-56ef-1234567890ab"


def client_error(code: str, operation: str = "Decrypt") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} raised"}},
        operation,
    )


@pytest.fixture
def client() -> Mock:
    return Mock()


@pytest.fixture
def provider(client) -> AWSKMSProvider:
    return AWSKMSProvider(region="eu-west-1", client=client)


# =============================================================================
# Error translation
# =============================================================================


class TestTranslateClientError:

    @pytest.mark.parametrize("code,expected", [
        ("NotFoundException", KeyNotFoundError),
        ("DisabledException", KeyNotFoundError),
        ("KMSInvalidStateException", KeyNotFoundError),
        ("InvalidCiphertextException", InvalidCiphertextError),
        ("IncorrectKeyException", InvalidCiphertextError),
        ("LimitExceededException", ProviderQuotaExceededError),
        ("ThrottlingException", ProviderQuotaExceededError),
        ("AlreadyExistsException", AliasConflictError),
        ("KMSInternalException", ProviderUnavailableError),
    ])
    def test_client_error_codes(self, code, expected):
        translated = translate_client_error(client_error(code))
        assert type(translated) is expected
        assert code in str(translated)

    def test_connection_error_is_unavailable(self):
        error = EndpointConnectionError(endpoint_url="https://kms.eu-west-1.amazonaws.com")
        assert isinstance(translate_client_error(error), ProviderUnavailableError)


# =============================================================================
# Key operations
# =============================================================================


class TestAWSKMSProvider:

    @pytest.mark.asyncio
    async def test_create_master_key(self, provider, client):
        client.create_key.return_value = {"KeyMetadata": {"KeyId": KEY_ID}}

        handle = await provider.create_master_key("alice@example.com")

        assert handle == KEY_ID
        kwargs = client.create_key.call_args.kwargs
        assert kwargs["KeyUsage"] == "ENCRYPT_DECRYPT"
        assert kwargs["KeySpec"] == "SYMMETRIC_DEFAULT"
        assert {"TagKey": "Owner", "TagValue": "alice@example.com"} in kwargs["Tags"]
        assert {"TagKey": "CreatedBy", "TagValue": "filevault"} in kwargs["Tags"]

    @pytest.mark.asyncio
    async def test_create_master_key_without_id_fails(self, provider, client):
        client.create_key.return_value = {"KeyMetadata": {}}
        with pytest.raises(ProviderUnavailableError):
            await provider.create_master_key("alice@example.com")

    @pytest.mark.asyncio
    async def test_wrap_passes_key_and_plaintext(self, provider, client):
        client.encrypt.return_value = {"CiphertextBlob": b"wrapped-blob"}

        wrapped = await provider.wrap(KMSKeyHandle(KEY_ID), b"\x01" * 32)

        assert wrapped == b"wrapped-blob"
        client.encrypt.assert_called_once_with(KeyId=KEY_ID, Plaintext=b"\x01" * 32)

    @pytest.mark.asyncio
    async def test_wrap_rejects_empty_dek_without_calling_kms(self, provider, client):
        with pytest.raises(ValueError):
            await provider.wrap(KMSKeyHandle(KEY_ID), b"")
        client.encrypt.assert_not_called()

    @pytest.mark.asyncio
    async def test_unwrap(self, provider, client):
        client.decrypt.return_value = {"Plaintext": b"\x02" * 32}

        plaintext = await provider.unwrap(KMSKeyHandle(KEY_ID), WrappedKey(b"blob"))

        assert plaintext == b"\x02" * 32
        client.decrypt.assert_called_once_with(KeyId=KEY_ID, CiphertextBlob=b"blob")

    @pytest.mark.asyncio
    async def test_unwrap_empty_ciphertext(self, provider, client):
        with pytest.raises(InvalidCiphertextError):
            await provider.unwrap(KMSKeyHandle(KEY_ID), WrappedKey(b""))
        client.decrypt.assert_not_called()

    @pytest.mark.asyncio
    async def test_unwrap_wrong_key_is_translated(self, provider, client):
        client.decrypt.side_effect = client_error("IncorrectKeyException")
        with pytest.raises(InvalidCiphertextError):
            await provider.unwrap(KMSKeyHandle(KEY_ID), WrappedKey(b"blob"))

    @pytest.mark.asyncio
    async def test_throttling_is_translated(self, provider, client):
        client.encrypt.side_effect = client_error("ThrottlingException", "Encrypt")
        with pytest.raises(ProviderQuotaExceededError):
            await provider.wrap(KMSKeyHandle(KEY_ID), b"\x01" * 32)

    @pytest.mark.asyncio
    async def test_schedule_deletion(self, provider, client):
        deletion_date = datetime(2026, 11, 1, tzinfo=timezone.utc)
        client.schedule_key_deletion.return_value = {"DeletionDate": deletion_date}

        result = await provider.schedule_deletion(KMSKeyHandle(KEY_ID), 7)

        assert result == deletion_date
        client.schedule_key_deletion.assert_called_once_with(
            KeyId=KEY_ID, PendingWindowInDays=7
        )

    @pytest.mark.asyncio
    async def test_cancel_deletion_reenables_key(self, provider, client):
        await provider.cancel_deletion(KMSKeyHandle(KEY_ID))

        client.cancel_key_deletion.assert_called_once_with(KeyId=KEY_ID)
        client.enable_key.assert_called_once_with(KeyId=KEY_ID)

    @pytest.mark.asyncio
    async def test_cancel_deletion_of_active_key(self, provider, client):
        client.cancel_key_deletion.side_effect = client_error(
            "KMSInvalidStateException", "CancelKeyDeletion"
        )
        with pytest.raises(KeyNotFoundError):
            await provider.cancel_deletion(KMSKeyHandle(KEY_ID))
        client.enable_key.assert_not_called()

    @pytest.mark.asyncio
    async def test_alias_operations(self, provider, client):
        await provider.create_alias("alias/alice-main", KMSKeyHandle(KEY_ID))
        await provider.delete_alias("alias/alice-main")

        client.create_alias.assert_called_once_with(
            AliasName="alias/alice-main", TargetKeyId=KEY_ID
        )
        client.delete_alias.assert_called_once_with(AliasName="alias/alice-main")

    @pytest.mark.asyncio
    async def test_existing_alias_conflicts(self, provider, client):
        client.create_alias.side_effect = client_error("AlreadyExistsException", "CreateAlias")
        with pytest.raises(AliasConflictError):
            await provider.create_alias("alias/alice-main", KMSKeyHandle(KEY_ID))

    @pytest.mark.asyncio
    async def test_update_description(self, provider, client):
        await provider.update_description(KMSKeyHandle(KEY_ID), "new text")
        client.update_key_description.assert_called_once_with(
            KeyId=KEY_ID, Description="new text"
        )

    def test_version(self, provider):
        assert provider.get_provider_version() == "aws-kms-v1"
