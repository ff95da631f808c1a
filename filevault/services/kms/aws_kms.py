"""
AWS KMS provider.

Wraps the boto3 ``kms`` client. boto3 is synchronous, so every call runs in
a worker thread via asyncio.to_thread to keep the event loop free.

botocore errors are translated into the service's error taxonomy so the
envelope engine never sees provider-specific exceptions.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from filevault.services.errors import (
    AliasConflictError,
    InvalidCiphertextError,
    KeyManagementError,
    KeyNotFoundError,
    ProviderQuotaExceededError,
    ProviderUnavailableError,
)
from filevault.services.kms.base import (
    KMSKeyHandle,
    KMSProvider,
    WrappedKey,
    validate_wrap_payload,
)
from filevault.utils.logger import get_logger

logger = get_logger("kms.aws")


# botocore error codes -> service error classes
ERROR_CODE_MAP = {
    "NotFoundException": KeyNotFoundError,
    "DisabledException": KeyNotFoundError,
    "KMSInvalidStateException": KeyNotFoundError,
    "InvalidKeyUsageException": KeyNotFoundError,
    "InvalidCiphertextException": InvalidCiphertextError,
    "IncorrectKeyException": InvalidCiphertextError,
    "LimitExceededException": ProviderQuotaExceededError,
    "ThrottlingException": ProviderQuotaExceededError,
    "AlreadyExistsException": AliasConflictError,
}


def translate_client_error(error: Exception) -> KeyManagementError:
    """
    Map a boto3/botocore exception onto the service error taxonomy.

    Anything unrecognised (connection errors, KMSInternalException, ...) is
    treated as the provider being unavailable.
    """
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        message = error.response.get("Error", {}).get("Message", str(error))
        error_class = ERROR_CODE_MAP.get(code, ProviderUnavailableError)
        return error_class(f"{code}: {message}" if code else message)
    return ProviderUnavailableError(f"KMS request failed: {error}")


class AWSKMSProvider(KMSProvider):
    """
    KMS provider backed by AWS KMS symmetric keys.

    Example:
        >>> provider = AWSKMSProvider(region="ap-southeast-1")
        >>> handle = await provider.create_master_key("user@example.com")
        >>> wrapped = await provider.wrap(handle, dek)
    """

    VERSION = "aws-kms-v1"

    def __init__(
        self,
        region: str,
        endpoint_url: Optional[str] = None,
        connect_timeout: int = 5,
        read_timeout: int = 10,
        max_attempts: int = 3,
        created_by_tag: str = "filevault",
        client: Any = None,
    ):
        """
        Initialize the boto3 client.

        Args:
            region: AWS region of the keys
            endpoint_url: Optional endpoint override (localstack)
            connect_timeout: Socket connect timeout in seconds
            read_timeout: Socket read timeout in seconds
            max_attempts: Total attempts per call, including botocore's own retries
            created_by_tag: Value of the CreatedBy tag on new keys
            client: Pre-built client (tests)
        """
        self.region = region
        self.created_by_tag = created_by_tag

        if client is None:
            config = Config(
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"max_attempts": max_attempts, "mode": "standard"},
            )
            client = boto3.client(
                "kms",
                region_name=region,
                endpoint_url=endpoint_url,
                config=config,
            )
        self.client = client
        logger.info("AWSKMSProvider initialized", version=self.VERSION, region=region)

    async def _call(self, operation: str, method: Callable[..., Any], **params: Any) -> Any:
        """Run a blocking boto3 call in a thread and translate its errors."""
        try:
            return await asyncio.to_thread(method, **params)
        except (ClientError, BotoCoreError) as e:
            translated = translate_client_error(e)
            logger.error(
                "KMS call failed",
                operation=operation,
                error_code=translated.code,
                error=str(translated),
            )
            raise translated from e

    async def create_master_key(
        self,
        owner_label: str,
        description: Optional[str] = None,
    ) -> KMSKeyHandle:
        response = await self._call(
            "CreateKey",
            self.client.create_key,
            KeyUsage="ENCRYPT_DECRYPT",
            KeySpec="SYMMETRIC_DEFAULT",
            Origin="AWS_KMS",
            Description=description or f"Key for user {owner_label}",
            Tags=[
                {"TagKey": "Owner", "TagValue": owner_label},
                {"TagKey": "CreatedBy", "TagValue": self.created_by_tag},
            ],
        )

        key_id = response.get("KeyMetadata", {}).get("KeyId")
        if not key_id:
            raise ProviderUnavailableError("KMS CreateKey returned no key id")

        logger.info("Created AWS KMS key", kms_key_id=key_id, owner=owner_label)
        return KMSKeyHandle(key_id)

    async def wrap(self, handle: KMSKeyHandle, plaintext: bytes) -> WrappedKey:
        validate_wrap_payload(plaintext)
        response = await self._call(
            "Encrypt",
            self.client.encrypt,
            KeyId=handle,
            Plaintext=plaintext,
        )

        blob = response.get("CiphertextBlob")
        if not blob:
            raise ProviderUnavailableError("KMS Encrypt returned no ciphertext")
        return WrappedKey(bytes(blob))

    async def unwrap(self, handle: KMSKeyHandle, ciphertext: WrappedKey) -> bytes:
        if not ciphertext:
            raise InvalidCiphertextError("Wrapped DEK cannot be empty")

        response = await self._call(
            "Decrypt",
            self.client.decrypt,
            KeyId=handle,
            CiphertextBlob=bytes(ciphertext),
        )

        plaintext = response.get("Plaintext")
        if not plaintext:
            raise ProviderUnavailableError("KMS Decrypt returned no plaintext")
        return bytes(plaintext)

    async def schedule_deletion(self, handle: KMSKeyHandle, grace_days: int) -> datetime:
        response = await self._call(
            "ScheduleKeyDeletion",
            self.client.schedule_key_deletion,
            KeyId=handle,
            PendingWindowInDays=grace_days,
        )

        deletion_date = response.get("DeletionDate")
        if deletion_date is None:
            deletion_date = datetime.now(timezone.utc)
        logger.info(
            "Scheduled AWS KMS key deletion",
            kms_key_id=handle,
            deletion_date=deletion_date.isoformat(),
        )
        return deletion_date

    async def cancel_deletion(self, handle: KMSKeyHandle) -> None:
        await self._call(
            "CancelKeyDeletion",
            self.client.cancel_key_deletion,
            KeyId=handle,
        )
        # A cancelled key comes back disabled
        await self._call(
            "EnableKey",
            self.client.enable_key,
            KeyId=handle,
        )
        logger.info("Cancelled AWS KMS key deletion", kms_key_id=handle)

    async def update_description(self, handle: KMSKeyHandle, description: str) -> None:
        await self._call(
            "UpdateKeyDescription",
            self.client.update_key_description,
            KeyId=handle,
            Description=description,
        )

    async def create_alias(self, alias_name: str, handle: KMSKeyHandle) -> None:
        await self._call(
            "CreateAlias",
            self.client.create_alias,
            AliasName=alias_name,
            TargetKeyId=handle,
        )

    async def delete_alias(self, alias_name: str) -> None:
        await self._call(
            "DeleteAlias",
            self.client.delete_alias,
            AliasName=alias_name,
        )

    def get_provider_version(self) -> str:
        """Return the provider version string."""
        return self.VERSION
