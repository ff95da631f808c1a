"""
Abstract base class for KMS providers.

A KMS provider owns the key-encryption keys (KEKs). The rest of the service
only ever holds an opaque handle to each key and asks the provider to wrap
or unwrap small payloads (DEKs) with it.

The envelope encryption pattern:
1. Each file gets its own DEK, generated client-side
2. The DEK encrypts the file bytes (in the browser)
3. A KEK held by the KMS wraps the DEK
4. Only wrapped DEKs are stored in the database

Every method is a remote call that may be slow or fail. Failures are
reported with the exceptions from filevault.services.errors:

- ProviderUnavailableError / ProviderQuotaExceededError (transient)
- KeyNotFoundError (handle revoked, deleted or pending deletion)
- InvalidCiphertextError (wrong key or corrupted blob)
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import NewType, Optional

# Opaque handle into the KMS (key id / ARN); never a raw string at call sites
KMSKeyHandle = NewType("KMSKeyHandle", str)

# DEK ciphertext produced by KMSProvider.wrap
WrappedKey = NewType("WrappedKey", bytes)

# Largest plaintext a symmetric KMS key accepts in a single encrypt call
MAX_WRAP_PAYLOAD = 4096


class KMSProvider(ABC):
    """
    Abstract base class for KMS providers.

    Thread Safety:
        Implementations should be safe for concurrent use from many
        request handlers.

    Example:
        >>> provider = LocalKMSProvider(master_key="...")
        >>> handle = await provider.create_master_key("user@example.com")
        >>> wrapped = await provider.wrap(handle, os.urandom(32))
        >>> dek = await provider.unwrap(handle, wrapped)
    """

    @abstractmethod
    async def create_master_key(
        self,
        owner_label: str,
        description: Optional[str] = None,
    ) -> KMSKeyHandle:
        """
        Provision a new symmetric encrypt/decrypt key.

        Args:
            owner_label: Human readable owner (email) recorded as a key tag
            description: Optional key description

        Returns:
            Handle of the new key

        Raises:
            ProviderUnavailableError: If the KMS cannot be reached
            ProviderQuotaExceededError: If the key quota is exhausted
        """
        pass

    @abstractmethod
    async def wrap(self, handle: KMSKeyHandle, plaintext: bytes) -> WrappedKey:
        """
        Encrypt a small payload (a DEK) under the given key.

        Args:
            handle: Key to wrap under
            plaintext: Raw DEK bytes (1 to MAX_WRAP_PAYLOAD bytes)

        Returns:
            Opaque authenticated ciphertext

        Raises:
            ValueError: If the payload is empty or too large
            KeyNotFoundError: If the key is revoked or deleted
            ProviderUnavailableError: If the KMS cannot be reached
        """
        pass

    @abstractmethod
    async def unwrap(self, handle: KMSKeyHandle, ciphertext: WrappedKey) -> bytes:
        """
        Decrypt a payload produced by wrap.

        The result is a secret. Callers use it immediately and drop it.

        Args:
            handle: Key the payload was wrapped under
            ciphertext: Output of wrap

        Returns:
            Raw DEK bytes

        Raises:
            InvalidCiphertextError: Wrong key or corrupted blob
            KeyNotFoundError: If the key is revoked or deleted
            ProviderUnavailableError: If the KMS cannot be reached
        """
        pass

    @abstractmethod
    async def schedule_deletion(self, handle: KMSKeyHandle, grace_days: int) -> datetime:
        """
        Mark a key for deletion after a grace window.

        Deletion is never immediate so a mistaken delete can be recovered.

        Returns:
            When the KMS will destroy the key
        """
        pass

    @abstractmethod
    async def cancel_deletion(self, handle: KMSKeyHandle) -> None:
        """
        Take a key out of pending deletion and back into service.

        Raises:
            KeyNotFoundError: If the key is not pending deletion
        """
        pass

    @abstractmethod
    async def update_description(self, handle: KMSKeyHandle, description: str) -> None:
        """Replace the key's description metadata."""
        pass

    @abstractmethod
    async def create_alias(self, alias_name: str, handle: KMSKeyHandle) -> None:
        """Point a human readable alias at a key."""
        pass

    @abstractmethod
    async def delete_alias(self, alias_name: str) -> None:
        """Remove an alias. The key it pointed to is unaffected."""
        pass

    @abstractmethod
    def get_provider_version(self) -> str:
        """
        Get the version identifier for this provider.

        Returns:
            Version string (e.g., "local-kms-v1", "aws-kms-v1")
        """
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} version={self.get_provider_version()}>"


def validate_wrap_payload(plaintext: bytes) -> None:
    """Reject payloads a KMS would refuse before making a remote call."""
    if not plaintext:
        raise ValueError("DEK cannot be empty")
    if len(plaintext) > MAX_WRAP_PAYLOAD:
        raise ValueError(
            f"DEK too large: {len(plaintext)} bytes, maximum {MAX_WRAP_PAYLOAD} bytes"
        )
