"""
Local KMS provider.

Emulates a KMS inside the process: key material for each handle is derived
from a local master secret with PBKDF2, and DEKs are wrapped with
AES-256-GCM. Intended for development and tests; production deployments
use AWSKMSProvider.

Security properties:
- Per-key isolation via PBKDF2 with the key handle as salt
- 100,000 PBKDF2 iterations (OWASP 2025 recommendation)
- AES-256-GCM provides authenticated encryption (confidentiality + integrity)
- 96-bit random nonce per wrap (prepended to ciphertext)
- The handle is bound as associated data, so a blob only unwraps under its own key

Aliases and scheduled deletions live in process memory.
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from filevault.services.errors import (
    AliasConflictError,
    InvalidCiphertextError,
    KeyNotFoundError,
    ProviderUnavailableError,
)
from filevault.services.kms.base import (
    KMSKeyHandle,
    KMSProvider,
    WrappedKey,
    validate_wrap_payload,
)
from filevault.utils.logger import get_logger

logger = get_logger("kms.local")


class LocalKMSProvider(KMSProvider):
    """
    In-process KMS provider using PBKDF2 key derivation + AES-GCM.

    Key derivation:
        KEK = PBKDF2(master_key, salt=handle, iterations=100000, hash=SHA256)

    DEK wrapping:
        ciphertext = AES-256-GCM(KEK, nonce=random_96bit, plaintext=DEK, aad=handle)
        output = nonce || ciphertext (nonce prepended)

    Example:
        >>> provider = LocalKMSProvider(master_key=settings.kms_master_key)
        >>> handle = await provider.create_master_key("user@example.com")
        >>> wrapped = await provider.wrap(handle, dek)
        >>> assert await provider.unwrap(handle, wrapped) == dek
    """

    VERSION = "local-kms-v1"
    HANDLE_PREFIX = "local:"
    PBKDF2_ITERATIONS = 100000  # OWASP 2025 recommendation
    KEK_LENGTH = 32  # AES-256
    NONCE_LENGTH = 12  # 96 bits for GCM
    TAG_LENGTH = 16

    def __init__(self, master_key: str):
        """
        Initialize with master key from application settings.

        Args:
            master_key: Master secret string (from settings.kms_master_key)

        Raises:
            ValueError: If master_key is empty or too short
        """
        if not master_key or len(master_key) < 16:
            raise ValueError("Master key must be at least 16 characters")

        self._master_key = master_key.encode("utf-8")
        self._derived: Dict[str, bytes] = {}
        self._descriptions: Dict[str, str] = {}
        self._aliases: Dict[str, KMSKeyHandle] = {}
        self._pending_deletion: Dict[str, datetime] = {}
        logger.info("LocalKMSProvider initialized", version=self.VERSION)

    def _derive_kek(self, handle: KMSKeyHandle) -> bytes:
        """
        Derive the key material behind a handle.

        Raises:
            KeyNotFoundError: If the handle is not ours or is pending deletion
        """
        if not handle.startswith(self.HANDLE_PREFIX):
            raise KeyNotFoundError(f"Unknown KMS key: {handle}")
        if handle in self._pending_deletion:
            raise KeyNotFoundError(f"KMS key {handle} is pending deletion")

        kek = self._derived.get(handle)
        if kek is None:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=self.KEK_LENGTH,
                salt=handle.encode("utf-8"),
                iterations=self.PBKDF2_ITERATIONS,
            )
            kek = kdf.derive(self._master_key)
            self._derived[handle] = kek
        return kek

    async def create_master_key(
        self,
        owner_label: str,
        description: Optional[str] = None,
    ) -> KMSKeyHandle:
        handle = KMSKeyHandle(f"{self.HANDLE_PREFIX}{uuid.uuid4()}")
        self._descriptions[handle] = description or f"Key for user {owner_label}"

        logger.info("Created local KMS key", kms_key_id=handle, owner=owner_label)
        return handle

    async def wrap(self, handle: KMSKeyHandle, plaintext: bytes) -> WrappedKey:
        """
        Wrap a DEK via AES-256-GCM.

        Output format: nonce (12 bytes) || ciphertext || tag (16 bytes)
        """
        validate_wrap_payload(plaintext)
        kek = self._derive_kek(handle)

        try:
            nonce = os.urandom(self.NONCE_LENGTH)
            ciphertext = AESGCM(kek).encrypt(nonce, plaintext, handle.encode("utf-8"))
        except Exception as e:
            logger.error("Failed to wrap DEK", kms_key_id=handle, error=str(e))
            raise ProviderUnavailableError(f"DEK wrap failed: {e}") from e

        return WrappedKey(nonce + ciphertext)

    async def unwrap(self, handle: KMSKeyHandle, ciphertext: WrappedKey) -> bytes:
        """
        Unwrap a DEK produced by wrap.

        Expects input format: nonce (12 bytes) || ciphertext || tag
        """
        # Minimum length: nonce (12) + ciphertext (1) + tag (16) = 29 bytes
        min_length = self.NONCE_LENGTH + 1 + self.TAG_LENGTH
        if not ciphertext or len(ciphertext) < min_length:
            raise InvalidCiphertextError(
                f"Wrapped DEK too short: {len(ciphertext or b'')} bytes, "
                f"minimum {min_length} bytes"
            )

        kek = self._derive_kek(handle)

        nonce = ciphertext[: self.NONCE_LENGTH]
        body = ciphertext[self.NONCE_LENGTH :]
        try:
            return AESGCM(kek).decrypt(nonce, body, handle.encode("utf-8"))
        except InvalidTag as e:
            logger.warning("Wrapped DEK failed authentication", kms_key_id=handle)
            raise InvalidCiphertextError(
                "DEK unwrap failed - wrong key or corrupted ciphertext"
            ) from e

    async def schedule_deletion(self, handle: KMSKeyHandle, grace_days: int) -> datetime:
        if handle in self._pending_deletion:
            raise KeyNotFoundError(f"KMS key {handle} is already pending deletion")
        self._derive_kek(handle)

        deletion_date = datetime.now(timezone.utc) + timedelta(days=grace_days)
        self._pending_deletion[handle] = deletion_date
        self._derived.pop(handle, None)

        logger.info(
            "Scheduled local KMS key deletion",
            kms_key_id=handle,
            deletion_date=deletion_date.isoformat(),
        )
        return deletion_date

    async def cancel_deletion(self, handle: KMSKeyHandle) -> None:
        """Recover a key during its grace window."""
        if self._pending_deletion.pop(handle, None) is None:
            raise KeyNotFoundError(f"KMS key {handle} is not pending deletion")
        logger.info("Cancelled local KMS key deletion", kms_key_id=handle)

    async def update_description(self, handle: KMSKeyHandle, description: str) -> None:
        self._derive_kek(handle)
        self._descriptions[handle] = description

    async def create_alias(self, alias_name: str, handle: KMSKeyHandle) -> None:
        if alias_name in self._aliases:
            raise AliasConflictError(f"Alias {alias_name} already exists")
        self._derive_kek(handle)
        self._aliases[alias_name] = handle

    async def delete_alias(self, alias_name: str) -> None:
        if self._aliases.pop(alias_name, None) is None:
            raise KeyNotFoundError(f"Alias {alias_name} does not exist")

    def resolve_alias(self, alias_name: str) -> Optional[KMSKeyHandle]:
        """Return the handle an alias points at, if any. Inspection helper, not on KMSProvider."""
        return self._aliases.get(alias_name)

    def is_pending_deletion(self, handle: KMSKeyHandle) -> bool:
        """Check whether a key has been scheduled for deletion. Inspection helper, not on KMSProvider."""
        return handle in self._pending_deletion

    def get_provider_version(self) -> str:
        """Return the provider version string."""
        return self.VERSION
