"""
Envelope Engine: wrap, unwrap and rewrap DEKs under users' KEKs.

Files are encrypted in the browser with a per-file DEK. The server only sees
the DEK long enough to wrap or rewrap it:

- wrap_for_owner: DEK -> ciphertext under the owner's primary KEK
- unwrap_for_caller: ciphertext -> DEK, only with a KEK the caller owns
- rewrap_for_recipient: owner's envelope -> new envelope under the
  recipient's primary KEK (sharing), without touching file bytes

Plaintext DEKs never leave the method that produced them except as the
return value of unwrap_for_caller, and are never logged.

Usage:
    engine = EnvelopeEngine(kms_provider, key_registry)
    result = await engine.wrap_for_owner(db, user_id, dek)
    dek = await engine.unwrap_for_caller(db, result.kek_id, user_id, result.ciphertext)
"""

from dataclasses import dataclass
from uuid import UUID

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.models.encrypted_dek import EncryptedDEK
from filevault.models.stored_file import StoredFile
from filevault.services import envelope_store
from filevault.services.errors import (
    AlreadySharedError,
    FileAccessError,
    FileNotEncryptedError,
    NoPrimaryKeyError,
    RecipientHasNoKeyError,
)
from filevault.services.key_registry import KeyRegistry
from filevault.services.kms.base import KMSKeyHandle, KMSProvider, WrappedKey
from filevault.utils.logger import get_logger

logger = get_logger("envelope_engine")


@dataclass(frozen=True)
class WrapResult:
    """Wrapped DEK plus the KEK that produced it."""
    ciphertext: WrappedKey
    kek_id: UUID
    kms_key_id: str


class EnvelopeEngine:
    """
    Core wrap/unwrap/rewrap operations.

    Stateless apart from the injected KMS provider and key registry, so a
    single instance serves every request.
    """

    def __init__(self, kms: KMSProvider, registry: KeyRegistry):
        self.kms = kms
        self.registry = registry
        logger.info(
            "EnvelopeEngine initialized",
            provider=kms.get_provider_version(),
        )

    # =========================================================================
    # Wrap / unwrap
    # =========================================================================

    async def wrap_for_owner(
        self,
        db: AsyncSession,
        owner_id: UUID,
        plaintext_dek: bytes,
    ) -> WrapResult:
        """
        Wrap a DEK under the owner's primary KEK.

        The caller persists the envelope (see register_file_envelope).

        Raises:
            NoPrimaryKeyError: If the owner has no primary KEK
            ValueError: If the DEK is empty or too large
        """
        kek = await self.registry.get_primary_key(db, owner_id)
        if kek is None:
            raise NoPrimaryKeyError(
                "No primary encryption key found. Create one before uploading files."
            )

        ciphertext = await self.kms.wrap(KMSKeyHandle(kek.kms_key_id), plaintext_dek)

        logger.debug("Wrapped DEK", kek_id=str(kek.id), user_id=str(owner_id))
        return WrapResult(ciphertext=ciphertext, kek_id=kek.id, kms_key_id=kek.kms_key_id)

    async def unwrap_for_caller(
        self,
        db: AsyncSession,
        kek_id: UUID,
        owner_id: UUID,
        ciphertext: WrappedKey,
    ) -> bytes:
        """
        Unwrap a DEK with one of the caller's KEKs.

        The ownership check is an authorization check: a KEK belonging to
        another user is reported exactly like a missing one.

        Raises:
            KeyNotFoundError: If the KEK is not the caller's
            InvalidCiphertextError: Wrong key or corrupted ciphertext
        """
        kek = await self.registry.get_key(db, owner_id, kek_id)
        plaintext = await self.kms.unwrap(KMSKeyHandle(kek.kms_key_id), ciphertext)

        logger.debug("Unwrapped DEK", kek_id=str(kek_id), user_id=str(owner_id))
        return plaintext

    async def rewrap(
        self,
        source_handle: KMSKeyHandle,
        target_handle: KMSKeyHandle,
        ciphertext: WrappedKey,
    ) -> WrappedKey:
        """
        Re-encrypt a wrapped DEK from one KMS key to another.

        The plaintext DEK only exists between the two KMS calls.
        """
        plaintext = await self.kms.unwrap(source_handle, ciphertext)
        try:
            return await self.kms.wrap(target_handle, plaintext)
        finally:
            del plaintext

    # =========================================================================
    # File envelopes
    # =========================================================================

    async def register_file_envelope(
        self,
        db: AsyncSession,
        owner_id: UUID,
        file_id: UUID,
        kek_id: UUID,
        ciphertext: WrappedKey,
        iv: bytes,
    ) -> EncryptedDEK:
        """
        Persist the owner's envelope for a freshly uploaded file. Does not commit.

        Raises:
            FileAccessError: If the file is not the caller's
            KeyNotFoundError: If the KEK is not the caller's
        """
        stored_file = await db.get(StoredFile, file_id)
        if stored_file is None or stored_file.owner_id != owner_id:
            raise FileAccessError(f"File {file_id} not found")
        await self.registry.get_key(db, owner_id, kek_id)

        return await envelope_store.create_envelope(db, file_id, kek_id, ciphertext, iv)

    async def get_file_envelope_for_caller(
        self,
        db: AsyncSession,
        file_id: UUID,
        user_id: UUID,
    ) -> EncryptedDEK:
        """
        Get the envelope the caller decrypts a file with.

        Works for the owner and for recipients: holding an envelope under one
        of your KEKs is what having access means.

        Raises:
            FileAccessError: If the caller has no envelope for the file
        """
        envelope = await envelope_store.get_owner_envelope(db, file_id, user_id)
        if envelope is None:
            raise FileAccessError(f"File {file_id} not found")
        return envelope

    async def rewrap_for_recipient(
        self,
        db: AsyncSession,
        file_id: UUID,
        owner_id: UUID,
        recipient_id: UUID,
    ) -> EncryptedDEK:
        """
        Give a recipient their own envelope for one of the owner's files.

        Steps:
        1. Load the owner's envelope for the file
        2. Load the recipient's primary KEK
        3. Refuse if the recipient already has an envelope under that KEK
        4-5. Unwrap with the owner's KEK, wrap with the recipient's
        6. Store the new envelope, reusing the owner's IV

        Does not commit; the batch orchestrator commits each pair.

        Raises:
            FileNotEncryptedError: If the owner has no envelope for the file
            RecipientHasNoKeyError: If the recipient has no primary KEK
            AlreadySharedError: If the recipient already holds an envelope
        """
        owner_envelope = await envelope_store.get_owner_envelope(db, file_id, owner_id)
        if owner_envelope is None:
            raise FileNotEncryptedError(f"File {file_id} is not encrypted")
        source_kek_id = owner_envelope.kek_id
        source_ciphertext = WrappedKey(owner_envelope.dek_ciphertext)
        iv = owner_envelope.iv

        recipient_kek = await self.registry.get_primary_key(db, recipient_id)
        if recipient_kek is None:
            raise RecipientHasNoKeyError(
                f"Recipient {recipient_id} has no primary encryption key"
            )

        existing = await envelope_store.get_envelope(db, file_id, recipient_kek.id)
        if existing is not None:
            raise AlreadySharedError(
                f"File {file_id} is already shared with recipient {recipient_id}"
            )

        source_kek = await self.registry.get_key(db, owner_id, source_kek_id)
        new_ciphertext = await self.rewrap(
            KMSKeyHandle(source_kek.kms_key_id),
            KMSKeyHandle(recipient_kek.kms_key_id),
            source_ciphertext,
        )

        envelope = await envelope_store.create_envelope(
            db, file_id, recipient_kek.id, new_ciphertext, iv
        )

        logger.info(
            "Rewrapped DEK for recipient",
            file_id=str(file_id),
            owner_id=str(owner_id),
            recipient_id=str(recipient_id),
            recipient_kek_id=str(recipient_kek.id),
        )
        return envelope


def get_envelope_engine(request: Request) -> EnvelopeEngine:
    """
    FastAPI dependency to get the envelope engine from app state.

    Usage:
        @router.post("/keys/wrap")
        async def wrap(engine: EnvelopeEngine = Depends(get_envelope_engine)):
            ...
    """
    return request.app.state.envelope_engine
