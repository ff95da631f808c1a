"""
Key Registry: lifecycle of per-user key-encryption keys (KEKs).

Each KEK record points at a key held by the KMS provider. The registry keeps
the two in step:

- create: provision KMS key + alias, then insert the record
- update: alias / description / primary flag
- delete: only when no envelope references the key; the KMS key is
  scheduled for deletion after a grace window, never destroyed outright

Primary key discipline:
    Clearing the owner's other primary flags and setting the new one always
    happens in one transaction. The partial unique index on
    (user_id) WHERE is_primary rejects any commit that would leave two.

Usage:
    registry = KeyRegistry(kms_provider)
    kek = await registry.create_key(db, user.id, user.email, "laptop", is_primary=True)
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Sequence
from uuid import UUID

from fastapi import Request
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.config import settings
from filevault.models.key_encryption_key import KeyEncryptionKey
from filevault.services import envelope_store
from filevault.services.envelope_store import KeyUsage
from filevault.services.errors import (
    AliasConflictError,
    KeyInUseError,
    KeyNotFoundError,
)
from filevault.services.kms.base import KMSKeyHandle, KMSProvider
from filevault.utils.logger import get_logger

logger = get_logger("key_registry")

__all__ = [
    "ExpiryPolicy",
    "KeyRegistry",
    "KeyUsage",
    "create_key_registry",
    "get_key_registry",
]


class ExpiryPolicy(str, Enum):
    """Lifetime chosen when a KEK is created."""

    DAYS_30 = "30"
    DAYS_60 = "60"
    DAYS_90 = "90"
    DAYS_120 = "120"
    NEVER = "never"

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Compute the expiry timestamp, or None for keys that never expire."""
        if self is ExpiryPolicy.NEVER:
            return None
        now = now or datetime.now(timezone.utc)
        return now + timedelta(days=int(self.value))


def kms_alias_name(owner_id: UUID, alias: str) -> str:
    """KMS alias names are global, so they are namespaced by owner."""
    return f"alias/{owner_id}-{alias}"


class KeyRegistry:
    """
    CRUD over KEK records with the one-primary-per-user rule enforced.

    Every mutating method ends its own transaction (commit or rollback):
    the KMS side effects are not transactional, so the registry has to know
    whether the database write landed before it can decide to compensate.
    """

    def __init__(
        self,
        kms: KMSProvider,
        deletion_grace_days: int = 7,
    ):
        self.kms = kms
        self.deletion_grace_days = deletion_grace_days
        logger.info(
            "KeyRegistry initialized",
            provider=kms.get_provider_version(),
            deletion_grace_days=deletion_grace_days,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_keys(
        self,
        db: AsyncSession,
        owner_id: UUID,
    ) -> Sequence[KeyEncryptionKey]:
        """List the owner's KEKs, newest first."""
        result = await db.execute(
            select(KeyEncryptionKey)
            .where(KeyEncryptionKey.user_id == owner_id)
            .order_by(KeyEncryptionKey.created_at.desc())
        )
        return result.scalars().all()

    async def get_key(
        self,
        db: AsyncSession,
        owner_id: UUID,
        kek_id: UUID,
    ) -> KeyEncryptionKey:
        """
        Get a KEK owned by the caller.

        Raises:
            KeyNotFoundError: If the KEK does not exist or belongs to someone else
        """
        result = await db.execute(
            select(KeyEncryptionKey).where(
                KeyEncryptionKey.id == kek_id,
                KeyEncryptionKey.user_id == owner_id,
            )
        )
        kek = result.scalar_one_or_none()
        if kek is None:
            raise KeyNotFoundError(f"Key {kek_id} not found")
        return kek

    async def get_primary_key(
        self,
        db: AsyncSession,
        owner_id: UUID,
    ) -> Optional[KeyEncryptionKey]:
        result = await db.execute(
            select(KeyEncryptionKey).where(
                KeyEncryptionKey.user_id == owner_id,
                KeyEncryptionKey.is_primary.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get_usage(
        self,
        db: AsyncSession,
        owner_id: UUID,
        kek_id: UUID,
    ) -> KeyUsage:
        """Count files and envelopes protected by one of the caller's KEKs."""
        await self.get_key(db, owner_id, kek_id)
        return await envelope_store.count_usage(db, kek_id)

    async def _alias_taken(
        self,
        db: AsyncSession,
        owner_id: UUID,
        alias: str,
        exclude_id: Optional[UUID] = None,
    ) -> bool:
        query = select(KeyEncryptionKey.id).where(
            KeyEncryptionKey.user_id == owner_id,
            KeyEncryptionKey.alias == alias,
        )
        if exclude_id is not None:
            query = query.where(KeyEncryptionKey.id != exclude_id)
        result = await db.execute(query.limit(1))
        return result.scalar_one_or_none() is not None

    # =========================================================================
    # Primary flag
    # =========================================================================

    async def _clear_primary(
        self,
        db: AsyncSession,
        owner_id: UUID,
        keep_id: Optional[UUID] = None,
    ) -> None:
        stmt = update(KeyEncryptionKey).where(
            KeyEncryptionKey.user_id == owner_id,
            KeyEncryptionKey.is_primary.is_(True),
        )
        if keep_id is not None:
            stmt = stmt.where(KeyEncryptionKey.id != keep_id)
        await db.execute(stmt.values(is_primary=False))

    async def mark_primary(
        self,
        db: AsyncSession,
        owner_id: UUID,
        kek_id: UUID,
    ) -> None:
        """
        Make kek_id the owner's only primary key.

        Does not commit: the caller owns the transaction so the flip can be
        combined with other writes.
        """
        await self._clear_primary(db, owner_id, keep_id=kek_id)
        await db.execute(
            update(KeyEncryptionKey)
            .where(
                KeyEncryptionKey.id == kek_id,
                KeyEncryptionKey.user_id == owner_id,
            )
            .values(is_primary=True)
        )

    async def stamp_rotated(
        self,
        db: AsyncSession,
        kek_id: UUID,
        when: Optional[datetime] = None,
    ) -> None:
        """Record that envelopes were rotated off this key. Does not commit."""
        await db.execute(
            update(KeyEncryptionKey)
            .where(KeyEncryptionKey.id == kek_id)
            .values(rotated_at=when or datetime.now(timezone.utc))
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_key(
        self,
        db: AsyncSession,
        owner_id: UUID,
        owner_label: str,
        alias: str,
        description: Optional[str] = None,
        is_primary: bool = False,
        expiry_policy: ExpiryPolicy = ExpiryPolicy.NEVER,
    ) -> KeyEncryptionKey:
        """
        Provision a KMS key and record it as a KEK for the owner.

        Args:
            db: Database session
            owner_id: Owning user
            owner_label: Human readable owner (email), used for KMS tags
            alias: Name unique among the owner's keys
            description: Optional description, mirrored to the KMS key
            is_primary: Make this the key new wraps use
            expiry_policy: Lifetime of the key

        Returns:
            The committed KEK record

        Raises:
            AliasConflictError: If the owner already has a key with this alias
            ProviderUnavailableError / ProviderQuotaExceededError: KMS failure
        """
        if await self._alias_taken(db, owner_id, alias):
            raise AliasConflictError(f"Key alias '{alias}' is already in use")

        alias_name = kms_alias_name(owner_id, alias)
        handle = await self.kms.create_master_key(owner_label, description)
        try:
            await self.kms.create_alias(alias_name, handle)
        except Exception:
            await self._discard_kms_key(handle, alias_name=None)
            raise

        try:
            if is_primary:
                await self._clear_primary(db, owner_id)

            kek = KeyEncryptionKey(
                user_id=owner_id,
                alias=alias,
                description=description,
                kms_key_id=handle,
                is_primary=is_primary,
                expires_at=expiry_policy.expires_at(),
            )
            db.add(kek)
            await db.flush()
            await db.commit()
        except Exception as e:
            await db.rollback()
            await self._discard_kms_key(handle, alias_name=alias_name)
            if isinstance(e, DBIntegrityError) and "alias" in str(e.orig):
                raise AliasConflictError(
                    f"Key alias '{alias}' is already in use"
                ) from e
            raise

        logger.info(
            "KEK created",
            kek_id=str(kek.id),
            user_id=str(owner_id),
            alias=alias,
            is_primary=is_primary,
            expiry_policy=expiry_policy.value,
        )
        return kek

    async def _discard_kms_key(
        self,
        handle: KMSKeyHandle,
        alias_name: Optional[str],
    ) -> None:
        """Undo a KMS provisioning whose database record never landed."""
        try:
            if alias_name is not None:
                await self.kms.delete_alias(alias_name)
            await self.kms.schedule_deletion(handle, self.deletion_grace_days)
        except Exception as e:
            # The original error is what the caller needs; this one is only logged
            logger.error(
                "Failed to clean up orphaned KMS key",
                kms_key_id=handle,
                error=str(e),
            )
        else:
            logger.warning("Orphaned KMS key scheduled for deletion", kms_key_id=handle)

    async def update_key(
        self,
        db: AsyncSession,
        owner_id: UUID,
        kek_id: UUID,
        alias: Optional[str] = None,
        description: Optional[str] = None,
        is_primary: Optional[bool] = None,
    ) -> KeyEncryptionKey:
        """
        Update alias, description and/or primary flag of a KEK.

        KMS calls (description, alias) run before the database transaction.
        An alias rename is delete-then-create at the KMS; if the create
        fails the old alias is put back on a best-effort basis.

        Raises:
            KeyNotFoundError: If the KEK is not the caller's
            AliasConflictError: If the new alias is taken
        """
        kek = await self.get_key(db, owner_id, kek_id)
        handle = KMSKeyHandle(kek.kms_key_id)
        old_alias = kek.alias

        rename = alias is not None and alias != old_alias
        if rename and await self._alias_taken(db, owner_id, alias, exclude_id=kek_id):
            raise AliasConflictError(f"Key alias '{alias}' is already in use")

        if description is not None and description != kek.description:
            await self.kms.update_description(handle, description)

        if rename:
            await self._rename_kms_alias(owner_id, handle, old_alias, alias)

        try:
            if is_primary is True:
                await self._clear_primary(db, owner_id, keep_id=kek_id)
            if is_primary is not None:
                kek.is_primary = is_primary
            if rename:
                kek.alias = alias
            if description is not None:
                kek.description = description
            await db.flush()
            await db.commit()
        except Exception:
            await db.rollback()
            logger.error(
                "KEK update failed",
                kek_id=str(kek_id),
                user_id=str(owner_id),
                alias_renamed=rename,
            )
            raise

        logger.info(
            "KEK updated",
            kek_id=str(kek_id),
            user_id=str(owner_id),
            alias_changed=rename,
            description_changed=description is not None,
            is_primary=is_primary,
        )
        return kek

    async def _rename_kms_alias(
        self,
        owner_id: UUID,
        handle: KMSKeyHandle,
        old_alias: str,
        new_alias: str,
    ) -> None:
        old_name = kms_alias_name(owner_id, old_alias)
        new_name = kms_alias_name(owner_id, new_alias)

        try:
            await self.kms.delete_alias(old_name)
        except KeyNotFoundError:
            logger.warning("KMS alias already gone", alias_name=old_name)

        try:
            await self.kms.create_alias(new_name, handle)
        except Exception:
            try:
                await self.kms.create_alias(old_name, handle)
            except Exception as restore_error:
                logger.error(
                    "KMS key left without alias",
                    kms_key_id=handle,
                    alias_name=old_name,
                    error=str(restore_error),
                )
            raise

    async def delete_key(
        self,
        db: AsyncSession,
        owner_id: UUID,
        kek_id: UUID,
    ) -> datetime:
        """
        Delete a KEK that no envelope references.

        The KMS key is scheduled for deletion after the grace window rather
        than destroyed. The record delete is flushed before any KMS call so
        the foreign key from encrypted_deks has the final word; if a KMS call
        or the commit fails the record is kept and the KMS key restored.

        Returns:
            When the KMS will destroy the key material

        Raises:
            KeyNotFoundError: If the KEK is not the caller's
            KeyInUseError: If any envelope still uses the KEK
        """
        kek = await self.get_key(db, owner_id, kek_id)

        if await envelope_store.is_kek_in_use(db, kek_id):
            usage = await envelope_store.count_usage(db, kek_id)
            raise KeyInUseError(
                f"Key is still used by {usage.envelope_count} encrypted DEK(s); "
                "rotate them to another key first"
            )

        handle = KMSKeyHandle(kek.kms_key_id)
        alias_name = kms_alias_name(owner_id, kek.alias)

        # The RESTRICT foreign key catches envelopes written after the usage check
        try:
            await db.delete(kek)
            await db.flush()
        except DBIntegrityError as e:
            await db.rollback()
            logger.warning("KEK gained envelopes while being deleted", kek_id=str(kek_id))
            raise KeyInUseError(
                "Key is still used by encrypted DEK(s); rotate them to another key first"
            ) from e

        alias_deleted = False
        deletion_date = None
        try:
            try:
                await self.kms.delete_alias(alias_name)
            except KeyNotFoundError:
                logger.warning("KMS alias already gone", alias_name=alias_name)
            alias_deleted = True

            deletion_date = await self.kms.schedule_deletion(handle, self.deletion_grace_days)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.error(
                "KEK delete failed, keeping the key",
                kek_id=str(kek_id),
                kms_key_id=handle,
                deletion_scheduled=deletion_date is not None,
            )
            await self._restore_kms_key(
                handle,
                alias_name if alias_deleted else None,
                deletion_scheduled=deletion_date is not None,
            )
            raise

        logger.info(
            "KEK deleted",
            kek_id=str(kek_id),
            user_id=str(owner_id),
            deletion_date=deletion_date.isoformat(),
        )
        return deletion_date

    async def _restore_kms_key(
        self,
        handle: KMSKeyHandle,
        alias_name: Optional[str],
        deletion_scheduled: bool,
    ) -> None:
        """Put a KMS key back in service for a KEK record that was kept."""
        try:
            if deletion_scheduled:
                await self.kms.cancel_deletion(handle)
            if alias_name is not None:
                await self.kms.create_alias(alias_name, handle)
        except Exception as e:
            # The original error is what the caller needs; this one is only logged
            logger.critical(
                "Failed to restore KMS key of a kept KEK",
                kms_key_id=handle,
                alias_name=alias_name,
                error=str(e),
            )
        else:
            logger.warning("KMS key restored after failed KEK delete", kms_key_id=handle)



def create_key_registry(kms: KMSProvider) -> KeyRegistry:
    """Build a registry using the configured deletion grace window."""
    return KeyRegistry(kms, deletion_grace_days=settings.KMS_KEY_DELETION_GRACE_DAYS)


def get_key_registry(request: Request) -> KeyRegistry:
    """
    FastAPI dependency to get the key registry from app state.

    Usage:
        @router.get("/keys")
        async def list_keys(registry: KeyRegistry = Depends(get_key_registry)):
            ...
    """
    return request.app.state.key_registry
