"""
DEK envelope store.

Durable mapping (file, KEK) -> wrapped DEK + IV. All writes go through the
caller's session; the store never commits on its own. Committing is the
caller's decision because rotation has to commit the new envelope before
it removes the old one.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.models.encrypted_dek import EncryptedDEK
from filevault.models.key_encryption_key import KeyEncryptionKey
from filevault.services.kms.base import WrappedKey
from filevault.utils.logger import get_logger

logger = get_logger("envelope_store")


@dataclass(frozen=True)
class EnvelopeRef:
    """Detached copy of an envelope row, safe to hold across commits and rollbacks."""
    file_id: UUID
    kek_id: UUID
    dek_ciphertext: WrappedKey
    iv: bytes


@dataclass(frozen=True)
class KeyUsage:
    """How much data a KEK currently protects."""
    file_count: int
    envelope_count: int


def to_ref(envelope: EncryptedDEK) -> EnvelopeRef:
    return EnvelopeRef(
        file_id=envelope.file_id,
        kek_id=envelope.kek_id,
        dek_ciphertext=WrappedKey(envelope.dek_ciphertext),
        iv=envelope.iv,
    )


async def get_envelope(
    db: AsyncSession,
    file_id: UUID,
    kek_id: UUID,
) -> Optional[EncryptedDEK]:
    """Get the envelope for a (file, KEK) pair."""
    result = await db.execute(
        select(EncryptedDEK).where(
            EncryptedDEK.file_id == file_id,
            EncryptedDEK.kek_id == kek_id,
        )
    )
    return result.scalar_one_or_none()


async def get_owner_envelope(
    db: AsyncSession,
    file_id: UUID,
    user_id: UUID,
) -> Optional[EncryptedDEK]:
    """
    Get an envelope for the file wrapped under any of the user's KEKs.

    When a user holds several (mid-rotation), the one under their primary
    KEK wins, then the newest.
    """
    result = await db.execute(
        select(EncryptedDEK)
        .join(KeyEncryptionKey, EncryptedDEK.kek_id == KeyEncryptionKey.id)
        .where(
            EncryptedDEK.file_id == file_id,
            KeyEncryptionKey.user_id == user_id,
        )
        .order_by(KeyEncryptionKey.is_primary.desc(), EncryptedDEK.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_envelope(
    db: AsyncSession,
    file_id: UUID,
    kek_id: UUID,
    dek_ciphertext: WrappedKey,
    iv: bytes,
) -> EncryptedDEK:
    """
    Insert a new envelope row.

    The (file_id, kek_id) unique constraint rejects duplicates at flush time.
    """
    envelope = EncryptedDEK(
        file_id=file_id,
        kek_id=kek_id,
        dek_ciphertext=dek_ciphertext,
        iv=iv,
    )
    db.add(envelope)
    await db.flush()

    logger.debug(
        "Created envelope",
        file_id=str(file_id),
        kek_id=str(kek_id),
    )
    return envelope


async def upsert_envelope(
    db: AsyncSession,
    file_id: UUID,
    kek_id: UUID,
    dek_ciphertext: WrappedKey,
    iv: bytes,
) -> None:
    """
    Insert or overwrite the envelope for a (file, KEK) pair.

    Uses the database's ON CONFLICT upsert keyed on the unique pair, so a
    re-run after a partial rotation overwrites instead of duplicating.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise NotImplementedError(f"Envelope upsert not supported on {dialect}")

    stmt = insert(EncryptedDEK).values(
        id=uuid4(),
        file_id=file_id,
        kek_id=kek_id,
        dek_ciphertext=dek_ciphertext,
        iv=iv,
        created_at=datetime.now(timezone.utc),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[EncryptedDEK.file_id, EncryptedDEK.kek_id],
        set_={
            "dek_ciphertext": stmt.excluded.dek_ciphertext,
            "iv": stmt.excluded.iv,
        },
    )
    await db.execute(stmt)

    logger.debug(
        "Upserted envelope",
        file_id=str(file_id),
        kek_id=str(kek_id),
    )


async def delete_envelope(
    db: AsyncSession,
    file_id: UUID,
    kek_id: UUID,
) -> bool:
    """
    Delete the envelope for a (file, KEK) pair.

    Returns:
        True if a row was removed
    """
    result = await db.execute(
        delete(EncryptedDEK).where(
            EncryptedDEK.file_id == file_id,
            EncryptedDEK.kek_id == kek_id,
        )
    )
    return result.rowcount > 0


async def delete_envelopes_for_user(
    db: AsyncSession,
    file_id: UUID,
    user_id: UUID,
) -> int:
    """
    Delete every envelope for the file wrapped under the user's KEKs.

    Returns:
        Number of envelopes removed
    """
    user_keks = select(KeyEncryptionKey.id).where(KeyEncryptionKey.user_id == user_id)
    result = await db.execute(
        delete(EncryptedDEK).where(
            EncryptedDEK.file_id == file_id,
            EncryptedDEK.kek_id.in_(user_keks),
        )
    )
    return result.rowcount


async def list_envelopes_for_kek(
    db: AsyncSession,
    kek_id: UUID,
) -> Sequence[EnvelopeRef]:
    """List detached copies of every envelope wrapped under a KEK."""
    result = await db.execute(
        select(EncryptedDEK)
        .where(EncryptedDEK.kek_id == kek_id)
        .order_by(EncryptedDEK.created_at)
    )
    return [to_ref(envelope) for envelope in result.scalars().all()]


async def count_usage(db: AsyncSession, kek_id: UUID) -> KeyUsage:
    """Count envelopes and distinct files wrapped under a KEK."""
    result = await db.execute(
        select(
            func.count(func.distinct(EncryptedDEK.file_id)),
            func.count(EncryptedDEK.id),
        ).where(EncryptedDEK.kek_id == kek_id)
    )
    file_count, envelope_count = result.one()
    return KeyUsage(file_count=file_count, envelope_count=envelope_count)


async def is_kek_in_use(db: AsyncSession, kek_id: UUID) -> bool:
    """Check whether any envelope still references a KEK."""
    result = await db.execute(
        select(EncryptedDEK.id).where(EncryptedDEK.kek_id == kek_id).limit(1)
    )
    return result.scalar_one_or_none() is not None
