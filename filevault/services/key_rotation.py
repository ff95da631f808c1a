"""
KEK rotation orchestrator.

Moves every envelope a user holds under one KEK to another:

    USING_OLD_KEK -> (unwrap) -> PLAINTEXT_IN_FLIGHT -> (wrap) ->
    NEW_ENVELOPE_WRITTEN -> (old envelope deleted) -> USING_NEW_KEK

The new envelope is upserted and committed before the old one is deleted,
so a crash between the two leaves both envelopes (both usable) and never
none. Re-running converges: the upsert on (file_id, kek_id) overwrites
instead of duplicating, and the old envelope is picked up again.

Envelopes are processed one at a time; a failing envelope is recorded and
the loop moves on.
"""

from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.services import envelope_store
from filevault.services.envelope_engine import EnvelopeEngine
from filevault.services.key_registry import KeyRegistry
from filevault.services.kms.base import KMSKeyHandle
from filevault.utils.logger import get_logger

logger = get_logger("key_rotation")


@dataclass(frozen=True)
class RotationFailure:
    """An envelope that could not be rotated."""
    file_id: UUID
    error: str
    error_code: Optional[str] = None


@dataclass
class RotationSummary:
    """Counts the caller uses to decide whether to retry."""
    total_to_rewrap: int = 0
    rewrapped: int = 0
    failed: int = 0
    failures: list[RotationFailure] = field(default_factory=list)


class KeyRotationService:
    """Rotates a user's envelopes from one of their KEKs to another."""

    def __init__(self, engine: EnvelopeEngine, registry: KeyRegistry):
        self.engine = engine
        self.registry = registry

    async def rotate_kek_for_owner(
        self,
        db: AsyncSession,
        owner_id: UUID,
        from_kek_id: UUID,
        to_kek_id: UUID,
        make_primary: bool = False,
    ) -> RotationSummary:
        """
        Rewrap every envelope under from_kek_id to to_kek_id.

        Args:
            db: Database session
            owner_id: Owner of both KEKs
            from_kek_id: KEK being retired
            to_kek_id: KEK receiving the envelopes
            make_primary: Promote to_kek_id to primary after the loop

        Returns:
            RotationSummary with total_to_rewrap, rewrapped, failed and failures

        Raises:
            ValueError: If from and to are the same key
            KeyNotFoundError: If either KEK is not the caller's
        """
        if from_kek_id == to_kek_id:
            raise ValueError("Source and target keys must be different")

        from_kek = await self.registry.get_key(db, owner_id, from_kek_id)
        to_kek = await self.registry.get_key(db, owner_id, to_kek_id)
        from_handle = KMSKeyHandle(from_kek.kms_key_id)
        to_handle = KMSKeyHandle(to_kek.kms_key_id)

        envelopes = await envelope_store.list_envelopes_for_kek(db, from_kek_id)
        summary = RotationSummary(total_to_rewrap=len(envelopes))

        logger.info(
            "Rotation started",
            owner_id=str(owner_id),
            from_kek_id=str(from_kek_id),
            to_kek_id=str(to_kek_id),
            total_to_rewrap=summary.total_to_rewrap,
        )

        for envelope in envelopes:
            try:
                await self._rotate_envelope(db, envelope, to_kek_id, from_handle, to_handle)
            except Exception as e:
                await db.rollback()
                code = getattr(e, "code", "internal_error")
                logger.warning(
                    "Envelope rotation failed",
                    file_id=str(envelope.file_id),
                    error_code=code,
                    error=str(e),
                )
                summary.failed += 1
                summary.failures.append(
                    RotationFailure(file_id=envelope.file_id, error=str(e), error_code=code)
                )
            else:
                summary.rewrapped += 1

        if make_primary:
            await self.registry.mark_primary(db, owner_id, to_kek_id)
            await self.registry.stamp_rotated(db, from_kek_id)
            await db.commit()

        logger.info(
            "Rotation finished",
            owner_id=str(owner_id),
            from_kek_id=str(from_kek_id),
            to_kek_id=str(to_kek_id),
            total_to_rewrap=summary.total_to_rewrap,
            rewrapped=summary.rewrapped,
            failed=summary.failed,
            made_primary=make_primary,
        )
        return summary

    async def _rotate_envelope(
        self,
        db: AsyncSession,
        envelope: envelope_store.EnvelopeRef,
        to_kek_id: UUID,
        from_handle: KMSKeyHandle,
        to_handle: KMSKeyHandle,
    ) -> None:
        new_ciphertext = await self.engine.rewrap(
            from_handle, to_handle, envelope.dek_ciphertext
        )

        await envelope_store.upsert_envelope(
            db, envelope.file_id, to_kek_id, new_ciphertext, envelope.iv
        )
        await db.commit()

        # The new envelope is durable; only now may the old one go
        await envelope_store.delete_envelope(db, envelope.file_id, envelope.kek_id)
        await db.commit()


def get_key_rotation_service(request: Request) -> KeyRotationService:
    """FastAPI dependency to get the rotation service from app state."""
    return request.app.state.key_rotation_service
