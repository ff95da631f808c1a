"""
Batch sharing orchestrator.

Sharing hands every (file, recipient) pair to the envelope engine's rewrap
and collects one result per pair. The batch as a whole only fails when a
precondition covering the whole batch fails (a file that is not the
owner's or not encrypted, a recipient that does not exist or has no
primary key); everything else is reported per pair so one bad recipient
never blocks delivery to the others.

Each successful pair is committed before the next one starts, so a request
cancelled halfway keeps what it already delivered.

Usage:
    sharing = SharingService(engine, registry)
    group, report = await sharing.create_share_group(
        db, owner.id, file_ids=[file.id], recipient_ids=[bob.id]
    )
    print(report.successful_shares, report.failed_shares)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence
from uuid import UUID

from fastapi import Request
from sqlalchemy import delete, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.models.share_group import (
    ShareGroup,
    share_group_files,
    share_group_recipients,
)
from filevault.services import envelope_store
from filevault.services.database import db_service
from filevault.services.envelope_engine import EnvelopeEngine
from filevault.services.errors import (
    FileAccessError,
    FileNotEncryptedError,
    RecipientHasNoKeyError,
    RecipientNotFoundError,
    ShareGroupNotFoundError,
)
from filevault.services.key_registry import KeyRegistry
from filevault.utils.logger import get_logger

logger = get_logger("sharing")


@dataclass(frozen=True)
class ShareResult:
    """Outcome of sharing one file with one recipient."""
    file_id: UUID
    recipient_id: UUID
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class ShareReport:
    """Per-pair results of a batch share."""
    results: list[ShareResult] = field(default_factory=list)

    @property
    def successful_shares(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_shares(self) -> int:
        return sum(1 for r in self.results if not r.success)


def _unique(ids: Iterable[UUID]) -> list[UUID]:
    """Drop duplicates, keep order."""
    return list(dict.fromkeys(ids))


class SharingService:
    """Creates, extends and revokes shares by rewrapping DEKs per recipient."""

    def __init__(self, engine: EnvelopeEngine, registry: KeyRegistry):
        self.engine = engine
        self.registry = registry

    async def resolve_recipients(
        self,
        db: AsyncSession,
        recipient_ids: Sequence[UUID] = (),
        recipient_emails: Sequence[str] = (),
    ) -> list[UUID]:
        """
        Turn recipient ids and emails into one list of user ids.

        Raises:
            RecipientNotFoundError: If any email does not belong to an active user
        """
        resolved = list(recipient_ids)
        if recipient_emails:
            users = await db_service.get_users_by_emails(db, recipient_emails)
            by_email = {user.email.lower(): user.id for user in users}
            missing = [e for e in recipient_emails if e.lower() not in by_email]
            if missing:
                raise RecipientNotFoundError(
                    f"Recipients not found: {', '.join(missing)}"
                )
            resolved.extend(by_email[e.lower()] for e in recipient_emails)
        return _unique(resolved)

    # =========================================================================
    # Batch rewrap
    # =========================================================================

    async def share_with_recipients(
        self,
        db: AsyncSession,
        owner_id: UUID,
        file_ids: Sequence[UUID],
        recipient_ids: Sequence[UUID],
    ) -> ShareReport:
        """
        Rewrap each file's DEK for each recipient.

        Args:
            db: Database session
            owner_id: Owner of the files
            file_ids: Files to share
            recipient_ids: Users to share with

        Returns:
            ShareReport with one result per (file, recipient) pair

        Raises:
            FileAccessError: If any file is not the owner's
            FileNotEncryptedError: If any file has no owner envelope
            RecipientNotFoundError: If any recipient does not exist
            RecipientHasNoKeyError: If any recipient has no primary KEK
        """
        file_ids = _unique(file_ids)
        recipient_ids = _unique(recipient_ids)
        await self._check_preconditions(db, owner_id, file_ids, recipient_ids)
        pairs = [(f, r) for f in file_ids for r in recipient_ids]
        return await self._rewrap_pairs(db, owner_id, pairs)

    async def _check_preconditions(
        self,
        db: AsyncSession,
        owner_id: UUID,
        file_ids: Sequence[UUID],
        recipient_ids: Sequence[UUID],
    ) -> None:
        if owner_id in recipient_ids:
            raise ValueError("Cannot share files with yourself")

        owned = await db_service.get_owned_file_ids(db, owner_id, file_ids)
        missing_files = [f for f in file_ids if f not in owned]
        if missing_files:
            raise FileAccessError(
                f"Files not found: {', '.join(str(f) for f in missing_files)}"
            )

        unencrypted = []
        for file_id in file_ids:
            if await envelope_store.get_owner_envelope(db, file_id, owner_id) is None:
                unencrypted.append(file_id)
        if unencrypted:
            raise FileNotEncryptedError(
                "Some files are not encrypted: "
                + ", ".join(str(f) for f in unencrypted)
            )

        users = await db_service.get_users_by_ids(db, recipient_ids)
        found = {user.id for user in users}
        missing_users = [r for r in recipient_ids if r not in found]
        if missing_users:
            raise RecipientNotFoundError(
                f"Recipients not found: {', '.join(str(r) for r in missing_users)}"
            )

        # Sharing is refused outright, never silently skipped, when a recipient has no key
        keyless = []
        for recipient_id in recipient_ids:
            if await self.registry.get_primary_key(db, recipient_id) is None:
                keyless.append(recipient_id)
        if keyless:
            raise RecipientHasNoKeyError(
                "Recipients without an encryption key: "
                + ", ".join(str(r) for r in keyless)
            )

    async def _rewrap_pairs(
        self,
        db: AsyncSession,
        owner_id: UUID,
        pairs: Sequence[tuple[UUID, UUID]],
    ) -> ShareReport:
        """Rewrap pair by pair, committing each success and rolling back each failure."""
        report = ShareReport()

        for file_id, recipient_id in pairs:
            try:
                await self.engine.rewrap_for_recipient(db, file_id, owner_id, recipient_id)
                await db.commit()
            except Exception as e:
                await db.rollback()
                code = getattr(e, "code", "internal_error")
                logger.warning(
                    "Share failed for pair",
                    file_id=str(file_id),
                    recipient_id=str(recipient_id),
                    error_code=code,
                    error=str(e),
                )
                report.results.append(
                    ShareResult(
                        file_id=file_id,
                        recipient_id=recipient_id,
                        success=False,
                        error=str(e),
                        error_code=code,
                    )
                )
                continue

            report.results.append(
                ShareResult(file_id=file_id, recipient_id=recipient_id, success=True)
            )

        logger.info(
            "Batch share finished",
            owner_id=str(owner_id),
            total=len(pairs),
            successful_shares=report.successful_shares,
            failed_shares=report.failed_shares,
        )
        return report

    # =========================================================================
    # Share groups
    # =========================================================================

    async def get_share_group(
        self,
        db: AsyncSession,
        owner_id: UUID,
        group_id: UUID,
    ) -> ShareGroup:
        """
        Get one of the owner's share groups with files and recipients loaded.

        Raises:
            ShareGroupNotFoundError: If missing or owned by someone else
        """
        result = await db.execute(
            select(ShareGroup)
            .where(ShareGroup.id == group_id, ShareGroup.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        group = result.scalar_one_or_none()
        if group is None:
            raise ShareGroupNotFoundError(f"Share {group_id} not found")
        return group

    async def list_share_groups(
        self,
        db: AsyncSession,
        owner_id: UUID,
    ) -> Sequence[ShareGroup]:
        """List the owner's share groups, newest first."""
        result = await db.execute(
            select(ShareGroup)
            .where(ShareGroup.owner_id == owner_id)
            .order_by(ShareGroup.created_at.desc())
        )
        return result.scalars().all()

    async def list_received_share_groups(
        self,
        db: AsyncSession,
        user_id: UUID,
    ) -> Sequence[ShareGroup]:
        """List unexpired share groups the user is a recipient of."""
        now = datetime.now(timezone.utc)
        result = await db.execute(
            select(ShareGroup)
            .join(
                share_group_recipients,
                share_group_recipients.c.share_group_id == ShareGroup.id,
            )
            .where(
                share_group_recipients.c.user_id == user_id,
                or_(ShareGroup.expires_at.is_(None), ShareGroup.expires_at > now),
            )
            .order_by(ShareGroup.created_at.desc())
        )
        return result.scalars().all()

    async def create_share_group(
        self,
        db: AsyncSession,
        owner_id: UUID,
        file_ids: Sequence[UUID],
        recipient_ids: Sequence[UUID],
        expires_at: Optional[datetime] = None,
    ) -> tuple[ShareGroup, ShareReport]:
        """
        Create a share group and rewrap every file for every recipient.

        The group is committed before the rewraps start; pairs that fail are
        reported in the ShareReport and are retried by the next extend.

        Raises:
            ValueError: If no files or no recipients are given
            Same whole-batch errors as share_with_recipients
        """
        file_ids = _unique(file_ids)
        recipient_ids = _unique(recipient_ids)
        if not file_ids:
            raise ValueError("At least one file is required")
        if not recipient_ids:
            raise ValueError("At least one recipient is required")

        await self._check_preconditions(db, owner_id, file_ids, recipient_ids)

        group = ShareGroup(owner_id=owner_id, expires_at=expires_at)
        db.add(group)
        await db.flush()
        group_id = group.id
        await self._link(db, group_id, file_ids, recipient_ids)
        await db.commit()

        logger.info(
            "Share group created",
            share_group_id=str(group_id),
            owner_id=str(owner_id),
            files=len(file_ids),
            recipients=len(recipient_ids),
        )

        pairs = [(f, r) for f in file_ids for r in recipient_ids]
        report = await self._rewrap_pairs(db, owner_id, pairs)
        return await self.get_share_group(db, owner_id, group_id), report

    async def extend_share_group(
        self,
        db: AsyncSession,
        owner_id: UUID,
        group_id: UUID,
        file_ids: Sequence[UUID] = (),
        recipient_ids: Sequence[UUID] = (),
    ) -> tuple[ShareGroup, ShareReport]:
        """
        Add files and/or recipients to a share group.

        New files are rewrapped for every recipient and existing files for
        new recipients. Existing pairs with no envelope for the recipient
        (an earlier rewrap failed) are retried in the same pass.
        """
        group = await self.get_share_group(db, owner_id, group_id)
        existing_files = [f.id for f in group.files]
        existing_recipients = [u.id for u in group.recipients]

        new_files = [f for f in _unique(file_ids) if f not in existing_files]
        new_recipients = [r for r in _unique(recipient_ids) if r not in existing_recipients]

        if new_files or new_recipients:
            await self._check_preconditions(db, owner_id, new_files, new_recipients)
            await self._link(db, group_id, new_files, new_recipients)
            await db.commit()

            logger.info(
                "Share group extended",
                share_group_id=str(group_id),
                new_files=len(new_files),
                new_recipients=len(new_recipients),
            )

        pairs = await self._undelivered_pairs(db, existing_files, existing_recipients)
        if pairs:
            logger.info(
                "Retrying undelivered shares",
                share_group_id=str(group_id),
                pairs=len(pairs),
            )
        pairs += [(f, r) for f in new_files for r in existing_recipients + new_recipients]
        pairs += [(f, r) for f in existing_files for r in new_recipients]

        if not pairs:
            return group, ShareReport()

        report = await self._rewrap_pairs(db, owner_id, pairs)
        return await self.get_share_group(db, owner_id, group_id), report

    async def revoke_share_group(
        self,
        db: AsyncSession,
        owner_id: UUID,
        group_id: UUID,
    ) -> int:
        """
        Delete a share group and the recipients' envelopes for its files.

        A recipient keeps a file that another of the owner's share groups
        still gives them.

        Returns:
            Number of envelopes removed
        """
        group = await self.get_share_group(db, owner_id, group_id)
        file_ids = [f.id for f in group.files]
        recipient_ids = [u.id for u in group.recipients]

        await db.delete(group)
        await db.flush()

        removed = 0
        for file_id in file_ids:
            for recipient_id in recipient_ids:
                removed += await self._revoke_access(db, owner_id, file_id, recipient_id)
        await db.commit()

        logger.info(
            "Share group revoked",
            share_group_id=str(group_id),
            owner_id=str(owner_id),
            envelopes_removed=removed,
        )
        return removed

    async def remove_file_from_share_group(
        self,
        db: AsyncSession,
        owner_id: UUID,
        group_id: UUID,
        file_id: UUID,
    ) -> int:
        """
        Take one file out of a share group and revoke the recipients' envelopes.

        Returns:
            Number of envelopes removed

        Raises:
            ShareGroupNotFoundError: If the group is not the owner's
            FileAccessError: If the file is not in the group
        """
        group = await self.get_share_group(db, owner_id, group_id)
        if file_id not in {f.id for f in group.files}:
            raise FileAccessError(f"File {file_id} is not part of share {group_id}")
        recipient_ids = [u.id for u in group.recipients]

        await db.execute(
            delete(share_group_files).where(
                share_group_files.c.share_group_id == group_id,
                share_group_files.c.file_id == file_id,
            )
        )

        removed = 0
        for recipient_id in recipient_ids:
            removed += await self._revoke_access(db, owner_id, file_id, recipient_id)
        await db.commit()

        logger.info(
            "File removed from share group",
            share_group_id=str(group_id),
            file_id=str(file_id),
            envelopes_removed=removed,
        )
        return removed

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _link(
        self,
        db: AsyncSession,
        group_id: UUID,
        file_ids: Sequence[UUID],
        recipient_ids: Sequence[UUID],
    ) -> None:
        if file_ids:
            await db.execute(
                insert(share_group_files),
                [{"share_group_id": group_id, "file_id": f} for f in file_ids],
            )
        if recipient_ids:
            await db.execute(
                insert(share_group_recipients),
                [{"share_group_id": group_id, "user_id": r} for r in recipient_ids],
            )

    async def _undelivered_pairs(
        self,
        db: AsyncSession,
        file_ids: Sequence[UUID],
        recipient_ids: Sequence[UUID],
    ) -> list[tuple[UUID, UUID]]:
        """Pairs where the recipient holds no envelope for the file."""
        pairs = []
        for file_id in file_ids:
            for recipient_id in recipient_ids:
                if await envelope_store.get_owner_envelope(db, file_id, recipient_id) is None:
                    pairs.append((file_id, recipient_id))
        return pairs

    async def _still_shared(
        self,
        db: AsyncSession,
        owner_id: UUID,
        file_id: UUID,
        recipient_id: UUID,
    ) -> bool:
        """Check whether another unexpired share group still gives the recipient the file."""
        now = datetime.now(timezone.utc)
        result = await db.execute(
            select(ShareGroup.id)
            .join(
                share_group_files,
                share_group_files.c.share_group_id == ShareGroup.id,
            )
            .join(
                share_group_recipients,
                share_group_recipients.c.share_group_id == ShareGroup.id,
            )
            .where(
                ShareGroup.owner_id == owner_id,
                share_group_files.c.file_id == file_id,
                share_group_recipients.c.user_id == recipient_id,
                or_(ShareGroup.expires_at.is_(None), ShareGroup.expires_at > now),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _revoke_access(
        self,
        db: AsyncSession,
        owner_id: UUID,
        file_id: UUID,
        recipient_id: UUID,
    ) -> int:
        if await self._still_shared(db, owner_id, file_id, recipient_id):
            return 0
        return await envelope_store.delete_envelopes_for_user(db, file_id, recipient_id)


def get_sharing_service(request: Request) -> SharingService:
    """FastAPI dependency to get the sharing service from app state."""
    return request.app.state.sharing_service
