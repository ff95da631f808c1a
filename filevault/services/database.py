"""
Database service for lookups of users and stored files.
"""
from typing import Optional, Sequence
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from filevault.models.stored_file import StoredFile
from filevault.models.user import User
from filevault.utils.logger import get_logger

logger = get_logger("database_service")


class DatabaseService:
    """Service for database operations on users and files."""

    async def get_user_by_id(
        self,
        db: AsyncSession,
        user_id: UUID
    ) -> Optional[User]:
        """
        Retrieve a user by ID.

        Args:
            db: Database session
            user_id: UUID of the user

        Returns:
            User if found, None otherwise
        """
        result = await db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_users_by_ids(
        self,
        db: AsyncSession,
        user_ids: Sequence[UUID]
    ) -> list[User]:
        """Retrieve active users whose id is in user_ids."""
        if not user_ids:
            return []
        result = await db.execute(
            select(User).where(User.id.in_(user_ids), User.is_active.is_(True))
        )
        return list(result.scalars().all())

    async def get_users_by_emails(
        self,
        db: AsyncSession,
        emails: Sequence[str]
    ) -> list[User]:
        """Retrieve active users by email (case-insensitive)."""
        if not emails:
            return []
        normalized = [email.lower() for email in emails]
        result = await db.execute(
            select(User).where(func.lower(User.email).in_(normalized), User.is_active.is_(True))
        )
        return list(result.scalars().all())

    async def create_file(
        self,
        db: AsyncSession,
        owner_id: UUID,
        name: str,
        storage_path: str,
        mime_type: Optional[str] = None,
        size: Optional[int] = None
    ) -> StoredFile:
        """
        Create a file record. Does not commit.

        Raises:
            HTTPException: If database operation fails
        """
        try:
            stored_file = StoredFile(
                owner_id=owner_id,
                name=name,
                storage_path=storage_path,
                mime_type=mime_type,
                size=size
            )
            db.add(stored_file)
            await db.flush()

            logger.info(
                "File record created",
                file_id=str(stored_file.id),
                owner_id=str(owner_id)
            )
            return stored_file

        except Exception as e:
            logger.error(
                "Failed to create file record",
                owner_id=str(owner_id),
                error=str(e),
                exc_info=True
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create file record"
            )

    async def get_owned_file_ids(
        self,
        db: AsyncSession,
        owner_id: UUID,
        file_ids: Sequence[UUID]
    ) -> set[UUID]:
        """Return the subset of file_ids owned by owner_id."""
        if not file_ids:
            return set()
        result = await db.execute(
            select(StoredFile.id).where(
                StoredFile.id.in_(file_ids),
                StoredFile.owner_id == owner_id
            )
        )
        return set(result.scalars().all())

    async def delete_file(
        self,
        db: AsyncSession,
        file_id: UUID,
        owner_id: UUID
    ) -> bool:
        """
        Permanently delete a file. Its envelopes go with it (ON DELETE CASCADE).

        Returns:
            True if deleted, False if not found
        """
        result = await db.execute(
            delete(StoredFile).where(
                StoredFile.id == file_id,
                StoredFile.owner_id == owner_id
            )
        )
        deleted = result.rowcount > 0
        if deleted:
            logger.info("File deleted", file_id=str(file_id), owner_id=str(owner_id))
        else:
            logger.info("File not found for deletion", file_id=str(file_id))
        return deleted


# Global service instance
db_service = DatabaseService()
