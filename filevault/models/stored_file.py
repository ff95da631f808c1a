"""
SQLAlchemy model for stored files.

Only the columns the key-management engine needs are modelled here:
ownership, a display name and where the (client-side encrypted) bytes live.
"""
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional
from sqlalchemy import String, BigInteger, DateTime, ForeignKey, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from filevault.database import Base, DB_SCHEMA

if TYPE_CHECKING:
    from filevault.models.encrypted_dek import EncryptedDEK


class StoredFile(Base):
    """
    File uploaded by a user.

    The file bytes are encrypted in the browser with a per-file DEK; the
    server only ever sees the DEK wrapped under a KEK (see EncryptedDEK).

    Attributes:
        id: Unique identifier (UUID4)
        owner_id: Owning user's UUID
        name: Original file name
        storage_path: Location of the encrypted bytes in object storage
        mime_type: Original MIME type before encryption
        size: Original size in bytes before encryption
        created_at: Upload timestamp (UTC)
    """

    __tablename__ = "files"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )

    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey(f"{DB_SCHEMA}.users.id", ondelete="CASCADE"),
        nullable=False
    )

    name: Mapped[str] = mapped_column(
        String(1024),
        nullable=False
    )

    storage_path: Mapped[str] = mapped_column(
        String(1024),
        nullable=False
    )

    mime_type: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True
    )

    size: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    # Envelopes are removed together with the file
    envelopes: Mapped[list["EncryptedDEK"]] = relationship(
        "EncryptedDEK",
        back_populates="file",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise"
    )

    __table_args__ = (
        Index("idx_files_owner_id", "owner_id"),
        {"schema": DB_SCHEMA}
    )

    def __repr__(self) -> str:
        return f"<StoredFile(id={self.id}, owner_id={self.owner_id}, name={self.name})>"
