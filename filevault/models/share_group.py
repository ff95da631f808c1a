"""
SQLAlchemy model for share groups.

A share group ties a set of files to a set of recipients. Access itself is
carried by envelopes: every (file, recipient) pair in a group gets the
file's DEK rewrapped under the recipient's primary KEK.
"""
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional
from sqlalchemy import Column, DateTime, ForeignKey, Index, Table, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from filevault.database import Base, DB_SCHEMA

if TYPE_CHECKING:
    from filevault.models.user import User
    from filevault.models.stored_file import StoredFile


share_group_recipients = Table(
    "share_group_recipients",
    Base.metadata,
    Column(
        "share_group_id",
        Uuid,
        ForeignKey(f"{DB_SCHEMA}.share_groups.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "user_id",
        Uuid,
        ForeignKey(f"{DB_SCHEMA}.users.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    schema=DB_SCHEMA,
)

share_group_files = Table(
    "share_group_files",
    Base.metadata,
    Column(
        "share_group_id",
        Uuid,
        ForeignKey(f"{DB_SCHEMA}.share_groups.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "file_id",
        Uuid,
        ForeignKey(f"{DB_SCHEMA}.files.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    schema=DB_SCHEMA,
)


class ShareGroup(Base):
    """
    Files shared by one owner with one or more recipients.

    Attributes:
        id: Unique identifier (UUID4)
        owner_id: User who created the share
        expires_at: Optional expiry after which recipients no longer see the share
        created_at: Creation timestamp (UTC)
        recipients: Users the files are shared with
        files: Files included in the share
    """

    __tablename__ = "share_groups"

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

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    recipients: Mapped[list["User"]] = relationship(
        "User",
        secondary=share_group_recipients,
        lazy="selectin"
    )

    files: Mapped[list["StoredFile"]] = relationship(
        "StoredFile",
        secondary=share_group_files,
        lazy="selectin"
    )

    __table_args__ = (
        Index("idx_share_groups_owner_id", "owner_id"),
        {"schema": DB_SCHEMA}
    )

    def __repr__(self) -> str:
        return f"<ShareGroup(id={self.id}, owner_id={self.owner_id})>"
