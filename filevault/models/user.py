"""
SQLAlchemy model for users table.
"""
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from sqlalchemy import String, Boolean, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from filevault.database import Base, DB_SCHEMA

if TYPE_CHECKING:
    from filevault.models.key_encryption_key import KeyEncryptionKey


class User(Base):
    """
    User account as seen by the key-management service.

    Authentication lives elsewhere; this table only anchors key ownership
    and lets sharing resolve recipients by email.

    Attributes:
        id: Unique identifier (UUID4)
        email: User's email address (unique)
        is_active: Whether the user account is active
        created_at: Account creation timestamp (UTC)
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    keys: Mapped[list["KeyEncryptionKey"]] = relationship(
        "KeyEncryptionKey",
        back_populates="user",
        passive_deletes="all",
        lazy="raise"
    )

    __table_args__ = (
        {"schema": DB_SCHEMA},
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, is_active={self.is_active})>"
