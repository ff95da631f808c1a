"""
SQLAlchemy model for Key Encryption Keys (KEKs).

A KEK row holds metadata only. The key material itself never leaves the
KMS; kms_key_id is the opaque handle the provider assigned to it.

Primary key invariant:
    At most one KEK per user has is_primary = true. The service flips the
    flag inside a single transaction and the partial unique index below
    rejects any commit that would leave two primaries behind.
"""

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from filevault.database import Base, DB_SCHEMA


if TYPE_CHECKING:
    from filevault.models.user import User
    from filevault.models.encrypted_dek import EncryptedDEK


class KeyEncryptionKey(Base):
    """
    Per-user master key record.

    Envelope Encryption Pattern:
        KMS master key (KEK) -> wrapped DEK (per file, per recipient) -> file bytes

    Attributes:
        id: Unique identifier owned by this service (UUID4)
        user_id: Owning user's UUID
        alias: Human readable name, unique per user
        description: Optional free text, mirrored to the KMS key description
        kms_key_id: Provider handle of the key (unique)
        is_primary: Whether new wraps for this user use this key
        expires_at: Optional expiry computed from the creation policy
        rotated_at: Set when envelopes were rotated away from this key
        created_at: Creation timestamp (UTC)
    """

    __tablename__ = "key_encryption_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey(f"{DB_SCHEMA}.users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    alias: Mapped[str] = mapped_column(
        String(256),
        nullable=False,
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    kms_key_id: Mapped[str] = mapped_column(
        String(2048),
        nullable=False,
        unique=True,
        doc="Opaque key handle assigned by the KMS provider",
    )

    is_primary: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    rotated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Last time envelopes were rotated off this key",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        back_populates="keys",
        lazy="raise",
    )

    envelopes: Mapped[list["EncryptedDEK"]] = relationship(
        "EncryptedDEK",
        back_populates="kek",
        passive_deletes="all",
        lazy="raise",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "alias", name="uq_kek_user_alias"),
        Index("idx_kek_user_id", "user_id"),
        # One primary key per user
        Index(
            "idx_kek_one_primary_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_primary = true"),
            sqlite_where=text("is_primary = 1"),
        ),
        {"schema": DB_SCHEMA},
    )

    def __repr__(self) -> str:
        return (
            f"<KeyEncryptionKey id={self.id} "
            f"user_id={self.user_id} "
            f"alias={self.alias} "
            f"primary={self.is_primary}>"
        )

    @property
    def is_expired(self) -> bool:
        """Check if the expiry timestamp has passed."""
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            # sqlite hands back naive datetimes
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= datetime.now(timezone.utc)
