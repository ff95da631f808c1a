"""
SQLAlchemy model for wrapped Data Encryption Keys (envelopes).

A file's DEK is generated in the browser and uploaded wrapped under the
owner's primary KEK. Every user who can read the file has their own
envelope: the same DEK wrapped under one of that user's KEKs.

The (file_id, kek_id) pair is the natural key. Rotation relies on it to
upsert the new envelope before the old one is removed.
"""

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, LargeBinary, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from filevault.database import Base, DB_SCHEMA


if TYPE_CHECKING:
    from filevault.models.key_encryption_key import KeyEncryptionKey
    from filevault.models.stored_file import StoredFile


class EncryptedDEK(Base):
    """
    Envelope record: a DEK wrapped under one KEK.

    Attributes:
        id: Unique identifier (UUID4)
        file_id: File whose bytes the DEK encrypts
        kek_id: KEK the DEK is wrapped under (RESTRICT - a KEK in use cannot be deleted)
        dek_ciphertext: Wrapped DEK as returned by the KMS
        iv: IV the client used to encrypt the file bytes with this DEK
        created_at: Creation timestamp (UTC)
    """

    __tablename__ = "encrypted_deks"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey(f"{DB_SCHEMA}.files.id", ondelete="CASCADE"),
        nullable=False,
    )

    kek_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey(f"{DB_SCHEMA}.key_encryption_keys.id", ondelete="RESTRICT"),
        nullable=False,
    )

    dek_ciphertext: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )

    iv: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    file: Mapped["StoredFile"] = relationship(
        "StoredFile",
        back_populates="envelopes",
        lazy="raise",
    )

    kek: Mapped["KeyEncryptionKey"] = relationship(
        "KeyEncryptionKey",
        back_populates="envelopes",
        lazy="raise",
    )

    __table_args__ = (
        UniqueConstraint("file_id", "kek_id", name="uq_encrypted_dek_file_kek"),
        Index("idx_encrypted_dek_kek_id", "kek_id"),
        {"schema": DB_SCHEMA},
    )

    def __repr__(self) -> str:
        return f"<EncryptedDEK id={self.id} file_id={self.file_id} kek_id={self.kek_id}>"
