"""
SQLAlchemy models for the filevault key-management service.
"""
from filevault.models.user import User
from filevault.models.stored_file import StoredFile
from filevault.models.key_encryption_key import KeyEncryptionKey
from filevault.models.encrypted_dek import EncryptedDEK
from filevault.models.share_group import ShareGroup, share_group_recipients, share_group_files

__all__ = [
    "User",
    "StoredFile",
    "KeyEncryptionKey",
    "EncryptedDEK",
    "ShareGroup",
    "share_group_recipients",
    "share_group_files",
]
