"""
Exception hierarchy for key management and envelope encryption.

Errors are grouped the way callers have to react to them:

- ConfigurationError: setup must be fixed by the user before retrying
- ConflictError: expected, pick a different action
- ProviderError: transient KMS trouble, batch callers record and move on
- IntegrityError: wrong key or corrupted blob, never retried
- NotFoundError: the referenced file, user or share does not exist for the caller

Every error carries a stable ``code`` used in batch results and API error bodies.
"""


class KeyManagementError(Exception):
    """Base exception for key management errors."""

    code = "key_management_error"
    category = "internal"


# =============================================================================
# Configuration errors
# =============================================================================


class ConfigurationError(KeyManagementError):
    """User or operator must fix setup before retrying."""

    category = "configuration"


class NoPrimaryKeyError(ConfigurationError):
    """Raised when a user has no primary KEK to wrap under."""

    code = "no_primary_key"


class RecipientHasNoKeyError(ConfigurationError):
    """Raised when a share recipient has no primary KEK."""

    code = "recipient_has_no_key"


class AliasConflictError(ConfigurationError):
    """Raised when a KEK alias is already taken by the same user."""

    code = "alias_conflict"


class FileNotEncryptedError(ConfigurationError):
    """Raised when a file has no envelope under its owner's KEKs."""

    code = "file_not_encrypted"


# =============================================================================
# Conflict errors
# =============================================================================


class ConflictError(KeyManagementError):
    """Expected conflict, recoverable by choosing a different action."""

    category = "conflict"


class KeyInUseError(ConflictError):
    """Raised when deleting a KEK that still wraps at least one DEK."""

    code = "key_in_use"


class AlreadySharedError(ConflictError):
    """Raised when the recipient already holds an envelope for the file."""

    code = "already_shared"


# =============================================================================
# Provider errors (transient)
# =============================================================================


class ProviderError(KeyManagementError):
    """Transient failure talking to the KMS."""

    category = "provider"


class ProviderUnavailableError(ProviderError):
    """Raised when the KMS cannot be reached or fails internally."""

    code = "provider_unavailable"


class ProviderQuotaExceededError(ProviderError):
    """Raised when the KMS throttles or a key quota is exhausted."""

    code = "provider_quota_exceeded"


# =============================================================================
# Integrity errors
# =============================================================================


class IntegrityError(KeyManagementError):
    """Fatal for the item at hand; retrying with the same key cannot succeed."""

    category = "integrity"


class KeyNotFoundError(IntegrityError):
    """Raised when a KEK is unknown, not the caller's, or revoked in the KMS."""

    code = "key_not_found"


class InvalidCiphertextError(IntegrityError):
    """Raised when a wrapped DEK does not authenticate under the given key."""

    code = "invalid_ciphertext"


# =============================================================================
# Lookup errors
# =============================================================================


class NotFoundError(KeyManagementError):
    """Referenced entity does not exist or is not visible to the caller."""

    category = "not_found"


class FileAccessError(NotFoundError):
    """Raised when a file is missing or the caller has no access to it."""

    code = "file_not_found"


class RecipientNotFoundError(NotFoundError):
    """Raised when a share recipient cannot be resolved to a user."""

    code = "recipient_not_found"


class ShareGroupNotFoundError(NotFoundError):
    """Raised when a share group is missing or owned by someone else."""

    code = "share_not_found"
