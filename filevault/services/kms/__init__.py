"""
KMS providers package.

Provides the KMS client adapter used by the key registry and envelope engine.
Each provider implements the KMSProvider ABC.

Available providers:
- LocalKMSProvider: In-process keys derived from a local master secret
- AWSKMSProvider: AWS KMS symmetric keys via boto3
"""

from filevault.services.kms.base import KMSKeyHandle, KMSProvider, WrappedKey
from filevault.services.kms.local_kms import LocalKMSProvider

__all__ = [
    "KMSKeyHandle",
    "KMSProvider",
    "WrappedKey",
    "LocalKMSProvider",
    "create_kms_provider",
]


def create_kms_provider(provider: str = "local") -> KMSProvider:
    """
    Factory function to create the configured KMS provider.

    Args:
        provider: Provider type ("local" or "aws-kms")

    Returns:
        Configured KMSProvider

    Raises:
        ValueError: If provider is not supported
    """
    from filevault.config import settings

    if provider == "local":
        return LocalKMSProvider(master_key=settings.kms_master_key)

    if provider == "aws-kms":
        from filevault.services.kms.aws_kms import AWSKMSProvider

        return AWSKMSProvider(
            region=settings.AWS_REGION,
            endpoint_url=settings.KMS_ENDPOINT_URL,
            connect_timeout=settings.KMS_CONNECT_TIMEOUT,
            read_timeout=settings.KMS_READ_TIMEOUT,
            max_attempts=settings.KMS_MAX_ATTEMPTS,
            created_by_tag=settings.KMS_KEY_OWNER_TAG,
        )

    raise ValueError(f"Unsupported KMS provider: {provider}")
