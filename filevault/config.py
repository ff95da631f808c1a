"""
Configuration management using Pydantic Settings.
Loads configuration from environment variables and .env file.
"""
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    DATABASE_HOST: str = "localhost"
    DATABASE_PORT: int = 5432
    DATABASE_NAME: str = "postgres"
    DATABASE_USER: str = "vault_user"
    DATABASE_PASSWORD: str  # Required - no default for security
    DATABASE_URL: Optional[str] = None  # Full URL override (e.g. sqlite+aiosqlite:// for tests)
    DB_SCHEMA: str = "vault"  # Schema name for all tables

    # Application Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS Configuration
    CORS_ORIGINS: str = "*"

    # Database Pool Configuration
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # Development/Debug
    DEBUG: bool = False
    RELOAD: bool = False

    # Authentication & JWT Configuration
    JWT_SECRET_KEY: str  # Required - no default for security
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_DAYS: int = 30

    # Key Management Configuration
    KMS_PROVIDER: str = "local"  # Options: local, aws-kms
    KMS_MASTER_KEY: Optional[str] = None  # Local provider only - falls back to JWT_SECRET_KEY
    KMS_KEY_DELETION_GRACE_DAYS: int = Field(default=7, ge=7, le=30)  # Pending window before the KMS destroys a key
    KMS_KEY_OWNER_TAG: str = "filevault"  # CreatedBy tag on provisioned keys

    # AWS KMS Configuration
    AWS_REGION: str = "ap-southeast-1"
    KMS_ENDPOINT_URL: Optional[str] = None  # Override for localstack and friends
    KMS_CONNECT_TIMEOUT: int = 5
    KMS_READ_TIMEOUT: int = 10
    KMS_MAX_ATTEMPTS: int = 3

    # Logging Configuration (Optional - per-module log levels)
    APP_LOG_LEVEL: Optional[str] = None
    SQLALCHEMY_LOG_LEVEL: Optional[str] = None
    UVICORN_LOG_LEVEL: Optional[str] = None
    HTTPX_LOG_LEVEL: Optional[str] = None
    ASYNCPG_LOG_LEVEL: Optional[str] = None
    BOTOCORE_LOG_LEVEL: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @property
    def database_url(self) -> str:
        """Construct async database URL."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}"
            f"@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"
        )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if self.CORS_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def kms_master_key(self) -> str:
        """
        Master secret for the local KMS provider.
        Falls back to JWT_SECRET_KEY if KMS_MASTER_KEY not set.
        """
        return self.KMS_MASTER_KEY or self.JWT_SECRET_KEY


# Global settings instance
settings = Settings()
