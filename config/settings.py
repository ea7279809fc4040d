"""Unified application settings - single source of truth for all configuration"""

import base64
import binascii
import warnings
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ============================================================================
# APP SETTINGS
# ============================================================================


class AppSettings(BaseSettings):
    """Application-level settings"""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )

    name: str = Field(default="Storage Engine", description="Application name")
    version: str = Field(default="0.4.0", description="Application version")
    description: str = Field(
        default="Multi-backend storage abstraction and transfer engine",
        description="Application description",
    )
    debug: bool = Field(default=False, description="Debug mode")


# ============================================================================
# STORAGE SETTINGS
# ============================================================================


class StorageSettings(BaseSettings):
    """Storage backends, transfer buffers and staging settings"""

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        case_sensitive=False,
    )

    # Declarative backend configuration
    config_path: str = Field(default="config/storage.json", description="JSON array of backend configurations")
    default_local_root: str = Field(default="storage", description="Root of the generated default local backend")

    # Staging for archive build/extract (empty = system temp dir)
    staging_dir: str = Field(default="", description="Local directory for archive staging files")

    # Streaming buffers
    transfer_buffer_size: int = Field(
        default=1024 * 1024, ge=4096, le=16 * 1024 * 1024, description="Chunk size for backend streams (bytes)"
    )
    archive_buffer_size: int = Field(
        default=32 * 1024, ge=4096, le=16 * 1024 * 1024, description="Copy buffer for archive entries (bytes)"
    )

    # Network adapters
    http_timeout: float = Field(default=60.0, gt=0, description="Total HTTP timeout for REST adapters (seconds)")
    http_connect_timeout: float = Field(default=15.0, gt=0, description="HTTP connect timeout (seconds)")
    ftp_timeout: int = Field(default=30, ge=1, description="FTP/SFTP socket timeout (seconds)")
    mount_timeout: int = Field(default=60, ge=1, description="Timeout for NFS mount/umount commands (seconds)")

    # Key-value backend
    redis_max_file_size_mb: int = Field(default=100, ge=1, description="Max single file size in key-value store (MB)")
    redis_chunk_size: int = Field(default=512 * 1024, ge=4096, description="Content chunk size in key-value store")

    @field_validator("staging_dir")
    @classmethod
    def ensure_staging_exists(cls, v: str) -> str:
        """Ensure staging directory exists or can be created"""
        if not v:
            return v
        path = Path(v)
        if not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                warnings.warn(f"Could not create staging directory {v}: {e}", stacklevel=2)
        return v


# ============================================================================
# SECURITY SETTINGS
# ============================================================================


class SecuritySettings(BaseSettings):
    """Endpoint policy and secrets-at-rest settings"""

    model_config = SettingsConfigDict(
        env_prefix="SECURITY_",
        case_sensitive=False,
    )

    policy_path: str = Field(default="config/security.json", description="Persisted blocked-range policy record")

    # Encryption (Fernet) of secret backend parameters
    encryption_key: str = Field(default="", description="Fernet encryption key (base64, 32 bytes)")
    encryption_key_old: str = Field(default="", description="Previous Fernet key accepted for decryption")

    # Name lookup for endpoint validation
    resolve_timeout: float = Field(default=5.0, gt=0, description="DNS lookup timeout for endpoint validation")

    @field_validator("encryption_key", "encryption_key_old")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        """Validate Fernet encryption key"""
        if not v:
            return v
        try:
            key_bytes = base64.urlsafe_b64decode(v)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid Fernet encryption key: {e}") from e
        if len(key_bytes) != 32:
            raise ValueError("Encryption key must be 32 bytes when decoded")
        return v


# ============================================================================
# PROGRESS SETTINGS
# ============================================================================


class ProgressSettings(BaseSettings):
    """Progress broadcast settings"""

    model_config = SettingsConfigDict(
        env_prefix="PROGRESS_",
        case_sensitive=False,
    )

    throttle_ms: int = Field(default=100, ge=0, le=10_000, description="Min interval between intermediate samples")
    subscriber_queue_size: int = Field(default=256, ge=1, description="Outbound queue size per subscriber")


# ============================================================================
# MAIN SETTINGS
# ============================================================================


class Settings(BaseSettings):
    """Main settings aggregating all configuration sections"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    progress: ProgressSettings = Field(default_factory=ProgressSettings)

    @model_validator(mode="after")
    def validate_buffers(self) -> "Settings":
        """Archive buffer must not exceed the transfer chunk size"""
        if self.storage.archive_buffer_size > self.storage.transfer_buffer_size:
            raise ValueError("STORAGE_ARCHIVE_BUFFER_SIZE must not exceed STORAGE_TRANSFER_BUFFER_SIZE")
        return self


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Get settings singleton instance"""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def reset_settings() -> None:
    """Reset settings singleton (useful for testing)"""
    global _settings_instance
    _settings_instance = None
