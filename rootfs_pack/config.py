"""Configuration settings for rootfs_pack.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > job file > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 100 MiB, the documented RAM load window of the reference board
DEFAULT_MAX_SIZE_BYTES = 100 * 1024 * 1024


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "rootfs-pack" / "runs.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ROOTFS_PACK_ prefix.
    CLI flags and job files can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="ROOTFS_PACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the packaging run history",
    )
    mke2fs_path: str = Field(
        default="mke2fs",
        description="mke2fs executable (name on PATH or absolute path)",
    )
    debugfs_path: str = Field(
        default="debugfs",
        description="debugfs executable used to pin image timestamps",
    )
    e2fsck_path: str = Field(
        default="e2fsck",
        description="e2fsck executable used to check and finalize images",
    )

    # Image defaults
    max_size_bytes: int = Field(
        default=DEFAULT_MAX_SIZE_BYTES,
        gt=0,
        description="Default maximum image size in bytes",
    )
    fs_type: Literal["ext2", "ext3", "ext4"] = Field(
        default="ext4",
        description="Default image filesystem format",
    )
    block_size: Literal[1024, 2048, 4096] = Field(
        default=4096,
        description="Filesystem block size in bytes",
    )
    inode_size: Literal[128, 256] = Field(
        default=256,
        description="On-disk inode size in bytes",
    )
    headroom_percent: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Extra free space in percent on top of the projected size (opt-in)",
    )
    source_date_epoch: int = Field(
        default=0,
        ge=0,
        description="Timestamp pinned into the image for reproducible output",
    )

    # Operational modes
    record_runs: bool = Field(
        default=True,
        description="Record packaging runs in the history database",
    )
    write_manifest: bool = Field(
        default=True,
        description="Write a JSON manifest next to each image",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    mkfs_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for the filesystem format step",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_MAX_SIZE_BYTES",
    "Settings",
    "get_settings",
    "print_settings_json",
]
