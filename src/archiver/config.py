"""Configuration management for archiver."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CACHE_FILE_NAME = ".meta.csv"
LOG_FILE_NAME = "archiver.log"
MiB = 1024 * 1024


class ArchiverConfig(BaseSettings):
    """Configuration for an archiver session."""

    # Default to ~/.archiver but allow override with env var
    home: Path = Field(
        default_factory=lambda: Path.home() / ".archiver",
        description="Base path for archiver log files",
    )

    cache_file_name: str = Field(
        default=CACHE_FILE_NAME,
        description="Reserved name of the per-root metadata cache",
    )

    hash_chunk_size: int = Field(default=MiB, description="Scanner read buffer in bytes")
    copy_chunk_size: int = Field(default=MiB, description="Executor copy buffer in bytes")

    event_queue_size: int = Field(
        default=256,
        description="Bound of the shared event queue, a full queue stalls producers",
    )

    tick_interval: float = Field(default=1.0, description="Seconds between UI ticks")

    auto_resolve: bool = Field(
        default=True,
        description="Run auto-resolution once every root has been scanned",
    )

    log_level: str = "INFO"
    log_to_console: bool = Field(
        default=False,
        description="Also log to stderr, interleaved with progress output",
    )

    model_config = SettingsConfigDict(
        env_prefix="ARCHIVER_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def log_path(self) -> Path:
        """Get log file path."""
        return self.home / LOG_FILE_NAME

    @field_validator("hash_chunk_size", "copy_chunk_size", "event_queue_size")
    @classmethod
    def ensure_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("tick_interval")
    @classmethod
    def ensure_positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


# Load archiver config
config = ArchiverConfig()
