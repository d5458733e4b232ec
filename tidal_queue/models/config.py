"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

# Stream quality codes accepted by the catalog, with display metadata
QUALITY_MAP = {
    "LOW": {
        "name": "AAC 96kbps",
        "short": "AAC 96",
        "ext": "m4a",
        "color": "yellow",
    },
    "HIGH": {
        "name": "AAC 320kbps",
        "short": "AAC 320",
        "ext": "m4a",
        "color": "yellow",
    },
    "LOSSLESS": {
        "name": "CD Lossless (16/44.1)",
        "short": "16/44.1",
        "ext": "flac",
        "color": "green",
    },
    "HI_RES_LOSSLESS": {
        "name": "Hi-Res Lossless (up to 24/192)",
        "short": "24/192",
        "ext": "flac",
        "color": "magenta",
    },
}


def get_quality_info(quality: str) -> dict[str, str]:
    """Gets all information for a given quality code from the central map."""
    return QUALITY_MAP.get(
        quality,
        {"name": "Unknown", "short": "Unknown", "ext": "flac", "color": "white"},
    )


class QueueConfig(BaseModel):
    """A validated configuration model for the queue, worker and uploader."""

    # Persistence
    redis_url: str = "redis://localhost:6379"
    redis_disabled: bool = False
    queue_key: str = "downloadQueue"

    # Worker
    max_concurrent: int = 6
    album_concurrency: int = 6
    poll_interval: float = 2.0
    processing_timeout_ms: int = 300_000
    cleanup_age_ms: int = 86_400_000
    default_max_retries: int = 3

    # Upload transport
    server_url: str = "http://localhost:5000"
    chunk_size: int = 2 * 1024 * 1024
    upload_timeout: float = 30.0

    # Logging
    log_dir: Optional[str] = None

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("max_concurrent", "album_concurrency")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensures a reasonable number of concurrent downloads."""
        if v < 1 or v > 32:
            raise ValueError("Concurrency must be between 1 and 32.")
        return v

    @field_validator("poll_interval", "upload_timeout")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Intervals and timeouts must be positive.")
        return v

    @field_validator("processing_timeout_ms", "cleanup_age_ms", "chunk_size")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be a positive integer.")
        return v

    @field_validator("default_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0 or v > 20:
            raise ValueError("Max retries must be between 0 and 20.")
        return v

    @field_validator("redis_url", "server_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v:
            raise ValueError("URL cannot be empty.")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_redis_scheme(self) -> "QueueConfig":
        """Checks that an enabled Redis URL uses a Redis scheme."""
        if not self.redis_disabled and not self.redis_url.startswith(
            ("redis://", "rediss://", "unix://")
        ):
            raise ValueError(
                f"Redis URL must start with redis://, rediss:// or unix://, "
                f"but got: {self.redis_url}"
            )
        return self

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        return set(cls.model_fields)
