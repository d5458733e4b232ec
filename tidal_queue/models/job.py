"""
Pydantic models for download jobs and the JSON record format they are
persisted in.

Records are flat camelCase JSON objects, one per job, stored as values of a
single hash. Every record carries a ``schemaVersion``; records written before
versioning existed are read as version 1.
"""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tidal_queue.exceptions import JobRecordError
from tidal_queue.models.config import QUALITY_MAP

SCHEMA_VERSION = 1


class JobStatus(str, Enum):
    """Lifecycle states of a queued job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class JobPriority(str, Enum):
    """Scheduling priority. Higher rank is dequeued first."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {JobPriority.LOW: 1, JobPriority.NORMAL: 2, JobPriority.HIGH: 3}


class ErrorCategory(str, Enum):
    """Failure taxonomy shared by the classifier and persisted job records."""

    NETWORK = "network"
    API_ERROR = "api_error"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


class TrackStatus(str, Enum):
    """Per-track state inside an album job."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class _WireModel(BaseModel):
    class Config:
        """Pydantic model configuration."""

        alias_generator = to_camel
        populate_by_name = True


def _check_quality(v: str) -> str:
    if v not in QUALITY_MAP:
        raise ValueError(f"Quality must be one of {', '.join(QUALITY_MAP)}.")
    return v


class TrackJob(_WireModel):
    """Download a single track."""

    type: Literal["track"] = "track"
    track_id: int
    quality: str
    album_title: Optional[str] = None
    artist_name: Optional[str] = None
    track_title: Optional[str] = None
    track_number: Optional[int] = None
    cover_url: Optional[str] = None

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, v: str) -> str:
        return _check_quality(v)

    @property
    def target_id(self) -> int:
        return self.track_id


class AlbumJob(_WireModel):
    """Download every track of an album."""

    type: Literal["album"] = "album"
    album_id: int
    quality: str
    album_title: Optional[str] = None
    artist_name: Optional[str] = None
    track_count: Optional[int] = None

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, v: str) -> str:
        return _check_quality(v)

    @property
    def target_id(self) -> int:
        return self.album_id


JobPayload = Annotated[Union[TrackJob, AlbumJob], Field(discriminator="type")]


def dedup_key(payload: Union[TrackJob, AlbumJob]) -> tuple[str, int, str]:
    """Identity used to detect duplicate submissions."""
    return payload.type, payload.target_id, payload.quality


class TrackProgress(_WireModel):
    track_id: int
    track_title: Optional[str] = None
    status: TrackStatus = TrackStatus.PENDING
    error: Optional[str] = None


class Job(_WireModel):
    """
    A queued download request tracked through its lifecycle.

    Unknown fields are retained so that records written by a newer schema
    version survive a read-modify-write by this version unchanged.
    """

    class Config:
        """Pydantic model configuration."""

        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"

    schema_version: int = SCHEMA_VERSION
    id: str
    payload: JobPayload = Field(alias="job")
    status: JobStatus = JobStatus.QUEUED
    progress: float = Field(0.0, ge=0.0, le=1.0)
    priority: JobPriority = JobPriority.NORMAL

    retry_count: int = Field(0, ge=0)
    max_retries: int = Field(3, ge=0)
    next_retry_at: Optional[int] = None
    cancellation_requested: bool = False

    track_count: Optional[int] = Field(None, ge=0)
    completed_tracks: Optional[int] = Field(None, ge=0)
    track_progress: list[TrackProgress] = Field(default_factory=list)

    created_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    last_updated_at: Optional[int] = None

    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    last_error: Optional[str] = None
    download_time_ms: Optional[int] = None
    file_size: Optional[int] = None

    @model_validator(mode="after")
    def validate_track_counts(self) -> "Job":
        """Ensures an album never reports more finished tracks than it has."""
        if (
            self.track_count is not None
            and self.completed_tracks is not None
            and self.completed_tracks > self.track_count
        ):
            raise ValueError(
                f"completedTracks ({self.completed_tracks}) exceeds "
                f"trackCount ({self.track_count})."
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_record(self) -> str:
        """Serializes the job to its persisted JSON form."""
        return json.dumps(
            self.model_dump(mode="json", by_alias=True, exclude_none=True)
        )

    @classmethod
    def from_record(cls, raw: Union[str, bytes]) -> "Job":
        """
        Parses and validates a persisted record.

        Raises:
            JobRecordError: If the record is not valid JSON, fails validation,
            or carries fields unknown to its own schema version.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as e:
            raise JobRecordError(f"Job record is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise JobRecordError("Job record is not a JSON object.")

        try:
            job = cls.model_validate(data)
        except ValidationError as e:
            raise JobRecordError(
                f"Job record '{data.get('id', '?')}' failed validation:\n{e}"
            ) from e

        extras = job.model_extra or {}
        if extras and job.schema_version <= SCHEMA_VERSION:
            raise JobRecordError(
                f"Job record '{job.id}' (schema v{job.schema_version}) has unknown "
                f"fields: {', '.join(sorted(extras))}"
            )
        return job

    def merged(self, changes: dict[str, Any]) -> "Job":
        """
        Returns a validated copy of this job with ``changes`` applied.

        Keys are Python field names. Setting a field to ``None`` clears it.
        """
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise JobRecordError(
                f"Unknown job fields in update: {', '.join(sorted(unknown))}"
            )
        data = self.model_dump()
        data.update(changes)
        try:
            return type(self).model_validate(data)
        except ValidationError as e:
            raise JobRecordError(f"Invalid update for job '{self.id}':\n{e}") from e
