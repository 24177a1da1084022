"""Homify contract models.

JobRecord and SubmitJobResponse mirror the remote engine's payloads and keep
its field names. PhotoRecord is persisted in the client's camelCase format so
an existing saved-photos collection loads unchanged.
"""

from __future__ import annotations

import re
import secrets
import time
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

JobStatus = Literal["processing", "done", "error"]
PhotoStatus = Literal["processing", "completed", "failed"]
WorkflowType = Literal["room_creation", "style_application"]
WorkflowStatus = Literal["started", "processing", "emptying", "completed", "error", "failed"]
SubmitMode = Literal["empty", "style", "unified"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"done", "error"})
TERMINAL_WORKFLOW_STATUSES: frozenset[str] = frozenset({"completed", "failed", "error"})

_UUID_V4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_job_id(value: str | None) -> bool:
    """True when ``value`` is a UUID v4 string, the only shape the engine issues."""
    return value is not None and _UUID_V4_RE.match(value) is not None


def utc_now() -> datetime:
    return datetime.now(UTC)


# === Remote engine payloads ===


class JobRecord(BaseModel):
    """One row of the remote jobs table. Read-only on this side."""

    id: str
    status: JobStatus
    original_path: str = ""
    empty_path: str | None = None
    styled_path: str | None = None
    applied_style: str | None = None
    user_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class ImageInfo(BaseModel):
    """What the client learned about an image while preparing its upload."""

    content_type: str
    width: int
    height: int
    file_size: int


class SubmitJobResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: JobStatus | None = None
    message: str | None = None
    # Filled in locally, never part of the wire payload.
    image: ImageInfo | None = Field(default=None, exclude=True)


# === Local records ===


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PhotoMetadata(_CamelModel):
    width: int | None = None
    height: int | None = None
    file_size: int | None = None
    job_id: str | None = None
    workflow_id: str | None = None


class PhotoRecord(_CamelModel):
    id: str
    original_url: str
    empty_url: str | None = None
    styled_url: str | None = None
    style: str | None = None
    room_type: str | None = None
    status: PhotoStatus
    created_at: datetime = Field(default_factory=utc_now)
    metadata: PhotoMetadata = Field(default_factory=PhotoMetadata)


# Fields a PhotoRecord may change after creation.
MUTABLE_PHOTO_FIELDS: frozenset[str] = frozenset(
    {"status", "empty_url", "styled_url", "style", "metadata"}
)


def new_photo_id() -> str:
    """``photo_<epoch-ms>_<9 base36 chars>``, unique enough for one device."""
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"photo_{int(time.time() * 1000)}_{suffix}"


class WorkflowRecord(BaseModel):
    """One user-initiated transformation, bound to exactly one photo."""

    id: str
    type: WorkflowType
    photo_id: str
    original_image_uri: str
    status: WorkflowStatus = "started"
    job_id: str | None = None
    room_type: str | None = None
    target_style: str | None = None
    empty_room_uri: str | None = None
    styled_room_uri: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES


class Notification(BaseModel):
    id: str
    type: Literal["download_complete", "processing_complete"]
    title: str
    body: str
    data: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utc_now)


# === API ===


class StyleApplicationRequest(BaseModel):
    empty_image_uri: str
    style: str = Field(min_length=1)
    photo_id: str


class WorkflowStartedResponse(BaseModel):
    workflow_id: str
    photo_id: str
    job_id: str | None = None


class MarkFailedRequest(BaseModel):
    reason: str | None = None


class PollingStatusResponse(BaseModel):
    active_polling_count: int
    failed_jobs_count: int


class CountResponse(BaseModel):
    count: int


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool = False
