"""Pydantic DTOs shared by the queue, pipeline, stats facade and CLI."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_VIEWPORT_WIDTH = 1920
DEFAULT_VIEWPORT_HEIGHT = 1080


class _CamelModel(BaseModel):
    """Serializes with camelCase keys while accepting snake_case on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_public(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Viewport(BaseModel):
    """Captured viewport; doubles as the render target size."""

    width: int = Field(default=DEFAULT_VIEWPORT_WIDTH, ge=1)
    height: int = Field(default=DEFAULT_VIEWPORT_HEIGHT, ge=1)


class SnapshotCreateRequest(BaseModel):
    """Payload a capture client submits for one page."""

    html: str = Field(description="Captured document markup")
    css: str | None = Field(default=None, description="Captured stylesheet text")
    url: str | None = Field(default=None, description="Page URL at capture time")
    viewport: Viewport | None = Field(default=None, description="Viewport at capture time")
    options: dict[str, Any] = Field(default_factory=dict, description="Opaque client options")


class JobPayload(_CamelModel):
    """Data carried by a queued job; only ``snapshot_id`` is authoritative."""

    snapshot_id: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class EnqueuedJob(_CamelModel):
    job_id: str
    snapshot_id: str


class SubmitResult(_CamelModel):
    """Returned to callers after a snapshot has been stored and queued."""

    snapshot_id: str
    job_id: str
    replay: bool = False


class JobView(_CamelModel):
    """Stable, serializable view of one queue job."""

    id: str
    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    progress: int = 0
    attempts_made: int = 0
    timestamp: int | None = None
    processed_on: int | None = None
    finished_on: int | None = None
    failed_reason: str | None = None


class JobStatusView(JobView):
    status: str


class JobNotFound(_CamelModel):
    """Lookup miss for an unknown job id."""

    status: Literal["not_found"] = "not_found"


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    total: int = 0

    @classmethod
    def from_states(cls, *, waiting: int, active: int, completed: int, failed: int, delayed: int) -> QueueCounts:
        return cls(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
            total=waiting + active + completed + failed + delayed,
        )


class JobListing(BaseModel):
    waiting: list[JobView] = Field(default_factory=list)
    active: list[JobView] = Field(default_factory=list)
    completed: list[JobView] = Field(default_factory=list)
    failed: list[JobView] = Field(default_factory=list)
    delayed: list[JobView] = Field(default_factory=list)

    def to_public(self) -> dict[str, list[dict[str, Any]]]:
        return {
            state: [job.to_public() for job in getattr(self, state)]
            for state in ("waiting", "active", "completed", "failed", "delayed")
        }


class PoolStats(_CamelModel):
    total_slots: int
    busy_slots: int
    available_slots: int
    is_initialized: bool


class ScreenshotMetadata(BaseModel):
    """Companion metadata stored next to screenshot bytes."""

    format: str
    width: int = Field(ge=0)
    height: int = Field(ge=0)
    size: int = Field(ge=0)
    taken_at: datetime
    method: str = "direct_html_load"
    viewport_width: int | None = None
    viewport_height: int | None = None
    device_scale_factor: float = 1.0
    full_page: bool = True
    quality: int = 100


class StorageStats(BaseModel):
    total_snapshots: int = 0
    total_html_bytes: int = 0
    total_css_bytes: int = 0
    screenshots_count: int = 0
    total_screenshot_bytes: int = 0
    status_counts: dict[str, int] = Field(default_factory=dict)
    oldest: datetime | None = None
    newest: datetime | None = None


class SnapshotSummary(BaseModel):
    """Row shape used for recent-snapshot listings."""

    id: str
    url: str | None = None
    viewport_width: int | None = None
    viewport_height: int | None = None
    processing_status: str
    queue_job_id: str | None = None
    html_size: int = 0
    css_size: int = 0
    has_screenshot: bool = False
    created_at: datetime
