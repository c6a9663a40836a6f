"""SQLite persistence for snapshots, their processing status and screenshots."""

from __future__ import annotations

import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import zstandard as zstd
from sqlalchemy import Column, LargeBinary, func
from sqlalchemy.dialects.sqlite import JSON as SQLITE_JSON
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .errors import SnapshotNotFoundError
from .schemas import (
    DEFAULT_VIEWPORT_HEIGHT,
    DEFAULT_VIEWPORT_WIDTH,
    ScreenshotMetadata,
    SnapshotSummary,
    StorageStats,
)
from .settings import StorageSettings, get_settings


class ProcessingStatus(str, Enum):
    """Lifecycle of a snapshot as seen by the pipeline."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_snapshot_id() -> str:
    """Time-ordered id with a random suffix so concurrent submissions never collide."""

    return f"snapshot_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


class SnapshotRecord(SQLModel, table=True):
    """One captured page plus its processing and screenshot metadata."""

    __tablename__ = "snapshots"

    id: str = Field(primary_key=True)
    url: str | None = Field(default=None, index=True)
    html: str | None = None
    css: str | None = None
    html_compressed: bytes | None = Field(default=None, sa_column=Column(LargeBinary, nullable=True))
    css_compressed: bytes | None = Field(default=None, sa_column=Column(LargeBinary, nullable=True))
    compression_type: str = Field(default="none")
    original_html_size: int = 0
    original_css_size: int = 0
    compressed_html_size: int = 0
    compressed_css_size: int = 0
    viewport_width: int | None = None
    viewport_height: int | None = None
    options: dict[str, Any] | None = Field(default=None, sa_column=Column(SQLITE_JSON))
    queue_job_id: str | None = Field(default=None, index=True)
    processing_status: str = Field(default=ProcessingStatus.PENDING.value, index=True)
    screenshot: bytes | None = Field(default=None, sa_column=Column(LargeBinary, nullable=True))
    screenshot_format: str | None = None
    screenshot_width: int | None = None
    screenshot_height: int | None = None
    screenshot_size: int | None = None
    screenshot_metadata: dict[str, Any] | None = Field(default=None, sa_column=Column(SQLITE_JSON))
    screenshot_taken_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    updated_at: datetime = Field(default_factory=_utcnow)
    processed_at: datetime | None = None


@dataclass(slots=True)
class Snapshot:
    """Decoded snapshot handed to the pipeline (content already decompressed)."""

    id: str
    html: str | None
    css: str | None
    url: str | None = None
    viewport_width: int = DEFAULT_VIEWPORT_WIDTH
    viewport_height: int = DEFAULT_VIEWPORT_HEIGHT
    options: dict[str, Any] = field(default_factory=dict)
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    queue_job_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None
    screenshot_taken_at: datetime | None = None


@dataclass(slots=True)
class StoredScreenshot:
    data: bytes
    metadata: ScreenshotMetadata

    @property
    def content_type(self) -> str:
        return f"image/{self.metadata.format}"


@dataclass(frozen=True)
class StorageConfig:
    """Resolved database location and compression policy."""

    db_path: Path
    compression: str = "zstd"
    compression_level: int = 10

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> StorageConfig:
        return cls(
            db_path=settings.db_path,
            compression=settings.compression,
            compression_level=settings.compression_level,
        )


class Store:
    """Facade around the SQLite snapshot table.

    All methods are synchronous; async callers go through ``asyncio.to_thread``.
    """

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig.from_settings(get_settings().storage)
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{self.config.db_path}",
            connect_args={"check_same_thread": False},
        )
        SQLModel.metadata.create_all(self.engine)
        self._compressor = zstd.ZstdCompressor(level=self.config.compression_level)
        self._decompressor = zstd.ZstdDecompressor()

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    # ------------------------------------------------------------------ writes

    def save(self, snapshot: Snapshot) -> str:
        """Insert a new snapshot row and return its id."""

        record = SnapshotRecord(
            id=snapshot.id,
            url=snapshot.url,
            viewport_width=snapshot.viewport_width,
            viewport_height=snapshot.viewport_height,
            options=snapshot.options or None,
            queue_job_id=snapshot.queue_job_id,
            processing_status=ProcessingStatus(snapshot.processing_status).value,
        )
        self._encode_content(record, html=snapshot.html, css=snapshot.css)
        with self.session() as session:
            session.add(record)
            session.commit()
        return snapshot.id

    def update_status(
        self,
        snapshot_id: str,
        status: ProcessingStatus | str,
        processed_at: datetime | None = None,
    ) -> None:
        normalized = ProcessingStatus(status)
        with self.session() as session:
            record = self._require(session, snapshot_id)
            record.processing_status = normalized.value
            record.processed_at = processed_at
            record.updated_at = _utcnow()
            session.add(record)
            session.commit()

    def update_job_reference(self, snapshot_id: str, job_id: str) -> None:
        with self.session() as session:
            record = self._require(session, snapshot_id)
            record.queue_job_id = job_id
            record.updated_at = _utcnow()
            session.add(record)
            session.commit()

    def clear_content(self, snapshot_id: str) -> bool:
        """Drop captured markup to reclaim space; returns whether anything was removed."""

        with self.session() as session:
            record = self._require(session, snapshot_id)
            had_content = any(
                value is not None
                for value in (record.html, record.css, record.html_compressed, record.css_compressed)
            )
            record.html = None
            record.css = None
            record.html_compressed = None
            record.css_compressed = None
            record.updated_at = _utcnow()
            session.add(record)
            session.commit()
        return had_content

    def save_screenshot(self, snapshot_id: str, data: bytes, metadata: ScreenshotMetadata) -> None:
        with self.session() as session:
            record = self._require(session, snapshot_id)
            record.screenshot = data
            record.screenshot_format = metadata.format
            record.screenshot_width = metadata.width
            record.screenshot_height = metadata.height
            record.screenshot_size = len(data)
            record.screenshot_metadata = metadata.model_dump(mode="json")
            record.screenshot_taken_at = metadata.taken_at
            record.updated_at = _utcnow()
            session.add(record)
            session.commit()

    # ------------------------------------------------------------------- reads

    def get_by_id(self, snapshot_id: str) -> Snapshot | None:
        with self.session() as session:
            record = session.get(SnapshotRecord, snapshot_id)
            if record is None:
                return None
            return self._to_snapshot(record)

    def get_screenshot(self, snapshot_id: str) -> StoredScreenshot | None:
        with self.session() as session:
            record = session.get(SnapshotRecord, snapshot_id)
            if record is None or record.screenshot is None:
                return None
            payload = dict(record.screenshot_metadata or {})
            payload.setdefault("format", record.screenshot_format or "png")
            payload.setdefault("width", record.screenshot_width or 0)
            payload.setdefault("height", record.screenshot_height or 0)
            payload.setdefault("taken_at", record.screenshot_taken_at or record.updated_at)
            payload["size"] = record.screenshot_size or len(record.screenshot)
            return StoredScreenshot(
                data=bytes(record.screenshot),
                metadata=ScreenshotMetadata.model_validate(payload),
            )

    def list_recent(self, limit: int = 50) -> list[SnapshotSummary]:
        statement = select(SnapshotRecord).order_by(SnapshotRecord.created_at.desc()).limit(limit)  # type: ignore[attr-defined]
        with self.session() as session:
            return [
                SnapshotSummary(
                    id=record.id,
                    url=record.url,
                    viewport_width=record.viewport_width,
                    viewport_height=record.viewport_height,
                    processing_status=record.processing_status,
                    queue_job_id=record.queue_job_id,
                    html_size=record.original_html_size,
                    css_size=record.original_css_size,
                    has_screenshot=record.screenshot is not None,
                    created_at=record.created_at,
                )
                for record in session.exec(statement).all()
            ]

    def database_stats(self) -> StorageStats:
        with self.session() as session:
            totals = session.exec(
                select(
                    func.count(SnapshotRecord.id),
                    func.coalesce(func.sum(SnapshotRecord.original_html_size), 0),
                    func.coalesce(func.sum(SnapshotRecord.original_css_size), 0),
                    func.coalesce(func.sum(SnapshotRecord.screenshot_size), 0),
                    func.min(SnapshotRecord.created_at),
                    func.max(SnapshotRecord.created_at),
                )
            ).one()
            screenshots = session.exec(
                select(func.count(SnapshotRecord.id)).where(SnapshotRecord.screenshot_size.is_not(None))  # type: ignore[union-attr]
            ).one()
            by_status = session.exec(
                select(SnapshotRecord.processing_status, func.count(SnapshotRecord.id)).group_by(
                    SnapshotRecord.processing_status
                )
            ).all()
        total, html_bytes, css_bytes, screenshot_bytes, oldest, newest = totals
        return StorageStats(
            total_snapshots=total,
            total_html_bytes=html_bytes,
            total_css_bytes=css_bytes,
            screenshots_count=screenshots,
            total_screenshot_bytes=screenshot_bytes,
            status_counts={status: count for status, count in by_status},
            oldest=oldest,
            newest=newest,
        )

    # ----------------------------------------------------------------- helpers

    @staticmethod
    def _require(session: Session, snapshot_id: str) -> SnapshotRecord:
        record = session.get(SnapshotRecord, snapshot_id)
        if record is None:
            raise SnapshotNotFoundError(snapshot_id)
        return record

    def _encode_content(self, record: SnapshotRecord, *, html: str | None, css: str | None) -> None:
        html_bytes = html.encode("utf-8") if html is not None else None
        css_bytes = css.encode("utf-8") if css is not None else None
        record.original_html_size = len(html_bytes or b"")
        record.original_css_size = len(css_bytes or b"")
        if self.config.compression == "zstd":
            record.compression_type = "zstd"
            record.html_compressed = self._compressor.compress(html_bytes) if html_bytes is not None else None
            record.css_compressed = self._compressor.compress(css_bytes) if css_bytes is not None else None
            record.compressed_html_size = len(record.html_compressed or b"")
            record.compressed_css_size = len(record.css_compressed or b"")
            record.html = None
            record.css = None
            return
        record.compression_type = "none"
        record.html = html
        record.css = css

    def _decode(self, raw: str | None, compressed: bytes | None, compression_type: str) -> str | None:
        if compression_type == "zstd" and compressed is not None:
            return self._decompressor.decompress(compressed).decode("utf-8")
        return raw

    def _to_snapshot(self, record: SnapshotRecord) -> Snapshot:
        return Snapshot(
            id=record.id,
            html=self._decode(record.html, record.html_compressed, record.compression_type),
            css=self._decode(record.css, record.css_compressed, record.compression_type),
            url=record.url,
            viewport_width=record.viewport_width or DEFAULT_VIEWPORT_WIDTH,
            viewport_height=record.viewport_height or DEFAULT_VIEWPORT_HEIGHT,
            options=dict(record.options or {}),
            processing_status=ProcessingStatus(record.processing_status),
            queue_job_id=record.queue_job_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
            processed_at=record.processed_at,
            screenshot_taken_at=record.screenshot_taken_at,
        )


def build_store(settings: StorageSettings | None = None) -> Store:
    """Convenience factory used by the service wiring."""

    return Store(StorageConfig.from_settings(settings or get_settings().storage))
