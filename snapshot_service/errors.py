"""Exception hierarchy shared by the store, queue, pool, and pipeline."""

from __future__ import annotations


class SnapshotServiceError(Exception):
    """Base class for errors raised by the snapshot pipeline."""


class SnapshotValidationError(SnapshotServiceError):
    """Input that can never render successfully no matter how often it is retried."""


class EmptySnapshotError(SnapshotValidationError):
    """Raised when a snapshot has no HTML content to render."""

    def __init__(self, snapshot_id: str | None = None) -> None:
        if snapshot_id:
            message = f"No HTML content available for snapshot {snapshot_id}"
        else:
            message = "No HTML content available for screenshot generation"
        super().__init__(message)
        self.snapshot_id = snapshot_id


class InvalidJobPayloadError(SnapshotValidationError):
    """Queue payload did not carry a usable ``snapshotId``."""


class SnapshotNotFoundError(SnapshotServiceError, KeyError):
    """Snapshot id is unknown to the store."""

    def __init__(self, snapshot_id: str) -> None:
        super().__init__(f"Snapshot not found: {snapshot_id}")
        self.snapshot_id = snapshot_id

    def __str__(self) -> str:  # KeyError would repr() the message
        return str(self.args[0])


class QueueUnavailableError(SnapshotServiceError):
    """The Redis backend behind the job queue could not be reached."""


class PoolExhaustedError(SnapshotServiceError):
    """Every browser slot is currently leased."""


class PoolNotInitializedError(SnapshotServiceError):
    """The browser pool was used after shutdown or before it could start."""
