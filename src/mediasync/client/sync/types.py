"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, HashingError: Exception classes
- ContentHash, SyncLink: Persisted hash and local/remote join records
- DetectedChanges: Result of change detection
- SyncSnapshot: Per-pass partition of local items
- UploadConstraints, UploadProgress, UploadOutcome: Upload pipeline types
- SyncOutcome, SyncResult: Overall pass result
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from mediasync.core.types import MediaRecord

if TYPE_CHECKING:
    from mediasync.client.api import RemoteRecord


class SyncError(Exception):
    """Base exception for sync errors."""


class HashingError(SyncError):
    """Failed to compute a content hash for a local item."""


@dataclass(frozen=True)
class ContentHash:
    """A persisted content hash.

    Only trusted when computed_at >= modified_at of the described record.
    """

    uri: str
    hash: str
    computed_at: float

    def is_valid_for(self, record: MediaRecord) -> bool:
        """Check that the hash is not older than the record content."""
        return self.computed_at >= record.modified_at


@dataclass(frozen=True)
class SyncLink:
    """Durable join between a local item and its confirmed remote copy."""

    local_uri: str
    remote_id: str
    hash: str
    synced_at: float


@dataclass
class DetectedChanges:
    """Result of change detection over a set of local records.

    Attributes:
        with_valid_hash: Items whose stored hash is still valid (uri -> hash).
        needing_hash: Items that required a fresh hash this pass.
        computed: Freshly computed hashes (uri -> hash).
        failed: Items whose hash could not be computed (uri -> error).
    """

    with_valid_hash: dict[str, str] = field(default_factory=dict)
    needing_hash: list[str] = field(default_factory=list)
    computed: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def local_hashes(self) -> dict[str, str]:
        """All usable hashes for this pass."""
        return {**self.with_valid_hash, **self.computed}


@dataclass
class SyncSnapshot:
    """Partition of local items for one reconciliation pass.

    Exists only for the duration of one pass.

    Attributes:
        already_synced: Items the server holds with an identical hash.
        needs_upload: Items to upload, in local order.
        remote_only: Server records matching no local hash.
        conflicts: Items whose hash matches a remote record other than the
            one they were previously linked to.
        matched: Remote record each already-synced item matched.
        uploaded: Items uploaded during this pass.
        failed: Items that failed during this pass.
    """

    already_synced: set[str] = field(default_factory=set)
    needs_upload: list[str] = field(default_factory=list)
    remote_only: list[RemoteRecord] = field(default_factory=list)
    conflicts: set[str] = field(default_factory=set)
    matched: dict[str, RemoteRecord] = field(default_factory=dict)
    uploaded: int = 0
    failed: int = 0


@dataclass(frozen=True)
class UploadConstraints:
    """Caller-supplied constraints for the upload pipeline."""

    require_unmetered: bool = False
    auto_upload: bool = True


@dataclass(frozen=True)
class UploadProgress:
    """Progress event emitted after each upload item completes."""

    current_index: int
    total_count: int

    @property
    def percent(self) -> float:
        """Get progress percentage."""
        if self.total_count == 0:
            return 100.0
        return (self.current_index / self.total_count) * 100


@dataclass
class UploadOutcome:
    """Result of an upload pipeline run."""

    uploaded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    not_uploaded: list[str] = field(default_factory=list)
    already_synced: int = 0
    cancelled: bool = False

    @property
    def uploaded_count(self) -> int:
        return len(self.uploaded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


class SyncOutcome(str, Enum):
    """How a sync pass ended.

    FAILED passes may be retried by the scheduler; FATAL ones may not.
    """

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ALREADY_RUNNING = "already_running"
    FAILED = "failed"
    FATAL = "fatal"


@dataclass
class SyncResult:
    """Result of a sync pass."""

    outcome: SyncOutcome
    uploaded: list[str] = field(default_factory=list)
    already_synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    remote_only: list[RemoteRecord] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == SyncOutcome.COMPLETED

    @property
    def should_retry(self) -> bool:
        """Whether a scheduler should retry the whole pass later."""
        return self.outcome == SyncOutcome.FAILED

    @property
    def pending_count(self) -> int:
        """Number of files still needing upload after this pass."""
        return len(self.pending)
