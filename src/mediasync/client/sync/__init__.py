"""Media synchronization pipeline.

Architecture:
    ChangeDetector → DiffReconciler → UploadPipeline, driven by SyncEngine

Components:
- **ChangeDetector**: Reuses valid stored hashes, computes the rest on a thread pool
- **DiffReconciler**: One batched /media/sync call, partitions items by hash
- **UploadPipeline**: Uploads the delta with per-item retry and progress events
- **SyncEngine**: Runs at most one pass at a time, maps phases to overall progress
- **ProgressChannel**: Non-blocking broadcast of progress values

All public symbols are re-exported here.
"""

from mediasync.client.sync.change_detector import ChangeDetector, hash_record
from mediasync.client.sync.engine import SyncEngine, SyncScheduler
from mediasync.client.sync.progress import ProgressChannel, Subscription
from mediasync.client.sync.reconciler import SNAPSHOT_CACHE_TTL, DiffReconciler
from mediasync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    PASS_RETRY_BASE_DELAY,
    PASS_RETRY_MAX_DELAY,
    RetryCancelledError,
    backoff_delay,
    retry_with_backoff,
)
from mediasync.client.sync.types import (
    ContentHash,
    DetectedChanges,
    HashingError,
    SyncError,
    SyncLink,
    SyncOutcome,
    SyncResult,
    SyncSnapshot,
    UploadConstraints,
    UploadOutcome,
    UploadProgress,
)
from mediasync.client.sync.upload import NetworkMonitor, UploadPipeline

__all__ = [
    # Retry functions and constants
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "PASS_RETRY_BASE_DELAY",
    "PASS_RETRY_MAX_DELAY",
    "RetryCancelledError",
    "backoff_delay",
    "retry_with_backoff",
    # Types and dataclasses
    "ContentHash",
    "DetectedChanges",
    "HashingError",
    "SyncError",
    "SyncLink",
    "SyncOutcome",
    "SyncResult",
    "SyncSnapshot",
    "UploadConstraints",
    "UploadOutcome",
    "UploadProgress",
    # Pipeline stages
    "ChangeDetector",
    "hash_record",
    "DiffReconciler",
    "SNAPSHOT_CACHE_TTL",
    "NetworkMonitor",
    "UploadPipeline",
    # Engine
    "SyncEngine",
    "SyncScheduler",
    # Progress
    "ProgressChannel",
    "Subscription",
]
