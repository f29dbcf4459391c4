"""Core module - Shared configuration, hashing and types."""

from mediasync.core.config import DEFAULT_SYNC_INTERVAL_HOURS, ServerConfig, SyncSettings
from mediasync.core.hashing import (
    SAMPLED_HASH_THRESHOLD,
    compute_content_hash,
    compute_file_hash,
    compute_sampled_hash,
    uri_to_path,
)
from mediasync.core.types import MediaKind, MediaRecord, SyncState

__all__ = [
    # Config
    "DEFAULT_SYNC_INTERVAL_HOURS",
    "ServerConfig",
    "SyncSettings",
    # Hashing
    "SAMPLED_HASH_THRESHOLD",
    "compute_content_hash",
    "compute_file_hash",
    "compute_sampled_hash",
    "uri_to_path",
    # Types
    "MediaKind",
    "MediaRecord",
    "SyncState",
]
