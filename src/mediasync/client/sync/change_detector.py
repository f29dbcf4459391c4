"""Change detection based on content hashes.

This module provides:
- ChangeDetector: Finds local items whose stored hash is missing or stale
  and computes fresh hashes on a thread pool

A stored hash is reused only when it was computed at or after the item's
last modification. Everything else is hashed again, off the calling
thread, and written back to the store as each hash completes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from mediasync.client.sync.types import DetectedChanges, HashingError
from mediasync.core.hashing import compute_content_hash, uri_to_path
from mediasync.core.types import MediaRecord

if TYPE_CHECKING:
    from mediasync.client.state import LocalMediaStore

logger = logging.getLogger(__name__)

DEFAULT_HASH_WORKERS = 4

# Hash function signature: record -> content hash
Hasher = Callable[[MediaRecord], str]

# Hashing progress callback: (done, total)
HashProgressCallback = Callable[[int, int], None]


def hash_record(record: MediaRecord) -> str:
    """Compute the content hash of a local media record.

    Raises:
        HashingError: If the file cannot be read.
    """
    try:
        return compute_content_hash(uri_to_path(record.uri))
    except (OSError, ValueError) as e:
        raise HashingError(f"Cannot hash {record.uri}: {e}") from e


class ChangeDetector:
    """Determines which local items need a fresh hash and computes them."""

    def __init__(
        self,
        store: LocalMediaStore,
        hasher: Hasher = hash_record,
        max_workers: int = DEFAULT_HASH_WORKERS,
    ) -> None:
        """Initialize the detector.

        Args:
            store: Hash store to read and update.
            hasher: Function computing the hash of a record.
            max_workers: Size of the hashing thread pool.
        """
        self._store = store
        self._hasher = hasher
        self._max_workers = max(1, max_workers)

    def detect_changes(
        self,
        records: Iterable[MediaRecord],
        on_progress: HashProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DetectedChanges:
        """Split records by hash validity and hash the ones that need it.

        Args:
            records: Local records to examine.
            on_progress: Optional callback after each hash completes.
            cancel_event: Optional event; pending hashes are abandoned once set.

        Returns:
            DetectedChanges with reused, computed and failed hashes.
        """
        records = list(records)
        stored = self._store.get_content_hashes(r.uri for r in records)

        changes = DetectedChanges()
        to_hash: list[MediaRecord] = []
        for record in records:
            content_hash = stored.get(record.uri)
            if content_hash is not None and content_hash.is_valid_for(record):
                changes.with_valid_hash[record.uri] = content_hash.hash
            else:
                changes.needing_hash.append(record.uri)
                to_hash.append(record)

        logger.info(
            f"Change detection: {len(changes.with_valid_hash)} unchanged, "
            f"{len(to_hash)} need hashing"
        )
        if to_hash:
            self._compute(to_hash, changes, on_progress, cancel_event)
        return changes

    def _hash_one(self, record: MediaRecord) -> tuple[str, float]:
        started = time.time()
        value = self._hasher(record)
        # Clamp so items with future modification times still validate
        return value, max(started, record.modified_at)

    def _compute(
        self,
        records: list[MediaRecord],
        changes: DetectedChanges,
        on_progress: HashProgressCallback | None,
        cancel_event: threading.Event | None,
    ) -> None:
        total = len(records)
        done = 0

        with ThreadPoolExecutor(
            max_workers=min(self._max_workers, total),
            thread_name_prefix="hash",
        ) as executor:
            futures: dict[Future[tuple[str, float]], MediaRecord] = {
                executor.submit(self._hash_one, record): record for record in records
            }

            for future in as_completed(futures):
                record = futures[future]
                try:
                    value, computed_at = future.result()
                except Exception as e:
                    # Recorded per item, the rest of the batch continues
                    logger.warning(f"Hashing failed for {record.uri}: {e}")
                    changes.failed[record.uri] = str(e)
                else:
                    self._store.put_hash(record.uri, value, computed_at)
                    changes.computed[record.uri] = value

                done += 1
                if on_progress:
                    on_progress(done, total)

                if cancel_event is not None and cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()
                    logger.info(f"Hashing cancelled after {done}/{total} items")
                    break
