"""Upload pipeline for items that the server does not hold yet.

This module provides:
- UploadPipeline: Uploads items sequentially or with bounded parallelism
- NetworkMonitor: Protocol reporting whether the current network is metered

Each item is retried with backoff on transient errors. A permanent failure
is recorded and the batch continues. A progress event is emitted after
every item, whatever its result. A confirmed upload writes the sync link and
the hash in one transaction.
An item whose retry wait is cut short by a cancel is left not uploaded.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Protocol

from mediasync.client.api import (
    RETRYABLE_EXCEPTIONS,
    MalformedResponseError,
    SessionExpiredError,
)
from mediasync.client.sync.change_detector import Hasher, hash_record
from mediasync.client.sync.retry import (
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_RETRIES,
    RetryCancelledError,
    retry_with_backoff,
)
from mediasync.client.sync.types import UploadConstraints, UploadOutcome, UploadProgress
from mediasync.core.hashing import uri_to_path
from mediasync.core.types import MediaRecord

if TYPE_CHECKING:
    from mediasync.client.api import CloudClient
    from mediasync.client.state import LocalMediaStore
    from mediasync.client.sync.progress import ProgressChannel

logger = logging.getLogger(__name__)

# Errors that end the whole pass instead of a single item
PASS_ABORTING_EXCEPTIONS: tuple[type[Exception], ...] = (
    SessionExpiredError,
    MalformedResponseError,
)


class NetworkMonitor(Protocol):
    """Reports the kind of network currently available."""

    def is_metered(self) -> bool:
        """Return True when the active connection is metered (e.g. cellular)."""
        ...


class UploadPipeline:
    """Uploads the needs-upload set of a pass."""

    def __init__(
        self,
        client: CloudClient,
        store: LocalMediaStore,
        progress: ProgressChannel[UploadProgress] | None = None,
        network: NetworkMonitor | None = None,
        max_parallel: int = 1,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        hasher: Hasher = hash_record,
        on_uploaded: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            client: HTTP client for uploads.
            store: Local store receiving sync links.
            progress: Channel receiving one event per completed item.
            network: Optional network monitor (None means unmetered).
            max_parallel: Maximum concurrent uploads (1 = sequential).
            max_retries: Retries per item on transient errors.
            initial_backoff: First retry delay in seconds.
            hasher: Hash function for items arriving without a hash.
            on_uploaded: Optional callback after each confirmed upload.
        """
        self._client = client
        self._store = store
        self._progress = progress
        self._network = network
        self._max_parallel = max(1, max_parallel)
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff
        self._hasher = hasher
        self._on_uploaded = on_uploaded

    def blocked_reason(self, constraints: UploadConstraints) -> str | None:
        """Why uploads may not run under the given constraints, if at all."""
        if not constraints.auto_upload:
            return "auto upload disabled"
        if (
            constraints.require_unmetered
            and self._network is not None
            and self._network.is_metered()
        ):
            return "waiting for an unmetered network"
        return None

    def upload(
        self,
        items: list[MediaRecord],
        constraints: UploadConstraints,
        hashes: dict[str, str] | None = None,
        already_synced: int = 0,
        cancel_event: threading.Event | None = None,
    ) -> UploadOutcome:
        """Upload items in order.

        Args:
            items: Records to upload.
            constraints: Upload constraints for this run.
            hashes: Known content hashes (uri -> hash).
            already_synced: Count reported back unchanged in the outcome.
            cancel_event: Checked between items; never interrupts an upload.

        Returns:
            UploadOutcome with uploaded, failed and not-uploaded items.

        Raises:
            SessionExpiredError: If the session ended during the run.
            MalformedResponseError: If the server answered off-protocol.
        """
        outcome = UploadOutcome(already_synced=already_synced)
        hashes = hashes or {}

        reason = self.blocked_reason(constraints)
        if reason is not None:
            logger.info(f"Not uploading {len(items)} items: {reason}")
            outcome.not_uploaded = [item.uri for item in items]
            return outcome
        if not items:
            return outcome

        if self._max_parallel == 1:
            self._run_sequential(items, hashes, outcome, cancel_event)
        else:
            self._run_parallel(items, hashes, outcome, cancel_event)

        logger.info(
            f"Upload finished: {outcome.uploaded_count} uploaded, "
            f"{outcome.failed_count} failed, {len(outcome.not_uploaded)} not uploaded"
        )
        return outcome

    def _emit(self, current_index: int, total_count: int) -> None:
        if self._progress is not None:
            self._progress.publish(UploadProgress(current_index, total_count))

    def _upload_one(
        self,
        record: MediaRecord,
        content_hash: str | None,
        cancel_event: threading.Event | None,
    ) -> None:
        if content_hash is None:
            content_hash = self._hasher(record)
        path = uri_to_path(record.uri)

        remote = retry_with_backoff(
            lambda: self._client.upload_media(path, record, content_hash),
            max_retries=self._max_retries,
            initial_backoff=self._initial_backoff,
            retryable_exceptions=RETRYABLE_EXCEPTIONS,
            cancel_event=cancel_event,
        )
        self._store.record_upload(record.uri, content_hash, remote.id)
        logger.debug(f"Uploaded {record.uri} as {remote.id}")
        if self._on_uploaded:
            self._on_uploaded(record.uri)

    def _run_sequential(
        self,
        items: list[MediaRecord],
        hashes: dict[str, str],
        outcome: UploadOutcome,
        cancel_event: threading.Event | None,
    ) -> None:
        total = len(items)
        for index, record in enumerate(items):
            if cancel_event is not None and cancel_event.is_set():
                outcome.cancelled = True
                outcome.not_uploaded.extend(item.uri for item in items[index:])
                logger.info(f"Upload cancelled after {index}/{total} items")
                return

            try:
                self._upload_one(record, hashes.get(record.uri), cancel_event)
                outcome.uploaded.append(record.uri)
            except RetryCancelledError:
                outcome.cancelled = True
                outcome.not_uploaded.extend(item.uri for item in items[index:])
                logger.info(f"Upload cancelled while retrying {record.uri}")
                return
            except PASS_ABORTING_EXCEPTIONS:
                raise
            except Exception as e:
                logger.error(f"Failed to upload {record.uri}: {e}")
                outcome.failed[record.uri] = str(e)

            self._emit(index + 1, total)

    def _run_parallel(
        self,
        items: list[MediaRecord],
        hashes: dict[str, str],
        outcome: UploadOutcome,
        cancel_event: threading.Event | None,
    ) -> None:
        total = len(items)
        counter_lock = threading.Lock()
        completed = 0
        abort = threading.Event()
        fatal: list[Exception] = []
        skipped: list[str] = []

        def stopped() -> bool:
            return abort.is_set() or (cancel_event is not None and cancel_event.is_set())

        def worker(record: MediaRecord) -> None:
            nonlocal completed
            if stopped():
                with counter_lock:
                    skipped.append(record.uri)
                return
            try:
                self._upload_one(record, hashes.get(record.uri), cancel_event)
            except RetryCancelledError:
                with counter_lock:
                    skipped.append(record.uri)
                return
            except PASS_ABORTING_EXCEPTIONS as e:
                abort.set()
                with counter_lock:
                    fatal.append(e)
                return
            except Exception as e:
                logger.error(f"Failed to upload {record.uri}: {e}")
                with counter_lock:
                    outcome.failed[record.uri] = str(e)
                    completed += 1
                    self._emit(completed, total)
                return
            with counter_lock:
                outcome.uploaded.append(record.uri)
                completed += 1
                self._emit(completed, total)

        with ThreadPoolExecutor(
            max_workers=min(self._max_parallel, total),
            thread_name_prefix="upload",
        ) as executor:
            for record in items:
                executor.submit(worker, record)

        if fatal:
            raise fatal[0]

        if skipped:
            outcome.cancelled = True
            order = {item.uri: i for i, item in enumerate(items)}
            outcome.not_uploaded.extend(sorted(skipped, key=order.__getitem__))
            logger.info(f"Upload cancelled with {len(skipped)} items left")
