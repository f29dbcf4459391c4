"""Sync engine coordinating media synchronization.

This module provides:
- SyncEngine: Runs one synchronization pass at a time
- SyncScheduler: Protocol of the background scheduler the engine calls out to

A pass runs: change detection -> reconciliation -> link recovery -> upload.
Overall progress is published in [0, 1]: hashing covers 0-0.4, the server
check 0.4-0.5 and the upload 0.5-1.0. A second trigger while a pass is in
flight is rejected with ALREADY_RUNNING.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Protocol

import httpx

from mediasync.client.api import (
    APIError,
    AuthenticationError,
    MalformedResponseError,
)
from mediasync.client.sync.change_detector import ChangeDetector
from mediasync.client.sync.progress import ProgressChannel
from mediasync.client.sync.reconciler import DiffReconciler
from mediasync.client.sync.types import (
    SyncOutcome,
    SyncResult,
    UploadConstraints,
    UploadProgress,
)
from mediasync.client.sync.upload import NetworkMonitor, UploadPipeline
from mediasync.core.config import SyncSettings
from mediasync.core.types import MediaRecord, SyncState

if TYPE_CHECKING:
    from mediasync.client.api import CloudClient
    from mediasync.client.state import LocalMediaStore

logger = logging.getLogger(__name__)

HASHING_PHASE_END = 0.4
SERVER_CHECK_PHASE_END = 0.5


class SyncScheduler(Protocol):
    """Background scheduler invoking the engine."""

    def schedule_periodic(
        self, interval_hours: float, require_unmetered: bool, auto_upload: bool = True
    ) -> None:
        """Run a pass every interval_hours, replacing any previous schedule."""
        ...

    def sync_now(self, auto_upload: bool = True) -> None:
        """Run a single pass as soon as possible."""
        ...

    def cancel(self) -> None:
        """Cancel periodic and pending passes."""
        ...


class SyncEngine:
    """Coordinates media synchronization between the local store and server."""

    def __init__(
        self,
        client: CloudClient,
        store: LocalMediaStore,
        settings: SyncSettings | None = None,
        network: NetworkMonitor | None = None,
        scheduler: SyncScheduler | None = None,
        detector: ChangeDetector | None = None,
        reconciler: DiffReconciler | None = None,
        pipeline: UploadPipeline | None = None,
        max_parallel_uploads: int = 1,
    ) -> None:
        """Initialize the sync engine.

        Args:
            client: HTTP client for server communication.
            store: Local state database.
            settings: Sync settings (defaults used when None).
            network: Optional network monitor for the unmetered constraint.
            scheduler: Optional background scheduler driven by apply_settings.
            detector: Change detector (built from store when None).
            reconciler: Reconciler (built from client and store when None).
            pipeline: Upload pipeline (built from client and store when None).
            max_parallel_uploads: Concurrent uploads for the default pipeline.
        """
        self._client = client
        self._store = store
        self._settings = settings or SyncSettings()
        self._scheduler = scheduler

        self.pass_progress: ProgressChannel[float] = ProgressChannel(position=float)
        self.upload_progress: ProgressChannel[UploadProgress] = ProgressChannel(
            position=lambda p: p.current_index
        )
        self.upload_progress.add_callback(self._on_upload_progress)

        self._detector = detector or ChangeDetector(store)
        self._reconciler = reconciler or DiffReconciler(client, store)
        self._pipeline = pipeline or UploadPipeline(
            client,
            store,
            progress=self.upload_progress,
            network=network,
            max_parallel=max_parallel_uploads,
        )

        self._sync_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._state = SyncState.IDLE
        self._last_result: SyncResult | None = None

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    @property
    def state(self) -> SyncState:
        """Current engine state."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._sync_lock.locked()

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    def _on_upload_progress(self, progress: UploadProgress) -> None:
        if progress.total_count:
            fraction = progress.current_index / progress.total_count
            span = 1.0 - SERVER_CHECK_PHASE_END
            self.pass_progress.publish(SERVER_CHECK_PHASE_END + span * fraction)

    def _on_hash_progress(self, done: int, total: int) -> None:
        if total:
            self.pass_progress.publish(HASHING_PHASE_END * done / total)

    # === Pass control ===

    def sync(
        self,
        auto_upload: bool | None = None,
        force_full_refresh: bool = False,
        records: list[MediaRecord] | None = None,
    ) -> SyncResult:
        """Run one synchronization pass.

        Args:
            auto_upload: Upload missing items (defaults to the settings value).
            force_full_refresh: Bypass the cached remote snapshot.
            records: Records to sync (defaults to every stored record).

        Returns:
            SyncResult describing the pass. Errors are reported through the
            outcome, never raised.
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Sync already in progress, rejecting trigger")
            return SyncResult(outcome=SyncOutcome.ALREADY_RUNNING)

        try:
            self._cancel_event.clear()
            self._state = SyncState.SYNCING
            self.pass_progress.reset()
            self.upload_progress.reset()
            self.pass_progress.publish(0.0)

            if auto_upload is None:
                auto_upload = self._settings.auto_upload
            result = self._run_pass(auto_upload, force_full_refresh, records)
            self._state = SyncState.IDLE
        except (AuthenticationError, MalformedResponseError) as e:
            logger.error(f"Sync failed permanently: {e}")
            self._state = SyncState.ERROR
            result = SyncResult(outcome=SyncOutcome.FATAL, error=str(e))
        except httpx.TransportError as e:
            logger.warning(f"Sync failed, server unreachable: {e}")
            self._state = SyncState.OFFLINE
            result = SyncResult(outcome=SyncOutcome.FAILED, error=str(e))
        except (APIError, httpx.RequestError) as e:
            logger.warning(f"Sync failed: {e}")
            self._state = SyncState.ERROR
            result = SyncResult(outcome=SyncOutcome.FAILED, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error during sync pass: {e}")
            self._state = SyncState.ERROR
            result = SyncResult(outcome=SyncOutcome.FAILED, error=str(e))
        finally:
            self._sync_lock.release()

        self._last_result = result
        return result

    def cancel(self) -> None:
        """Request cancellation of the running pass.

        Checked between items; an upload in flight is never interrupted.
        """
        if self.is_running:
            logger.info("Sync cancellation requested")
            self._cancel_event.set()

    def _cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _run_pass(
        self,
        auto_upload: bool,
        force_full_refresh: bool,
        records: list[MediaRecord] | None,
    ) -> SyncResult:
        if records is None:
            records = self._store.list_all()
        records = [r for r in records if not r.is_remote]
        by_uri = {r.uri: r for r in records}
        logger.info(f"Starting sync pass over {len(records)} items")

        # 1. Hash whatever changed
        changes = self._detector.detect_changes(
            records,
            on_progress=self._on_hash_progress,
            cancel_event=self._cancel_event,
        )
        if self._cancelled():
            return SyncResult(outcome=SyncOutcome.CANCELLED)
        self.pass_progress.publish(HASHING_PHASE_END)

        # 2. Ask the server what it holds
        local_hashes = changes.local_hashes
        snapshot = self._reconciler.reconcile(
            local_hashes,
            force_full_refresh=force_full_refresh,
            unhashed=changes.failed.keys(),
        )
        self._reconciler.repair_links(snapshot, local_hashes)
        self.pass_progress.publish(SERVER_CHECK_PHASE_END)

        result = SyncResult(
            outcome=SyncOutcome.COMPLETED,
            already_synced=sorted(snapshot.already_synced),
            remote_only=snapshot.remote_only,
            conflicts=sorted(snapshot.conflicts),
        )
        if self._cancelled():
            result.outcome = SyncOutcome.CANCELLED
            result.pending = list(snapshot.needs_upload)
            return result

        # 3. Upload the delta
        constraints = UploadConstraints(
            require_unmetered=self._settings.wifi_only,
            auto_upload=auto_upload,
        )
        items = [by_uri[uri] for uri in snapshot.needs_upload]
        outcome = self._pipeline.upload(
            items,
            constraints,
            hashes=local_hashes,
            already_synced=len(snapshot.already_synced),
            cancel_event=self._cancel_event,
        )
        if outcome.uploaded:
            self._reconciler.invalidate_cache()

        snapshot.uploaded = outcome.uploaded_count
        snapshot.failed = outcome.failed_count
        result.uploaded = list(outcome.uploaded)
        result.failed = list(outcome.failed)
        result.pending = list(outcome.not_uploaded)
        result.errors = [f"{uri}: {error}" for uri, error in outcome.failed.items()]

        if outcome.cancelled:
            result.outcome = SyncOutcome.CANCELLED
            return result

        self.pass_progress.publish(1.0)
        now = time.time()
        self._store.set_last_sync_time(now)
        self._settings.last_sync_time = now
        logger.info(
            f"Sync pass completed: {len(result.uploaded)} uploaded, "
            f"{len(result.already_synced)} already synced, {len(result.failed)} failed, "
            f"{result.pending_count} pending"
        )
        return result

    # === Scheduling ===

    def apply_settings(self, settings: SyncSettings) -> None:
        """Adopt new settings and reschedule background passes."""
        self._settings = settings
        if self._scheduler is None:
            return
        if settings.auto_sync_enabled:
            self._scheduler.schedule_periodic(
                settings.interval_hours,
                require_unmetered=settings.wifi_only,
                auto_upload=settings.auto_upload,
            )
        else:
            self._scheduler.cancel()

    def request_sync(self, auto_upload: bool | None = None) -> None:
        """Ask the scheduler for an immediate pass (runs inline without one)."""
        if auto_upload is None:
            auto_upload = self._settings.auto_upload
        if self._scheduler is not None:
            self._scheduler.sync_now(auto_upload=auto_upload)
        else:
            self.sync(auto_upload=auto_upload)

    def pending_count(self) -> int:
        """Number of local items with no confirmed upload of their content."""
        return len(self._store.list_unlinked())
