"""Tests for the sync engine."""

import sqlite3
import threading
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from mediasync.client.api import (
    APIError,
    CloudClient,
    MalformedResponseError,
    RemoteRecord,
    SessionExpiredError,
    ServerError,
)
from mediasync.client.state import LocalMediaStore
from mediasync.client.sync import ChangeDetector, SyncEngine, SyncOutcome
from mediasync.core.config import ServerConfig, SyncSettings
from mediasync.core.types import MediaKind, MediaRecord, SyncState


class FakeServer:
    """In-memory media server speaking the CloudClient interface."""

    def __init__(self) -> None:
        self.records: list[RemoteRecord] = []
        self.sync_calls: list[dict[str, str]] = []
        self.upload_calls: list[str] = []
        self.sync_error: Exception | None = None
        self.sync_hook = None
        self.upload_hook = None
        self.fail_uploads: set[str] = set()

    def sync_media(self, local_hashes: dict[str, str]) -> list[RemoteRecord]:
        self.sync_calls.append(dict(local_hashes))
        if self.sync_hook is not None:
            self.sync_hook()
        if self.sync_error is not None:
            raise self.sync_error
        return list(self.records)

    def upload_media(
        self, path: Path, record: MediaRecord, content_hash: str | None = None
    ) -> RemoteRecord:
        self.upload_calls.append(record.uri)
        if self.upload_hook is not None:
            self.upload_hook(record)
        if record.display_name in self.fail_uploads:
            raise APIError("rejected", 400)
        remote = RemoteRecord(
            id=f"r{len(self.records) + 1}",
            original_name=record.display_name,
            kind=record.kind,
            size=record.size or 0,
            last_modified=record.modified_at,
            hash=content_hash,
        )
        self.records.append(remote)
        return remote


@pytest.fixture
def server() -> FakeServer:
    """Create an empty fake server."""
    return FakeServer()


@pytest.fixture
def settings() -> SyncSettings:
    """Settings allowing uploads on any network."""
    return SyncSettings(wifi_only=False)


@pytest.fixture
def engine(server: FakeServer, store: LocalMediaStore, settings: SyncSettings) -> SyncEngine:
    """Create a SyncEngine on the fake server."""
    return SyncEngine(server, store, settings=settings)  # type: ignore[arg-type]


@pytest.fixture
def local_items(store: LocalMediaStore, write_media) -> list[MediaRecord]:  # type: ignore[no-untyped-def]
    """Three enumerated local items."""
    records = [
        write_media("a.jpg", b"aaa", mtime=1_700_000_003.0),
        write_media("b.jpg", b"bbb", mtime=1_700_000_002.0),
        write_media("c.mp4", b"ccc", mtime=1_700_000_001.0),
    ]
    store.upsert_preserving_hash(records)
    return records


class TestSyncPass:
    """Tests for a full synchronization pass."""

    def test_first_pass_uploads_everything(
        self,
        engine: SyncEngine,
        server: FakeServer,
        store: LocalMediaStore,
        local_items: list[MediaRecord],
    ) -> None:
        """Items unknown to the server are uploaded and linked."""
        result = engine.sync()

        assert result.outcome == SyncOutcome.COMPLETED
        assert result.succeeded is True
        assert sorted(result.uploaded) == sorted(r.uri for r in local_items)
        assert len(server.sync_calls) == 1
        assert len(store.list_links()) == 3
        assert engine.state == SyncState.IDLE

    def test_second_pass_is_idempotent(
        self,
        engine: SyncEngine,
        server: FakeServer,
        local_items: list[MediaRecord],
    ) -> None:
        """With no local change the second pass uploads nothing."""
        engine.sync()
        server.upload_calls.clear()

        result = engine.sync()

        assert result.outcome == SyncOutcome.COMPLETED
        assert result.uploaded == []
        assert server.upload_calls == []
        assert sorted(result.already_synced) == sorted(r.uri for r in local_items)
        assert engine.pending_count() == 0

    def test_second_pass_does_not_rehash(
        self,
        server: FakeServer,
        store: LocalMediaStore,
        settings: SyncSettings,
        local_items: list[MediaRecord],
    ) -> None:
        """Unchanged content is not hashed again."""
        hasher = MagicMock(side_effect=lambda r: "h-" + r.display_name)
        engine = SyncEngine(
            server, store, settings=settings, detector=ChangeDetector(store, hasher=hasher)  # type: ignore[arg-type]
        )
        engine.sync()
        hasher.reset_mock()

        engine.sync()

        hasher.assert_not_called()

    def test_server_copy_counts_as_synced(
        self,
        engine: SyncEngine,
        server: FakeServer,
        store: LocalMediaStore,
        local_items: list[MediaRecord],
    ) -> None:
        """An item the server holds is linked without uploading it."""
        engine.sync()
        store.remove_link(local_items[0].uri)
        server.upload_calls.clear()

        result = engine.sync(force_full_refresh=True)

        assert server.upload_calls == []
        assert local_items[0].uri in result.already_synced
        assert store.get_link(local_items[0].uri) is not None

    def test_failed_item_reported(
        self,
        engine: SyncEngine,
        server: FakeServer,
        store: LocalMediaStore,
        local_items: list[MediaRecord],
    ) -> None:
        """A failing item is reported and the pass still completes."""
        server.fail_uploads = {"b.jpg"}

        result = engine.sync()

        assert result.outcome == SyncOutcome.COMPLETED
        assert result.failed == [local_items[1].uri]
        assert result.errors and "rejected" in result.errors[0]
        assert store.get_link(local_items[1].uri) is None
        assert engine.pending_count() == 1

    def test_remote_only_reported(
        self,
        engine: SyncEngine,
        server: FakeServer,
        local_items: list[MediaRecord],
    ) -> None:
        """Server records without local content are reported."""
        server.records.append(
            RemoteRecord(
                id="elsewhere",
                original_name="other.jpg",
                kind=local_items[0].kind,
                size=1,
                last_modified=0.0,
                hash="other-hash",
            )
        )

        result = engine.sync()

        assert [r.id for r in result.remote_only] == ["elsewhere"]

    def test_last_sync_time_recorded(
        self,
        engine: SyncEngine,
        store: LocalMediaStore,
        settings: SyncSettings,
        local_items: list[MediaRecord],
    ) -> None:
        """A completed pass stores its completion time."""
        engine.sync()

        assert store.get_last_sync_time() is not None
        assert settings.last_sync_time == store.get_last_sync_time()

    def test_remote_records_skipped(self, engine: SyncEngine, server: FakeServer) -> None:
        """Remote-only records passed in are not hashed nor uploaded."""
        remote_item = MediaRecord(
            uri="remote://r9", kind=MediaKind.IMAGE, modified_at=1.0, is_remote=True
        )

        result = engine.sync(records=[remote_item])

        assert result.outcome == SyncOutcome.COMPLETED
        assert server.upload_calls == []
        assert server.sync_calls == [{}]


class TestUploadSettings:
    """Tests for auto_upload and pending counts."""

    def test_auto_upload_off(
        self,
        engine: SyncEngine,
        server: FakeServer,
        local_items: list[MediaRecord],
    ) -> None:
        """Without auto upload the pass only reports pending items."""
        result = engine.sync(auto_upload=False)

        assert result.outcome == SyncOutcome.COMPLETED
        assert server.upload_calls == []
        assert result.pending_count == 3
        assert engine.pending_count() == 3

    def test_settings_default_applies(
        self,
        server: FakeServer,
        store: LocalMediaStore,
        local_items: list[MediaRecord],
    ) -> None:
        """auto_upload defaults to the settings value."""
        engine = SyncEngine(server, store, settings=SyncSettings(auto_upload=False))  # type: ignore[arg-type]

        result = engine.sync()

        assert result.pending_count == 3

    def test_metered_network(
        self,
        server: FakeServer,
        store: LocalMediaStore,
        local_items: list[MediaRecord],
    ) -> None:
        """wifi_only on a metered network leaves items pending."""
        network = MagicMock()
        network.is_metered.return_value = True
        engine = SyncEngine(
            server, store, settings=SyncSettings(wifi_only=True), network=network  # type: ignore[arg-type]
        )

        result = engine.sync()

        assert server.upload_calls == []
        assert result.pending_count == 3


class TestErrorMapping:
    """Tests for mapping errors to outcomes."""

    @pytest.mark.parametrize(
        ("error", "outcome", "state"),
        [
            (SessionExpiredError("Session expired"), SyncOutcome.FATAL, SyncState.ERROR),
            (MalformedResponseError("bad"), SyncOutcome.FATAL, SyncState.ERROR),
            (httpx.ConnectError("refused"), SyncOutcome.FAILED, SyncState.OFFLINE),
            (ServerError("down", 503), SyncOutcome.FAILED, SyncState.ERROR),
            (httpx.DecodingError("garbled"), SyncOutcome.FAILED, SyncState.ERROR),
            (httpx.TooManyRedirects("loop"), SyncOutcome.FAILED, SyncState.ERROR),
            (sqlite3.OperationalError("database is locked"), SyncOutcome.FAILED, SyncState.ERROR),
        ],
    )
    def test_reconcile_errors(
        self,
        engine: SyncEngine,
        server: FakeServer,
        local_items: list[MediaRecord],
        error: Exception,
        outcome: SyncOutcome,
        state: SyncState,
    ) -> None:
        """Errors end the pass with the matching outcome instead of raising."""
        server.sync_error = error

        result = engine.sync()

        assert result.outcome == outcome
        assert result.error
        assert engine.state == state
        assert engine.last_result is result

    def test_malformed_server_item_is_fatal(
        self,
        store: LocalMediaStore,
        settings: SyncSettings,
        local_items: list[MediaRecord],
    ) -> None:
        """A sync response with an invalid item type ends the pass as FATAL."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"items": [{"id": "r1", "type": 5, "hash": "x"}]})

        client = CloudClient(
            ServerConfig(server_url="http://test"), transport=httpx.MockTransport(handler)
        )
        engine = SyncEngine(client, store, settings=settings)

        result = engine.sync()

        assert result.outcome == SyncOutcome.FATAL
        assert engine.state == SyncState.ERROR
        assert engine.is_running is False
        client.close()

    def test_fatal_is_not_retried(self, engine: SyncEngine, server: FakeServer) -> None:
        """FATAL passes are not retried, FAILED ones are."""
        server.sync_error = SessionExpiredError("Session expired")
        assert engine.sync().should_retry is False

        server.sync_error = ServerError("down", 503)
        assert engine.sync().should_retry is True

    def test_failed_pass_keeps_last_sync_time(
        self, engine: SyncEngine, server: FakeServer, store: LocalMediaStore
    ) -> None:
        """Only completed passes update the last sync time."""
        server.sync_error = ServerError("down", 503)
        engine.sync()
        assert store.get_last_sync_time() is None


class TestConcurrency:
    """Tests for single-pass execution and cancellation."""

    def test_concurrent_trigger_rejected(
        self,
        engine: SyncEngine,
        server: FakeServer,
        local_items: list[MediaRecord],
    ) -> None:
        """A second trigger while a pass runs returns ALREADY_RUNNING."""
        entered = threading.Event()
        release = threading.Event()

        def hold() -> None:
            entered.set()
            release.wait(5)

        server.sync_hook = hold
        results = []
        worker = threading.Thread(target=lambda: results.append(engine.sync()))
        worker.start()
        assert entered.wait(5)

        assert engine.is_running is True
        second = engine.sync()
        release.set()
        worker.join(5)

        assert second.outcome == SyncOutcome.ALREADY_RUNNING
        assert results[0].outcome == SyncOutcome.COMPLETED
        assert len(server.sync_calls) == 1

    def test_cancel_during_pass(
        self,
        engine: SyncEngine,
        server: FakeServer,
        store: LocalMediaStore,
        local_items: list[MediaRecord],
    ) -> None:
        """Cancelling during the server check uploads nothing."""
        server.sync_hook = engine.cancel

        result = engine.sync()

        assert result.outcome == SyncOutcome.CANCELLED
        assert server.upload_calls == []
        assert len(result.pending) == 3
        assert store.get_last_sync_time() is None

    def test_cancel_during_upload_retry(
        self,
        engine: SyncEngine,
        server: FakeServer,
        store: LocalMediaStore,
        local_items: list[MediaRecord],
    ) -> None:
        """Cancelling while the last upload waits to retry ends the pass CANCELLED."""

        def drop_network(record: MediaRecord) -> None:
            if record.display_name == "c.mp4":
                engine.cancel()
                raise httpx.ConnectError("network dropped")

        server.upload_hook = drop_network

        result = engine.sync()

        assert result.outcome == SyncOutcome.CANCELLED
        assert result.failed == []
        assert local_items[2].uri in result.pending
        assert store.get_last_sync_time() is None
        assert engine.state == SyncState.IDLE

    def test_cancel_when_idle_is_noop(
        self, engine: SyncEngine, server: FakeServer, local_items: list[MediaRecord]
    ) -> None:
        """A cancel with nothing running does not affect the next pass."""
        engine.cancel()

        assert engine.sync().outcome == SyncOutcome.COMPLETED


class TestPassProgress:
    """Tests for overall pass progress."""

    def test_progress_is_monotonic_and_complete(
        self, engine: SyncEngine, local_items: list[MediaRecord]
    ) -> None:
        """Observers see progress go from 0 to 1 without moving backwards."""
        seen: list[float] = []
        engine.pass_progress.add_callback(seen.append)

        engine.sync()

        assert seen[0] == 0.0
        assert seen[-1] == 1.0
        assert seen == sorted(seen)
        assert 0.4 in seen
        assert 0.5 in seen

    def test_upload_progress_reaches_total(
        self, engine: SyncEngine, local_items: list[MediaRecord]
    ) -> None:
        """The last upload event has current_index == total_count."""
        sub = engine.upload_progress.subscribe()

        engine.sync()

        events = sub.drain()
        assert [e.current_index for e in events] == [1, 2, 3]
        assert events[-1].total_count == 3


class TestScheduling:
    """Tests for applying settings to the scheduler."""

    def test_apply_settings_schedules(self, server: FakeServer, store: LocalMediaStore) -> None:
        """Enabled auto sync schedules a periodic pass."""
        scheduler = MagicMock()
        engine = SyncEngine(server, store, scheduler=scheduler)  # type: ignore[arg-type]

        engine.apply_settings(SyncSettings(interval_hours=12.0, wifi_only=True))

        scheduler.schedule_periodic.assert_called_once_with(
            12.0, require_unmetered=True, auto_upload=True
        )
        assert engine.settings.interval_hours == 12.0

    def test_apply_settings_passes_auto_upload(
        self, server: FakeServer, store: LocalMediaStore
    ) -> None:
        """Periodic passes follow the auto upload setting."""
        scheduler = MagicMock()
        engine = SyncEngine(server, store, scheduler=scheduler)  # type: ignore[arg-type]

        engine.apply_settings(SyncSettings(auto_upload=False, wifi_only=False))

        scheduler.schedule_periodic.assert_called_once_with(
            6.0, require_unmetered=False, auto_upload=False
        )

    def test_apply_settings_cancels(self, server: FakeServer, store: LocalMediaStore) -> None:
        """Disabled auto sync cancels background passes."""
        scheduler = MagicMock()
        engine = SyncEngine(server, store, scheduler=scheduler)  # type: ignore[arg-type]

        engine.apply_settings(SyncSettings(auto_sync_enabled=False))

        scheduler.cancel.assert_called_once()
        scheduler.schedule_periodic.assert_not_called()

    def test_request_sync_uses_scheduler(self, server: FakeServer, store: LocalMediaStore) -> None:
        """An immediate pass goes through the scheduler when there is one."""
        scheduler = MagicMock()
        engine = SyncEngine(server, store, scheduler=scheduler)  # type: ignore[arg-type]

        engine.request_sync(auto_upload=False)

        scheduler.sync_now.assert_called_once_with(auto_upload=False)

    def test_request_sync_inline(
        self, engine: SyncEngine, server: FakeServer, local_items: list[MediaRecord]
    ) -> None:
        """Without a scheduler the pass runs inline."""
        engine.request_sync()

        assert engine.last_result is not None
        assert engine.last_result.outcome == SyncOutcome.COMPLETED
