"""Tests for session tokens and the TokenGuard auth flow."""

import json
import threading
import time
from pathlib import Path

import httpx
import pytest

from mediasync.client.api import AuthenticationError, CloudClient, SessionExpiredError, TokenGrant
from mediasync.client.auth import (
    MAX_RETRY_COUNT,
    TOKEN_EXPIRY_MARGIN,
    TokenGuard,
    TokenState,
    TokenStore,
    get_device_info,
)
from mediasync.core.config import ServerConfig


def make_store(
    access: str = "old",
    refresh: str | None = "r1",
    expires_at: float | None = None,
    refresh_expires_at: float | None = None,
) -> TokenStore:
    """Create an in-memory TokenStore holding a session."""
    store = TokenStore()
    store.save_grant(TokenGrant(access, refresh, expires_at, refresh_expires_at))
    return store


def guarded_client(store: TokenStore, handler) -> CloudClient:  # type: ignore[no-untyped-def]
    """Create a CloudClient on a mock transport, guarded by store's tokens."""
    client = CloudClient(ServerConfig(server_url="http://test"), transport=httpx.MockTransport(handler))
    client.set_auth(TokenGuard(store, refresh=client.refresh_token))
    return client


class TestTokenState:
    """Tests for TokenState expiry rules."""

    def test_no_expiry_is_valid(self) -> None:
        """A token without expiry is never considered expired."""
        assert TokenState("t").is_access_expired() is False

    def test_expiry_margin(self) -> None:
        """Tokens expiring within the margin count as expired."""
        now = 1_000_000.0
        state = TokenState("t", expires_at=now + TOKEN_EXPIRY_MARGIN - 1)
        assert state.is_access_expired(now) is True
        state = TokenState("t", expires_at=now + TOKEN_EXPIRY_MARGIN + 60)
        assert state.is_access_expired(now) is False

    def test_can_refresh(self) -> None:
        """Refresh needs a refresh token that has not expired."""
        now = 1_000_000.0
        assert TokenState("t", refresh_token="r").can_refresh(now) is True
        assert TokenState("t").can_refresh(now) is False
        assert TokenState("t", refresh_token="r", refresh_expires_at=now - 1).can_refresh(now) is False


class TestTokenStore:
    """Tests for TokenStore persistence."""

    def test_save_and_reload(self, tmp_path: Path) -> None:
        """Tokens should survive a restart."""
        path = tmp_path / "session.json"
        TokenStore(path).save_grant(TokenGrant("a", "r", 100.0, 200.0))

        reloaded = TokenStore(path)
        assert reloaded.access_token == "a"
        assert reloaded.refresh_token == "r"
        assert reloaded.state == TokenState("a", "r", 100.0, 200.0)

    def test_update_keeps_refresh_token(self) -> None:
        """A refresh answer without refresh_token keeps the old one."""
        store = make_store(refresh="r1")
        store.update_tokens(TokenGrant("new"))
        assert store.access_token == "new"
        assert store.refresh_token == "r1"

    def test_clear_removes_file_and_notifies(self, tmp_path: Path) -> None:
        """Logout should destroy the state and call listeners."""
        path = tmp_path / "session.json"
        store = TokenStore(path)
        store.save_grant(TokenGrant("a", "r"))
        calls: list[str] = []
        store.add_logout_listener(lambda: calls.append("logout"))

        store.clear()

        assert store.state is None
        assert store.is_authenticated is False
        assert not path.exists()
        assert calls == ["logout"]

    def test_corrupt_file_ignored(self, tmp_path: Path) -> None:
        """An unreadable session file should load as logged out."""
        path = tmp_path / "session.json"
        path.write_text("{not json")
        assert TokenStore(path).state is None


class TestDeviceInfo:
    """Tests for device identification."""

    def test_device_id_is_persisted(self, tmp_path: Path) -> None:
        """The same device id should be reported across runs."""
        first = get_device_info(tmp_path)
        second = get_device_info(tmp_path)
        assert first.device_id == second.device_id
        assert (tmp_path / "device_id").read_text() == first.device_id
        assert set(first.to_dict()) == {"device_id", "device_name", "user_agent", "device_type"}


class TestTokenGuard:
    """Tests for bearer injection and 401 handling."""

    def test_injects_bearer_token(self) -> None:
        """Authenticated calls should carry the current token."""
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200, json={"items": []})

        with guarded_client(make_store("abc"), handler) as client:
            client.sync_media({})

        assert seen == ["Bearer abc"]

    def test_refreshes_and_retries_on_401(self) -> None:
        """A 401 should trigger one refresh and a retry with the new token."""
        calls: list[tuple[str, str | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.url.path, request.headers.get("Authorization")))
            if request.url.path == "/refresh":
                assert json.loads(request.content)["refresh_token"] == "r1"
                return httpx.Response(200, json={"token": "new", "refresh_token": "r2"})
            if request.headers.get("Authorization") == "Bearer new":
                return httpx.Response(200, json={"items": []})
            return httpx.Response(401)

        store = make_store("old", "r1")
        with guarded_client(store, handler) as client:
            assert client.sync_media({}) == []

        assert calls == [
            ("/media/sync", "Bearer old"),
            ("/refresh", None),
            ("/media/sync", "Bearer new"),
        ]
        assert store.access_token == "new"
        assert store.refresh_token == "r2"

    def test_auth_paths_are_not_retried(self) -> None:
        """A 401 from /login must not trigger a refresh."""
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(401, json={"detail": "Invalid credentials"})

        store = make_store()
        with guarded_client(store, handler) as client:
            with pytest.raises(AuthenticationError):
                client.login("alice", "wrong")

        assert paths == ["/login"]
        assert store.access_token == "old"

    def test_not_logged_in(self) -> None:
        """Without a session the call fails before reaching the network."""
        sent: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(request)
            return httpx.Response(200, json={"items": []})

        with guarded_client(TokenStore(), handler) as client:
            with pytest.raises(SessionExpiredError):
                client.sync_media({})

        assert sent == []

    def test_expired_without_refresh_logs_out(self) -> None:
        """An expired access token that cannot be refreshed ends the session."""
        sent: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(request)
            return httpx.Response(200, json={"items": []})

        store = make_store("old", refresh=None, expires_at=time.time() - 10)
        with guarded_client(store, handler) as client:
            with pytest.raises(SessionExpiredError):
                client.sync_media({})

        assert sent == []
        assert store.state is None

    def test_retry_cap_forces_logout(self) -> None:
        """A request still 401 after refresh is retried at most twice, then logout."""
        sync_calls = 0
        refresh_calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal sync_calls, refresh_calls
            if request.url.path == "/refresh":
                refresh_calls += 1
                return httpx.Response(200, json={"token": f"t{refresh_calls}", "refresh_token": "r"})
            sync_calls += 1
            return httpx.Response(401)

        store = make_store()
        with guarded_client(store, handler) as client:
            with pytest.raises(SessionExpiredError):
                client.sync_media({})

        assert sync_calls == MAX_RETRY_COUNT + 1
        assert refresh_calls == MAX_RETRY_COUNT
        assert store.state is None

    def test_missing_refresh_token_logs_out(self) -> None:
        """A 401 with no refresh token available ends the session."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path != "/refresh"
            return httpx.Response(401)

        store = make_store(refresh=None)
        with guarded_client(store, handler) as client:
            with pytest.raises(SessionExpiredError):
                client.sync_media({})

        assert store.state is None

    def test_rejected_refresh_logs_out(self) -> None:
        """A refresh rejected by the server ends the session."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401)

        store = make_store()
        with guarded_client(store, handler) as client:
            with pytest.raises(SessionExpiredError):
                client.sync_media({})

        assert store.state is None


class TestSingleFlightRefresh:
    """Concurrent 401s on the same expired token share one refresh."""

    N_CALLERS = 5

    def _run_concurrently(self, client: CloudClient) -> tuple[list[object], list[Exception]]:
        results: list[object] = []
        errors: list[Exception] = []
        lock = threading.Lock()

        def call() -> None:
            try:
                value = client.sync_media({})
                with lock:
                    results.append(value)
            except Exception as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=call) for _ in range(self.N_CALLERS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        return results, errors

    def test_one_refresh_all_succeed(self) -> None:
        """N concurrent 401s should cause exactly one refresh call."""
        barrier = threading.Barrier(self.N_CALLERS, timeout=5)
        refresh_calls = 0
        count_lock = threading.Lock()

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refresh_calls
            if request.url.path == "/refresh":
                with count_lock:
                    refresh_calls += 1
                time.sleep(0.05)
                return httpx.Response(200, json={"token": "new", "refresh_token": "r2"})
            if request.headers.get("Authorization") == "Bearer old":
                # Every caller gets its 401 before anyone refreshes
                barrier.wait()
                return httpx.Response(401)
            return httpx.Response(200, json={"items": []})

        store = make_store("old")
        with guarded_client(store, handler) as client:
            results, errors = self._run_concurrently(client)

        assert errors == []
        assert len(results) == self.N_CALLERS
        assert refresh_calls == 1
        assert store.access_token == "new"

    def test_failed_refresh_fails_all(self) -> None:
        """When the single refresh fails every pending caller fails."""
        barrier = threading.Barrier(self.N_CALLERS, timeout=5)
        refresh_calls = 0
        count_lock = threading.Lock()

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refresh_calls
            if request.url.path == "/refresh":
                with count_lock:
                    refresh_calls += 1
                return httpx.Response(401, json={"detail": "refresh token revoked"})
            barrier.wait()
            return httpx.Response(401)

        store = make_store("old")
        with guarded_client(store, handler) as client:
            results, errors = self._run_concurrently(client)

        assert results == []
        assert len(errors) == self.N_CALLERS
        assert all(isinstance(e, SessionExpiredError) for e in errors)
        assert refresh_calls == 1
        assert store.state is None

    def test_refresh_count_exposed(self) -> None:
        """The guard should count network refreshes."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/refresh":
                return httpx.Response(200, json={"token": "new"})
            if request.headers.get("Authorization") == "Bearer old":
                return httpx.Response(401)
            return httpx.Response(200, json={"items": []})

        store = make_store("old")
        client = CloudClient(ServerConfig(server_url="http://test"), transport=httpx.MockTransport(handler))
        guard = TokenGuard(store, refresh=client.refresh_token)
        client.set_auth(guard)
        with client:
            client.sync_media({})
            client.sync_media({})

        assert guard.refresh_count == 1
