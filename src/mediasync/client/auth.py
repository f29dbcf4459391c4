"""Session tokens and the authenticated-call guard.

This module provides:
- TokenState: The process-wide access/refresh token pair
- TokenStore: Thread-safe, file-backed holder of the TokenState
- DeviceInfo: Device description sent on login and refresh
- TokenGuard: httpx auth flow that injects the bearer token and performs a
  single-flight refresh when the server answers 401

Refresh protocol:
    A request that receives 401 enters one refresh gate (a lock). Inside the
    gate it compares the shared token with the token its request was issued
    with. If another caller already replaced it, the request is retried with
    the new token and no second refresh is made. Otherwise this caller
    performs the refresh. A failed refresh logs the session out, so every
    caller still waiting on the gate fails immediately.
"""

from __future__ import annotations

import json
import logging
import platform
import threading
import time
import uuid
from collections.abc import Callable, Generator
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from mediasync.client.api import APIError, SessionExpiredError

if TYPE_CHECKING:
    from mediasync.client.api import TokenGrant

logger = logging.getLogger(__name__)

# Consider the access token expired this long before its real expiry
TOKEN_EXPIRY_MARGIN = 5 * 60.0  # seconds

# Maximum refresh-and-retry cycles for a single request
MAX_RETRY_COUNT = 2

# Requests to these endpoints are never retried after a 401
AUTH_PATH_SUFFIXES = ("/login", "/register", "/refresh")


@dataclass
class TokenState:
    """Access and refresh tokens with their expiry times (Unix seconds)."""

    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None
    refresh_expires_at: float | None = None

    def is_access_expired(self, now: float | None = None) -> bool:
        """Check if the access token is expired or about to expire.

        A token without an expiry is assumed valid.
        """
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - TOKEN_EXPIRY_MARGIN

    def is_refresh_expired(self, now: float | None = None) -> bool:
        """Check if the refresh token is expired."""
        if self.refresh_expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.refresh_expires_at

    def can_refresh(self, now: float | None = None) -> bool:
        """Check if a refresh may be attempted."""
        return bool(self.refresh_token) and not self.is_refresh_expired(now)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenState:
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
            refresh_expires_at=data.get("refresh_expires_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TokenStore:
    """Holds the single active TokenState.

    Mutated only by login (save_grant), refresh (update_tokens) and logout
    (clear). When a path is given the state is persisted as JSON so it
    survives restarts.
    """

    def __init__(self, path: Path | None = None) -> None:
        """Initialize the store.

        Args:
            path: Optional JSON file for persistence (None keeps it in memory).
        """
        self._path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._state: TokenState | None = None
        self._logout_listeners: list[Callable[[], None]] = []
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
            self._state = TokenState.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable session file {self._path}: {e}")
            self._state = None

    def _persist(self) -> None:
        if self._path is None:
            return
        if self._state is None:
            self._path.unlink(missing_ok=True)
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(self._state.to_dict(), indent=2))
        tmp_path.replace(self._path)

    @property
    def state(self) -> TokenState | None:
        """Current token state (a copy)."""
        with self._lock:
            if self._state is None:
                return None
            return TokenState(**asdict(self._state))

    @property
    def access_token(self) -> str | None:
        with self._lock:
            return self._state.access_token if self._state else None

    @property
    def refresh_token(self) -> str | None:
        with self._lock:
            return self._state.refresh_token if self._state else None

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    def save_grant(self, grant: TokenGrant) -> None:
        """Store tokens issued by a login."""
        with self._lock:
            self._state = TokenState(
                access_token=grant.token,
                refresh_token=grant.refresh_token,
                expires_at=grant.expires_at,
                refresh_expires_at=grant.refresh_expires_at,
            )
            self._persist()

    def update_tokens(self, grant: TokenGrant) -> None:
        """Replace the access token after a refresh.

        Fields missing from the grant keep their previous value.
        """
        with self._lock:
            previous = self._state
            self._state = TokenState(
                access_token=grant.token,
                refresh_token=grant.refresh_token or (previous.refresh_token if previous else None),
                expires_at=grant.expires_at,
                refresh_expires_at=(
                    grant.refresh_expires_at
                    if grant.refresh_expires_at is not None
                    else (previous.refresh_expires_at if previous else None)
                ),
            )
            self._persist()

    def clear(self) -> None:
        """Destroy the token state and notify logout listeners."""
        with self._lock:
            self._state = None
            self._persist()
            listeners = list(self._logout_listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Logout listener failed: {e}")

    def add_logout_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback invoked whenever the session is cleared."""
        with self._lock:
            self._logout_listeners.append(listener)


@dataclass
class DeviceInfo:
    """Device description sent to the server on login and refresh."""

    device_id: str
    device_name: str
    user_agent: str
    device_type: str = "desktop"

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def get_device_info(config_dir: Path, app_version: str = "0") -> DeviceInfo:
    """Build the DeviceInfo for this machine.

    The device id is generated once and kept in config_dir/device_id.
    """
    id_file = config_dir / "device_id"
    if id_file.exists():
        device_id = id_file.read_text().strip()
    else:
        device_id = str(uuid.uuid4())
        config_dir.mkdir(parents=True, exist_ok=True)
        id_file.write_text(device_id)

    name = platform.node() or "unknown"
    user_agent = (
        f"mediasync/{app_version} ({platform.system()} {platform.release()}; "
        f"Python {platform.python_version()})"
    )
    return DeviceInfo(device_id=device_id, device_name=name, user_agent=user_agent)


def _bearer(request: httpx.Request) -> str | None:
    header = request.headers.get("Authorization")
    if header and header.startswith("Bearer "):
        return header[len("Bearer "):]
    return None


def is_auth_path(request: httpx.Request) -> bool:
    """Check if the request targets a login/register/refresh endpoint."""
    return request.url.path.rstrip("/").endswith(AUTH_PATH_SUFFIXES)


class TokenGuard(httpx.Auth):
    """httpx auth flow guarding every authenticated call.

    Per request: issued with the current token; on 401 a refresh is
    obtained through the single-flight gate and the request is retried; the
    number of prior 401 responses in the chain caps the retries at
    max_retries, after which the session is logged out.
    """

    def __init__(
        self,
        store: TokenStore,
        refresh: Callable[[str], TokenGrant],
        max_retries: int = MAX_RETRY_COUNT,
    ) -> None:
        """Initialize the guard.

        Args:
            store: Token store shared by all requests.
            refresh: Performs the network refresh for a refresh token.
            max_retries: Maximum refresh-and-retry cycles per request.
        """
        self._store = store
        self._refresh = refresh
        self._max_retries = max_retries
        self._refresh_gate = threading.Lock()
        self._refresh_count = 0

    @property
    def refresh_count(self) -> int:
        """Number of network refreshes performed."""
        return self._refresh_count

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if is_auth_path(request):
            yield request
            return

        state = self._store.state
        if state is None:
            raise SessionExpiredError("Not logged in", 401)
        if state.is_access_expired() and not state.can_refresh():
            logger.warning("Access token expired and cannot be refreshed, invalidating session")
            self.force_logout()
            raise SessionExpiredError("Session expired. Please log in again.", 401)

        request.headers["Authorization"] = f"Bearer {state.access_token}"
        prior_responses: list[httpx.Response] = []

        while True:
            response = yield request
            if response.status_code != 401:
                return

            retry_count = len(prior_responses)
            if retry_count >= self._max_retries:
                logger.warning(
                    f"Max retry count reached ({self._max_retries}) for "
                    f"{request.method} {request.url.path}, forcing logout"
                )
                self.force_logout()
                raise SessionExpiredError("Session expired. Please log in again.", 401)

            logger.debug(
                f"401 on {request.url.path}, attempting token refresh "
                f"(attempt {retry_count + 1})"
            )
            new_token = self._token_after_unauthorized(_bearer(request))
            prior_responses.append(response)
            request.headers["Authorization"] = f"Bearer {new_token}"

    def _token_after_unauthorized(self, request_token: str | None) -> str:
        """Return a token to retry with, refreshing at most once across callers.

        Raises:
            SessionExpiredError: If the session is (or becomes) logged out.
        """
        with self._refresh_gate:
            current = self._store.access_token
            if current is None:
                raise SessionExpiredError("Session expired. Please log in again.", 401)
            if current != request_token:
                logger.debug("Token already refreshed by another request, retrying")
                return current

            refresh_token = self._store.refresh_token
            if not refresh_token:
                logger.warning("No refresh token available, forcing logout")
                self.force_logout()
                raise SessionExpiredError("No refresh token available", 401)

            self._refresh_count += 1
            try:
                grant = self._refresh(refresh_token)
            except (APIError, httpx.TransportError) as e:
                logger.warning(f"Token refresh failed, forcing logout: {e}")
                self.force_logout()
                raise SessionExpiredError(f"Token refresh failed: {e}", 401) from e

            self._store.update_tokens(grant)
            logger.info("Access token refreshed")
            return grant.token

    def force_logout(self) -> None:
        """Clear the session so pending authenticated calls fail."""
        self._store.clear()
