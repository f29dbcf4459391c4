"""HTTP client for the media cloud API.

This module provides:
- CloudClient: HTTP client for communicating with the server
- RemoteRecord: Media metadata as reported by the server
- TokenGrant: Tokens issued by login and refresh
- API exception hierarchy
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from mediasync.core.types import MediaKind, MediaRecord

if TYPE_CHECKING:
    from mediasync.client.auth import DeviceInfo
    from mediasync.core.config import ServerConfig

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


class SessionExpiredError(AuthenticationError):
    """The session was invalidated and local credentials were cleared."""


class NotFoundError(APIError):
    """Resource not found."""


class ServerError(APIError):
    """Server-side failure (5xx)."""


class MalformedResponseError(APIError):
    """The server answered with a body that does not match the protocol."""


# Errors worth retrying: the request may succeed unchanged later
RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (httpx.TransportError, ServerError)


def _ms_to_seconds(value: Any) -> float | None:
    if value is None:
        return None
    return float(value) / 1000.0


@dataclass
class RemoteRecord:
    """Media metadata from server.

    Timestamps are converted from the server's milliseconds to Unix seconds.
    """

    id: str
    original_name: str
    kind: MediaKind
    size: int
    last_modified: float
    uploaded_at: float | None = None
    has_thumbnail: bool = False
    is_deleted: bool = False
    processing_status: str | None = "completed"
    hash: str | None = None
    duration: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteRecord:
        """Create from API response dictionary.

        Raises:
            MalformedResponseError: If required fields are missing or invalid.
        """
        try:
            return cls(
                id=str(data["id"]),
                original_name=data.get("original_name") or "",
                kind=MediaKind.parse(data.get("type")),
                size=int(data.get("size") or 0),
                last_modified=_ms_to_seconds(data.get("last_modified")) or 0.0,
                uploaded_at=_ms_to_seconds(data.get("uploaded_at")),
                has_thumbnail=bool(data.get("has_thumbnail", False)),
                is_deleted=bool(data.get("is_deleted", False)),
                processing_status=data.get("processing_status", "completed"),
                hash=data.get("hash"),
                duration=data.get("duration"),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid media record: {e}") from e


@dataclass
class TokenGrant:
    """Tokens issued by the server on login or refresh.

    Expiry timestamps are Unix seconds.
    """

    token: str
    refresh_token: str | None = None
    expires_at: float | None = None
    refresh_expires_at: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenGrant:
        """Create from a login or refresh response body.

        Login responses carry the tokens in "token_info" (falling back to
        "user"); refresh responses carry them at the top level.

        Raises:
            MalformedResponseError: If no access token is present.
        """
        source = data.get("token_info") or data.get("user") or data
        if not isinstance(source, dict) or not source.get("token"):
            raise MalformedResponseError("Token not found in response")
        return cls(
            token=source["token"],
            refresh_token=source.get("refresh_token") or data.get("refresh_token"),
            expires_at=_ms_to_seconds(source.get("expires_at")),
            refresh_expires_at=_ms_to_seconds(source.get("refresh_expires_at")),
        )


class CloudClient:
    """HTTP client for the media cloud API.

    Authentication is delegated to the httpx auth object installed with
    set_auth() (normally a TokenGuard).
    """

    def __init__(
        self,
        config: ServerConfig,
        device_info: DeviceInfo | None = None,
        auth: httpx.Auth | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the cloud client.

        Args:
            config: Server connection configuration.
            device_info: Device description sent on login and refresh.
            auth: Optional httpx auth flow for authenticated calls.
            transport: Optional transport (used by tests).
        """
        self._config = config
        self._device_info = device_info
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"X-Client-Type": config.client_type},
            auth=auth,
            transport=transport,
        )

    @property
    def config(self) -> ServerConfig:
        return self._config

    def set_auth(self, auth: httpx.Auth | None) -> None:
        """Install the auth flow used for every request."""
        self._client.auth = auth

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> CloudClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    @staticmethod
    def _detail(response: httpx.Response, default: str) -> str:
        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return response.text or default
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("message") or body.get("error") or default)
        return default

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError(self._detail(response, "Invalid or expired token"), 401)
        if response.status_code == 404:
            raise NotFoundError(self._detail(response, "Resource not found"), 404)
        if response.status_code >= 500:
            raise ServerError(self._detail(response, "Server error"), response.status_code)
        if response.status_code >= 400:
            raise APIError(self._detail(response, "Unknown error"), response.status_code)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedResponseError(f"Response is not valid JSON: {e}") from e

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get("/health", auth=None)
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Authentication ===

    def login(self, username: str, password: str) -> TokenGrant:
        """Log in and obtain tokens.

        Args:
            username: Account name.
            password: Account password.

        Returns:
            Issued tokens.
        """
        payload: dict[str, Any] = {"user": username, "pass": password}
        if self._device_info:
            payload["device_info"] = self._device_info.to_dict()
        response = self._handle_response(self._client.post("/login", json=payload))
        return TokenGrant.from_dict(self._json(response))

    def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Args:
            refresh_token: Current refresh token.

        Returns:
            Newly issued tokens.

        Raises:
            AuthenticationError: If the server rejects the refresh token.
        """
        payload: dict[str, Any] = {"refresh_token": refresh_token}
        if self._device_info:
            payload["device_info"] = self._device_info.to_dict()
        response = self._handle_response(self._client.post("/refresh", json=payload))
        return TokenGrant.from_dict(self._json(response))

    def logout(self) -> None:
        """Invalidate the session on the server."""
        self._handle_response(self._client.post("/logout"))

    # === Media operations ===

    def sync_media(self, local_hashes: dict[str, str]) -> list[RemoteRecord]:
        """Send the full local uri -> hash map in one batched call.

        Args:
            local_hashes: Mapping of local URI to content hash.

        Returns:
            Remote records reported by the server.

        Raises:
            MalformedResponseError: If the body has no item list.
        """
        response = self._handle_response(
            self._client.post("/media/sync", json=local_hashes)
        )
        data = self._json(response)
        if not isinstance(data, dict) or not isinstance(data.get("items"), list):
            raise MalformedResponseError("Sync response has no 'items' list")
        return [RemoteRecord.from_dict(item) for item in data["items"]]

    def upload_media(
        self,
        path: Path,
        record: MediaRecord,
        content_hash: str | None = None,
    ) -> RemoteRecord:
        """Upload a media file with its metadata (multipart).

        Args:
            path: Local file to upload.
            record: Local record describing the file.
            content_hash: Content hash, used by the server for deduplication.

        Returns:
            The remote record created (or matched) by the server.
        """
        metadata: dict[str, Any] = {
            "original_name": path.name,
            "type": record.kind.value,
            "last_modified": int(record.modified_at * 1000),
            "size": record.size if record.size is not None else path.stat().st_size,
        }
        if content_hash:
            metadata["hash"] = content_hash

        with open(path, "rb") as f:
            response = self._handle_response(
                self._client.post(
                    "/media/upload",
                    files={"file": (path.name, f, "application/octet-stream")},
                    data={"metadata": json.dumps(metadata)},
                )
            )
        data = self._json(response)
        item = data.get("media_item") if isinstance(data, dict) else None
        if not isinstance(item, dict):
            raise MalformedResponseError("Upload response has no 'media_item'")
        return RemoteRecord.from_dict(item)

    def download_media(self, remote_id: str, destination: Path) -> Path:
        """Download a remote media file.

        Args:
            remote_id: Remote identity of the item.
            destination: Local file path to write.

        Returns:
            The destination path.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = destination.with_name(destination.name + ".part")
        with self._client.stream("GET", f"/media/{remote_id}/download") as response:
            if response.status_code >= 400:
                response.read()
                self._handle_response(response)
            with open(tmp_path, "wb") as f:
                for block in response.iter_bytes():
                    f.write(block)
        tmp_path.replace(destination)
        logger.info(f"Downloaded {remote_id} to {destination}")
        return destination
