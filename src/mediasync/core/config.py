"""Shared configuration classes for mediasync.

This module defines configuration classes used by the HTTP client, the sync
engine and the background scheduler.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

DEFAULT_SYNC_INTERVAL_HOURS = 6.0


@dataclass
class ServerConfig:
    """Configuration for connecting to a media cloud server.

    Attributes:
        server_url: Base URL of the server (e.g., "https://media.example.com").
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        client_type: Value sent in the X-Client-Type header.
    """

    server_url: str
    timeout: float = 30.0
    verify_ssl: bool = True
    client_type: str = "mediasync-python"

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS.

        Returns:
            True if server uses HTTPS.
        """
        return self.server_url.startswith("https://")


@dataclass
class SyncSettings:
    """User-facing synchronization settings.

    Supplied to the engine at invocation time and persisted by the CLI.

    Attributes:
        auto_sync_enabled: Whether the periodic background sync is scheduled.
        wifi_only: Only upload over an unmetered network.
        auto_upload: Upload pending items (otherwise they are only reported).
        interval_hours: Period between background sync passes.
        last_sync_time: Unix timestamp of the last completed pass (or None).
    """

    auto_sync_enabled: bool = True
    wifi_only: bool = True
    auto_upload: bool = True
    interval_hours: float = DEFAULT_SYNC_INTERVAL_HOURS
    last_sync_time: float | None = None

    def __post_init__(self) -> None:
        if self.interval_hours <= 0:
            raise ValueError(f"interval_hours must be positive, got {self.interval_hours}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        """Create from a (possibly partial) config dictionary."""
        defaults = cls()
        last_sync = data.get("last_sync_time")
        return cls(
            auto_sync_enabled=bool(data.get("auto_sync_enabled", defaults.auto_sync_enabled)),
            wifi_only=bool(data.get("wifi_only", defaults.wifi_only)),
            auto_upload=bool(data.get("auto_upload", defaults.auto_upload)),
            interval_hours=float(data.get("interval_hours", defaults.interval_hours)),
            last_sync_time=float(last_sync) if last_sync is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the JSON config file."""
        return asdict(self)
