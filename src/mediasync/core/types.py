"""Shared types for mediasync.

This module defines the local media model and enums used by the engine,
the HTTP client, the scheduler and the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SyncState(str, Enum):
    """Current state of the sync engine."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


class MediaKind(str, Enum):
    """Kind of media item."""

    IMAGE = "image"
    VIDEO = "video"

    @classmethod
    def parse(cls, value: str | None) -> MediaKind:
        """Parse a server or database value, defaulting to IMAGE.

        Raises:
            ValueError: If value is neither a string nor None.
        """
        if value is not None and not isinstance(value, str):
            raise ValueError(f"Invalid media kind: {value!r}")
        if value and value.lower() == "video":
            return cls.VIDEO
        return cls.IMAGE


@dataclass(frozen=True)
class MediaRecord:
    """A local media item as produced by media enumeration.

    Attributes:
        uri: Opaque identity of the item (file:// URI for local files).
        kind: Image or video.
        modified_at: Last modification time (Unix seconds).
        size: Size in bytes, if known.
        duration: Duration in milliseconds for videos, if known.
        relative_path: Path relative to the enumerated folder, if any.
        is_remote: True for items that only exist on the server.
    """

    uri: str
    kind: MediaKind
    modified_at: float
    size: int | None = None
    duration: int | None = None
    relative_path: str | None = None
    is_remote: bool = False

    @property
    def display_name(self) -> str:
        """Last path component of the URI."""
        return self.uri.rstrip("/").rsplit("/", 1)[-1]
