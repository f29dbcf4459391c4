"""Shared fixtures for mediasync tests."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from mediasync.client.state import LocalMediaStore
from mediasync.core.types import MediaKind, MediaRecord


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LocalMediaStore]:
    """Create a LocalMediaStore instance."""
    s = LocalMediaStore(tmp_path / "state.db")
    yield s
    s.close()


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    """Create an empty media folder."""
    folder = tmp_path / "media"
    folder.mkdir()
    return folder


@pytest.fixture
def write_media(media_dir: Path) -> Callable[..., MediaRecord]:
    """Return a helper writing a media file and describing it as a record."""

    def _write(name: str, content: bytes, mtime: float = 1_700_000_000.0) -> MediaRecord:
        path = media_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        os.utime(path, (mtime, mtime))
        kind = MediaKind.VIDEO if path.suffix.lower() == ".mp4" else MediaKind.IMAGE
        return MediaRecord(
            uri=path.as_uri(),
            kind=kind,
            modified_at=mtime,
            size=len(content),
            relative_path=name,
        )

    return _write

