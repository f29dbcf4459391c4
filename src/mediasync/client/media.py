"""Media enumeration for local folders.

This module provides:
- scan_media_folder: Walks a folder and returns its media as MediaRecords
- refresh_media_index: Re-enumerates a folder into the local store
- media_kind_for: Classifies a file by extension
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from mediasync.client.ignore import IgnorePatterns
from mediasync.core.types import MediaKind, MediaRecord

if TYPE_CHECKING:
    from mediasync.client.state import LocalMediaStore

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic", ".heif",
    ".bmp", ".tif", ".tiff", ".dng", ".raw", ".cr2", ".nef", ".arw",
})

VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".mov", ".m4v", ".3gp", ".mkv", ".webm", ".avi", ".mts",
})


def media_kind_for(path: Path) -> MediaKind | None:
    """Classify a file by extension (None if it is not media)."""
    suffix = path.suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    if suffix in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    return None


def scan_media_folder(
    base_path: Path,
    ignore: IgnorePatterns | None = None,
) -> list[MediaRecord]:
    """Enumerate media files under a folder.

    Symlinks and ignored paths are skipped; a .mediasyncignore file at the
    folder root adds patterns.

    Args:
        base_path: Folder to enumerate.
        ignore: Ignore patterns (defaults plus the folder's ignore file when None).

    Returns:
        Records with file:// URIs, newest first.
    """
    base_path = Path(base_path).resolve()
    if ignore is None:
        ignore = IgnorePatterns.for_folder(base_path)

    records: list[MediaRecord] = []

    # os.walk does not follow symlinked directories by default
    for root_str, dirs, files in os.walk(base_path):
        root = Path(root_str)

        dirs[:] = [
            d for d in dirs
            if not ignore.should_ignore(root / d, base_path)
        ]

        for filename in files:
            file_path = root / filename
            kind = media_kind_for(file_path)
            if kind is None or ignore.should_ignore(file_path, base_path):
                continue

            try:
                stat = file_path.stat()
            except OSError as e:
                # File might have been deleted between listing and stat
                logger.debug(f"Skipping {file_path}: {e}")
                continue

            records.append(MediaRecord(
                uri=file_path.as_uri(),
                kind=kind,
                modified_at=stat.st_mtime,
                size=stat.st_size,
                relative_path=file_path.relative_to(base_path).as_posix(),
            ))

    records.sort(key=lambda r: (-r.modified_at, r.uri))
    logger.debug(f"Found {len(records)} media files under {base_path}")
    return records


def refresh_media_index(
    store: LocalMediaStore,
    base_path: Path,
    ignore: IgnorePatterns | None = None,
) -> tuple[list[MediaRecord], list[str]]:
    """Re-enumerate a folder into the store, keeping known hashes.

    Returns:
        Tuple of (current records, URIs removed from the store).
    """
    records = scan_media_folder(base_path, ignore)
    store.upsert_preserving_hash(records)
    removed = store.delete_missing(r.uri for r in records)
    logger.info(f"Media index refreshed: {len(records)} items, {len(removed)} removed")
    return records, removed
