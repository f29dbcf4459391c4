"""Ignore patterns for media enumeration.

This module provides:
- IgnorePatterns: Handles gitignore-style pattern matching
- DEFAULT_IGNORE_PATTERNS: Common patterns to ignore
- IGNORE_FILE_NAME: Per-folder ignore file
"""

from __future__ import annotations

import fnmatch
from pathlib import Path

IGNORE_FILE_NAME = ".mediasyncignore"

# Default ignore patterns: system clutter, editor leftovers, partial downloads
DEFAULT_IGNORE_PATTERNS = [
    ".git/",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "._*",
    "*.part",
    "*.tmp",
    ".thumbnails/",
    ".trashed-*",
    ".mediasync/",
    "@eaDir/",
]


class IgnorePatterns:
    """Handles ignore pattern matching for media paths."""

    def __init__(self, patterns: list[str] | None = None) -> None:
        """Initialize with patterns.

        Args:
            patterns: Extra gitignore-style patterns, added to the defaults.
        """
        self._patterns = list(DEFAULT_IGNORE_PATTERNS)
        if patterns:
            self._patterns.extend(patterns)

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        """Add an ignore pattern."""
        self._patterns.append(pattern)

    def load_from_file(self, path: Path) -> None:
        """Load patterns from a .mediasyncignore file."""
        if path.exists():
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    # Skip comments and empty lines
                    if line and not line.startswith("#"):
                        self._patterns.append(line)

    @classmethod
    def for_folder(cls, base_path: Path) -> IgnorePatterns:
        """Build patterns for a folder, including its .mediasyncignore."""
        ignore = cls()
        ignore.load_from_file(base_path / IGNORE_FILE_NAME)
        return ignore

    def should_ignore(self, path: Path, base_path: Path) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Absolute path to check.
            base_path: Folder being enumerated.

        Returns:
            True if the path should be ignored.
        """
        # Symlinks could escape the folder or create cycles
        if path.is_symlink():
            return True

        try:
            rel_path = path.relative_to(base_path)
        except ValueError:
            return False

        rel_str = rel_path.as_posix()
        parts = rel_str.split("/")

        for pattern in self._patterns:
            if pattern.endswith("/"):
                # Directory pattern: matches the directory or anything under it
                dir_pattern = pattern.rstrip("/")
                dirs = parts if path.is_dir() else parts[:-1]
                if any(fnmatch.fnmatch(part, dir_pattern) for part in dirs):
                    return True
            elif "/" in pattern:
                if fnmatch.fnmatch(rel_str, pattern.lstrip("/")):
                    return True
            elif fnmatch.fnmatch(path.name, pattern):
                return True

        return False
