"""Local state management for the media sync client.

This module provides:
- LocalMediaStore: SQLite-based store for media records, content hashes,
  sync links and key-value sync state
- StoredMedia: A media record together with its stored hash
- merge_record: The merge rule used when re-enumeration updates a record

Architecture:
    Content hashes live next to the media record they describe. A hash is
    trusted only while hash_computed_at >= modified_at; anything else is
    reported by needs_recompute(). Re-enumeration goes through
    upsert_preserving_hash(), which keeps the hash unless the content is
    known to have changed.

    Sync links are the durable join between a local item and its confirmed
    remote copy. They are written together with the hash in one transaction
    when an upload is confirmed (record_upload).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from mediasync.client.sync.types import ContentHash, SyncLink
from mediasync.core.types import MediaKind, MediaRecord

logger = logging.getLogger(__name__)

# sqlite limits the number of host parameters per statement
_QUERY_BATCH_SIZE = 500


@dataclass
class StoredMedia:
    """A media record as persisted, with its content hash (if any)."""

    record: MediaRecord
    hash: str | None = None
    hash_computed_at: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> StoredMedia:
        """Create StoredMedia from database row."""
        record = MediaRecord(
            uri=row["uri"],
            kind=MediaKind.parse(row["kind"]),
            modified_at=row["modified_at"],
            size=row["size"],
            duration=row["duration"],
            relative_path=row["relative_path"],
        )
        return cls(record=record, hash=row["hash"], hash_computed_at=row["hash_computed_at"])

    @property
    def has_valid_hash(self) -> bool:
        """Check if the stored hash is still valid for the record."""
        return (
            self.hash is not None
            and self.hash_computed_at is not None
            and self.hash_computed_at >= self.record.modified_at
        )


def merge_record(existing: StoredMedia | None, record: MediaRecord) -> StoredMedia:
    """Merge a freshly enumerated record into its stored counterpart.

    Metadata always comes from the new record. The stored hash is kept
    unless the size changed, which proves the content changed. A newer
    modification time alone keeps the hash; it then reads as stale and
    needs_recompute() reports it.

    Args:
        existing: Currently stored entry (None for a new item).
        record: Record produced by enumeration.

    Returns:
        The entry to store.
    """
    if existing is None:
        return StoredMedia(record=record)
    old = existing.record
    if old.size is not None and record.size is not None and old.size != record.size:
        return StoredMedia(record=record)
    return StoredMedia(
        record=record,
        hash=existing.hash,
        hash_computed_at=existing.hash_computed_at,
    )


def _batched(items: list[str], size: int = _QUERY_BATCH_SIZE) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class LocalMediaStore:
    """SQLite-based local state for the media sync client.

    Implements the hash store, the sync link table and key-value state.
    All methods are thread-safe.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize local state database.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(db_path)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            -- Enumerated media with their content hash
            CREATE TABLE IF NOT EXISTS media_items (
                uri TEXT PRIMARY KEY,
                kind TEXT NOT NULL DEFAULT 'image',
                modified_at REAL NOT NULL DEFAULT 0,
                size INTEGER,
                duration INTEGER,
                relative_path TEXT,
                hash TEXT,
                hash_computed_at REAL,
                cached_at REAL NOT NULL DEFAULT 0
            );

            -- Confirmed local -> remote joins
            CREATE TABLE IF NOT EXISTS synced_media (
                local_uri TEXT PRIMARY KEY,
                remote_id TEXT NOT NULL,
                hash TEXT NOT NULL,
                synced_at REAL NOT NULL
            );

            -- Key-value sync state
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _rows_for(self, uris: list[str]) -> list[sqlite3.Row]:
        rows: list[sqlite3.Row] = []
        for batch in _batched(uris):
            placeholders = ", ".join("?" for _ in batch)
            cursor = self._conn.execute(
                f"SELECT * FROM media_items WHERE uri IN ({placeholders})",
                batch,
            )
            rows.extend(cursor.fetchall())
        return rows

    # === Media records ===

    def list_all(self) -> list[MediaRecord]:
        """List all enumerated media records, newest first."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM media_items ORDER BY modified_at DESC, uri"
            )
            rows = cursor.fetchall()
        return [StoredMedia.from_row(row).record for row in rows]

    def get_media(self, uri: str) -> StoredMedia | None:
        """Get a stored media entry by URI."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM media_items WHERE uri = ?",
                (uri,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return StoredMedia.from_row(row)

    def count(self) -> int:
        """Number of enumerated media records."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM media_items").fetchone()
        return int(row["n"])

    def upsert_preserving_hash(self, records: Iterable[MediaRecord]) -> int:
        """Insert or update records, keeping stored hashes (see merge_record).

        Args:
            records: Records produced by enumeration.

        Returns:
            Number of records written.
        """
        records = list(records)
        if not records:
            return 0
        now = time.time()

        with self._lock:
            existing = {
                row["uri"]: StoredMedia.from_row(row)
                for row in self._rows_for([r.uri for r in records])
            }
            merged = [merge_record(existing.get(r.uri), r) for r in records]
            self._conn.execute("BEGIN")
            try:
                self._conn.executemany(
                    """
                    INSERT OR REPLACE INTO media_items (
                        uri, kind, modified_at, size, duration, relative_path,
                        hash, hash_computed_at, cached_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            m.record.uri,
                            m.record.kind.value,
                            m.record.modified_at,
                            m.record.size,
                            m.record.duration,
                            m.record.relative_path,
                            m.hash,
                            m.hash_computed_at,
                            now,
                        )
                        for m in merged
                    ],
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        return len(merged)

    def delete_missing(self, current_uris: Iterable[str]) -> list[str]:
        """Delete records whose URI is no longer enumerated.

        Sync links are kept: they record what the server holds.

        Args:
            current_uris: URIs present in the latest enumeration.

        Returns:
            URIs that were removed.
        """
        current = set(current_uris)
        with self._lock:
            cursor = self._conn.execute("SELECT uri FROM media_items")
            missing = [row["uri"] for row in cursor.fetchall() if row["uri"] not in current]
            if missing:
                self._conn.executemany(
                    "DELETE FROM media_items WHERE uri = ?",
                    [(uri,) for uri in missing],
                )
        if missing:
            logger.debug(f"Removed {len(missing)} records no longer present locally")
        return missing

    # === Content hashes ===

    def get_hashes(self, uris: Iterable[str]) -> dict[str, str]:
        """Get known hashes for the given URIs (unknown ones are omitted)."""
        with self._lock:
            rows = self._rows_for(list(uris))
        return {row["uri"]: row["hash"] for row in rows if row["hash"] is not None}

    def get_content_hash(self, uri: str) -> ContentHash | None:
        """Get the stored hash of one item with its computation time."""
        stored = self.get_media(uri)
        if stored is None or stored.hash is None:
            return None
        return ContentHash(
            uri=uri,
            hash=stored.hash,
            computed_at=stored.hash_computed_at or 0.0,
        )

    def get_content_hashes(self, uris: Iterable[str]) -> dict[str, ContentHash]:
        """Get stored hashes with their computation time for several items."""
        with self._lock:
            rows = self._rows_for(list(uris))
        return {
            row["uri"]: ContentHash(
                uri=row["uri"],
                hash=row["hash"],
                computed_at=row["hash_computed_at"] or 0.0,
            )
            for row in rows
            if row["hash"] is not None
        }

    def put_hash(self, uri: str, content_hash: str, computed_at: float | None = None) -> None:
        """Store the content hash of an item (upsert)."""
        self.put_hashes({uri: content_hash}, computed_at)

    def put_hashes(self, hashes: dict[str, str], computed_at: float | None = None) -> None:
        """Store several content hashes computed at the same time."""
        if not hashes:
            return
        computed_at = time.time() if computed_at is None else computed_at
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO media_items (uri, hash, hash_computed_at)
                VALUES (?, ?, ?)
                ON CONFLICT(uri) DO UPDATE SET
                    hash = excluded.hash,
                    hash_computed_at = excluded.hash_computed_at
                """,
                [(uri, value, computed_at) for uri, value in hashes.items()],
            )

    def invalidate(self, uris: Iterable[str]) -> None:
        """Forget the stored hash of the given items."""
        with self._lock:
            self._conn.executemany(
                "UPDATE media_items SET hash = NULL, hash_computed_at = NULL WHERE uri = ?",
                [(uri,) for uri in uris],
            )

    def needs_recompute(self, uris: Iterable[str]) -> list[str]:
        """Return the subset of URIs without a valid hash.

        An item needs a new hash when it has none, or when it was modified
        after the hash was computed. Order of the input is preserved.
        """
        uris = list(uris)
        with self._lock:
            stored = {row["uri"]: StoredMedia.from_row(row) for row in self._rows_for(uris)}
        return [
            uri for uri in uris
            if uri not in stored or not stored[uri].has_valid_hash
        ]

    # === Sync links ===

    def get_link(self, local_uri: str) -> SyncLink | None:
        """Get the sync link of a local item."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM synced_media WHERE local_uri = ?",
                (local_uri,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return SyncLink(
            local_uri=row["local_uri"],
            remote_id=row["remote_id"],
            hash=row["hash"],
            synced_at=row["synced_at"],
        )

    def get_links(self, local_uris: Iterable[str]) -> dict[str, SyncLink]:
        """Get sync links for several local items."""
        uris = list(local_uris)
        links: dict[str, SyncLink] = {}
        with self._lock:
            for batch in _batched(uris):
                placeholders = ", ".join("?" for _ in batch)
                cursor = self._conn.execute(
                    f"SELECT * FROM synced_media WHERE local_uri IN ({placeholders})",
                    batch,
                )
                for row in cursor.fetchall():
                    links[row["local_uri"]] = SyncLink(
                        local_uri=row["local_uri"],
                        remote_id=row["remote_id"],
                        hash=row["hash"],
                        synced_at=row["synced_at"],
                    )
        return links

    def list_links(self) -> list[SyncLink]:
        """List all sync links."""
        with self._lock:
            cursor = self._conn.execute("SELECT * FROM synced_media ORDER BY local_uri")
            rows = cursor.fetchall()
        return [
            SyncLink(
                local_uri=row["local_uri"],
                remote_id=row["remote_id"],
                hash=row["hash"],
                synced_at=row["synced_at"],
            )
            for row in rows
        ]

    def put_link(self, link: SyncLink) -> None:
        """Store a sync link (at most one per local URI)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO synced_media (local_uri, remote_id, hash, synced_at)
                VALUES (?, ?, ?, ?)
                """,
                (link.local_uri, link.remote_id, link.hash, link.synced_at),
            )

    def remove_link(self, local_uri: str) -> None:
        """Remove the sync link of a local item."""
        with self._lock:
            self._conn.execute("DELETE FROM synced_media WHERE local_uri = ?", (local_uri,))

    def list_unlinked(self) -> list[str]:
        """URIs of enumerated items with no link for their current hash.

        These are the items still waiting for upload as far as the local
        state knows; unhashed items are included.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                SELECT m.uri FROM media_items m
                LEFT JOIN synced_media s ON s.local_uri = m.uri
                WHERE s.local_uri IS NULL OR m.hash IS NULL OR s.hash != m.hash
                ORDER BY m.modified_at DESC, m.uri
                """
            )
            rows = cursor.fetchall()
        return [row["uri"] for row in rows]

    def record_upload(
        self,
        local_uri: str,
        content_hash: str,
        remote_id: str,
        synced_at: float | None = None,
    ) -> SyncLink:
        """Record a confirmed upload.

        The sync link and the content hash are written in one transaction,
        so either both or neither survive a crash.

        Returns:
            The stored sync link.
        """
        synced_at = time.time() if synced_at is None else synced_at
        link = SyncLink(
            local_uri=local_uri,
            remote_id=remote_id,
            hash=content_hash,
            synced_at=synced_at,
        )
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                self._conn.execute(
                    """
                    INSERT INTO media_items (uri, hash, hash_computed_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(uri) DO UPDATE SET
                        hash = excluded.hash,
                        hash_computed_at = CASE
                            WHEN media_items.hash = excluded.hash
                                AND media_items.hash_computed_at IS NOT NULL
                            THEN media_items.hash_computed_at
                            ELSE excluded.hash_computed_at
                        END
                    """,
                    (local_uri, content_hash, synced_at),
                )
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO synced_media (local_uri, remote_id, hash, synced_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (link.local_uri, link.remote_id, link.hash, link.synced_at),
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        return link

    # === Sync state ===

    def get_state(self, key: str) -> str | None:
        """Get a sync state value."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT value FROM sync_state WHERE key = ?",
                (key,),
            )
            row = cursor.fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        """Set a sync state value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                (key, value),
            )

    def get_last_sync_time(self) -> float | None:
        """Get timestamp of last completed sync pass."""
        value = self.get_state("last_sync_time")
        return float(value) if value else None

    def set_last_sync_time(self, timestamp: float) -> None:
        """Set timestamp of last completed sync pass."""
        self.set_state("last_sync_time", str(timestamp))
