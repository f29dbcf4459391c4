"""Local/remote diff and reconciliation.

This module provides:
- DiffReconciler: Partitions local items against the remote snapshot

Rules:
    - One batched POST /media/sync {uri: hash} per pass.
    - An item is already synced iff a non-deleted remote record carries the
      same hash. Hash equality is the only criterion; timestamps never
      decide sync status.
    - An item whose hash matches, but whose existing link (for that same
      hash) points at a remote id that is no longer among the matches, is
      reported as a conflict and treated as an upload candidate.
    - Remote records matching no local hash are reported as remote-only.
    - Deleted remote records are ignored.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from mediasync.client.sync.types import SyncSnapshot

if TYPE_CHECKING:
    from mediasync.client.api import CloudClient, RemoteRecord
    from mediasync.client.state import LocalMediaStore

logger = logging.getLogger(__name__)

# Reuse the last remote snapshot for an identical hash map within this window
SNAPSHOT_CACHE_TTL = 30.0  # seconds


class DiffReconciler:
    """Reconciles local hashes with the remote store."""

    def __init__(
        self,
        client: CloudClient,
        store: LocalMediaStore,
        cache_ttl: float = SNAPSHOT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the reconciler.

        Args:
            client: HTTP client (its auth flow guards the sync call).
            store: Local store holding sync links.
            cache_ttl: Seconds a remote snapshot may be reused.
            clock: Monotonic clock (injectable for tests).
        """
        self._client = client
        self._store = store
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cached_hashes: dict[str, str] | None = None
        self._cached_remote: list[RemoteRecord] = []
        self._cached_at = 0.0

    def invalidate_cache(self) -> None:
        """Drop the cached remote snapshot."""
        with self._lock:
            self._cached_hashes = None
            self._cached_remote = []

    def _fetch_remote(
        self, local_hashes: dict[str, str], force_full_refresh: bool
    ) -> list[RemoteRecord]:
        with self._lock:
            if (
                not force_full_refresh
                and self._cached_hashes == local_hashes
                and self._clock() - self._cached_at < self._cache_ttl
            ):
                logger.debug("Using cached remote snapshot")
                return list(self._cached_remote)

        remote = self._client.sync_media(local_hashes)

        with self._lock:
            self._cached_hashes = dict(local_hashes)
            self._cached_remote = list(remote)
            self._cached_at = self._clock()
        return remote

    def reconcile(
        self,
        local_hashes: dict[str, str],
        force_full_refresh: bool = False,
        unhashed: Iterable[str] = (),
    ) -> SyncSnapshot:
        """Partition local items against the remote snapshot.

        Args:
            local_hashes: Mapping of local URI to content hash.
            force_full_refresh: Bypass the remote snapshot cache.
            unhashed: Items without a usable hash; they are always upload
                candidates.

        Returns:
            SyncSnapshot for this pass.

        Raises:
            APIError: If the sync call fails (transport errors propagate as
                httpx.TransportError).
        """
        remote = self._fetch_remote(local_hashes, force_full_refresh)

        remote_by_hash: dict[str, list[RemoteRecord]] = {}
        live: list[RemoteRecord] = []
        for record in remote:
            if record.is_deleted:
                continue
            live.append(record)
            if record.hash:
                remote_by_hash.setdefault(record.hash, []).append(record)

        links = self._store.get_links(local_hashes.keys())
        snapshot = SyncSnapshot()

        for uri, content_hash in local_hashes.items():
            matches = remote_by_hash.get(content_hash)
            if not matches:
                snapshot.needs_upload.append(uri)
                continue

            link = links.get(uri)
            match_ids = {m.id for m in matches}
            if link is not None and link.hash == content_hash and link.remote_id not in match_ids:
                logger.warning(
                    f"{uri} was linked to remote {link.remote_id} but its content "
                    f"now matches {sorted(match_ids)}, scheduling upload"
                )
                snapshot.conflicts.add(uri)
                snapshot.needs_upload.append(uri)
                continue

            snapshot.already_synced.add(uri)
            if link is not None and link.remote_id in match_ids:
                snapshot.matched[uri] = next(m for m in matches if m.id == link.remote_id)
            else:
                snapshot.matched[uri] = matches[0]

        for uri in unhashed:
            if uri not in local_hashes:
                snapshot.needs_upload.append(uri)

        local_values = set(local_hashes.values())
        snapshot.remote_only = [r for r in live if not r.hash or r.hash not in local_values]

        logger.info(
            f"Reconciled {len(local_hashes)} items: {len(snapshot.already_synced)} synced, "
            f"{len(snapshot.needs_upload)} to upload, {len(snapshot.remote_only)} remote-only, "
            f"{len(snapshot.conflicts)} conflicts"
        )
        return snapshot

    def repair_links(self, snapshot: SyncSnapshot, local_hashes: dict[str, str]) -> int:
        """Write missing or stale links for items found already synced.

        Recovers uploads the server accepted before the link was written.

        Returns:
            Number of links written.
        """
        links = self._store.get_links(snapshot.matched.keys())
        repaired = 0
        for uri, record in snapshot.matched.items():
            content_hash = local_hashes[uri]
            link = links.get(uri)
            if link is not None and link.hash == content_hash and link.remote_id == record.id:
                continue
            self._store.record_upload(uri, content_hash, record.id)
            repaired += 1
        if repaired:
            logger.info(f"Recovered {repaired} sync links from the remote snapshot")
        return repaired
