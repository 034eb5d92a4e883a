"""Zone cache: last-known-good snapshots of provider zones.

The refresher is the only writer. It fetches outside the lock and swaps a
whole snapshot under it. Readers take the lock just long enough to grab the
current tuple.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from dns_rr.errors import CacheRefreshError, CancellationToken, OperationCancelled
from dns_rr.providers import DNSProvider, RecordSet

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 300


def cache_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class ZoneCache:
    """Map of provider cache key -> ordered tuple of the zone's record sets."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[RecordSet, ...]] = {}
        self._refreshed_at: Dict[str, float] = {}

    def get(self, key: str) -> Optional[Tuple[RecordSet, ...]]:
        with self._lock:
            return self._entries.get(key)

    def replace(self, key: str, record_sets: Iterable[RecordSet]) -> None:
        snapshot = tuple(record_sets)
        with self._lock:
            self._entries[key] = snapshot
            self._refreshed_at[key] = time.time()

    def refreshed_at(self, key: str) -> Optional[float]:
        with self._lock:
            return self._refreshed_at.get(key)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._refreshed_at.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass(frozen=True)
class CachedZone:
    """One configured provider instance whose zone is kept in the cache."""

    key: str
    provider: DNSProvider
    zone_id: str


class ZoneCacheRefresher:
    """Background task that refreshes every configured zone on an interval."""

    def __init__(
        self,
        cache: ZoneCache,
        zones: Iterable[CachedZone],
        interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
    ):
        self._cache = cache
        self._zones = list(zones)
        self._interval = interval_seconds
        self._cancel = CancellationToken()
        self._thread: Optional[threading.Thread] = None

    @property
    def zones(self) -> List[CachedZone]:
        return list(self._zones)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def refresh_once(self, cancel: Optional[CancellationToken] = None) -> List[CacheRefreshError]:
        """Refresh every zone once. Failed zones keep their previous snapshot."""
        cancel = cancel or self._cancel
        errors: List[CacheRefreshError] = []
        for zone in self._zones:
            if cancel.cancelled:
                break
            try:
                record_sets = zone.provider.all_record_sets(zone.zone_id, cancel)
            except OperationCancelled:
                logger.info(f"Cache refresh canceled while fetching {zone.key}")
                break
            except Exception as e:
                error = CacheRefreshError(zone.key, e)
                logger.error(f"{error}; keeping previous snapshot")
                errors.append(error)
                continue

            self._cache.replace(zone.key, record_sets)
            logger.info(f"Completed updating cache for {zone.key} ({len(record_sets)} record sets)")
        return errors

    def start(self) -> None:
        """Start the background loop. A stopped refresher can be started again."""
        if self.running:
            return
        if self._cancel.cancelled:
            self._cancel = CancellationToken()
        self._thread = threading.Thread(
            target=self._run, args=(self._cancel,), name="zone-cache-refresh", daemon=True
        )
        self._thread.start()

    def _run(self, cancel: CancellationToken) -> None:
        logger.info(f"Initializing zone cache for {len(self._zones)} zone(s)")
        self.refresh_once(cancel)
        logger.info(f"Started cache refresh in background every {self._interval}s")
        while not cancel.wait(self._interval):
            self.refresh_once(cancel)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._cancel.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
