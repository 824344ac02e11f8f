"""
Decision cache keyed by failure fingerprint.

Entries expire by TTL and are evicted least-recently-used at capacity. A
daemon sweeper removes expired entries in the background; expired entries
are also invisible to reads before the sweeper reaches them.

The cache also coordinates in-flight evaluations: the first miss on a
fingerprint becomes its owner, and concurrent misses on the same fingerprint
wait for the owner's decision instead of calling a provider themselves.
"""

import json
import logging
import os
import tempfile
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..core.metrics import MetricsCollector
from ..core.models.healing_models import CacheConfig, CacheEntry, CacheStats, HealDecision


logger = logging.getLogger("healer.cache")

PERSISTENCE_VERSION = 1


class ReservationRole(Enum):
    """What a caller must do after reserving a fingerprint."""
    HIT = "hit"
    OWNER = "owner"
    FOLLOWER = "follower"


@dataclass
class CacheReservation:
    """Result of ``DecisionCache.reserve``.

    HIT carries the cached decision. OWNER must later call ``complete`` or
    ``abandon``. FOLLOWER calls ``wait`` to receive the owner's decision.
    """
    fingerprint: str
    role: ReservationRole
    decision: Optional[HealDecision] = None
    _future: Optional[Future] = field(default=None, repr=False)

    def wait(self, timeout: Optional[float]) -> HealDecision:
        """Block until the owner finishes.

        Raises:
            TimeoutError: The owner did not finish in time
            Exception: Whatever the owner passed to ``abandon``
        """
        if self.role != ReservationRole.FOLLOWER or self._future is None:
            raise RuntimeError(f"Only followers wait; this reservation is {self.role.value}")
        try:
            return self._future.result(timeout=timeout)
        except FutureTimeoutError:
            raise TimeoutError(f"Timed out after {timeout}s waiting for in-flight heal") from None


class DecisionCache:
    """Thread-safe TTL + LRU store of heal decisions."""

    def __init__(self, config: CacheConfig, clock: Callable[[], float] = time.monotonic,
                 metrics: Optional[MetricsCollector] = None, start_sweeper: bool = True):
        """
        Args:
            config: Cache size, TTL and persistence settings
            clock: Monotonic clock used for TTL bookkeeping
            metrics: Optional metrics collector for hit/miss accounting
            start_sweeper: Start the background expiry thread
        """
        self.config = config
        self._clock = clock
        self.metrics = metrics
        self._lock = threading.RLock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._in_flight: Dict[str, Future] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if start_sweeper:
            self._sweeper = threading.Thread(target=self._sweep_loop,
                                             name="healer-cache-sweeper", daemon=True)
            self._sweeper.start()

    @property
    def persistence_path(self) -> Optional[Path]:
        return Path(self.config.persistence_path) if self.config.persistence_path else None

    def get(self, fingerprint: str) -> Optional[HealDecision]:
        """Return the cached decision, counting a hit or a miss."""
        with self._lock:
            entry = self._lookup_locked(fingerprint)
        if self.metrics:
            self.metrics.record_cache_lookup(entry is not None)
        return entry.decision if entry else None

    def get_entry(self, fingerprint: str) -> Optional[CacheEntry]:
        """Return a copy of the live entry without touching statistics."""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return replace(entry)

    def put(self, fingerprint: str, decision: HealDecision, ttl_seconds: float) -> None:
        if not self.config.enabled:
            return
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        now = self._clock()
        with self._lock:
            self._entries.pop(fingerprint, None)
            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint,
                decision=decision,
                inserted_at=now,
                ttl_seconds=ttl_seconds,
                last_accessed_at=now
            )
            while len(self._entries) > self.config.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted least recently used entry {evicted[:12]}")

    def invalidate(self, fingerprint: str) -> bool:
        with self._lock:
            removed = self._entries.pop(fingerprint, None) is not None
        if removed:
            logger.info(f"Invalidated cached decision {fingerprint[:12]}")
        return removed

    def reserve(self, fingerprint: str) -> CacheReservation:
        """Look up a fingerprint and claim or join its in-flight evaluation."""
        with self._lock:
            entry = self._lookup_locked(fingerprint)
            if entry is not None:
                reservation = CacheReservation(fingerprint, ReservationRole.HIT, entry.decision)
            elif fingerprint in self._in_flight:
                reservation = CacheReservation(fingerprint, ReservationRole.FOLLOWER,
                                               _future=self._in_flight[fingerprint])
            else:
                self._in_flight[fingerprint] = Future()
                reservation = CacheReservation(fingerprint, ReservationRole.OWNER)
        if self.metrics:
            self.metrics.record_cache_lookup(reservation.role == ReservationRole.HIT)
        return reservation

    def complete(self, fingerprint: str, decision: HealDecision) -> None:
        """Release an owned fingerprint and hand the decision to its followers."""
        with self._lock:
            future = self._in_flight.pop(fingerprint, None)
        if future is not None:
            future.set_result(decision)

    def abandon(self, fingerprint: str, error: BaseException) -> None:
        """Release an owned fingerprint without a decision; followers receive the error."""
        with self._lock:
            future = self._in_flight.pop(fingerprint, None)
        if future is not None:
            future.set_exception(error)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def sweep_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [fp for fp, entry in self._entries.items() if entry.is_expired(now)]
            for fp in expired:
                del self._entries[fp]
            self._expirations += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                max_size=self.config.max_size,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
                in_flight=len(self._in_flight)
            )

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {count} cached decisions")
        return count

    def export_entries(self) -> List[Dict[str, Any]]:
        """Serialize live entries. ``inserted_at`` is converted to epoch seconds."""
        now = self._clock()
        wall_now = time.time()
        with self._lock:
            entries = [entry for entry in self._entries.values() if not entry.is_expired(now)]
            return [
                {
                    "fingerprint": entry.fingerprint,
                    "decision": entry.decision.to_dict(),
                    "inserted_at": wall_now - (now - entry.inserted_at),
                    "ttl_seconds": entry.ttl_seconds
                }
                for entry in entries
            ]

    def import_entries(self, entries: List[Dict[str, Any]]) -> int:
        """Insert serialized entries, keeping their remaining lifetime.

        Malformed or already expired entries are skipped.

        Returns:
            Number of entries imported
        """
        imported = 0
        now = self._clock()
        wall_now = time.time()
        for raw in entries:
            try:
                fingerprint = str(raw["fingerprint"])
                decision = HealDecision.from_dict(raw["decision"])
                ttl = float(raw["ttl_seconds"])
                age = max(0.0, wall_now - float(raw["inserted_at"]))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed cache entry: {e}")
                continue
            if ttl <= 0 or age >= ttl:
                continue
            self.put(fingerprint, decision, ttl)
            with self._lock:
                entry = self._entries.get(fingerprint)
                if entry is not None:
                    entry.inserted_at = now - age
            imported += 1
        return imported

    def save(self) -> bool:
        """Write entries to the persistence file. Failures are logged, not raised."""
        path = self.persistence_path
        if path is None:
            return False
        payload = {"version": PERSISTENCE_VERSION, "entries": self.export_entries()}
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".cache_", suffix=".json", dir=str(path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_name, path)
        except OSError as e:
            logger.error(f"Failed to persist decision cache to {path}: {e}")
            return False
        logger.info(f"Persisted {len(payload['entries'])} cached decisions to {path}")
        return True

    def load(self) -> int:
        """Load entries from the persistence file. Failures are logged, not raised."""
        path = self.persistence_path
        if path is None or not path.exists():
            return 0
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read decision cache from {path}: {e}")
            return 0
        if not isinstance(payload, dict) or payload.get("version") != PERSISTENCE_VERSION:
            logger.warning(f"Ignoring decision cache file {path} with unknown layout")
            return 0
        imported = self.import_entries(payload.get("entries") or [])
        logger.info(f"Loaded {imported} cached decisions from {path}")
        return imported

    def shutdown(self) -> None:
        """Stop and join the sweeper, then flush persistence."""
        self._stop.set()
        if self._sweeper is not None and self._sweeper.is_alive():
            self._sweeper.join(timeout=max(1.0, self.config.sweep_interval_seconds))
        self.save()

    def _lookup_locked(self, fingerprint: str) -> Optional[CacheEntry]:
        if not self.config.enabled:
            self._misses += 1
            return None
        entry = self._entries.get(fingerprint)
        now = self._clock()
        if entry is not None and entry.is_expired(now):
            del self._entries[fingerprint]
            self._expirations += 1
            entry = None
        if entry is None:
            self._misses += 1
            return None
        entry.last_accessed_at = now
        entry.hit_count += 1
        self._entries.move_to_end(fingerprint)
        self._hits += 1
        return entry

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.sweep_interval_seconds):
            self.sweep_expired()
