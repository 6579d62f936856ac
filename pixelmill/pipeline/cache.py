"""
Result Cache - Content-Addressed, Single-Flight

Keys are fingerprints over (source checksum, operation, canonical params).
At most one computation runs per fingerprint: later callers wait on the
first one and receive its result or its exception. Failures are never
stored, so the next call recomputes.

Eviction is least-recently-used, bounded by total bytes. Computations in
progress live outside the entry table, so eviction can never touch them.
"""

import hashlib
import itertools
import json
import threading
from typing import Any, Callable, Dict, Optional

from pixelmill.core.logging import get_logger
from pixelmill.core.metrics import cache_bytes_gauge, cache_evictions_total, record_cache_request
from pixelmill.engines.codec import ImageFormat
from pixelmill.pipeline.schemas import OperationKind, OperationParams

logger = get_logger(__name__)


# =============================================================================
# Fingerprinting
# =============================================================================

def _normalize(value: Any) -> Any:
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        return float(repr(value))
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return str(value)


def canonicalize_params(params: OperationParams, source_format: Optional[ImageFormat] = None) -> str:
    """
    Encode validated parameters so that equal parameter sets encode equally.

    Defaults are resolved first (against ``source_format`` where they depend
    on it), keys are sorted and integral floats become ints. So
    ``{"target_format": "jpeg"}`` and ``{"target_format": "JPG", "quality": 90}``
    canonicalize identically.
    """
    return json.dumps(
        _normalize(params.resolve(source_format).model_dump(mode="json")),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True
    )


def compute_fingerprint(
    source_checksum: str,
    kind: OperationKind,
    params: OperationParams,
    source_format: Optional[ImageFormat] = None
) -> str:
    """Pure function of its inputs: same inputs, same fingerprint."""
    digest = hashlib.sha256()
    for part in (source_checksum, kind.value, canonicalize_params(params, source_format)):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


# =============================================================================
# Cache
# =============================================================================

class CacheEntry:
    """A resolved result plus its LRU bookkeeping."""

    __slots__ = ("fingerprint", "value", "size", "last_access", "ref_count")

    def __init__(self, fingerprint: str, value: Any, size: int, last_access: int):
        self.fingerprint = fingerprint
        self.value = value
        self.size = size
        self.last_access = last_access
        self.ref_count = 1  # callers served from this entry


class _Flight:
    """An in-progress computation other callers can wait on."""

    __slots__ = ("done", "value", "error", "waiters")

    def __init__(self):
        self.done = threading.Event()
        self.value = None
        self.error: Optional[BaseException] = None
        self.waiters = 0


def _default_size(value: Any) -> int:
    return int(getattr(value, "size_bytes", 0))


class ResultCache:
    """
    Single-flight LRU cache shared by all workers.

    Lookups of resolved entries take no lock; inserting, evicting and
    registering computations are serialized by ``_lock``.
    """

    def __init__(
        self,
        max_bytes: int,
        size_of: Callable[[Any], int] = _default_size,
        is_cacheable: Callable[[Any], bool] = lambda value: True
    ):
        self.max_bytes = max_bytes
        self._size_of = size_of
        self._is_cacheable = is_cacheable
        self._entries: Dict[str, CacheEntry] = {}
        self._flights: Dict[str, _Flight] = {}
        self._lock = threading.Lock()
        self._clock = itertools.count()
        self._total_bytes = 0

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    def peek(self, fingerprint: str) -> Optional[CacheEntry]:
        return self._entries.get(fingerprint)

    def _serve(self, entry: CacheEntry):
        entry.last_access = next(self._clock)
        entry.ref_count += 1
        record_cache_request("hit")
        logger.debug("cache_hit", fingerprint=entry.fingerprint)
        return entry.value

    def get_or_compute(
        self,
        fingerprint: str,
        compute: Callable[[], Any],
        keep: Optional[Callable[[], bool]] = None
    ):
        """
        Return the cached value for ``fingerprint``, computing it at most once.

        Concurrent callers for the same fingerprint block until the first
        caller's computation finishes and then share its value or exception.
        ``keep`` is asked once the computing caller has its value; when it
        returns False and nobody else waited for the value, it is not stored.
        """
        entry = self._entries.get(fingerprint)
        if entry is not None:
            return self._serve(entry)

        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is not None:
                return self._serve(entry)
            flight = self._flights.get(fingerprint)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[fingerprint] = flight
            else:
                flight.waiters += 1

        if not leader:
            record_cache_request("shared")
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.value

        record_cache_request("miss")
        try:
            value = compute()
        except BaseException as e:
            with self._lock:
                del self._flights[fingerprint]
            flight.error = e
            flight.done.set()
            raise

        with self._lock:
            wanted = flight.waiters > 0 or keep is None or keep()
            if wanted and self._is_cacheable(value):
                self._insert(fingerprint, value, served=1 + flight.waiters)
            del self._flights[fingerprint]
        flight.value = value
        flight.done.set()
        return value

    def _insert(self, fingerprint: str, value: Any, served: int = 1):
        size = self._size_of(value)
        if size > self.max_bytes:
            logger.info("cache_entry_too_large", fingerprint=fingerprint, size=size, max_bytes=self.max_bytes)
            return
        entry = CacheEntry(fingerprint, value, size, next(self._clock))
        entry.ref_count = served
        self._entries[fingerprint] = entry
        self._total_bytes += size
        self._evict()
        cache_bytes_gauge.set(self._total_bytes)

    def _evict(self):
        if self._total_bytes <= self.max_bytes:
            return
        for entry in sorted(self._entries.values(), key=lambda e: e.last_access):
            if self._total_bytes <= self.max_bytes:
                break
            del self._entries[entry.fingerprint]
            self._total_bytes -= entry.size
            cache_evictions_total.inc()
            logger.debug("cache_evicted", fingerprint=entry.fingerprint, size=entry.size)

    def invalidate(self, fingerprint: str) -> bool:
        with self._lock:
            entry = self._entries.pop(fingerprint, None)
            if entry is None:
                return False
            self._total_bytes -= entry.size
            cache_bytes_gauge.set(self._total_bytes)
            return True

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._total_bytes = 0
            cache_bytes_gauge.set(0)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "bytes": self._total_bytes,
                "max_bytes": self.max_bytes,
                "in_flight": len(self._flights),
            }
