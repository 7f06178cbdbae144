"""
Result caching with expiry and source staleness checks.

Memoizes computed reports. An entry is served only while its TTL has not
elapsed and, under the fingerprint policy, while the log files it was
computed from are unchanged.
"""

import copy
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0

# Fingerprint of a root that does not exist or holds no logs
EMPTY_FINGERPRINT = hashlib.sha256(b"").hexdigest()


class CachePolicy(Enum):
    """How cached values are invalidated."""
    TTL = "ttl"
    FINGERPRINT = "fingerprint"


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cache slot; the value is a private deep copy."""
    key: str
    value: Any
    expiry: float
    fingerprint: Optional[str] = None


def compute_fingerprint(paths: Iterable[Path]) -> str:
    """Stable hash over ``(path, mtime)`` of every source file.

    Files that vanish between listing and stat are skipped; their absence
    already changes the digest.
    """
    digest = hashlib.sha256()
    for path in sorted(str(p) for p in paths):
        try:
            mtime_ns = os.stat(path).st_mtime_ns
        except OSError:
            continue
        digest.update(f"{path}\0{mtime_ns}\n".encode("utf-8"))
    return digest.hexdigest()


def fingerprint_directory(root: Path, pattern: str = "*/*.jsonl") -> str:
    """Fingerprint every log file below a projects root."""
    root = Path(root)
    if not root.is_dir():
        return EMPTY_FINGERPRINT
    return compute_fingerprint(root.glob(pattern))


def build_cache_key(kind: str, **params: Any) -> str:
    """Deterministic key encoding every parameter that shapes a result.

    >>> build_cache_key("daily", start_date=None, start_hour=0)
    'daily|start_date=all|start_hour=0'
    """
    parts = [kind]
    for name in sorted(params):
        value = params[name]
        if isinstance(value, Enum):
            value = value.value
        parts.append(f"{name}={'all' if value is None else value}")
    return "|".join(parts)


class ResultCache:
    """In-process cache of computed reports.

    Writes are last-write-wins per key. Values are deep-copied on the way in
    and on the way out, so a caller can never mutate a cached report.
    """

    def __init__(
        self,
        policy: CachePolicy = CachePolicy.TTL,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        fingerprint_source: Optional[Callable[[], str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if policy is CachePolicy.FINGERPRINT and fingerprint_source is None:
            raise ValueError("fingerprint policy requires a fingerprint_source")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        self.policy = policy
        self.default_ttl = default_ttl
        self._fingerprint_source = fingerprint_source
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def _current_fingerprint(self) -> Optional[str]:
        if self.policy is CachePolicy.FINGERPRINT:
            return self._fingerprint_source()
        return None

    def current_fingerprint(self) -> Optional[str]:
        """Fingerprint of the sources right now (None under the TTL policy)."""
        return self._current_fingerprint()

    def set_cache(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        fingerprint: Optional[str] = None,
    ) -> None:
        """Store a value until ``ttl`` seconds from now (default TTL if None).

        Pass the ``fingerprint`` taken before the value was computed so that
        files changed during the computation make the entry stale.
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        if fingerprint is None:
            fingerprint = self._current_fingerprint()
        self._entries[key] = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            expiry=self._clock() + ttl,
            fingerprint=fingerprint,
        )

    def get_cache(self, key: str, fingerprint: Optional[str] = None) -> Optional[Any]:
        """Return a copy of the cached value, or None on a miss.

        Expired and stale entries are evicted on read. A ``fingerprint``
        already taken by the caller is used instead of recomputing it.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() >= entry.expiry:
            self._evict(entry, "expired")
            return None

        if self.policy is CachePolicy.FINGERPRINT:
            if fingerprint is None:
                fingerprint = self._current_fingerprint()
            if fingerprint != entry.fingerprint:
                self._evict(entry, "stale")
                return None

        return copy.deepcopy(entry.value)

    def _evict(self, entry: CacheEntry, reason: str) -> None:
        # Only drop the slot if it was not replaced in the meantime
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]
        logger.debug("Cache entry %s %s", entry.key, reason)

    def clear_cache(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expiry]
        for key in expired:
            del self._entries[key]
        return len(expired)

    @property
    def size(self) -> int:
        return len(self._entries)
