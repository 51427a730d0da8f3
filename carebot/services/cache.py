"""Thread-safe in-memory cache with pluggable expiry.

Two caches in the service use this: the tenant-config cache (entries expire
after a fixed TTL so admin edits propagate without a restart) and the
knowledge-text cache (entries live until an explicit reload).

Design decisions
────────────────
• **EvictionPolicy** objects decide whether an entry is stale; the cache
  itself only stores ``(value, stored_at)`` pairs.
• **Injectable clock** so expiry can be tested without sleeping.
• **OrderedDict** with an optional entry ceiling for LRU eviction.
• **threading.Lock** for thread safety (the CLI and the server both touch
  the same process-wide caches).
• **Prefix-based invalidation** so the admin surface can drop every key
  belonging to a tenant in one call.

Usage
─────
>>> cache = Cache(TTLExpiry(600))
>>> cache.put("tenant:Acme", org)
>>> cache.get("tenant:Acme")
org
>>> cache.invalidate_prefix("tenant:")
1
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


# ── Eviction policies ────────────────────────────────────────────────


class EvictionPolicy:
    """Decides whether an entry stored at *stored_at* is stale at *now*."""

    def is_expired(self, stored_at: float, now: float) -> bool:
        raise NotImplementedError


class NoExpiry(EvictionPolicy):
    """Entries live until explicitly invalidated."""

    def is_expired(self, stored_at: float, now: float) -> bool:
        return False


class TTLExpiry(EvictionPolicy):
    """Entries expire *ttl_seconds* after they were stored."""

    def __init__(self, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive; use NoExpiry instead")
        self.ttl_seconds = ttl_seconds

    def is_expired(self, stored_at: float, now: float) -> bool:
        return now - stored_at >= self.ttl_seconds


def policy_for_ttl(ttl_seconds: float) -> EvictionPolicy:
    """Map a configured TTL to a policy (``0`` or less means no expiry)."""
    return TTLExpiry(ttl_seconds) if ttl_seconds > 0 else NoExpiry()


# ── Cache ────────────────────────────────────────────────────────────


class Cache:
    """Keyed cache whose staleness rule is delegated to an ``EvictionPolicy``."""

    def __init__(
        self,
        policy: EvictionPolicy | None = None,
        *,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy or NoExpiry()
        self._max_entries = max_entries
        self._clock = clock
        # key → (value, stored_at)
        self._store: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` if absent or expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self._policy.is_expired(stored_at, self._clock()):
                del self._store[key]
                logger.debug("Cache EXPIRED key=%s", key)
                return None
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite *key*, stamping it with the current time."""
        with self._lock:
            self._store[key] = (value, self._clock())
            self._store.move_to_end(key)
            if self._max_entries is not None:
                while len(self._store) > self._max_entries:
                    evicted, _ = self._store.popitem(last=False)
                    logger.debug("Cache EVICT key=%s", evicted)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    # ── Invalidation ─────────────────────────────────────────────────

    def invalidate(self, key: str) -> bool:
        """Remove *key*.  Returns ``True`` if it was present."""
        with self._lock:
            if self._store.pop(key, None) is None:
                return False
            logger.debug("Cache INVALIDATE key=%s", key)
            return True

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key starting with *prefix*.  Returns count removed."""
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for key in keys:
                del self._store[key]
        if keys:
            logger.debug("Cache INVALIDATE_PREFIX prefix=%s removed=%d", prefix, len(keys))
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    # ── Introspection ────────────────────────────────────────────────

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._store)
