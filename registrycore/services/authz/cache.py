"""In-process cache for authorization projections.

Reads are lock-free dictionary lookups. Mutations take a short per-namespace
lock that is never held across I/O. Every eviction bumps the namespace
generation; a fetch that started before the eviction carries the old
generation and its ``set`` is dropped, so a slow read cannot re-populate a
value that a concurrent write just invalidated.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import threading
import time
from typing import Any, Callable, Hashable

from registrycore.core.config import get_settings


NS_ROLE_PERMISSIONS = "role_permissions"
NS_TENANT_ROLE_PERMISSIONS = "tenant_role_permissions"
NS_MEMBERSHIPS = "memberships"

NAMESPACES = (NS_ROLE_PERMISSIONS, NS_TENANT_ROLE_PERMISSIONS, NS_MEMBERSHIPS)

MISS = object()


@dataclass(frozen=True)
class _Entry:
    expires_at: float | None
    value: Any


_SWEEP_FLOOR = 256


class _Namespace:
    def __init__(self) -> None:
        self.entries: dict[Hashable, _Entry] = {}
        self.generation = 0
        self.lock = threading.Lock()
        # Size at which the next set sweeps expired entries.
        self.sweep_at = _SWEEP_FLOOR


class PermissionCache:
    def __init__(
        self,
        *,
        ttl_s: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._max_entries = max_entries if max_entries and max_entries > 0 else None
        self._clock = clock
        self._namespaces = {name: _Namespace() for name in NAMESPACES}
        if self._max_entries is not None:
            for ns in self._namespaces.values():
                ns.sweep_at = min(ns.sweep_at, self._max_entries)

    def _ns(self, namespace: str) -> _Namespace:
        try:
            return self._namespaces[namespace]
        except KeyError:
            raise ValueError(f"Unknown cache namespace: {namespace}") from None

    def generation(self, namespace: str) -> int:
        return self._ns(namespace).generation

    def get(self, namespace: str, key: Hashable) -> Any:
        # Return MISS for absent or expired entries; None is a valid cached value.
        ns = self._ns(namespace)
        entry = ns.entries.get(key)
        if entry is None:
            return MISS
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            with ns.lock:
                # Only drop the entry we saw; a concurrent set may have replaced it.
                if ns.entries.get(key) is entry:
                    ns.entries.pop(key, None)
            return MISS
        return entry.value

    def set(self, namespace: str, key: Hashable, value: Any, *, generation: int | None = None) -> bool:
        ns = self._ns(namespace)
        now = self._clock()
        expires_at = now + self._ttl_s if self._ttl_s else None
        with ns.lock:
            if generation is not None and generation != ns.generation:
                return False
            if key not in ns.entries and len(ns.entries) >= ns.sweep_at:
                self._sweep(ns, now)
            ns.entries[key] = _Entry(expires_at=expires_at, value=value)
        return True

    def _sweep(self, ns: _Namespace, now: float) -> None:
        # Caller holds ns.lock. Entries that are never read again would otherwise stay forever.
        kept = {
            key: entry
            for key, entry in ns.entries.items()
            if entry.expires_at is None or entry.expires_at > now
        }
        if self._max_entries is not None and len(kept) >= self._max_entries:
            # Insertion order approximates age; free a tenth so the next sweep is not immediate.
            overflow = len(kept) - self._max_entries + max(1, self._max_entries // 10)
            for key in list(kept)[:overflow]:
                del kept[key]
        ns.entries = kept
        ns.sweep_at = max(_SWEEP_FLOOR, 2 * len(kept))
        if self._max_entries is not None:
            ns.sweep_at = min(ns.sweep_at, self._max_entries)

    def evict(self, namespace: str, key: Hashable) -> None:
        ns = self._ns(namespace)
        with ns.lock:
            ns.entries.pop(key, None)
            ns.generation += 1

    def evict_matching(self, namespace: str, predicate: Callable[[Hashable], bool]) -> int:
        # Copy-on-write swap keeps concurrent lock-free readers on a consistent dict.
        ns = self._ns(namespace)
        with ns.lock:
            kept = {key: entry for key, entry in ns.entries.items() if not predicate(key)}
            removed = len(ns.entries) - len(kept)
            ns.entries = kept
            ns.generation += 1
        return removed

    def evict_namespace(self, namespace: str) -> None:
        ns = self._ns(namespace)
        with ns.lock:
            ns.entries = {}
            ns.generation += 1

    def clear(self) -> None:
        for name in NAMESPACES:
            self.evict_namespace(name)

    def size(self, namespace: str) -> int:
        return len(self._ns(namespace).entries)


@lru_cache
def get_permission_cache() -> PermissionCache:
    # One cache per process, shared by the resolver and every write path.
    settings = get_settings()
    ttl_s = settings.authz_cache_ttl_s if settings.authz_cache_ttl_s > 0 else None
    return PermissionCache(ttl_s=ttl_s, max_entries=settings.authz_cache_max_entries)
