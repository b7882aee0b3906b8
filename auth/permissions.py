"""
auth/permissions.py -- Effective permission resolution with a TTL cache.

Effective set = role grants, then per-user overrides applied on top:
  granted=True   adds the key even if the role lacks it
  granted=False  removes the key even if the role grants it
Overrides are a set keyed by permission, so there is no ordering to argue
about -- each key has at most one override and it always wins.

Results are cached under "perms:<user_id>" for the cache's TTL. Every
mutation helper here writes through the store and then drops the affected
cache entries; code that mutates roles or overrides some other way must call
invalidate() / invalidate_all_permissions() itself before the next resolve.
A resolve that overlaps an invalidation returns what it read but does not
cache it, so a revoked key cannot outlive the mutation in the cache.

Layer rule: no imports from api/. cache/ and core/ are allowed.
"""

from __future__ import annotations

import logging
import threading

from auth.store import UserStore
from cache.store import (
    PERMISSIONS_PREFIX,
    TTLCache,
    invalidate_all_permissions,
    invalidate_user_permissions,
)

logger = logging.getLogger("homeboard.auth.permissions")


def _cache_key(user_id: int) -> str:
    return f"{PERMISSIONS_PREFIX}{user_id}"


class PermissionResolver:
    def __init__(self, store: UserStore, cache: TTLCache | None = None) -> None:
        self._store = store
        self.cache = cache if cache is not None else TTLCache(ttl=120)
        # Bumped by every invalidation. A resolve only caches its result if
        # no invalidation for that user (or for everyone) ran while it read
        # the store.
        self._lock = threading.Lock()
        self._epoch = 0
        self._generations: dict[int, int] = {}

    def _generation(self, user_id: int) -> tuple[int, int]:
        return self._epoch, self._generations.get(user_id, 0)

    def resolve(self, user_id: int) -> frozenset[str]:
        """Return the effective permission keys for user_id (empty for unknown users)."""
        cached = self.cache.get(_cache_key(user_id))
        if cached is not None:
            return frozenset(cached)

        with self._lock:
            generation = self._generation(user_id)

        if self._store.find_user(user_id) is None:
            return frozenset()

        role = self._store.get_role(user_id)
        effective = set(role.permissions) if role is not None else set()
        for override in self._store.list_overrides(user_id):
            if override.granted:
                effective.add(override.permission_key)
            else:
                effective.discard(override.permission_key)

        with self._lock:
            if self._generation(user_id) == generation:
                # Stored as a sorted list so JSON-backed stores can hold it too.
                self.cache.set(_cache_key(user_id), sorted(effective))
            else:
                logger.debug("Permissions for user %s changed during resolve; not caching", user_id)
        return frozenset(effective)

    def has_permission(self, user_id: int, key: str) -> bool:
        return key in self.resolve(user_id)

    # ------------------------------------------------------------------
    # Invalidation hooks
    # ------------------------------------------------------------------

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            invalidate_user_permissions(self.cache, user_id)
        logger.info("Invalidated permissions for user %s", user_id)

    def invalidate_all_permissions(self) -> None:
        with self._lock:
            self._epoch += 1
            invalidate_all_permissions(self.cache)
        logger.info("Invalidated all permissions")

    # ------------------------------------------------------------------
    # Mutations (write-through + invalidate)
    # ------------------------------------------------------------------

    def assign_role(self, user_id: int, role_id: int | None) -> bool:
        updated = self._store.update_user(user_id, role_id=role_id)
        self.invalidate(user_id)
        return updated

    def set_override(self, user_id: int, key: str, granted: bool) -> None:
        self._store.set_override(user_id, key, granted)
        self.invalidate(user_id)

    def clear_override(self, user_id: int, key: str) -> bool:
        removed = self._store.delete_override(user_id, key)
        self.invalidate(user_id)
        return removed

    def set_role_permissions(self, role_id: int, keys: list[str]) -> None:
        # Any number of users may hold the role; drop every cached set.
        self._store.set_role_permissions(role_id, keys)
        self.invalidate_all_permissions()
