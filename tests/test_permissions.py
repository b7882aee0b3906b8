"""
tests/test_permissions.py -- Unit tests for auth/permissions.py.

Coverage:
  - role grants + overrides (True adds, False removes) -> effective set
  - unknown users resolve to the empty set
  - cache hit / miss behaviour observed through a counting store wrapper
  - every mutation helper invalidates the entries it affects
"""

from __future__ import annotations

from auth.models import User
from auth.permissions import PermissionResolver
from auth.store import UserStore
from cache.store import MemoryKeyValueStore, TTLCache
from conftest import FakeClock


class CountingStore:
    """Delegates to a UserStore and counts get_role() calls (one per cache miss)."""

    def __init__(self, store: UserStore) -> None:
        self._store = store
        self.role_lookups = 0

    def get_role(self, user_id: int):
        self.role_lookups += 1
        return self._store.get_role(user_id)

    def __getattr__(self, name: str):
        return getattr(self._store, name)


def _user_with_role(store: UserStore, keys: list[str]) -> int:
    role_id = store.create_role("tester", keys)
    return store.create_user(User(display_name="Tess", username="tess", role_id=role_id))


class TestResolution:
    def test_overrides_apply_on_top_of_role(self, user_store: UserStore) -> None:
        """Role {a, b} + overrides {b: False, c: True} -> {a, c}."""
        user_id = _user_with_role(user_store, ["a", "b"])
        user_store.set_override(user_id, "b", False)
        user_store.set_override(user_id, "c", True)

        resolver = PermissionResolver(user_store)
        assert resolver.resolve(user_id) == frozenset({"a", "c"})
        assert resolver.has_permission(user_id, "a")
        assert not resolver.has_permission(user_id, "b")
        assert resolver.has_permission(user_id, "c")

    def test_user_without_role(self, user_store: UserStore) -> None:
        user_id = user_store.create_user(User(display_name="Nobody", username="nobody"))
        resolver = PermissionResolver(user_store)
        assert resolver.resolve(user_id) == frozenset()
        resolver.set_override(user_id, "module:calendar", True)
        assert resolver.resolve(user_id) == frozenset({"module:calendar"})

    def test_unknown_user_is_empty(self, user_store: UserStore) -> None:
        assert PermissionResolver(user_store).resolve(4242) == frozenset()


class TestCaching:
    def test_second_resolve_hits_cache(self, user_store: UserStore) -> None:
        counting = CountingStore(user_store)
        user_id = _user_with_role(user_store, ["a"])
        resolver = PermissionResolver(counting)

        resolver.resolve(user_id)
        resolver.resolve(user_id)
        assert counting.role_lookups == 1

    def test_prefix_invalidation_forces_store_read(self, user_store: UserStore) -> None:
        counting = CountingStore(user_store)
        user_id = _user_with_role(user_store, ["a"])
        resolver = PermissionResolver(counting)

        resolver.resolve(user_id)
        resolver.cache.invalidate_by_prefix("perms:")
        resolver.resolve(user_id)
        assert counting.role_lookups == 2

    def test_ttl_expiry_forces_store_read(self, user_store: UserStore, clock: FakeClock) -> None:
        counting = CountingStore(user_store)
        user_id = _user_with_role(user_store, ["a"])
        resolver = PermissionResolver(counting, TTLCache(ttl=120, store=MemoryKeyValueStore(clock=clock)))

        resolver.resolve(user_id)
        clock.advance(121)
        resolver.resolve(user_id)
        assert counting.role_lookups == 2

    def test_direct_store_write_is_stale_until_invalidated(self, user_store: UserStore) -> None:
        user_id = _user_with_role(user_store, ["a"])
        resolver = PermissionResolver(user_store)
        resolver.resolve(user_id)

        user_store.set_override(user_id, "a", False)
        assert resolver.has_permission(user_id, "a")  # cached
        resolver.invalidate(user_id)
        assert not resolver.has_permission(user_id, "a")


class RevokingStore(CountingStore):
    """Runs an admin mutation while resolve() is between its store reads."""

    def __init__(self, store: UserStore, mutate) -> None:
        super().__init__(store)
        self._mutate = mutate

    def list_overrides(self, user_id: int):
        overrides = self._store.list_overrides(user_id)
        mutate, self._mutate = self._mutate, None
        if mutate is not None:
            mutate()
        return overrides


class TestConcurrentInvalidation:
    def test_override_during_resolve_is_not_cached(self, user_store: UserStore) -> None:
        user_id = _user_with_role(user_store, ["action:locks"])
        resolver = PermissionResolver(user_store)
        resolver._store = RevokingStore(
            user_store, lambda: resolver.set_override(user_id, "action:locks", False)
        )

        # The overlapping resolve may still see the old set...
        resolver.resolve(user_id)
        # ...but the next one must not be served from a stale cache entry.
        assert not resolver.has_permission(user_id, "action:locks")

    def test_role_edit_during_resolve_is_not_cached(self, user_store: UserStore) -> None:
        role_id = user_store.create_role("family", ["module:cameras"])
        user_id = user_store.create_user(User(display_name="Kid", username="kid", role_id=role_id))
        resolver = PermissionResolver(user_store)
        resolver._store = RevokingStore(user_store, lambda: resolver.set_role_permissions(role_id, []))

        resolver.resolve(user_id)
        assert resolver.resolve(user_id) == frozenset()

    def test_quiet_resolve_still_caches(self, user_store: UserStore) -> None:
        user_id = _user_with_role(user_store, ["a"])
        counting = CountingStore(user_store)
        resolver = PermissionResolver(counting)
        resolver.invalidate(user_id)

        resolver.resolve(user_id)
        resolver.resolve(user_id)
        assert counting.role_lookups == 1


class TestMutationHelpers:
    def test_set_and_clear_override_invalidate(self, user_store: UserStore) -> None:
        user_id = _user_with_role(user_store, ["a"])
        resolver = PermissionResolver(user_store)
        assert resolver.resolve(user_id) == frozenset({"a"})

        resolver.set_override(user_id, "a", False)
        assert resolver.resolve(user_id) == frozenset()

        assert resolver.clear_override(user_id, "a")
        assert resolver.resolve(user_id) == frozenset({"a"})

    def test_assign_role_invalidates(self, user_store: UserStore) -> None:
        user_id = _user_with_role(user_store, ["a"])
        other_role = user_store.create_role("other", ["z"])
        resolver = PermissionResolver(user_store)
        resolver.resolve(user_id)

        resolver.assign_role(user_id, other_role)
        assert resolver.resolve(user_id) == frozenset({"z"})

    def test_role_edit_invalidates_every_holder(self, user_store: UserStore) -> None:
        role_id = user_store.create_role("family", ["a"])
        first = user_store.create_user(User(display_name="One", username="one", role_id=role_id))
        second = user_store.create_user(User(display_name="Two", username="two", role_id=role_id))
        resolver = PermissionResolver(user_store)
        resolver.resolve(first)
        resolver.resolve(second)

        resolver.set_role_permissions(role_id, ["a", "b"])
        assert resolver.resolve(first) == frozenset({"a", "b"})
        assert resolver.resolve(second) == frozenset({"a", "b"})
