"""
cache/store.py -- Key-value stores and the TTL cache built on them.

Every piece of shared in-memory state (login throttle counters, permission
cache, pending OAuth authorizations) goes through the KeyValueStore interface
so a process-local map and a shared SQL table are interchangeable without
touching call sites.

  MemoryKeyValueStore -- dict guarded by a threading.Lock. Single process.
  SQLKeyValueStore    -- JSON values in a SQL table with an expiry column.
                         Several workers pointed at the same database share
                         state (required for pending authorizations when the
                         app runs behind more than one worker).

Expiry is lazy: an expired entry is dropped when it is read. purge_expired()
trims everything else and is called from the app's background loop.

Usage:
    cache = TTLCache(ttl=120)
    cache.set("perms:42", ["action:locks"])
    cache.get("perms:42")                 # value or None
    cache.invalidate_by_prefix("perms:")
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy import Column, Float, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

Clock = Callable[[], float]


class KeyValueStore:
    """Interface for the small associative stores the auth core depends on."""

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        raise NotImplementedError

    def pop(self, key: str) -> Any | None:
        """Return and remove the value in one atomic step."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def purge_expired(self) -> int:
        raise NotImplementedError

    def update(self, key: str, fn: Callable[[Any | None], Any | None], ttl: float | None = None) -> Any | None:
        """Replace the value for key with fn(current); None deletes the key."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-process implementation
# ---------------------------------------------------------------------------


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> tuple[Any, float | None] | None:
        # Caller holds the lock.
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and now >= expires_at:
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key, self._clock())
        return entry[0] if entry is not None else None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def pop(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None:
                return None
            del self._data[key]
        return entry[0]

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        now = self._clock()
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k, now) is not None]

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if k.startswith(prefix)]
            for k in doomed:
                del self._data[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [k for k, (_, exp) in self._data.items() if exp is not None and now >= exp]
            for k in doomed:
                del self._data[k]
        return len(doomed)

    def update(self, key: str, fn: Callable[[Any | None], Any | None], ttl: float | None = None) -> Any | None:
        """Atomically replace the value for key with fn(current).

        fn returning None deletes the key. Used by the login throttle for its
        read-modify-write on attempt counters.
        """
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            new_value = fn(entry[0] if entry is not None else None)
            if new_value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = (new_value, now + ttl if ttl is not None else None)
        return new_value


# ---------------------------------------------------------------------------
# Shared SQL implementation
# ---------------------------------------------------------------------------

_metadata = MetaData()

_kv = Table(
    "kv_store",
    _metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),  # JSON
    Column("expires_at", Float),  # epoch seconds, NULL = no expiry
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class SQLKeyValueStore(KeyValueStore):
    """KeyValueStore persisted in a SQL table. Values must be JSON-serializable.

    pop() is atomic across processes: the DELETE's rowcount decides which
    caller consumed the row, so two concurrent callers can never both receive
    the value.
    """

    def __init__(self, db_url: str = "sqlite:///homeboard.db", clock: Clock = time.time) -> None:
        self._clock = clock
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        # Serializes update() within this process; cross-process updates are
        # last-writer-wins, which the throttle tolerates.
        self._update_lock = threading.Lock()

    def _is_live(self, expires_at: float | None, now: float) -> bool:
        return expires_at is None or now < expires_at

    def get(self, key: str) -> Any | None:
        with self.engine.connect() as conn:
            row = conn.execute(_kv.select().where(_kv.c.key == key)).fetchone()
        if row is None:
            return None
        if not self._is_live(row.expires_at, self._clock()):
            self.delete(key)
            return None
        return json.loads(row.value)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        payload = json.dumps(value)
        with self.engine.begin() as conn:
            conn.execute(_kv.delete().where(_kv.c.key == key))
            conn.execute(_kv.insert().values(key=key, value=payload, expires_at=expires_at))

    def pop(self, key: str) -> Any | None:
        with self.engine.begin() as conn:
            row = conn.execute(_kv.select().where(_kv.c.key == key)).fetchone()
            if row is None:
                return None
            result = conn.execute(_kv.delete().where(_kv.c.key == key))
        if result.rowcount != 1:
            # Another caller deleted it between our SELECT and DELETE.
            return None
        if not self._is_live(row.expires_at, self._clock()):
            return None
        return json.loads(row.value)

    def delete(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_kv.delete().where(_kv.c.key == key))

    def keys(self, prefix: str = "") -> list[str]:
        now = self._clock()
        with self.engine.connect() as conn:
            rows = conn.execute(_kv.select().where(_kv.c.key.startswith(prefix, autoescape=True))).fetchall()
        return [r.key for r in rows if self._is_live(r.expires_at, now)]

    def delete_prefix(self, prefix: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_kv.delete().where(_kv.c.key.startswith(prefix, autoescape=True)))
        return result.rowcount

    def clear(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(_kv.delete())

    def purge_expired(self) -> int:
        """Delete all entries whose expiry has passed. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_kv.delete().where(_kv.c.expires_at < self._clock()))
        return result.rowcount

    def update(self, key: str, fn: Callable[[Any | None], Any | None], ttl: float | None = None) -> Any | None:
        with self._update_lock:
            new_value = fn(self.get(key))
            if new_value is None:
                self.delete(key)
            else:
                self.set(key, new_value, ttl)
        return new_value

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------------


class TTLCache:
    """Fixed-TTL cache over a KeyValueStore.

    The cache is strictly derived state. Correctness depends on every
    mutation path calling the matching invalidation.

    namespace is prepended to every key so a cache can share a backing store
    with other users of it; invalidate_all() only drops its own namespace.
    """

    def __init__(self, ttl: float = 60, store: KeyValueStore | None = None, namespace: str = "") -> None:
        self.ttl = ttl
        self.namespace = namespace
        self._store = store if store is not None else MemoryKeyValueStore()

    def get(self, key: str) -> Any | None:
        """Return the cached value for key if it exists and hasn't expired."""
        return self._store.get(self.namespace + key)

    def set(self, key: str, value: Any) -> None:
        self._store.set(self.namespace + key, value, ttl=self.ttl)

    def delete(self, key: str) -> None:
        self._store.delete(self.namespace + key)

    def invalidate_all(self) -> None:
        if self.namespace:
            self._store.delete_prefix(self.namespace)
        else:
            self._store.clear()

    def invalidate_by_prefix(self, prefix: str) -> int:
        return self._store.delete_prefix(self.namespace + prefix)

    def purge_expired(self) -> int:
        return self._store.purge_expired()


# ---------------------------------------------------------------------------
# Invalidation helpers for the two app-level caches
# ---------------------------------------------------------------------------

PERMISSIONS_PREFIX = "perms:"


def invalidate_user_permissions(cache: TTLCache, user_id: int) -> None:
    cache.delete(f"{PERMISSIONS_PREFIX}{user_id}")


def invalidate_all_permissions(cache: TTLCache) -> int:
    return cache.invalidate_by_prefix(PERMISSIONS_PREFIX)


def invalidate_global_config(cache: TTLCache) -> None:
    cache.invalidate_all()
