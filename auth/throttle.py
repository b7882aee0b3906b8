"""
auth/throttle.py -- Sliding-window login throttle.

Guards the authentication endpoints against brute force, keyed by an
identifier (username or client IP). Policy, all configurable:

  - up to max_attempts (5) failures inside window_seconds (15 min);
  - once that many failures are on record, check() installs a hard block of
    block_seconds (15 min). The block runs on its own timer and is not
    shortened when the attempt window rolls over;
  - a success clears the identifier's history immediately.

State lives in an injected KeyValueStore (one entry per identifier) and every
read-modify-write goes through the store's atomic update(), so concurrent
request threads never lose an increment. With a MemoryKeyValueStore this is a
single-process limiter; pointing it at a shared store gives every worker the
same counters.

Layer rule: no imports from api/. cache/ is allowed (it has no reverse
dependencies).
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from cache.store import KeyValueStore, MemoryKeyValueStore

logger = logging.getLogger("homeboard.auth.throttle")

_KEY_PREFIX = "throttle:"


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    retry_after: int = 0


class LoginThrottle:
    def __init__(
        self,
        store: KeyValueStore | None = None,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        block_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store if store is not None else MemoryKeyValueStore(clock=clock)
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self._clock = clock

    def _entry_ttl(self) -> int:
        # Long enough to outlive both the window and a block started at its end.
        return self.window_seconds + self.block_seconds

    def check(self, identifier: str) -> ThrottleDecision:
        """Decide whether identifier may attempt to authenticate now."""
        now = self._clock()
        decision: list[ThrottleDecision] = []

        def _apply(entry: dict | None) -> dict | None:
            if entry is None:
                decision.append(ThrottleDecision(allowed=True))
                return None
            blocked_until = entry.get("blocked_until")
            if blocked_until is not None and now < blocked_until:
                decision.append(ThrottleDecision(allowed=False, retry_after=math.ceil(blocked_until - now)))
                return entry
            if now - entry["first_attempt"] > self.window_seconds:
                decision.append(ThrottleDecision(allowed=True))
                return None
            if entry["count"] >= self.max_attempts:
                entry = dict(entry, blocked_until=now + self.block_seconds)
                decision.append(ThrottleDecision(allowed=False, retry_after=self.block_seconds))
                logger.warning("Login throttle engaged for %s", identifier)
                return entry
            decision.append(ThrottleDecision(allowed=True))
            return entry

        self._store.update(_KEY_PREFIX + identifier, _apply, ttl=self._entry_ttl())
        return decision[0]

    def record(self, identifier: str, success: bool) -> None:
        """Record the outcome of an authentication attempt."""
        key = _KEY_PREFIX + identifier
        if success:
            self._store.delete(key)
            return
        now = self._clock()

        def _apply(entry: dict | None) -> dict:
            if entry is None or now - entry["first_attempt"] > self.window_seconds:
                # A running block survives a window rollover.
                blocked_until = entry.get("blocked_until") if entry else None
                fresh = {"count": 1, "first_attempt": now}
                if blocked_until is not None and now < blocked_until:
                    fresh["blocked_until"] = blocked_until
                return fresh
            return dict(entry, count=entry["count"] + 1)

        self._store.update(key, _apply, ttl=self._entry_ttl())

    def failed_attempts(self, identifier: str) -> int:
        entry = self._store.get(_KEY_PREFIX + identifier)
        return entry["count"] if entry else 0

    def purge_expired(self) -> int:
        """Drop identifiers whose window has lapsed and that are not blocked."""
        now = self._clock()
        removed: list[str] = []

        def _apply(key: str, entry: dict | None) -> dict | None:
            if entry is None:
                return None
            blocked_until = entry.get("blocked_until")
            window_over = now - entry["first_attempt"] > self.window_seconds
            if window_over and (blocked_until is None or now >= blocked_until):
                removed.append(key)
                return None
            return entry

        # Decided inside update() so a failure recorded mid-purge is never dropped.
        for key in self._store.keys(_KEY_PREFIX):
            self._store.update(key, lambda entry, key=key: _apply(key, entry), ttl=self._entry_ttl())
        return len(removed) + self._store.purge_expired()
