"""
auth/sessions.py -- Opaque server-side sessions.

A session token is secrets.token_hex(32): 256 bits of randomness, meaningless
outside the sessions table. The browser only ever holds the token (httpOnly
cookie); everything else lives in the store.

Validity: the session row exists, expires_at is in the future, and the user it
references exists and is active. validate() never extends expires_at -- the
sliding last_seen_at is bookkeeping only, written at most once per
touch_interval to keep reads cheap.

"No session" and "invalid/expired session" are indistinguishable to callers:
both yield None.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.models import Session
from auth.store import UserStore

logger = logging.getLogger("homeboard.auth.sessions")

SESSION_COOKIE_NAME = "ha_session"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: datetime


class SessionManager:
    def __init__(
        self,
        store: UserStore,
        lifetime_seconds: int = 30 * 24 * 60 * 60,
        touch_interval_seconds: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self.lifetime = timedelta(seconds=lifetime_seconds)
        self.touch_interval = timedelta(seconds=touch_interval_seconds)
        self._clock = clock

    def create(self, user_id: int, lifetime_seconds: int | None = None) -> IssuedSession:
        """Issue a new session for user_id and persist it."""
        now = self._clock()
        lifetime = timedelta(seconds=lifetime_seconds) if lifetime_seconds else self.lifetime
        token = secrets.token_hex(32)
        expires_at = now + lifetime
        self._store.create_session(
            Session(token=token, user_id=user_id, created_at=now, expires_at=expires_at, last_seen_at=now)
        )
        logger.info("Session created for user %s (expires %s)", user_id, expires_at.isoformat())
        return IssuedSession(token=token, expires_at=expires_at)

    def validate(self, token: str | None) -> Session | None:
        """Return the live Session for token, or None."""
        if not token:
            return None
        session = self._store.find_session(token)
        if session is None:
            return None
        now = self._clock()
        if now >= session.expires_at:
            self._store.delete_session(token)
            return None
        user = self._store.find_user(session.user_id)
        if user is None or not user.is_active:
            return None
        if session.last_seen_at is None or now - session.last_seen_at >= self.touch_interval:
            self._store.touch_session(token, now)
            session.last_seen_at = now
        return session

    def destroy(self, token: str | None) -> None:
        """Delete the session. Destroying an unknown token is not an error."""
        if token:
            self._store.delete_session(token)

    def destroy_all(self, user_id: int) -> int:
        count = self._store.delete_sessions_for_user(user_id)
        logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    def purge_expired(self) -> int:
        return self._store.purge_expired_sessions(self._clock())
