"""
auth/tokens.py -- Password hashing, CSRF tokens, and cookie helpers.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Only local accounts created
       by the CLI or an admin have one; OAuth users never do. The _DUMMY_HASH
       constant enables timing equalization in authenticate_user() so response
       time does not reveal whether a username exists [C1].

  CSRF: double-submit. The csrf_token cookie (readable by JS) carries
       HMAC-SHA256(SECRET_KEY, session_token); mutating requests must echo it
       in the X-CSRF-Token header. Because the value is derived from the
       session, a cookie planted by a sibling subdomain cannot be paired with
       the victim's session. Comparison is constant-time.

  Cookies: the session cookie is httpOnly + SameSite=Lax + Secure (unless
       DEBUG=true or SECURE_COOKIES=false), max_age aligned with the session row.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import bcrypt

from auth.sessions import SESSION_COOKIE_NAME
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("homeboard.auth")

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("homeboard_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a local username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists. Disabled accounts are
    returned as-is; the caller decides how to report them.
    """
    user = store.get_by_username(username)
    if user is None or user.password_hash is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------


def csrf_token_for(session_token: str) -> str:
    return hmac.new(
        get_settings().secret_key.encode(),
        f"csrf:{session_token}".encode(),
        hashlib.sha256,
    ).hexdigest()


def verify_csrf_token(session_token: str, presented: str | None) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(csrf_token_for(session_token), presented)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _max_age(expires_at: datetime) -> int:
    return max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def set_session_cookies(response, token: str, expires_at: datetime) -> None:
    """Write the session cookie and its companion CSRF cookie.

    httponly=True on the session cookie: JS cannot read it (XSS mitigation).
    The CSRF cookie is deliberately readable so the frontend can echo it.
    """
    secure = get_settings().secure_cookies
    max_age = _max_age(expires_at)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
        path="/",
    )
    response.set_cookie(
        CSRF_COOKIE_NAME,
        value=csrf_token_for(token),
        httponly=False,
        samesite="lax",
        secure=secure,
        max_age=max_age,
        path="/",
    )


def clear_session_cookies(response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    response.delete_cookie(CSRF_COOKIE_NAME, path="/")
