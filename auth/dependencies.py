"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Every privileged route resolves a Session first, before any other
authorization work. The session comes only from the ha_session cookie.

try_get_session() is the soft variant (returns None on failure).
get_current_session() / get_current_user() raise Unauthenticated (401).
require_permission(key) additionally raises Forbidden (403).
require_csrf() guards state-mutating routes with the double-submit check.

Missing and invalid sessions are indistinguishable: both are a plain 401.

Layer rule: no imports from api/, core/, or cache/.
  auth/dependencies.py may import from fastapi because it is part of the
  FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.errors import Forbidden, Unauthenticated
from auth.models import Session, User
from auth.sessions import SESSION_COOKIE_NAME
from auth.tokens import CSRF_HEADER_NAME, verify_csrf_token

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def try_get_session(request: Request) -> Session | None:
    """Return the live Session for this request, or None. Never raises.

    The result is memoized on request.state so the gate middleware and the
    route dependency do not validate the same token twice.
    """
    if hasattr(request.state, "session"):
        return request.state.session
    token = request.cookies.get(SESSION_COOKIE_NAME)
    session = request.app.state.sessions.validate(token) if token else None
    request.state.session = session
    return session


def get_current_session(request: Request) -> Session:
    session = try_get_session(request)
    if session is None:
        raise Unauthenticated("Authentication required.")
    return session


def get_current_user(request: Request) -> User:
    """Require authentication. Raises Unauthenticated (401) if the request has no live session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    session = get_current_session(request)
    user = request.app.state.user_store.find_user(session.user_id)
    if user is None or not user.is_active:
        raise Unauthenticated("Authentication required.")
    return user


def require_csrf(request: Request) -> None:
    """Reject unsafe requests whose X-CSRF-Token does not match the session."""
    if request.method in _SAFE_METHODS:
        return
    session = get_current_session(request)
    if not verify_csrf_token(session.token, request.headers.get(CSRF_HEADER_NAME)):
        raise Forbidden("CSRF validation failed.", detail="csrf")


def require_permission(key: str) -> Callable[[Request], User]:
    """Dependency factory: authenticated user holding permission key.

    Use as a FastAPI dependency:
        @router.post("/locks")
        def route(user: User = Depends(require_permission("action:locks"))): ...
    """

    def _dependency(request: Request) -> User:
        user = get_current_user(request)
        if not request.app.state.permissions.has_permission(user.id, key):
            raise Forbidden("You do not have permission to perform this action.", detail=key)
        return user

    return _dependency
