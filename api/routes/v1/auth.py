"""
api/routes/v1/auth.py -- Login, logout, and session introspection endpoints.

Routes:
  GET  /api/v1/auth/login      -- start Home Assistant OAuth; 302 to /auth/authorize
  GET  /api/v1/auth/callback   -- finish OAuth; sets session cookies; 302 back
  POST /api/v1/auth/login      -- local username/password login
  POST /api/v1/auth/logout     -- destroy session, clear cookies (idempotent)
  GET  /api/v1/auth/me         -- current user, role, effective permissions
  GET  /api/v1/auth/csrf       -- re-issue the CSRF cookie for this session

Security:
  [H2] Both login routes carry a slowapi per-IP ceiling (LOGIN_RATE_LIMIT) on
       top of the failure-counting Login Throttle.
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that sets a session cookie.
  Callback failures never echo provider output beyond the error description,
  and the post-login redirect is the path recorded at initiation.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.csrf import request_base_url
from api.limiter import limiter
from api.models import AuthorizationUrlResponse, CsrfResponse, LoginRequest, LoginResponse, MeResponse
from auth.dependencies import get_current_session, get_current_user, try_get_session
from auth.errors import Forbidden, InvalidState, RateLimited, Unauthenticated, UpstreamUnavailable
from auth.models import Session, User
from auth.sessions import SESSION_COOKIE_NAME
from auth.throttle import LoginThrottle
from auth.tokens import (
    authenticate_user,
    clear_session_cookies,
    csrf_token_for,
    set_session_cookies,
)
from core.config import get_settings

logger = logging.getLogger("homeboard.api.auth")

# Auth policy:
# - GET  /auth/login, /auth/callback, POST /auth/login, /auth/logout: public
# - GET  /auth/me, /auth/csrf: require a session
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _enforce_throttle(throttle: LoginThrottle, *identifiers: str) -> None:
    for identifier in identifiers:
        decision = throttle.check(identifier)
        if not decision.allowed:
            logger.warning("Login throttled for %s", identifier)
            raise RateLimited(
                "Too many failed login attempts. Try again later.",
                retry_after=decision.retry_after,
            )


def _login_error_redirect(message: str) -> RedirectResponse:
    resp = RedirectResponse(f"/login?error={quote(message)}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _role_name(request: Request, user: User) -> str | None:
    role = request.app.state.user_store.get_role(user.id)
    return role.name if role is not None else None


# ---------------------------------------------------------------------------
# Home Assistant OAuth
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # [H2]
@router.get("/auth/login", response_model=None)
def start_login(
    request: Request,
    url: str | None = None,
    redirect: str | None = None,
    response_format: str | None = Query(default=None, alias="format"),
) -> RedirectResponse | AuthorizationUrlResponse:
    """Begin the OAuth flow against the Home Assistant instance at url.

    ?format=json returns the authorization URL instead of redirecting, for
    clients that open it themselves.
    """
    state = request.app.state
    _enforce_throttle(state.throttle, f"ip:{_client_ip(request)}")
    authorization_url = state.oauth.initiate(url, redirect, request_base_url(request))
    if response_format == "json":
        return AuthorizationUrlResponse(authorization_url=authorization_url)
    return RedirectResponse(authorization_url, status_code=302)


@router.get("/auth/callback")
def oauth_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
) -> RedirectResponse:
    """Complete the OAuth flow and start a session.

    Every failure lands on /login?error=...; the browser is mid-redirect, so a
    JSON error body would be a dead end for the user.
    """
    app_state = request.app.state
    throttle_key = f"ip:{_client_ip(request)}"

    if error:
        logger.info("Home Assistant returned an OAuth error: %s", error)
        return _login_error_redirect(error_description or error)
    if not code or not state:
        return _login_error_redirect("Missing code or state")

    try:
        result = app_state.oauth.complete_callback(code, state)
    except InvalidState as exc:
        app_state.throttle.record(throttle_key, success=False)
        return _login_error_redirect(exc.message)
    except UpstreamUnavailable as exc:
        logger.warning("OAuth callback failed, Home Assistant unavailable: %s", exc.message)
        return _login_error_redirect("Home Assistant is unreachable.")

    if not result.success:
        app_state.throttle.record(throttle_key, success=False)
        return _login_error_redirect(result.error or "Authentication failed")

    app_state.throttle.record(throttle_key, success=True)
    issued = app_state.sessions.create(result.user.id)
    resp = RedirectResponse(result.redirect_path, status_code=302)
    set_session_cookies(resp, issued.token, issued.expires_at)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Local password login
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set session cookies.

    Wrong username and wrong password produce the same 401 so the response
    does not reveal which usernames exist.
    """
    state = request.app.state
    user_key = f"user:{body.username.lower()}"
    ip_key = f"ip:{_client_ip(request)}"
    _enforce_throttle(state.throttle, user_key, ip_key)

    user = authenticate_user(state.user_store, body.username, body.password)
    if user is None:
        state.throttle.record(user_key, success=False)
        state.throttle.record(ip_key, success=False)
        raise Unauthenticated("Invalid username or password.", detail="bad_credentials")
    if not user.is_active:
        raise Forbidden("This account has been disabled.", detail="account_disabled")

    state.throttle.record(user_key, success=True)
    state.throttle.record(ip_key, success=True)
    state.user_store.update_last_login(user.id)
    issued = state.sessions.create(user.id)
    logger.info("Local login for user %s", user.id)

    resp = JSONResponse(
        content=LoginResponse(
            user_id=user.id,
            display_name=user.display_name,
            role=_role_name(request, user),
            permissions=sorted(state.permissions.resolve(user.id)),
            expires_at=issued.expires_at.isoformat(),
        ).model_dump(),
    )
    set_session_cookies(resp, issued.token, issued.expires_at)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """End the session. Safe to call without one.

    No CSRF token is required: the worst a forged logout can do is log the
    user out, and a stale tab must always be able to clear its cookies.
    """
    session = try_get_session(request)
    request.app.state.sessions.destroy(request.cookies.get(SESSION_COOKIE_NAME))
    if session is not None:
        logger.info("Logout for user %s", session.user_id)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookies(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(
    request: Request,
    session: Session = Depends(get_current_session),
    current_user: User = Depends(get_current_user),
) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        display_name=current_user.display_name,
        username=current_user.username,
        role=_role_name(request, current_user),
        person_entity_id=current_user.person_entity_id,
        ha_instance_url=current_user.ha_instance_url,
        permissions=sorted(request.app.state.permissions.resolve(current_user.id)),
        session_expires_at=session.expires_at.isoformat(),
    )


@router.get("/auth/csrf", response_model=CsrfResponse)
def csrf(session: Session = Depends(get_current_session)) -> JSONResponse:
    """Return the CSRF token and rewrite its cookie (for tabs that lost it)."""
    token = csrf_token_for(session.token)
    resp = JSONResponse(content=CsrfResponse(csrf_token=token).model_dump())
    set_session_cookies(resp, session.token, session.expires_at)
    return resp
