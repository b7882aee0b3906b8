"""
api/csrf.py -- Same-origin checks and request base URL derivation.

Two layers guard state-changing API requests:
  1. Origin/Referer check (this module, run from middleware): when the browser
     sends either header, its origin must be this app's own origin.
  2. Double-submit token (auth/dependencies.require_csrf): X-CSRF-Token must
     equal the HMAC of the session token.

A request with neither header (curl, server-to-server) passes layer 1; it
still has to clear layer 2 on any route that mutates state.

request_base_url() decides the OAuth client_id / redirect_uri root. With
APP_BASE_URL set it is authoritative. Otherwise the Host header is used, but
only if ALLOWED_HOSTS names it -- a forged Host must never become the
redirect target Home Assistant sends the authorization code to.
"""

from __future__ import annotations

from urllib.parse import urlsplit

from fastapi import Request

from auth.errors import InvalidRequest
from core.config import get_settings

UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _origin_of(url: str | None) -> str | None:
    if not url:
        return None
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    default_port = {"http": 80, "https": 443}.get(parts.scheme)
    host = parts.hostname.lower()
    if port and port != default_port:
        host = f"{host}:{port}"
    return f"{parts.scheme.lower()}://{host}"


def trusted_origins(request: Request) -> set[str]:
    origins = {_origin_of(str(request.base_url))}
    settings = get_settings()
    if settings.app_base_url:
        origins.add(_origin_of(settings.app_base_url))
    origins.discard(None)
    return origins


def is_same_origin(request: Request) -> bool:
    """True unless Origin (or, failing that, Referer) names a foreign origin."""
    presented = request.headers.get("origin")
    if presented is None:
        referer = request.headers.get("referer")
        if referer is None:
            return True
        presented = referer
    if presented == "null":
        return False
    return _origin_of(presented) in trusted_origins(request)


def request_base_url(request: Request) -> str:
    """Return the public base URL of this app for the current request."""
    settings = get_settings()
    if settings.app_base_url:
        return settings.app_base_url.rstrip("/")
    host = (request.url.hostname or "").lower()
    allowed = settings.allowed_host_list
    if not settings.debug and host not in allowed:
        raise InvalidRequest("Request host is not allowed.", detail="Set APP_BASE_URL or ALLOWED_HOSTS.")
    return str(request.base_url).rstrip("/")
