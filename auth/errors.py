"""
auth/errors.py -- Exception taxonomy for the auth core.

Every failure the core raises carries a stable machine-readable code, the
HTTP status the API layer maps it to, and a human-readable message. The
message must never contain token, key, or ciphertext material -- the API
exception handler renders it verbatim.

  InvalidRequest      400  malformed URL or body
  Unauthenticated     401  no session / expired session
    DecryptionError   401  stored credential unreadable -> re-login
    InvalidState      401  unknown, expired, or replayed OAuth state
  Forbidden           403  valid session, missing permission
  RateLimited         429  login throttle block (carries retry_after)
  UpstreamUnavailable 502  Home Assistant unreachable or erroring

Layer rule: no imports from api/, cache/, or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth-core errors that map to an HTTP response."""

    status_code: int = 400
    code: str = "invalid_request"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class InvalidRequest(AuthError):
    status_code = 400
    code = "invalid_request"


class Unauthenticated(AuthError):
    status_code = 401
    code = "unauthorized"


class DecryptionError(Unauthenticated):
    """A sealed value could not be authenticated or decoded.

    Raised on a tampered ciphertext or nonce, the wrong key, an unknown
    envelope version, or malformed base64. Callers that read credentials
    should degrade this to "credential unavailable".
    """


class InvalidState(Unauthenticated):
    """The OAuth state is unknown, expired, or was already consumed."""


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


class UpstreamUnavailable(AuthError):
    status_code = 502
    code = "upstream_unavailable"
