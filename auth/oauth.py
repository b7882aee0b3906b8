"""
auth/oauth.py -- Home Assistant OAuth token broker.

Drives the Authorization Code flow (with PKCE) against a user-supplied Home
Assistant instance, persists the resulting token pair sealed by the
credential cipher, and hands out live access tokens afterwards.

Login attempt lifecycle:

  IDLE --initiate--> AWAITING_CALLBACK --valid code+state--> EXCHANGING --tokens--> COMPLETE
                                       --bad/expired state--> FAILED (InvalidState)
  EXCHANGING --provider error--> FAILED (CallbackResult.success=False)

The AWAITING_CALLBACK context is a PendingAuthorization in an injected
KeyValueStore, keyed by state. complete_callback() pops it atomically, so two
concurrent callbacks carrying the same state cannot both proceed -- the loser
gets InvalidState. The redirect path returned on success is the one recorded
at initiation; nothing from the callback query can steer it [open redirect].

Token reads are split in two:
  peek(user_id)          decrypt only, no side effects
  ensure_fresh(user_id)  may refresh (less than refresh_skew seconds left),
                         retries one network failure after a short backoff,
                         deletes the credential when Home Assistant rejects
                         the refresh token. Returns None whenever the caller
                         must send the user back through login.

No lock is held while talking to Home Assistant.

Layer rule: no imports from api/. cache/ and core/ are allowed.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit

from authlib.common.security import generate_token

from auth.crypto import CredentialCipher
from auth.errors import InvalidRequest, InvalidState, UpstreamUnavailable
from auth.homeassistant import HomeAssistantClient, ProviderRejected
from auth.models import Credential, CredentialKind, PendingAuthorization, User
from auth.store import UserStore
from cache.store import KeyValueStore, MemoryKeyValueStore

logger = logging.getLogger("homeboard.auth.oauth")

_PENDING_PREFIX = "oauth:state:"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def normalize_remote_url(url: str | None) -> str:
    """Validate an http(s) base URL and strip the trailing slash.

    Raises InvalidRequest for anything without an http/https scheme and a host,
    or carrying credentials, a query, or a fragment.
    """
    if not url or not isinstance(url, str):
        raise InvalidRequest("Home Assistant URL is required.")
    candidate = url.strip()
    try:
        parts = urlsplit(candidate)
        parts.port  # noqa: B018 -- raises ValueError on a malformed port
    except ValueError as exc:
        raise InvalidRequest("Home Assistant URL is malformed.") from exc
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise InvalidRequest("Home Assistant URL must start with http:// or https://.")
    if parts.username or parts.password or parts.query or parts.fragment:
        raise InvalidRequest("Home Assistant URL must be a plain base URL.")
    return candidate.rstrip("/")


def sanitize_redirect_path(path: str | None) -> str:
    """Return path if it is a local absolute path, else "/".

    "//evil.example" and "/\\evil.example" are protocol-relative in browsers
    and rejected.
    """
    if not path or not path.startswith("/") or path.startswith("//") or path.startswith("/\\"):
        return "/"
    return path


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class CallbackResult:
    success: bool
    redirect_path: str = "/"
    user: User | None = None
    error: str | None = None


@dataclass(frozen=True)
class StoredToken:
    access_token: str
    expires_at: datetime | None

    def expires_within(self, seconds: float, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - now < timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------


class HomeAssistantOAuth:
    def __init__(
        self,
        store: UserStore,
        cipher: CredentialCipher,
        client: HomeAssistantClient,
        pending: KeyValueStore | None = None,
        *,
        client_id: str | None = None,
        pending_ttl: int = 600,
        refresh_skew: int = 60,
        retry_backoff: float = 0.5,
        pkce: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._client = client
        self._pending = pending if pending is not None else MemoryKeyValueStore(clock=clock)
        self.client_id = client_id.rstrip("/") if client_id else None
        self.pending_ttl = pending_ttl
        self.refresh_skew = refresh_skew
        self.retry_backoff = retry_backoff
        self.pkce = pkce
        self._clock = clock
        self._sleep = sleep

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def initiate(self, remote_base_url: str, redirect_path: str | None, request_base_url: str) -> str:
        """Record a pending authorization and return the provider's authorize URL."""
        ha_url = normalize_remote_url(remote_base_url)
        base_url = normalize_remote_url(request_base_url)
        state = secrets.token_hex(32)
        verifier = generate_token(64) if self.pkce else None
        pending = PendingAuthorization(
            state=state,
            ha_url=ha_url,
            redirect_path=sanitize_redirect_path(redirect_path),
            request_base_url=base_url,
            created_at=self._clock(),
            code_verifier=verifier,
        )
        self._pending.set(_PENDING_PREFIX + state, pending.to_dict(), ttl=self.pending_ttl)
        logger.info("OAuth login initiated against %s", ha_url)
        return self._client.authorization_url(ha_url, base_url, state, verifier)

    def complete_callback(self, code: str, state: str) -> CallbackResult:
        """Consume the pending authorization for state and exchange code for tokens.

        Raises InvalidState when state is unknown, expired, or already used,
        and UpstreamUnavailable when Home Assistant cannot be reached (the
        state is consumed either way). Provider rejections come back as
        CallbackResult(success=False).
        """
        data = self._pending.pop(_PENDING_PREFIX + state) if state else None
        if data is None:
            logger.warning("OAuth callback with unknown or replayed state")
            raise InvalidState("Login request is invalid or has expired. Please try again.")
        pending = PendingAuthorization.from_dict(data)
        if self._clock() - pending.created_at > self.pending_ttl:
            raise InvalidState("Login request is invalid or has expired. Please try again.")
        if not code:
            return CallbackResult(success=False, error="Missing authorization code.")

        try:
            tokens = self._client.exchange_code(pending.ha_url, pending.request_base_url, code, pending.code_verifier)
            identity = self._client.fetch_identity(pending.ha_url, tokens.access_token)
        except ProviderRejected as exc:
            logger.warning("Home Assistant rejected the login (%s)", exc.error)
            return CallbackResult(success=False, error="Home Assistant rejected the login.")

        user = self._store.upsert_user(identity.user_id, identity.name, pending.ha_url)
        if not user.is_active:
            logger.warning("Disabled user %s attempted OAuth login", user.id)
            return CallbackResult(success=False, error="This account has been disabled.")

        self._persist(user.id, tokens.access_token, tokens.refresh_token, tokens.expires_in, pending.request_base_url)
        self._store.update_last_login(user.id)
        logger.info("OAuth login completed for user %s", user.id)
        return CallbackResult(success=True, redirect_path=pending.redirect_path, user=user)

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    def peek(self, user_id: int) -> StoredToken | None:
        """Decrypt the stored access token without refreshing or deleting anything."""
        cred = self._store.find_credential(user_id, CredentialKind.home_assistant_token)
        if cred is None:
            return None
        access = self._cipher.reveal(cred.secret)
        if access is None:
            return None
        return StoredToken(access_token=access, expires_at=cred.expires_at)

    def ensure_fresh(self, user_id: int) -> str | None:
        """Return a valid access token, refreshing it first if it is (nearly) expired."""
        kind = CredentialKind.home_assistant_token
        cred = self._store.find_credential(user_id, kind)
        if cred is None:
            return None

        access = self._cipher.reveal(cred.secret)
        if access is None:
            self._store.delete_credential(user_id, kind)
            return None
        if not StoredToken(access, cred.expires_at).expires_within(self.refresh_skew, self._now()):
            return access

        refresh_token = self._cipher.reveal(cred.refresh_secret)
        user = self._store.find_user(user_id)
        if refresh_token is None or user is None or not user.ha_instance_url:
            logger.info("No usable refresh token for user %s; re-authentication required", user_id)
            self._store.delete_credential(user_id, kind)
            return None

        client_id = cred.client_id or self.client_id
        if not client_id:
            self._store.delete_credential(user_id, kind)
            return None
        if self.client_id and client_id.rstrip("/").lower() != self.client_id.lower():
            logger.warning(
                "OAuth client_id mismatch for user %s: token issued to %s, app now runs as %s",
                user_id,
                client_id,
                self.client_id,
            )

        tokens = None
        for attempt in range(2):
            try:
                tokens = self._client.refresh(user.ha_instance_url, client_id, refresh_token)
                break
            except ProviderRejected as exc:
                logger.warning("Refresh token rejected for user %s (%s); credential removed", user_id, exc.error)
                self._store.delete_credential(user_id, kind)
                return None
            except UpstreamUnavailable as exc:
                if attempt == 0:
                    logger.info("Token refresh failed for user %s, retrying once: %s", user_id, exc.message)
                    self._sleep(self.retry_backoff)
                    continue
                logger.error("Token refresh failed for user %s: %s", user_id, exc.message)
                return None

        self._persist(
            user_id,
            tokens.access_token,
            tokens.refresh_token or refresh_token,
            tokens.expires_in,
            client_id,
        )
        logger.info("Access token refreshed for user %s (expires in %ss)", user_id, tokens.expires_in)
        return tokens.access_token

    get_stored_token = ensure_fresh

    def revoke(self, user_id: int) -> bool:
        """Forget the stored Home Assistant tokens for user_id."""
        return self._store.delete_credential(user_id, CredentialKind.home_assistant_token)

    def _persist(
        self,
        user_id: int,
        access_token: str,
        refresh_token: str | None,
        expires_in: int,
        client_id: str,
    ) -> None:
        self._store.upsert_credential(
            Credential(
                user_id=user_id,
                kind=CredentialKind.home_assistant_token,
                secret=self._cipher.seal(access_token),
                refresh_secret=self._cipher.seal(refresh_token) if refresh_token else None,
                client_id=client_id,
                expires_at=self._now() + timedelta(seconds=expires_in),
            )
        )
