"""
auth/homeassistant.py -- The network edge to a remote Home Assistant instance.

Everything that leaves the process toward Home Assistant goes through
HomeAssistantClient, so the OAuth broker can be exercised against a fake in
tests and no other module needs to know about HTTP or WebSocket details.

Endpoints used:
  GET  <ha>/auth/authorize                 -- browser redirect (URL built here)
  POST <ha>/auth/token                     -- code exchange and refresh
  WS   <ha>/api/websocket  auth/current_user -- identity of the token's owner
  GET  <ha>/api/config                     -- instance name fallback
  POST <ha>/api/services/<domain>/<service> -- service calls

Home Assistant identifies OAuth clients by URL (IndieAuth): client_id is this
dashboard's base URL and redirect_uri must live under it. No client secret
exists, so the token endpoint uses auth method "none" (client_id in the body).

Failure mapping:
  ProviderRejected     -- HA answered and said no (invalid_grant, auth_invalid,
                          401). Not retried; the credential is dead.
  UpstreamUnavailable  -- network error, timeout, 5xx, unparseable response.
                          The broker may retry once.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import requests
from authlib.integrations.requests_client import OAuth2Session, OAuthError
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from auth.errors import UpstreamUnavailable

logger = logging.getLogger("homeboard.auth.homeassistant")

CALLBACK_PATH = "/api/v1/auth/callback"

# Shared session for REST calls. max_redirects=3 instead of the requests
# default of 30 -- a Home Assistant API never needs more.
_session = requests.Session()
_session.max_redirects = 3


class ProviderRejected(Exception):
    """Home Assistant explicitly refused the grant or the token."""

    def __init__(self, error: str, description: str | None = None) -> None:
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str | None
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class ProviderIdentity:
    user_id: str
    name: str
    is_owner: bool = False
    is_admin: bool = False


def redirect_uri_for(base_url: str) -> str:
    return f"{base_url.rstrip('/')}{CALLBACK_PATH}"


def _websocket_url(ha_url: str) -> str:
    parts = urlsplit(ha_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, parts.path.rstrip("/") + "/api/websocket", "", ""))


def _token_set(token: dict) -> TokenSet:
    try:
        return TokenSet(
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            expires_in=int(token.get("expires_in", 1800)),
            token_type=token.get("token_type", "Bearer"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise UpstreamUnavailable("Home Assistant returned a malformed token response.") from exc


class HomeAssistantClient:
    """Stateless client; every call names the instance it talks to."""

    def __init__(self, timeout: float = 10.0, scopes: list[str] | None = None, pkce: bool = True) -> None:
        self.timeout = timeout
        self.scopes = scopes or []
        self.pkce = pkce

    def _oauth(self, client_id: str, redirect_uri: str | None = None) -> OAuth2Session:
        kwargs: dict = {
            "client_id": client_id,
            "token_endpoint_auth_method": "none",
        }
        if redirect_uri:
            kwargs["redirect_uri"] = redirect_uri
        if self.scopes:
            kwargs["scope"] = " ".join(self.scopes)
        if self.pkce:
            kwargs["code_challenge_method"] = "S256"
        return OAuth2Session(**kwargs)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, ha_url: str, client_id: str, state: str, code_verifier: str | None) -> str:
        """Build the /auth/authorize URL the browser is redirected to."""
        with self._oauth(client_id, redirect_uri_for(client_id)) as client:
            url, _ = client.create_authorization_url(
                f"{ha_url}/auth/authorize",
                state=state,
                code_verifier=code_verifier if self.pkce else None,
            )
        return url

    def exchange_code(self, ha_url: str, client_id: str, code: str, code_verifier: str | None) -> TokenSet:
        """Trade an authorization code for tokens (same redirect URI as initiation)."""
        kwargs: dict = {"code": code, "timeout": self.timeout}
        if self.pkce and code_verifier:
            kwargs["code_verifier"] = code_verifier
        with self._oauth(client_id, redirect_uri_for(client_id)) as client:
            token = self._call_token_endpoint(
                lambda: client.fetch_token(f"{ha_url}/auth/token", grant_type="authorization_code", **kwargs)
            )
        return _token_set(token)

    def refresh(self, ha_url: str, client_id: str, refresh_token: str) -> TokenSet:
        with self._oauth(client_id) as client:
            token = self._call_token_endpoint(
                lambda: client.refresh_token(f"{ha_url}/auth/token", refresh_token=refresh_token, timeout=self.timeout)
            )
        return _token_set(token)

    @staticmethod
    def _call_token_endpoint(call) -> dict:
        try:
            return dict(call())
        except OAuthError as exc:
            raise ProviderRejected(exc.error or "invalid_grant", exc.description) from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status is not None and 400 <= status < 500:
                raise ProviderRejected(f"http_{status}") from exc
            raise UpstreamUnavailable("Home Assistant token endpoint failed.") from exc
        except (requests.RequestException, ValueError) as exc:
            raise UpstreamUnavailable("Home Assistant token endpoint unreachable.") from exc

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def fetch_identity(self, ha_url: str, access_token: str) -> ProviderIdentity:
        """Ask Home Assistant who owns access_token (WebSocket auth/current_user)."""
        try:
            with ws_connect(_websocket_url(ha_url), open_timeout=self.timeout, close_timeout=self.timeout) as ws:
                hello = json.loads(ws.recv(timeout=self.timeout))
                if hello.get("type") != "auth_required":
                    raise UpstreamUnavailable("Unexpected Home Assistant WebSocket greeting.")
                ws.send(json.dumps({"type": "auth", "access_token": access_token}))
                auth = json.loads(ws.recv(timeout=self.timeout))
                if auth.get("type") != "auth_ok":
                    raise ProviderRejected("auth_invalid", auth.get("message"))
                ws.send(json.dumps({"id": 1, "type": "auth/current_user"}))
                reply = json.loads(ws.recv(timeout=self.timeout))
        except (OSError, TimeoutError, WebSocketException, ValueError) as exc:
            raise UpstreamUnavailable("Home Assistant WebSocket unreachable.") from exc

        result = reply.get("result")
        if not reply.get("success") or not isinstance(result, dict) or not result.get("id"):
            raise UpstreamUnavailable("Home Assistant did not return the current user.")
        name = result.get("name") or self._instance_name(ha_url, access_token) or "Home Assistant User"
        return ProviderIdentity(
            user_id=str(result["id"]),
            name=name,
            is_owner=bool(result.get("is_owner")),
            is_admin=bool(result.get("is_admin")),
        )

    def _instance_name(self, ha_url: str, access_token: str) -> str | None:
        try:
            resp = _session.get(
                f"{ha_url}/api/config",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json().get("location_name")
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Home Assistant config lookup failed: %s", type(exc).__name__)
            return None

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def call_service(self, ha_url: str, access_token: str, domain: str, service: str, data: dict) -> list:
        """POST /api/services/<domain>/<service>; returns the changed states."""
        try:
            resp = _session.post(
                f"{ha_url}/api/services/{domain}/{service}",
                headers={"Authorization": f"Bearer {access_token}"},
                json=data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamUnavailable("Home Assistant unreachable.") from exc
        if resp.status_code == 401:
            raise ProviderRejected("unauthorized")
        if resp.status_code >= 400:
            raise UpstreamUnavailable(f"Home Assistant service call failed ({resp.status_code}).")
        try:
            return resp.json()
        except ValueError:
            return []
