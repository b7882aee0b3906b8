"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these own the shape.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class CredentialKind(str, Enum):
    """Third-party secrets a user may have stored at rest."""

    home_assistant_token = "home_assistant_token"
    unifi_protect_key = "unifi_protect_key"
    unifi_access_key = "unifi_access_key"


@dataclass
class User:
    """An identity in the dashboard.

    ha_user_id is the Home Assistant user id reported by auth/current_user and
    is None for local-only accounts created by the CLI. password_hash is None
    for OAuth-only users.
    """

    display_name: str
    id: int | None = None
    ha_user_id: str | None = None
    username: str | None = None
    password_hash: str | None = None
    role_id: int | None = None
    person_entity_id: str | None = None
    ha_instance_url: str | None = None
    status: str = "active"  # "active", "disabled"
    created_at: str | None = None
    last_login_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Credential:
    """One sealed secret per (user, kind).

    secret and refresh_secret hold cipher envelopes (see auth/crypto.py), never
    plaintext. client_id records the OAuth client id the token was issued to so
    refresh can present the same one.
    """

    user_id: int
    kind: CredentialKind
    secret: str
    refresh_secret: str | None = None
    client_id: str | None = None
    expires_at: datetime | None = None
    updated_at: str | None = None


@dataclass
class Session:
    token: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    last_seen_at: datetime | None = None


@dataclass
class Role:
    name: str
    id: int | None = None
    permissions: list[str] = field(default_factory=list)


@dataclass
class PermissionOverride:
    user_id: int
    permission_key: str
    granted: bool


@dataclass
class PendingAuthorization:
    """Login context bound to an OAuth state value until the callback."""

    state: str
    ha_url: str
    redirect_path: str
    request_base_url: str
    created_at: float
    code_verifier: str | None = None

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "ha_url": self.ha_url,
            "redirect_path": self.redirect_path,
            "request_base_url": self.request_base_url,
            "created_at": self.created_at,
            "code_verifier": self.code_verifier,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PendingAuthorization:
        return cls(
            state=data["state"],
            ha_url=data["ha_url"],
            redirect_path=data["redirect_path"],
            request_base_url=data["request_base_url"],
            created_at=float(data["created_at"]),
            code_verifier=data.get("code_verifier"),
        )
