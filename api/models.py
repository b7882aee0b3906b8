"""
API request and response models for Homeboard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Local username/password login (accounts created by an admin or the CLI)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LockRequest(BaseModel):
    entity_id: str = Field(pattern=r"^lock\.[a-z0-9_]+$", max_length=255)
    action: Literal["lock", "unlock"]


class UnifiSettingsRequest(BaseModel):
    """UniFi API keys. Omitted fields are left unchanged; empty strings clear them."""

    protect_api_key: Optional[str] = Field(default=None, max_length=512)
    access_api_key: Optional[str] = Field(default=None, max_length=512)


class UserPatch(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    role: Optional[str] = Field(default=None, min_length=1, max_length=64)
    status: Optional[Literal["active", "disabled"]] = None
    person_entity_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("person_entity_id")
    @classmethod
    def person_entity(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith("person."):
            raise ValueError("person_entity_id must be a person.* entity")
        return value


class OverrideRequest(BaseModel):
    granted: bool


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str


class MeResponse(BaseModel):
    user_id: int
    display_name: str
    username: Optional[str]
    role: Optional[str]
    person_entity_id: Optional[str]
    ha_instance_url: Optional[str]
    permissions: list[str]
    session_expires_at: str


class LoginResponse(BaseModel):
    user_id: int
    display_name: str
    role: Optional[str]
    permissions: list[str]
    expires_at: str


class CsrfResponse(BaseModel):
    csrf_token: str


class HATokenResponse(BaseModel):
    access_token: str
    expires_at: Optional[str]


class UnifiSettingsResponse(BaseModel):
    protect_configured: bool
    access_configured: bool


class UserResponse(BaseModel):
    id: int
    display_name: str
    username: Optional[str]
    ha_user_id: Optional[str]
    role: Optional[str]
    status: str
    person_entity_id: Optional[str]
    created_at: str
    last_login_at: Optional[str]


class PermissionsResponse(BaseModel):
    user_id: int
    permissions: list[str]


class HealthResponse(BaseModel):
    """Response body for GET /api/v1/status."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    """Structured error body -- consistent shape for all error responses."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned by all exception handlers."""

    error: ErrorDetail
