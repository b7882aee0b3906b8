"""
api/routes/v1/settings.py -- UniFi API key configuration.

Routes:
  GET /api/v1/settings/unifi  -- which keys are configured (never the keys)
  PUT /api/v1/settings/unifi  -- store / clear keys (settings:manage + CSRF)

Keys are sealed by the CredentialVault before they reach the database. The
"configured" flags are cached in the global config cache and the cache is
dropped on every write.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import UnifiSettingsRequest, UnifiSettingsResponse
from auth.dependencies import require_csrf, require_permission
from auth.models import CredentialKind, User
from cache.store import invalidate_global_config

logger = logging.getLogger("homeboard.api.settings")

router = APIRouter()

_FIELDS = {
    "protect_api_key": CredentialKind.unifi_protect_key,
    "access_api_key": CredentialKind.unifi_access_key,
}


def _status(request: Request, user_id: int) -> UnifiSettingsResponse:
    cache = request.app.state.config_cache
    key = f"unifi:{user_id}"
    cached = cache.get(key)
    if cached is not None:
        return UnifiSettingsResponse(**cached)
    vault = request.app.state.vault
    status = UnifiSettingsResponse(
        protect_configured=vault.reveal_secret(user_id, CredentialKind.unifi_protect_key) is not None,
        access_configured=vault.reveal_secret(user_id, CredentialKind.unifi_access_key) is not None,
    )
    cache.set(key, status.model_dump())
    return status


@router.get("/settings/unifi", response_model=UnifiSettingsResponse)
def get_unifi_settings(
    request: Request,
    current_user: User = Depends(require_permission("settings:manage")),
) -> UnifiSettingsResponse:
    return _status(request, current_user.id)


@router.put("/settings/unifi", response_model=UnifiSettingsResponse, dependencies=[Depends(require_csrf)])
def put_unifi_settings(
    request: Request,
    body: UnifiSettingsRequest,
    current_user: User = Depends(require_permission("settings:manage")),
) -> UnifiSettingsResponse:
    """Store the provided keys. An empty string removes a key; null leaves it alone."""
    vault = request.app.state.vault
    for field, kind in _FIELDS.items():
        value = getattr(body, field)
        if value is None:
            continue
        if value.strip():
            vault.store_secret(current_user.id, kind, value.strip())
        else:
            vault.forget(current_user.id, kind)
            logger.info("Removed %s for user %s", kind.value, current_user.id)
    invalidate_global_config(request.app.state.config_cache)
    return _status(request, current_user.id)
