"""
api/routes/v1/ha.py -- Home Assistant token hand-out and lock control.

Routes:
  GET  /api/v1/ha/token  -- live access token for the dashboard's WebSocket
  POST /api/v1/ha/lock   -- lock/unlock a lock.* entity (action:locks + CSRF)

Both go through the token broker's ensure_fresh(), so a token within the
refresh skew of expiry is refreshed before use. When no usable token remains
the answer is 401 and the client sends the user back through login.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import HATokenResponse, LockRequest
from auth.dependencies import get_current_user, require_csrf, require_permission
from auth.errors import Unauthenticated
from auth.homeassistant import ProviderRejected
from auth.models import User

logger = logging.getLogger("homeboard.api.ha")

router = APIRouter()


def _live_token(request: Request, user: User) -> str:
    token = request.app.state.oauth.ensure_fresh(user.id)
    if token is None:
        raise Unauthenticated("Home Assistant credentials unavailable. Please sign in again.", detail="reauth")
    return token


@router.get("/ha/token", response_model=HATokenResponse)
def ha_token(request: Request, current_user: User = Depends(get_current_user)) -> HATokenResponse:
    access_token = _live_token(request, current_user)
    stored = request.app.state.oauth.peek(current_user.id)
    expires_at = stored.expires_at.isoformat() if stored and stored.expires_at else None
    return HATokenResponse(access_token=access_token, expires_at=expires_at)


@router.post("/ha/lock", dependencies=[Depends(require_csrf)])
def control_lock(
    request: Request,
    body: LockRequest,
    current_user: User = Depends(require_permission("action:locks")),
) -> dict:
    """Call lock.lock / lock.unlock on the user's Home Assistant instance."""
    if not current_user.ha_instance_url:
        raise Unauthenticated("No Home Assistant instance is linked to this account.", detail="reauth")
    token = _live_token(request, current_user)
    try:
        request.app.state.ha_client.call_service(
            current_user.ha_instance_url,
            token,
            "lock",
            body.action,
            {"entity_id": body.entity_id},
        )
    except ProviderRejected as exc:
        logger.warning("Home Assistant refused lock call for user %s (%s)", current_user.id, exc.error)
        raise Unauthenticated("Home Assistant rejected the stored token. Please sign in again.", detail="reauth") from exc
    logger.info("User %s sent %s to %s", current_user.id, body.action, body.entity_id)
    return {"success": True, "entity_id": body.entity_id, "action": body.action}
