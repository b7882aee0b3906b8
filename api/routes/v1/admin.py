"""
api/routes/v1/admin.py -- User, role, and permission-override administration.

Routes (all require users:manage; mutations also require CSRF):
  GET    /api/v1/admin/users                         -- list users
  GET    /api/v1/admin/users/{id}/permissions        -- effective permission set
  PATCH  /api/v1/admin/users/{id}                    -- display name, role, status, person
  PUT    /api/v1/admin/users/{id}/overrides/{key}    -- grant/deny one key for one user
  DELETE /api/v1/admin/users/{id}/overrides/{key}    -- remove that override

Every mutation goes through the PermissionResolver helpers, which invalidate
the affected cache entries, so the change is visible on the very next request.

Guards:
  [M4] An admin cannot disable themselves, and the last active owner can be
       neither disabled nor moved to another role.
  Disabling a user also revokes all of their sessions.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import OverrideRequest, PermissionsResponse, UserPatch, UserResponse
from auth.dependencies import require_csrf, require_permission
from auth.models import User
from auth.store import UserStore

logger = logging.getLogger("homeboard.api.admin")

OWNER_ROLE = "owner"

router = APIRouter()
_admin = require_permission("users:manage")


def _get_target(user_store: UserStore, user_id: int) -> User:
    target = user_store.find_user(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return target


def _user_to_response(user_store: UserStore, user: User) -> UserResponse:
    role = user_store.get_role_by_id(user.role_id) if user.role_id is not None else None
    return UserResponse(
        id=user.id,
        display_name=user.display_name,
        username=user.username,
        ha_user_id=user.ha_user_id,
        role=role.name if role else None,
        status=user.status,
        person_entity_id=user.person_entity_id,
        created_at=user.created_at or "",
        last_login_at=user.last_login_at,
    )


def _is_last_owner(user_store: UserStore, user: User) -> bool:
    owner = user_store.get_role_by_name(OWNER_ROLE)
    if owner is None or user.role_id != owner.id or not user.is_active:
        return False
    return user_store.count_active_with_role(owner.id) <= 1


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(request: Request, current_user: User = Depends(_admin)) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [_user_to_response(user_store, u) for u in user_store.list_users()]


@router.get("/admin/users/{user_id}/permissions", response_model=PermissionsResponse)
def user_permissions(request: Request, user_id: int, current_user: User = Depends(_admin)) -> PermissionsResponse:
    _get_target(request.app.state.user_store, user_id)
    permissions = request.app.state.permissions.resolve(user_id)
    return PermissionsResponse(user_id=user_id, permissions=sorted(permissions))


@router.patch("/admin/users/{user_id}", response_model=UserResponse, dependencies=[Depends(require_csrf)])
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(_admin),
) -> UserResponse:
    """Update a user's profile, role, or status. [M4] guards apply."""
    state = request.app.state
    user_store: UserStore = state.user_store
    target = _get_target(user_store, user_id)

    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    role_id = target.role_id
    if "role" in fields:
        role = user_store.get_role_by_name(fields.pop("role"))
        if role is None:
            raise HTTPException(
                status_code=400,
                detail={"code": "unknown_role", "message": "Role does not exist."},
            )
        role_id = role.id

    status = fields.get("status")
    if status == "disabled" and target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot disable your own account."},
        )
    if (status == "disabled" or role_id != target.role_id) and _is_last_owner(user_store, target):
        raise HTTPException(
            status_code=400,
            detail={"code": "last_owner", "message": "Cannot remove the last active owner."},
        )

    if fields:
        user_store.update_user(user_id, **fields)
    if role_id != target.role_id:
        state.permissions.assign_role(user_id, role_id)
        logger.info("User %s moved user %s to role %s", current_user.id, user_id, role_id)
    if status == "disabled" and target.is_active:
        state.sessions.destroy_all(user_id)
        logger.info("User %s disabled user %s", current_user.id, user_id)

    return _user_to_response(user_store, _get_target(user_store, user_id))


@router.put(
    "/admin/users/{user_id}/overrides/{permission_key}",
    response_model=PermissionsResponse,
    dependencies=[Depends(require_csrf)],
)
def set_override(
    request: Request,
    user_id: int,
    permission_key: str,
    body: OverrideRequest,
    current_user: User = Depends(_admin),
) -> PermissionsResponse:
    _get_target(request.app.state.user_store, user_id)
    permissions = request.app.state.permissions
    permissions.set_override(user_id, permission_key, body.granted)
    logger.info(
        "User %s set override %s=%s for user %s", current_user.id, permission_key, body.granted, user_id
    )
    return PermissionsResponse(user_id=user_id, permissions=sorted(permissions.resolve(user_id)))


@router.delete(
    "/admin/users/{user_id}/overrides/{permission_key}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def clear_override(
    request: Request,
    user_id: int,
    permission_key: str,
    current_user: User = Depends(_admin),
) -> Response:
    _get_target(request.app.state.user_store, user_id)
    if not request.app.state.permissions.clear_override(user_id, permission_key):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Override not found."},
        )
    return Response(status_code=204)
