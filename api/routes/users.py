"""
api/routes/users.py -- Admin-only user management.

Routes (mounted under /api, all require PLATFORM_ADMIN):
  GET    /users        -- list all accounts
  POST   /users        -- create an account with an initial password and role
  GET    /users/{id}   -- one account
  PATCH  /users/{id}   -- update name fields, role or active status
  DELETE /users/{id}   -- delete an account and every session/reset row it owns

Guards against locking the platform out of administration:
  - an admin cannot deactivate, demote or delete their own account;
  - the last active PLATFORM_ADMIN cannot be deactivated, demoted or deleted.

Deactivating a user (or changing their role) revokes their refresh sessions,
so the change takes effect at their next refresh rather than after 7 days.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import AdminUserCreate, AdminUserPatch, AdminUserResponse
from auth.dependencies import get_session_manager, require_admin
from auth.errors import UserNotFound
from auth.models import Role, User
from auth.session import SessionManager
from auth.store import UserStore

logger = logging.getLogger("survista.api.users")

router = APIRouter()


def _get_target(user_store: UserStore, user_id: str) -> User:
    target = user_store.get_by_id(user_id)
    if target is None:
        raise UserNotFound()
    return target


def _guard_last_admin(user_store: UserStore, target: User) -> None:
    if target.role == Role.PLATFORM_ADMIN and target.is_active and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )


@router.get("/users", response_model=list[AdminUserResponse])
def list_users(request: Request, current_user: User = Depends(require_admin)) -> list[AdminUserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [AdminUserResponse.from_user(u) for u in user_store.list_users()]


@router.post("/users", response_model=AdminUserResponse, status_code=201)
def create_user(
    body: AdminUserCreate,
    current_user: User = Depends(require_admin),
    manager: SessionManager = Depends(get_session_manager),
) -> AdminUserResponse:
    """Create an account with any role. 409 if the email is taken."""
    user = manager.register(
        email=body.email,
        name=body.name,
        password=body.password,
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    logger.info("Admin %s created user %s (%s)", current_user.id, user.id, user.role.value)
    return AdminUserResponse.from_user(user)


@router.get("/users/{user_id}", response_model=AdminUserResponse)
def get_user(request: Request, user_id: str, current_user: User = Depends(require_admin)) -> AdminUserResponse:
    return AdminUserResponse.from_user(_get_target(request.app.state.user_store, user_id))


@router.patch("/users/{user_id}", response_model=AdminUserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: AdminUserPatch,
    current_user: User = Depends(require_admin),
    manager: SessionManager = Depends(get_session_manager),
) -> AdminUserResponse:
    """Update a user. Omitted fields are unchanged."""
    user_store: UserStore = request.app.state.user_store
    target = _get_target(user_store, user_id)

    updates = body.model_dump(exclude_unset=True)
    # name, role and is_active cannot be cleared, only changed.
    for key in ("name", "role", "is_active"):
        if key in updates and updates[key] is None:
            del updates[key]
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    deactivating = updates.get("is_active") is False and target.is_active
    demoting = "role" in updates and updates["role"] != target.role and target.role == Role.PLATFORM_ADMIN

    if (deactivating or demoting) and target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_modification", "message": "You cannot deactivate or demote your own account."},
        )
    if deactivating or demoting:
        _guard_last_admin(user_store, target)

    user_store.update_user(user_id, **updates)
    if deactivating or ("role" in updates and updates["role"] != target.role):
        manager.logout(user_id)
    logger.info("Admin %s updated user %s: %s", current_user.id, user_id, sorted(updates))
    return AdminUserResponse.from_user(user_store.get_by_id(user_id))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str, current_user: User = Depends(require_admin)) -> Response:
    """Permanently delete a user. Their ledger rows go with them."""
    user_store: UserStore = request.app.state.user_store
    target = _get_target(user_store, user_id)
    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    _guard_last_admin(user_store, target)
    user_store.delete_user(user_id)
    logger.info("Admin %s deleted user %s", current_user.id, user_id)
    return Response(status_code=204)
