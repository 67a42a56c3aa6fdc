from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_admin
from app.crm.service import ActorUser
from app.identity.client import SupabaseAuthAdminClient, get_identity_client
from app.identity.errors import IdentityProviderError
from app.identity.schemas import (
    AuditLogRead,
    InviteUserRead,
    InviteUserRequest,
    ProfileRead,
    ProfileUpdate,
    RoleUpdateRequest,
    SessionStatusRead,
)
from app.identity.service import profile_service, user_admin_service
from app.identity.session import now_ms, parse_last_activity, session_status


admin_router = APIRouter(prefix="/api/admin", tags=["admin"])
profile_router = APIRouter(prefix="/api/profile", tags=["profile"])
session_router = APIRouter(prefix="/api/session", tags=["session"])


def _require_admin(user: ActorUser = Depends(get_current_user)) -> ActorUser:
    require_admin(user)
    return user


def _provider_error(request: Request, exc: IdentityProviderError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_502_BAD_GATEWAY,
        code="identity_provider_failed",
        message=exc.message,
        details={"operation": exc.operation, "status_code": exc.status_code},
    )


@admin_router.get("/users", response_model=list[ProfileRead])
def list_users(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_admin),
) -> list[ProfileRead]:
    return user_admin_service.list_users(db)


@admin_router.post("/users/invite", response_model=InviteUserRead, status_code=status.HTTP_201_CREATED)
def invite_user(
    request: Request,
    dto: InviteUserRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(_require_admin),
    client: SupabaseAuthAdminClient = Depends(get_identity_client),
) -> InviteUserRead | JSONResponse:
    try:
        return user_admin_service.invite_user(
            db,
            client,
            user,
            email=dto.email,
            full_name=dto.full_name,
            redirect_to=get_settings().invite_redirect_url,
        )
    except IdentityProviderError as exc:
        return _provider_error(request, exc)


@admin_router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(_require_admin),
    client: SupabaseAuthAdminClient = Depends(get_identity_client),
) -> Response:
    try:
        user_admin_service.delete_user(db, client, user, user_id)
    except IdentityProviderError as exc:
        return _provider_error(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@admin_router.patch("/users/{user_id}/role", response_model=ProfileRead)
def update_user_role(
    request: Request,
    user_id: uuid.UUID,
    dto: RoleUpdateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(_require_admin),
) -> ProfileRead | JSONResponse:
    try:
        return user_admin_service.update_role(db, user, user_id, dto.role)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="admin_user_role_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/audit-logs", response_model=list[AuditLogRead])
def list_audit_logs(
    search: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(_require_admin),
) -> list[AuditLogRead]:
    return user_admin_service.list_audit_logs(db, search=search, limit=limit)


@profile_router.get("", response_model=ProfileRead)
def get_profile(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProfileRead | JSONResponse:
    try:
        return profile_service.get_profile(db, user)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="profile_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@profile_router.patch("", response_model=ProfileRead)
def update_profile(
    request: Request,
    dto: ProfileUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProfileRead | JSONResponse:
    try:
        return profile_service.update_full_name(db, user, dto.full_name)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="profile_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@session_router.get("", response_model=SessionStatusRead)
def get_session_status(request: Request, user: ActorUser = Depends(get_current_user)) -> SessionStatusRead:
    settings = get_settings()
    last_activity = parse_last_activity(request.cookies.get(settings.activity_cookie_name))
    return session_status(user.user_id, last_activity, now_ms(), settings.session_inactivity_timeout_seconds)


@session_router.post("/heartbeat", response_model=SessionStatusRead)
def session_heartbeat(user: ActorUser = Depends(get_current_user)) -> SessionStatusRead:
    # the inactivity middleware refreshes the cookie on this response
    settings = get_settings()
    current = now_ms()
    return session_status(user.user_id, current, current, settings.session_inactivity_timeout_seconds)
