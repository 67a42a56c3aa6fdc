from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.business.payments.api import router as payments_router
from app.business.reporting.pipeline.api import router as reports_router
from app.core.config import get_settings
from app.crm.api import (
    activities_router,
    get_current_user,
    opportunities_router,
    pipelines_router,
    proposals_router,
)
from app.crm.service import ActorUser
from app.identity.api import admin_router, profile_router, session_router
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(pipelines_router)
router.include_router(opportunities_router)
router.include_router(activities_router)
router.include_router(proposals_router)
router.include_router(payments_router)
router.include_router(reports_router)
router.include_router(admin_router)
router.include_router(profile_router)
router.include_router(session_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(user: ActorUser = Depends(get_current_user)) -> dict[str, str | None]:
    return {
        "sub": user.user_id,
        "email": user.email,
        "role": user.role,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
