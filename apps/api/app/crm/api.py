from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.errors import CRMError, InvalidPipelineError, InvalidStageError, NotFoundError, UpdateError
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivitySummaryRead,
    BoardRead,
    FormDocument,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    PipelineRead,
    ProposalCreate,
    ProposalRead,
    StageChangeRequest,
    StageHistoryRead,
    StageTransitionRead,
)
from app.crm.service import (
    ActorUser,
    activity_service,
    opportunity_service,
    pipeline_service,
    proposal_service,
)
from app.crm.workflow import stage_transition_service
from app.identity.models import Profile

pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
proposals_router = APIRouter(prefix="/api/crm", tags=["crm.proposals"])

_CRM_ERROR_STATUS: dict[type[CRMError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStageError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidPipelineError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UpdateError: status.HTTP_409_CONFLICT,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: HTTPException | CRMError, code: str) -> JSONResponse:
    if isinstance(exc, CRMError):
        return error_response(
            request,
            status_code=_CRM_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
            code=code,
            message=exc.message,
            details={"reason": exc.code, "context": exc.details},
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(get_auth_user),
) -> ActorUser:
    if not auth_user.is_authenticated:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")

    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    role = "user"
    try:
        profile = db.scalar(select(Profile).where(Profile.id == uuid.UUID(auth_user.sub)))
    except ValueError:
        profile = None
    if profile is not None:
        role = profile.role

    return ActorUser(
        user_id=auth_user.sub,
        role=role,
        email=auth_user.email,
        correlation_id=correlation_id,
    )


def require_admin(user: ActorUser) -> None:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead]:
    return pipeline_service.list_pipelines(db)


@pipelines_router.get("/pipelines/{slug}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    slug: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        return pipeline_service.get_pipeline(db, slug)
    except CRMError as exc:
        return failure_response(request, exc, "crm_pipeline_get_failed")


@pipelines_router.get("/pipelines/{slug}/board", response_model=BoardRead)
def get_pipeline_board(
    request: Request,
    slug: str,
    search: str | None = Query(default=None, max_length=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        return pipeline_service.get_board(db, slug, search=search)
    except CRMError as exc:
        return failure_response(request, exc, "crm_pipeline_board_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.create_opportunity(db, user, dto)
    except CRMError as exc:
        return failure_response(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get_opportunity(db, opportunity_id)
    except CRMError as exc:
        return failure_response(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def patch_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except CRMError as exc:
        return failure_response(request, exc, "crm_opportunity_update_failed")


@opportunities_router.put("/opportunities/{opportunity_id}/briefing", response_model=OpportunityRead)
def put_opportunity_briefing(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: FormDocument,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.save_briefing(db, user, opportunity_id, dto.data)
    except CRMError as exc:
        return failure_response(request, exc, "crm_opportunity_briefing_failed")


@opportunities_router.put("/opportunities/{opportunity_id}/measurement", response_model=OpportunityRead)
def put_opportunity_measurement(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: FormDocument,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.save_measurement(db, user, opportunity_id, dto.data)
    except CRMError as exc:
        return failure_response(request, exc, "crm_opportunity_measurement_failed")


@opportunities_router.delete("/opportunities/{opportunity_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_admin(user)
        opportunity_service.delete_opportunity(db, user, opportunity_id)
    except (HTTPException, CRMError) as exc:
        return failure_response(request, exc, "crm_opportunity_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@opportunities_router.post("/opportunities/{opportunity_id}/change-stage", response_model=StageTransitionRead)
def change_opportunity_stage(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: StageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageTransitionRead | JSONResponse:
    try:
        return stage_transition_service.update_opportunity_stage(
            db,
            user,
            opportunity_id,
            dto.stage_id,
            dto.pipeline_slug,
        )
    except CRMError as exc:
        return failure_response(request, exc, "crm_opportunity_change_stage_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/stage-history", response_model=list[StageHistoryRead])
def list_stage_history(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageHistoryRead] | JSONResponse:
    try:
        return opportunity_service.list_stage_history(db, opportunity_id)
    except CRMError as exc:
        return failure_response(request, exc, "crm_opportunity_stage_history_failed")


@activities_router.get("/opportunities/{opportunity_id}/activities", response_model=list[ActivityRead])
def list_opportunity_activities(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return activity_service.list_for_opportunity(db, opportunity_id)
    except CRMError as exc:
        return failure_response(request, exc, "crm_activity_list_failed")


@activities_router.post(
    "/opportunities/{opportunity_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def create_activity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.create_activity(db, user, opportunity_id, dto)
    except CRMError as exc:
        return failure_response(request, exc, "crm_activity_create_failed")


@activities_router.get("/activities", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    pipeline_slug: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return activity_service.list_activities(db, pipeline_slug=pipeline_slug)
    except CRMError as exc:
        return failure_response(request, exc, "crm_activity_list_failed")


@activities_router.get("/activities/summary", response_model=ActivitySummaryRead)
def get_activity_summary(
    request: Request,
    pipeline_slug: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivitySummaryRead | JSONResponse:
    try:
        return activity_service.summary(db, pipeline_slug=pipeline_slug)
    except CRMError as exc:
        return failure_response(request, exc, "crm_activity_summary_failed")


@activities_router.post("/activities/{activity_id}/toggle", response_model=ActivityRead)
def toggle_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.toggle_activity(db, user, activity_id)
    except CRMError as exc:
        return failure_response(request, exc, "crm_activity_toggle_failed")


@activities_router.delete("/activities/{activity_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        activity_service.delete_activity(db, user, activity_id)
    except CRMError as exc:
        return failure_response(request, exc, "crm_activity_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@proposals_router.get("/opportunities/{opportunity_id}/proposals", response_model=list[ProposalRead])
def list_proposals(
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ProposalRead]:
    return proposal_service.list_proposals(db, opportunity_id)


@proposals_router.post(
    "/opportunities/{opportunity_id}/proposals",
    response_model=ProposalRead,
    status_code=status.HTTP_201_CREATED,
)
def create_proposal(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: ProposalCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProposalRead | JSONResponse:
    try:
        return proposal_service.create_proposal(db, user, opportunity_id, dto)
    except CRMError as exc:
        return failure_response(request, exc, "crm_proposal_create_failed")


@proposals_router.post("/proposals/{proposal_id}/send", response_model=ProposalRead)
def send_proposal(
    request: Request,
    proposal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProposalRead | JSONResponse:
    try:
        return proposal_service.send_proposal(db, user, proposal_id)
    except CRMError as exc:
        return failure_response(request, exc, "crm_proposal_send_failed")
