from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.business.reporting.pipeline.schemas import PipelineReportRead
from app.business.reporting.pipeline.service import pipeline_reporting_service
from app.core.database import get_db
from app.crm.api import get_current_user
from app.crm.service import ActorUser


router = APIRouter(prefix="/api/reports", tags=["reports"])


@router.get("/pipeline", response_model=PipelineReportRead)
def pipeline_report(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineReportRead:
    return pipeline_reporting_service.pipeline_report(db)
