from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.business.reporting.pipeline.schemas import PipelineReportRead, ReportPoint, TimelinePoint
from app.crm.models import Opportunity, Pipeline, Stage
from app.crm.service import COMMERCIAL, display_amount, owner_names, weighted_forecast


UNKNOWN_LABEL = "Unknown"
TIMELINE_WEEKS = 8


def week_label(moment: datetime) -> str:
    return f"W{moment.isocalendar().week}"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class PipelineReportingService:
    def pipeline_report(self, session: Session, *, now: datetime | None = None) -> PipelineReportRead:
        """Weighted forecast and intake over the commercial pipeline.

        An opportunity is valued at its most advanced amount (final, offered,
        estimated) times its stage probability.
        """
        reference = _aware(now) if now is not None else datetime.now(timezone.utc)
        rows = session.execute(
            select(Opportunity, Stage)
            .join(Pipeline, Opportunity.pipeline_id == Pipeline.id)
            .outerjoin(Stage, Opportunity.stage_id == Stage.id)
            .where(Pipeline.slug == COMMERCIAL)
            .order_by(Opportunity.created_at.desc())
        ).all()
        names = owner_names(session, (opportunity.owner_id for opportunity, _ in rows))

        by_stage: dict[str, Decimal] = {}
        by_owner: dict[str, Decimal] = {}
        for opportunity, stage in rows:
            amount = display_amount(opportunity.amount_final, opportunity.amount_offered, opportunity.amount_estimated)
            value = weighted_forecast(amount, stage.probability if stage is not None else 0)

            stage_name = stage.name if stage is not None else UNKNOWN_LABEL
            by_stage[stage_name] = by_stage.get(stage_name, Decimal("0")) + value

            owner_name = (names.get(opportunity.owner_id) if opportunity.owner_id else None) or UNKNOWN_LABEL
            by_owner[owner_name] = by_owner.get(owner_name, Decimal("0")) + value

        timeline: dict[str, int] = {}
        for weeks_back in range(TIMELINE_WEEKS - 1, -1, -1):
            timeline[week_label(reference - timedelta(weeks=weeks_back))] = 0
        window_start = reference - timedelta(weeks=TIMELINE_WEEKS)
        for opportunity, _ in rows:
            created_at = _aware(opportunity.created_at)
            if created_at > window_start:
                label = week_label(created_at)
                if label in timeline:
                    timeline[label] += 1

        stage_points = [ReportPoint(name=name, value=value) for name, value in by_stage.items()]
        return PipelineReportRead(
            generated_at=reference,
            forecast_by_stage=stage_points,
            forecast_by_owner=[ReportPoint(name=name, value=value) for name, value in by_owner.items()],
            total_forecast=sum((point.value for point in stage_points), Decimal("0")),
            active_deals=len(rows),
            timeline=[TimelinePoint(name=name, value=count) for name, count in timeline.items()],
        )


pipeline_reporting_service = PipelineReportingService()
