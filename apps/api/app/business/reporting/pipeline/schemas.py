from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class ReportPoint(BaseModel):
    name: str
    value: Decimal


class TimelinePoint(BaseModel):
    name: str
    value: int


class PipelineReportRead(BaseModel):
    generated_at: datetime
    forecast_by_stage: list[ReportPoint] = Field(default_factory=list)
    forecast_by_owner: list[ReportPoint] = Field(default_factory=list)
    total_forecast: Decimal = Decimal("0")
    active_deals: int = 0
    timeline: list[TimelinePoint] = Field(default_factory=list)
