from __future__ import annotations

import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.business.payments.schemas import PaymentInstructionRead, PaymentInstructionStatus, PaymentSplitRead
from app.business.payments.service import payments_service
from app.core.database import get_db
from app.crm.api import error_response, get_current_user
from app.crm.service import ActorUser


router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.get("/instructions", response_model=list[PaymentInstructionRead])
def list_payment_instructions(
    status_filter: PaymentInstructionStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PaymentInstructionRead]:
    return payments_service.list_instructions(db, status_filter=status_filter)


@router.get("/instructions/{instruction_id}", response_model=PaymentInstructionRead)
def get_payment_instruction(
    request: Request,
    instruction_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PaymentInstructionRead | JSONResponse:
    try:
        return payments_service.get_instruction(db, instruction_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="payment_instruction_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/delivery-opportunities/{delivery_opportunity_id}/instruction", response_model=PaymentInstructionRead)
def get_delivery_payment_instruction(
    request: Request,
    delivery_opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PaymentInstructionRead | JSONResponse:
    try:
        return payments_service.get_instruction_for_delivery(db, delivery_opportunity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="payment_instruction_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/split-preview", response_model=PaymentSplitRead)
def preview_payment_split(
    amount: Decimal = Query(ge=Decimal("0")),
    user: ActorUser = Depends(get_current_user),
) -> PaymentSplitRead:
    return payments_service.preview_split(amount)
