from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from fastapi import HTTPException, status
from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.business.payments.models import PaymentInstruction
from app.business.payments.schemas import PaymentInstructionRead, PaymentSplitRead
from app.crm.models import DeliveryOpportunity
from app.metrics import observe_payment_instruction_created


logger = logging.getLogger("app.business.payments")

SELLER_RATE = Decimal("0.05")
SUPPLIER_RATE = Decimal("0.40")
INSTALLER_FLAT_FEE = Decimal("150.00")
_CENTS = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class PaymentSplit:
    final_amount: Decimal
    seller_amount: Decimal
    supplier_amount: Decimal
    installer_amount: Decimal
    total_amount: Decimal


def _q(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def derive_payment_split(final_amount: Decimal | int | float | str | None) -> PaymentSplit:
    """Split a delivery's final amount into the three payees.

    Seller gets 5 %, supplier 40 %, installer a flat 150.00. The total is the
    sum of those three (0.45 * amount + 150); the remaining 55 % is the
    house's share and is not part of the instruction.
    """
    amount = _q(Decimal(str(final_amount)) if final_amount is not None else Decimal("0"))
    seller = _q(amount * SELLER_RATE)
    supplier = _q(amount * SUPPLIER_RATE)
    installer = _q(INSTALLER_FLAT_FEE)
    return PaymentSplit(
        final_amount=amount,
        seller_amount=seller,
        supplier_amount=supplier,
        installer_amount=installer,
        total_amount=seller + supplier + installer,
    )


@dataclass(slots=True)
class PaymentsService:
    def preview_split(self, final_amount: Decimal | None) -> PaymentSplitRead:
        split = derive_payment_split(final_amount)
        return PaymentSplitRead(
            final_amount=split.final_amount,
            seller_amount=split.seller_amount,
            supplier_amount=split.supplier_amount,
            installer_amount=split.installer_amount,
            total_amount=split.total_amount,
        )

    def find_instruction_for_delivery(self, session: Session, delivery_opportunity_id: uuid.UUID) -> PaymentInstruction | None:
        return session.scalar(
            select(PaymentInstruction).where(PaymentInstruction.delivery_opportunity_id == delivery_opportunity_id)
        )

    def ensure_payment_instruction(
        self,
        session: Session,
        delivery: DeliveryOpportunity,
        *,
        actor_user_id: str | None = None,
    ) -> tuple[PaymentInstruction, bool]:
        """Return the delivery's instruction, creating it when absent.

        The boolean is True when this call inserted the row. A concurrent
        insert that loses on the unique constraint resolves to the winner's row.
        """
        existing = self.find_instruction_for_delivery(session, delivery.id)
        if existing is not None:
            return existing, False

        split = derive_payment_split(delivery.amount_final)
        instruction = PaymentInstruction(
            commercial_opportunity_id=delivery.commercial_opportunity_id,
            delivery_opportunity_id=delivery.id,
            seller_amount=split.seller_amount,
            supplier_amount=split.supplier_amount,
            installer_amount=split.installer_amount,
            total_amount=split.total_amount,
            status="pending",
        )
        session.add(instruction)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            winner = self.find_instruction_for_delivery(session, delivery.id)
            if winner is None:
                raise
            return winner, False

        audit.record(
            session,
            table_name=PaymentInstruction.__tablename__,
            record_id=str(instruction.id),
            action="INSERT",
            changed_by=actor_user_id,
            old_data=None,
            new_data={
                "delivery_opportunity_id": str(delivery.id),
                "commercial_opportunity_id": str(delivery.commercial_opportunity_id)
                if delivery.commercial_opportunity_id
                else None,
                "total_amount": str(split.total_amount),
            },
        )
        session.commit()
        observe_payment_instruction_created()
        logger.info(
            "payment_instruction.created",
            extra={
                "payment_instruction_id": str(instruction.id),
                "delivery_opportunity_id": str(delivery.id),
            },
        )
        events.publish(
            events.build_envelope(
                "payments.instruction.created",
                actor_user_id,
                {
                    "payment_instruction_id": str(instruction.id),
                    "delivery_opportunity_id": str(delivery.id),
                    "total_amount": str(split.total_amount),
                },
            )
        )
        return instruction, True

    def list_instructions(self, session: Session, *, status_filter: str | None = None) -> list[PaymentInstructionRead]:
        stmt: Select[tuple[PaymentInstruction]] = select(PaymentInstruction)
        if status_filter is not None:
            stmt = stmt.where(PaymentInstruction.status == status_filter)
        rows = session.scalars(stmt.order_by(PaymentInstruction.created_at.desc())).all()
        return [PaymentInstructionRead.model_validate(row) for row in rows]

    def get_instruction(self, session: Session, instruction_id: uuid.UUID) -> PaymentInstructionRead:
        instruction = session.scalar(select(PaymentInstruction).where(PaymentInstruction.id == instruction_id))
        if instruction is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="payment instruction not found")
        return PaymentInstructionRead.model_validate(instruction)

    def get_instruction_for_delivery(self, session: Session, delivery_opportunity_id: uuid.UUID) -> PaymentInstructionRead:
        instruction = self.find_instruction_for_delivery(session, delivery_opportunity_id)
        if instruction is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="payment instruction not found")
        return PaymentInstructionRead.model_validate(instruction)


payments_service = PaymentsService()
