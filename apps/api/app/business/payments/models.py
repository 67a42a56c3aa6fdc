from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, backref, mapped_column, relationship

from app.core.database import Base
from app.crm.models import DeliveryOpportunity


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentInstruction(Base):
    __tablename__ = "payment_instructions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    commercial_opportunity_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("opportunities.id", ondelete="SET NULL"),
        nullable=True,
    )
    delivery_opportunity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("delivery_opportunities.id", ondelete="CASCADE"),
        nullable=False,
    )
    seller_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    supplier_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    installer_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    delivery_opportunity: Mapped[DeliveryOpportunity] = relationship(
        DeliveryOpportunity,
        backref=backref("payment_instructions", cascade="all, delete-orphan"),
    )

    __table_args__ = (
        UniqueConstraint("delivery_opportunity_id", name="uq_payment_instructions_delivery"),
        Index("ix_payment_instructions_status", "status"),
    )
