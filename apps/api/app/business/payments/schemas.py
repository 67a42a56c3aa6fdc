from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict


PaymentInstructionStatus = Literal["pending", "paid", "cancelled"]


class PaymentSplitRead(BaseModel):
    final_amount: Decimal
    seller_amount: Decimal
    supplier_amount: Decimal
    installer_amount: Decimal
    total_amount: Decimal


class PaymentInstructionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    commercial_opportunity_id: UUID | None
    delivery_opportunity_id: UUID
    seller_amount: Decimal
    supplier_amount: Decimal
    installer_amount: Decimal
    total_amount: Decimal
    status: PaymentInstructionStatus | str
    created_at: datetime
