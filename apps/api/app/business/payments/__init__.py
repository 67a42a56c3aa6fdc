from app.business.payments.models import PaymentInstruction
from app.business.payments.schemas import PaymentInstructionRead, PaymentSplitRead
from app.business.payments.service import (
    PaymentSplit,
    PaymentsService,
    derive_payment_split,
    payments_service,
)

__all__ = [
    "PaymentInstruction",
    "PaymentInstructionRead",
    "PaymentSplitRead",
    "PaymentSplit",
    "PaymentsService",
    "derive_payment_split",
    "payments_service",
]
