from app.models.audit import AuditLog
from app.crm.models import (
	Activity,
	DeliveryOpportunity,
	Opportunity,
	OpportunityStageHistory,
	Pipeline,
	Proposal,
	Stage,
)
from app.business.payments.models import PaymentInstruction
from app.identity.models import Profile

__all__ = [
	"AuditLog",
	"Activity",
	"DeliveryOpportunity",
	"Opportunity",
	"OpportunityStageHistory",
	"PaymentInstruction",
	"Pipeline",
	"Profile",
	"Proposal",
	"Stage",
]
