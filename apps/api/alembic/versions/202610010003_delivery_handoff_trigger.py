"""delivery handoff trigger

Revision ID: 202610010003
Revises: 202610010002
Create Date: 2026-10-01 00:03:00

Installs the trigger that copies a commercial opportunity into
``delivery_opportunities`` when it enters ``closed_won``. Skipped when the
application owns the handoff (``DELIVERY_HANDOFF_AUTHORITY=application``)
and on databases other than PostgreSQL.
"""

from collections.abc import Sequence

from alembic import op

from app.core.config import get_settings


revision: str = "202610010003"
down_revision: str | None = "202610010002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


CREATE_FUNCTION = """
CREATE OR REPLACE FUNCTION create_delivery_opportunity_on_won()
RETURNS trigger AS $$
DECLARE
    won_stage_id uuid;
    delivery_pipeline_id uuid;
    initial_stage_id uuid;
BEGIN
    SELECT s.id INTO won_stage_id
    FROM stages s JOIN pipelines p ON p.id = s.pipeline_id
    WHERE p.slug = 'commercial' AND s.slug = 'closed_won';

    IF NEW.stage_id IS DISTINCT FROM won_stage_id OR OLD.stage_id IS NOT DISTINCT FROM NEW.stage_id THEN
        RETURN NEW;
    END IF;

    IF EXISTS (SELECT 1 FROM delivery_opportunities WHERE commercial_opportunity_id = NEW.id) THEN
        RETURN NEW;
    END IF;

    SELECT id INTO delivery_pipeline_id FROM pipelines WHERE slug = 'delivery';
    SELECT id INTO initial_stage_id FROM stages
    WHERE pipeline_id = delivery_pipeline_id
    ORDER BY (slug = 'measurement_scheduling') DESC, position ASC
    LIMIT 1;

    INSERT INTO delivery_opportunities (
        id, commercial_opportunity_id, title, owner_id, account_id, primary_contact_id,
        amount_final, stage_id, pipeline_id, priority, billing_status, created_at, updated_at
    ) VALUES (
        gen_random_uuid(), NEW.id, NEW.title, NEW.owner_id, NEW.account_id, NEW.contact_id,
        COALESCE(NEW.amount_final, NEW.amount_offered), initial_stage_id, delivery_pipeline_id,
        COALESCE(NEW.priority, 'medium'), 'pending', now(), now()
    )
    ON CONFLICT (commercial_opportunity_id) DO NOTHING;

    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

CREATE_TRIGGER = """
CREATE TRIGGER opportunities_delivery_handoff
AFTER UPDATE OF stage_id ON opportunities
FOR EACH ROW EXECUTE FUNCTION create_delivery_opportunity_on_won();
"""


def _trigger_enabled() -> bool:
    if op.get_bind().dialect.name != "postgresql":
        return False
    return get_settings().delivery_handoff_authority == "database"


def upgrade() -> None:
    if not _trigger_enabled():
        return
    op.execute(CREATE_FUNCTION)
    op.execute("DROP TRIGGER IF EXISTS opportunities_delivery_handoff ON opportunities")
    op.execute(CREATE_TRIGGER)


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    op.execute("DROP TRIGGER IF EXISTS opportunities_delivery_handoff ON opportunities")
    op.execute("DROP FUNCTION IF EXISTS create_delivery_opportunity_on_won()")
