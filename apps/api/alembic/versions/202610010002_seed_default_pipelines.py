"""seed default pipelines

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
from sqlalchemy.orm import Session

from app.crm.seed import DEFAULT_PIPELINES, seed_default_pipelines


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    session = Session(bind=op.get_bind())
    try:
        seed_default_pipelines(session)
    finally:
        session.close()


def downgrade() -> None:
    slugs = ", ".join(f"'{slug}'" for slug in DEFAULT_PIPELINES)
    op.execute(f"DELETE FROM pipelines WHERE slug IN ({slugs})")
