from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crm.models import Pipeline, Stage


DEFAULT_PIPELINES: dict[str, tuple[str, list[tuple[str, str, int]]]] = {
    "commercial": (
        "Commercial",
        [
            ("lead", "Lead", 10),
            ("briefing", "Briefing", 20),
            ("measurement", "Measurement", 40),
            ("proposal", "Proposal", 60),
            ("negotiation", "Negotiation", 80),
            ("closed_won", "Closed won", 100),
            ("closed_lost", "Closed lost", 0),
        ],
    ),
    "delivery": (
        "Delivery",
        [
            ("measurement_scheduling", "Measurement scheduling", 100),
            ("production", "Production", 100),
            ("installation_scheduling", "Installation scheduling", 100),
            ("installation", "Installation", 100),
            ("completed", "Completed", 100),
        ],
    ),
}


def seed_default_pipelines(session: Session) -> dict[str, Pipeline]:
    """Create the commercial and delivery pipelines, skipping stages that exist."""
    seeded: dict[str, Pipeline] = {}
    for slug, (name, stages) in DEFAULT_PIPELINES.items():
        pipeline = session.scalar(select(Pipeline).where(Pipeline.slug == slug))
        if pipeline is None:
            pipeline = Pipeline(name=name, slug=slug)
            session.add(pipeline)
            session.flush()

        existing = set(session.scalars(select(Stage.slug).where(Stage.pipeline_id == pipeline.id)).all())
        for position, (stage_slug, stage_name, probability) in enumerate(stages, start=1):
            if stage_slug in existing:
                continue
            session.add(
                Stage(
                    pipeline_id=pipeline.id,
                    name=stage_name,
                    slug=stage_slug,
                    position=position,
                    probability=probability,
                )
            )
        seeded[slug] = pipeline

    session.commit()
    return seeded
