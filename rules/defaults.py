"""
Default global event rules — the wiring that makes the pipeline autonomous.

    recommendation.created   → action_draft_generator  (draft actions for new recs)
    outcome.collected        → signal_extractor        (learn from measured outcomes)
    signal.outcome_measured  → signal_feedback         (back-fill signal applications)

Rules get stable ids, so seeding at every worker start is an upsert, not a
duplicate insert. Extra rules may be declared under `event_rules:` in
settings.yaml with the same keys.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BasePipelineStore
from models.schemas import EventRule, EventType, JobType, parse_job_type

logger = structlog.get_logger()


DEFAULT_EVENT_RULES: list[dict[str, Any]] = [
    {
        "event_type": EventType.RECOMMENDATION_CREATED.value,
        "job_type": JobType.ACTION_DRAFT_GENERATOR.value,
    },
    {
        "event_type": EventType.OUTCOME_COLLECTED.value,
        "job_type": JobType.SIGNAL_EXTRACTOR.value,
    },
    {
        "event_type": EventType.SIGNAL_OUTCOME_MEASURED.value,
        "job_type": JobType.SIGNAL_FEEDBACK.value,
    },
]


def _rule_id(raw: dict[str, Any]) -> str:
    scope = raw.get("brand_id") or "global"
    return raw.get("id") or f"{scope}:{raw['event_type']}:{raw['job_type']}"


async def seed_default_rules(
    store: BasePipelineStore,
    extra_rules: Optional[list[dict[str, Any]]] = None,
) -> list[EventRule]:
    """Upsert the default rules plus any configured ones. Safe to call on every start."""
    seeded = []
    for raw in DEFAULT_EVENT_RULES + list(extra_rules or []):
        parse_job_type(raw["job_type"])  # reject typos at startup, not at dispatch time
        rule = EventRule(
            id=_rule_id(raw),
            brand_id=raw.get("brand_id"),
            event_type=raw["event_type"],
            job_type=raw["job_type"],
            conditions=raw.get("conditions") or {},
            enabled=raw.get("enabled", True),
        )
        seeded.append(await store.upsert_event_rule(rule))

    logger.info("event_rules_seeded", count=len(seeded))
    return seeded
