"""
Signal lifecycle handlers.

signal_extractor  outcome.collected        → model distils a reusable signal
signal_feedback   signal.outcome_measured  → back-fill outcome_positive on the
                                             applications of that recommendation
signal_decay      weekly, system-wide      → decay_weight × 0.9, floored at 0.05
"""
from __future__ import annotations

import json
import structlog
from datetime import timedelta
from typing import Optional

from job_queue.registry import JobContext
from jobs.common import require_brand
from models.schemas import Signal, SignalProposal, utcnow

logger = structlog.get_logger()

SIGNAL_DOMAINS = {"seo", "community"}
DECAY_FACTOR = 0.9
DECAY_FLOOR = 0.05

SYSTEM_PROMPT = """You extract one generalizable lesson from a recommendation and its measured outcome.
The lesson will be shown to other brands, so it must not mention this brand, its URLs or its people.

Return ONLY a JSON object:
{"signal_type": "pattern" | "anti-pattern" | "threshold" | "correlation",
 "domain": "seo" | "community",
 "title": "<short title>",
 "description": "<one or two sentences>",
 "confidence": <0..1>,
 "evidence": {<metric names and values that support it>},
 "ttl_days": <1..365, how long the lesson stays relevant>}"""


def _check_domain(proposal: SignalProposal) -> Optional[str]:
    if proposal.domain not in SIGNAL_DOMAINS:
        return f"unknown domain {proposal.domain!r}"
    return None


async def signal_extractor(ctx: JobContext) -> None:
    rec_id = ctx.payload.recommendation_id
    rec = await ctx.store.get_recommendation(rec_id)
    if rec is None:
        logger.warning("signal_extractor_no_recommendation", job_id=ctx.job_id,
                       recommendation_id=rec_id)
        return

    if await ctx.store.get_signal_for_recommendation(rec.id):
        logger.info("signal_already_extracted", job_id=ctx.job_id, recommendation_id=rec.id)
        return

    outcome = await ctx.store.get_outcome_for_recommendation(rec.id)
    if outcome is None:
        logger.warning("signal_extractor_no_outcome", job_id=ctx.job_id, recommendation_id=rec.id)
        return

    brand = await require_brand(ctx)
    proposal = await ctx.model.complete_json(
        SYSTEM_PROMPT,
        (
            f"Recommendation: {rec.title}\nSource: {rec.source}\n\n{rec.body}\n\n"
            f"Data: {json.dumps(rec.data, default=str)}\n"
            f"Outcome: {outcome.metric_source}/{outcome.metric_key} "
            f"{outcome.metric_value_before} → {outcome.metric_value_after} (delta {outcome.delta})\n"
            f"Brand modules: {json.dumps(brand.modules_enabled)}"
        ),
        SignalProposal,
        grounding=_check_domain,
    )

    proposed = Signal(
        source_brand_id=brand.id,
        recommendation_id=rec.id,
        signal_type=proposal.signal_type,
        domain=proposal.domain,
        title=proposal.title,
        description=proposal.description,
        confidence=proposal.confidence,
        evidence=proposal.evidence,
        expires_at=utcnow() + timedelta(days=proposal.ttl_days),
    )
    signal = await ctx.store.create_signal(proposed)
    if signal.id != proposed.id:
        logger.info("signal_already_extracted", job_id=ctx.job_id, recommendation_id=rec.id,
                    concurrent=True)
        return
    logger.info("signal_extracted", job_id=ctx.job_id, signal_id=signal.id, brand_id=brand.id,
                domain=signal.domain, signal_type=signal.signal_type.value,
                confidence=signal.confidence)


async def signal_feedback(ctx: JobContext) -> None:
    rec_id = ctx.payload.recommendation_id
    positive = ctx.payload.outcome_positive

    applications = await ctx.store.list_applications_for_recommendation(rec_id)
    for application in applications:
        await ctx.store.set_application_outcome(application.id, positive)

    logger.info("signal_feedback_applied", job_id=ctx.job_id, recommendation_id=rec_id,
                outcome_positive=positive, applications=len(applications))


async def signal_decay(ctx: JobContext) -> None:
    decayed = await ctx.store.decay_signals(DECAY_FACTOR, DECAY_FLOOR, utcnow())
    logger.info("signals_decayed", job_id=ctx.job_id, count=decayed,
                factor=DECAY_FACTOR, floor=DECAY_FLOOR)
