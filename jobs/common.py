"""Helpers shared by job handlers."""
from __future__ import annotations

import structlog

from core.errors import NotFoundError
from job_queue.registry import JobContext
from models.schemas import Brand, EventType, Finding, Recommendation

logger = structlog.get_logger()


async def require_brand(ctx: JobContext) -> Brand:
    if not ctx.brand_id:
        raise NotFoundError(f"Job {ctx.job_id} ({ctx.job_type}) has no brand")
    brand = await ctx.store.get_brand(ctx.brand_id)
    if brand is None:
        raise NotFoundError(f"Brand {ctx.brand_id} not found")
    return brand


async def save_recommendation(ctx: JobContext, finding: Finding, dedupe_key: str,
                              source: str = None) -> tuple[Recommendation, bool]:
    """
    Insert a recommendation (idempotent on dedupe_key) and emit recommendation.created.

    The event is emitted even when the row already existed: a previous attempt
    may have crashed between the insert and the emit, and the event's own
    dedupe key turns a repeat into a no-op.
    """
    rec = Recommendation(
        brand_id=ctx.brand_id,
        job_id=ctx.job_id,
        source=source or ctx.job_type,
        priority=finding.priority,
        title=finding.title,
        body=finding.body,
        data=finding.data,
        confidence=finding.confidence,
        strategic_alignment=finding.strategic_alignment,
        effort_estimate=finding.effort_estimate,
        dedupe_key=dedupe_key,
    )
    rec, created = await ctx.store.create_recommendation(rec)

    if ctx.events is not None:
        await ctx.events.emit(
            EventType.RECOMMENDATION_CREATED.value,
            rec.brand_id,
            {"recommendation_id": rec.id, "source": rec.source, "priority": rec.priority.value},
            dedupe_key=f"rec:{rec.id}",
            source=ctx.job_type,
        )
    if created:
        logger.info("recommendation_created", recommendation_id=rec.id, brand_id=rec.brand_id,
                    source=rec.source, priority=rec.priority.value)
    return rec, created
