"""
Metric snapshots and outcome measurement.

metric_snapshot    reads current metric values from every configured source
                   and stores them as snapshots.
outcome_collector  compares the snapshot before a recommendation with the
                   latest one after it, for recommendations whose draft was
                   executed at least 7 days ago. No pair of snapshots, no
                   outcome: a missing value is never filled in.
                   Events for outcomes measured in the last week are
                   emitted again on each run; their dedupe keys make that a
                   no-op unless an earlier run failed between the insert
                   and the emit.
"""
from __future__ import annotations

import structlog
from datetime import timedelta

from job_queue.registry import JobContext
from jobs.common import require_brand
from models.schemas import (
    EventType, JobType, MetricSnapshot, Outcome, Recommendation, utcnow,
)

logger = structlog.get_logger()

OUTCOME_MIN_AGE = timedelta(days=7)

# Outcomes measured this recently get their events re-emitted on every run
OUTCOME_REPLAY_WINDOW = timedelta(days=7)

# Lower is better for these
INVERSE_METRICS = {"spam_rate", "error_rate", "bounce_rate"}


def outcome_metric(rec: Recommendation) -> tuple[str, str]:
    """(metric source, metric key) used to judge a recommendation."""
    if rec.source == JobType.GSC_DAILY_DIGEST.value:
        return "gsc", "avg_ctr"
    return "community", "spam_rate"


def is_positive_outcome(metric_key: str, delta: float) -> bool:
    if metric_key in INVERSE_METRICS:
        return delta < 0
    return delta > 0


async def metric_snapshot(ctx: JobContext) -> None:
    brand = await require_brand(ctx)
    connectors = ctx.sources.all() if ctx.sources is not None else []
    if not connectors:
        logger.info("snapshot_skipped_no_sources", job_id=ctx.job_id, brand_id=brand.id)
        return

    captured = 0
    for connector in connectors:
        metrics = await connector.fetch_metrics(brand.id)
        for key, value in metrics.items():
            await ctx.store.add_metric_snapshot(MetricSnapshot(
                brand_id=brand.id, source=connector.name, metric_key=key, value=value,
            ))
            captured += 1

    logger.info("metric_snapshots_captured", job_id=ctx.job_id, brand_id=brand.id,
                sources=len(connectors), snapshots=captured)


async def _emit_outcome_events(ctx: JobContext, outcome: Outcome) -> None:
    await ctx.events.emit(
        EventType.OUTCOME_COLLECTED.value,
        outcome.brand_id,
        {"recommendation_id": outcome.recommendation_id, "outcome_id": outcome.id,
         "metric_key": outcome.metric_key, "delta": outcome.delta},
        dedupe_key=f"outcome:{outcome.recommendation_id}",
        source="outcome_collector",
    )
    await ctx.events.emit(
        EventType.SIGNAL_OUTCOME_MEASURED.value,
        outcome.brand_id,
        {"recommendation_id": outcome.recommendation_id,
         "outcome_positive": is_positive_outcome(outcome.metric_key, outcome.delta)},
        dedupe_key=f"feedback:{outcome.recommendation_id}",
        source="outcome_collector",
    )


async def outcome_collector(ctx: JobContext) -> None:
    brand = await require_brand(ctx)
    now = utcnow()

    for outcome in await ctx.store.list_outcomes(brand.id, measured_after=now - OUTCOME_REPLAY_WINDOW):
        await _emit_outcome_events(ctx, outcome)

    candidates = await ctx.store.list_outcome_candidates(brand.id, now - OUTCOME_MIN_AGE)
    collected = 0
    for rec in candidates:
        source, key = outcome_metric(rec)
        before = await ctx.store.latest_snapshot(brand.id, source, key, before=rec.created_at)
        after = await ctx.store.latest_snapshot(brand.id, source, key)

        if before is None or after is None or after.captured_at <= rec.created_at:
            logger.warning("outcome_skipped_missing_snapshots", job_id=ctx.job_id,
                           recommendation_id=rec.id, metric_source=source, metric_key=key)
            continue

        outcome = await ctx.store.create_outcome(Outcome(
            brand_id=brand.id,
            recommendation_id=rec.id,
            metric_source=source,
            metric_key=key,
            metric_value_before=round(before.value, 2),
            metric_value_after=round(after.value, 2),
            delta=round(after.value - before.value, 2),
        ))
        await _emit_outcome_events(ctx, outcome)
        collected += 1

    logger.info("outcome_collection_complete", job_id=ctx.job_id, brand_id=brand.id,
                eligible=len(candidates), collected=collected)
