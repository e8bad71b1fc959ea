"""
evaluation_scorer — how well did last month's recommendations land?

Over a 30-day window per brand:
    acceptance_rate    drafts approved or executed ÷ drafts
    avg_confidence     mean recommendation confidence
    calibration_error  |avg_confidence − acceptance_rate|
    avg_outcome_delta  mean measured outcome delta

The confidence calibrator compares the mean calibration error of the 3 most
recent runs with the 3 before them.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from database.store_base import BasePipelineStore
from job_queue.registry import JobContext
from jobs.common import require_brand
from models.schemas import DraftStatus, EvaluationRun, utcnow

logger = structlog.get_logger()

WINDOW = timedelta(days=30)
STABLE_BAND = 0.02

_ACCEPTED = {DraftStatus.APPROVED, DraftStatus.EXECUTED, DraftStatus.EXECUTED_STUB}


@dataclass
class CalibrationReport:
    brand_id: str
    recent_calibration_error: Optional[float]
    trend: str              # improving | degrading | stable | insufficient_data
    runs_analyzed: int


def _mean(values: list[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def _round(value: Optional[float], digits: int) -> Optional[float]:
    return round(value, digits) if value is not None else None


async def calibration_report(store: BasePipelineStore, brand_id: str) -> CalibrationReport:
    runs = await store.list_evaluation_runs(brand_id, limit=10)
    recent_error = runs[0].calibration_error if runs else None

    recent, older = runs[:3], runs[3:6]
    if len(recent) < 3 or not older:
        return CalibrationReport(brand_id, recent_error, "insufficient_data", len(runs))

    delta = (
        _mean([r.calibration_error or 0.0 for r in recent])
        - _mean([r.calibration_error or 0.0 for r in older])
    )
    if abs(delta) < STABLE_BAND:
        trend = "stable"
    elif delta < 0:
        trend = "improving"
    else:
        trend = "degrading"
    return CalibrationReport(brand_id, recent_error, trend, len(runs))


async def evaluation_scorer(ctx: JobContext) -> None:
    brand = await require_brand(ctx)
    now = utcnow()
    start = now - WINDOW

    recs = await ctx.store.list_recommendations(brand.id, created_after=start, limit=10_000)
    if not recs:
        logger.info("evaluation_skipped_no_recommendations", job_id=ctx.job_id, brand_id=brand.id)
        return

    drafts = await ctx.store.list_drafts(brand_id=brand.id, created_after=start)
    acceptance = (
        sum(1 for d in drafts if d.status in _ACCEPTED) / len(drafts) if drafts else 0.0
    )
    avg_confidence = _mean([r.confidence for r in recs if r.confidence is not None])
    calibration_error = abs(avg_confidence - acceptance) if avg_confidence is not None else None
    avg_delta = _mean([o.delta for o in await ctx.store.list_outcomes(brand.id, measured_after=start)])

    run = await ctx.store.create_evaluation_run(EvaluationRun(
        brand_id=brand.id,
        period_start=start,
        period_end=now,
        total_recommendations=len(recs),
        acceptance_rate=round(acceptance, 3),
        avg_confidence=_round(avg_confidence, 3),
        calibration_error=_round(calibration_error, 3),
        avg_outcome_delta=_round(avg_delta, 2),
        metrics={"drafts": len(drafts)},
    ))

    report = await calibration_report(ctx.store, brand.id)
    logger.info("evaluation_complete", job_id=ctx.job_id, brand_id=brand.id, run_id=run.id,
                recommendations=len(recs), acceptance_rate=run.acceptance_rate,
                calibration_error=run.calibration_error, calibration_trend=report.trend)
