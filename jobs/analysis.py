"""
Analysis handlers — turn data-source findings into recommendations.

gsc_daily_digest, trend_scan_industry, analytics_insights and
ads_performance_digest share one body: fetch findings from the job's data
source, validate each one, store it as a recommendation. A brand without
that source configured is skipped; the job still succeeds.
"""
from __future__ import annotations

import structlog
from pydantic import ValidationError

from job_queue.registry import JobContext
from jobs.common import require_brand, save_recommendation
from models.schemas import Finding, JobType

logger = structlog.get_logger()

ANALYSIS_JOB_TYPES = [
    JobType.GSC_DAILY_DIGEST,
    JobType.TREND_SCAN_INDUSTRY,
    JobType.ANALYTICS_INSIGHTS,
    JobType.ADS_PERFORMANCE_DIGEST,
]


async def run_analysis(ctx: JobContext) -> None:
    brand = await require_brand(ctx)

    source = ctx.sources.for_job(ctx.job_type) if ctx.sources is not None else None
    if source is None:
        logger.info("analysis_skipped_no_source", job_id=ctx.job_id,
                    job_type=ctx.job_type, brand_id=brand.id)
        return

    raw_findings = await source.fetch_findings(ctx.job_type, brand.id)

    created = 0
    for n, raw in enumerate(raw_findings):
        try:
            finding = Finding.model_validate(raw)
        except ValidationError as e:
            logger.warning("finding_invalid", job_id=ctx.job_id, index=n, error=str(e))
            continue
        # Index-based key: a retried job re-reads the same findings and lands on the same rows
        _, was_created = await save_recommendation(ctx, finding, dedupe_key=f"{ctx.job_id}:{n}")
        created += int(was_created)

    logger.info("analysis_complete", job_id=ctx.job_id, job_type=ctx.job_type,
                brand_id=brand.id, findings=len(raw_findings), created=created)
