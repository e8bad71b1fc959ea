"""community_moderate_post — classify a community post; flagged posts become recommendations."""
from __future__ import annotations

import structlog
from typing import Optional

from job_queue.registry import JobContext
from jobs.common import require_brand, save_recommendation
from models.schemas import EffortEstimate, Finding, ModerationVerdict

logger = structlog.get_logger()

DECISIONS = {"approve", "flag", "remove"}

SYSTEM_PROMPT = """You moderate posts in a brand's community.
Apply the brand guardrails. Only flag or remove a post when it breaks them or is spam, abuse or off-topic promotion.

Return ONLY a JSON object:
{"decision": "approve" | "flag" | "remove",
 "reason": "<one sentence>",
 "confidence": <0..1>,
 "priority": "critical" | "high" | "medium" | "low"}"""


def _check_decision(verdict: ModerationVerdict) -> Optional[str]:
    if verdict.decision not in DECISIONS:
        return f"unknown decision {verdict.decision!r}"
    return None


async def community_moderate_post(ctx: JobContext) -> None:
    brand = await require_brand(ctx)
    post = ctx.payload

    verdict = await ctx.model.complete_json(
        SYSTEM_PROMPT,
        (
            f"Brand guardrails: {brand.guardrails}\n\n"
            f"Post {post.post_id} by {post.author or 'unknown'}\n"
            f"Title: {post.title}\n\n{post.body}"
        ),
        ModerationVerdict,
        grounding=_check_decision,
    )

    if verdict.decision == "approve":
        logger.info("post_approved", job_id=ctx.job_id, brand_id=brand.id, post_id=post.post_id)
        return

    finding = Finding(
        title=f"Community post {post.post_id} needs moderation ({verdict.decision})",
        body=verdict.reason,
        priority=verdict.priority,
        confidence=verdict.confidence,
        effort_estimate=EffortEstimate.MINUTES,
        data={"post_id": post.post_id, "author": post.author,
              "decision": verdict.decision, "title": post.title},
    )
    rec, _ = await save_recommendation(ctx, finding, dedupe_key=f"post:{post.post_id}")
    logger.info("post_flagged", job_id=ctx.job_id, brand_id=brand.id, post_id=post.post_id,
                decision=verdict.decision, recommendation_id=rec.id)
