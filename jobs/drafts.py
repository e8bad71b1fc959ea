"""
action_draft_generator — proposes a concrete action for a new recommendation.

Triggered by recommendation.created. Only brands in assist mode get drafts;
observe-mode brands see recommendations and nothing more. A fresh draft goes
through the auto-approval gate immediately.
"""
from __future__ import annotations

import json
import structlog

from core.errors import NotFoundError
from execution.approval import apply_auto_approval
from job_queue.registry import JobContext
from jobs.common import require_brand
from models.schemas import (
    ActionDraft, ActionDraftProposal, BrandMode, DraftStatus, EventType,
)

logger = structlog.get_logger()

SYSTEM_PROMPT = """You turn a marketing recommendation into one concrete, executable action draft.
Respect the brand guardrails. Prefer the smallest action that addresses the recommendation.

Return ONLY a JSON object:
{"type": "<action type, e.g. flag_for_review, webhook, gsc_index_request>",
 "payload": {<parameters the executor needs>},
 "risk": "low" | "medium" | "high",
 "guardrails_applied": {<guardrail name>: <how it shaped the draft>},
 "requires_approval": true | false}"""


async def action_draft_generator(ctx: JobContext) -> None:
    brand = await require_brand(ctx)
    if brand.mode != BrandMode.ASSIST:
        logger.info("draft_skipped_observe_mode", job_id=ctx.job_id, brand_id=brand.id)
        return

    rec_id = ctx.payload.recommendation_id
    rec = await ctx.store.get_recommendation(rec_id)
    if rec is None:
        raise NotFoundError(f"Recommendation {rec_id} not found")

    draft = await ctx.store.get_draft_for_recommendation(rec.id)
    if draft is None:
        proposal = await ctx.model.complete_json(
            SYSTEM_PROMPT,
            (
                f"Recommendation: {rec.title}\n"
                f"Source: {rec.source}\nPriority: {rec.priority.value}\n\n"
                f"{rec.body}\n\n"
                f"Data: {json.dumps(rec.data, default=str)}\n"
                f"Brand guardrails: {json.dumps(brand.guardrails)}"
            ),
            ActionDraftProposal,
        )
        proposed = ActionDraft(
            brand_id=brand.id,
            recommendation_id=rec.id,
            type=proposal.type,
            payload=proposal.payload,
            risk=proposal.risk,
            confidence=rec.confidence if rec.confidence is not None else 0.0,
            guardrails_applied=proposal.guardrails_applied,
            requires_approval=proposal.requires_approval,
        )
        draft = await ctx.store.create_draft(proposed)
        if draft.id == proposed.id:
            logger.info("action_draft_generated", job_id=ctx.job_id, action_draft_id=draft.id,
                        type=draft.type, risk=draft.risk.value)
        else:
            logger.info("action_draft_exists", job_id=ctx.job_id, action_draft_id=draft.id,
                        concurrent=True)
    else:
        logger.info("action_draft_exists", job_id=ctx.job_id, action_draft_id=draft.id)

    # Both steps below are idempotent, so a redelivered job finishes what a crashed one started
    await ctx.events.emit(
        EventType.ACTION_DRAFT_CREATED.value,
        brand.id,
        {"action_draft_id": draft.id, "recommendation_id": rec.id,
         "type": draft.type, "risk": draft.risk.value},
        dedupe_key=f"draft:{draft.id}",
        source="action_draft_generator",
    )
    if draft.status == DraftStatus.PENDING:
        await apply_auto_approval(ctx.store, ctx.events, draft)
