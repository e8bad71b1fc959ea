"""
Auto-Approval Gate and human approval transitions.

A brand's ExecutionRules decide whether a fresh draft can skip the human:

    auto_execute
    and draft.confidence >= rules.min_confidence
    and risk(draft) <= rules.max_risk          (low < medium < high)
    and (allowed_action_types empty or draft.type in it)

Approved drafts are picked up by the execution loop on its next pass.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

from core.errors import InvalidTransitionError, NotFoundError
from database.store_base import BasePipelineStore
from models.schemas import ActionDraft, DraftStatus, EventType, ExecutionRules, RiskLevel

logger = structlog.get_logger()

RISK_ORDER: dict[str, int] = {
    RiskLevel.LOW.value: 0,
    RiskLevel.MEDIUM.value: 1,
    RiskLevel.HIGH.value: 2,
}


@dataclass
class ApprovalDecision:
    approved: bool
    reasons: list[str] = field(default_factory=list)    # why not, when not approved


def risk_rank(risk: RiskLevel | str) -> int:
    return RISK_ORDER[getattr(risk, "value", risk)]


def evaluate_auto_approval(rules: Optional[ExecutionRules], draft: ActionDraft) -> ApprovalDecision:
    if rules is None or not rules.auto_execute:
        return ApprovalDecision(False, ["auto_execute disabled"])

    reasons = []
    if draft.confidence < rules.min_confidence:
        reasons.append(f"confidence {draft.confidence:.2f} below {rules.min_confidence:.2f}")
    if risk_rank(draft.risk) > risk_rank(rules.max_risk):
        reasons.append(f"risk {draft.risk.value} above {rules.max_risk.value}")
    if rules.allowed_action_types and draft.type not in rules.allowed_action_types:
        reasons.append(f"type {draft.type} not in allowed action types")

    return ApprovalDecision(approved=not reasons, reasons=reasons)


async def apply_auto_approval(store: BasePipelineStore, events: Any,
                              draft: ActionDraft) -> ApprovalDecision:
    """Run the gate for a freshly created pending draft and approve it if it passes."""
    rules = await store.get_execution_rules(draft.brand_id)
    decision = evaluate_auto_approval(rules, draft)
    if not decision.approved:
        logger.info("auto_approval_declined", action_draft_id=draft.id, reasons=decision.reasons)
        return decision

    if not await store.transition_draft(draft.id, DraftStatus.PENDING, DraftStatus.APPROVED):
        logger.info("auto_approval_skipped", action_draft_id=draft.id, reason="not pending")
        return ApprovalDecision(False, ["draft no longer pending"])

    logger.info("action_draft_auto_approved", action_draft_id=draft.id, type=draft.type,
                risk=draft.risk.value, confidence=draft.confidence)
    if events is not None:
        await events.emit(
            EventType.ACTION_DRAFT_AUTO_APPROVED.value,
            draft.brand_id,
            {"action_draft_id": draft.id, "recommendation_id": draft.recommendation_id,
             "type": draft.type, "risk": draft.risk.value},
            dedupe_key=f"auto_approved:{draft.id}",
            source="auto_approval",
        )
    return decision


async def _decide(store: BasePipelineStore, events: Any, draft_id: str,
                  to_status: DraftStatus, event_type: EventType, prefix: str) -> ActionDraft:
    draft = await store.get_draft(draft_id)
    if draft is None:
        raise NotFoundError(f"Action draft {draft_id} not found")
    if not await store.transition_draft(draft_id, DraftStatus.PENDING, to_status):
        raise InvalidTransitionError(
            f"Action draft {draft_id} is {draft.status.value}, expected pending"
        )

    if events is not None:
        await events.emit(
            event_type.value,
            draft.brand_id,
            {"action_draft_id": draft.id, "recommendation_id": draft.recommendation_id},
            dedupe_key=f"{prefix}:{draft.id}",
            source="api",
        )
    logger.info("action_draft_decided", action_draft_id=draft.id, status=to_status.value)
    return await store.get_draft(draft_id)


async def approve_draft(store: BasePipelineStore, events: Any, draft_id: str) -> ActionDraft:
    return await _decide(store, events, draft_id, DraftStatus.APPROVED,
                         EventType.ACTION_DRAFT_APPROVED, "approved")


async def reject_draft(store: BasePipelineStore, events: Any, draft_id: str) -> ActionDraft:
    return await _decide(store, events, draft_id, DraftStatus.REJECTED,
                         EventType.ACTION_DRAFT_REJECTED, "rejected")
