"""
Strategic Prioritizer — deterministic base score plus a bounded model delta.

    1. base score per unranked recommendation (prioritizer.scoring)
    2. cross-brand signal context per domain
    3. model proposes {recommendation_id, delta_rank, effort_estimate, reasoning, drop}
    4. final = clamp01(base + clamp(delta, ±2) × 0.1)
    5. drop gate: flagged by the model, or final < 0.2  →  rank -1
    6. the rest get dense ranks 1..n by final score

The model can nudge the order but never own it: one adjustment moves a
score by at most 0.2, and when the model is unavailable or answers badly
the ranking falls back to base scores alone.
"""
from __future__ import annotations

import json
import structlog
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from config.settings import PrioritizerConfig
from core.errors import ModelResponseError, ModelUnavailableError, NotFoundError
from core.model_client import with_signal_context
from database.store_base import BasePipelineStore
from models.schemas import (
    Brand, EffortEstimate, PrioritizerOutput, PriorityAdjustment, Recommendation, utcnow,
)
from prioritizer.scoring import (
    apply_delta, clamp_delta, compute_base_score, estimate_review_minutes, rank_key,
)

logger = structlog.get_logger()

DROPPED_RANK = -1

SYSTEM_PROMPT = """You are a strategy lead triaging a queue of marketing recommendations for one brand.
Each recommendation already has a deterministic rank and base score. Suggest bounded adjustments only.

Return ONLY a JSON object:
{"adjustments": [{"recommendation_id": "<id from the input>",
                  "delta_rank": <number between -2 and 2, positive = more important>,
                  "effort_estimate": "minutes" | "hours" | "days",
                  "reasoning": "<one sentence>",
                  "drop": <true only if the recommendation is irrelevant or harmful>}]}

Only use recommendation ids that appear in the input. Omit recommendations you would not change."""


@dataclass
class RankedRecommendation:
    recommendation_id: str
    base_score: float
    delta: float
    final_score: float
    rank: int
    effort_estimate: Optional[EffortEstimate] = None
    reasoning: str = ""
    drop_reason: Optional[str] = None       # claude_drop | below_threshold


@dataclass
class PrioritizationResult:
    brand_id: str
    ranked: list[RankedRecommendation] = field(default_factory=list)
    dropped: list[RankedRecommendation] = field(default_factory=list)
    adjustments_applied: int = 0
    used_model: bool = False


def rank_recommendations(
    brand_id: str,
    scored: list[tuple[Recommendation, float]],
    adjustments: dict[str, PriorityAdjustment],
    config: Optional[PrioritizerConfig] = None,
) -> PrioritizationResult:
    """Apply deltas, run the drop gate and assign dense ranks. Pure, no I/O."""
    config = config or PrioritizerConfig()
    result = PrioritizationResult(brand_id=brand_id, adjustments_applied=len(adjustments))

    kept: list[tuple[float, Recommendation, RankedRecommendation]] = []
    for rec, base in scored:
        adj = adjustments.get(rec.id)
        delta = clamp_delta(adj.delta_rank, config.max_delta) if adj else 0.0
        final = apply_delta(base, delta, config.delta_multiplier, config.max_delta)
        entry = RankedRecommendation(
            recommendation_id=rec.id,
            base_score=base,
            delta=delta,
            final_score=final,
            rank=DROPPED_RANK,
            effort_estimate=(adj.effort_estimate if adj and adj.effort_estimate else rec.effort_estimate),
            reasoning=adj.reasoning if adj else "",
        )

        if adj and adj.drop:
            entry.drop_reason = "claude_drop"
        elif final < config.drop_threshold:
            entry.drop_reason = "below_threshold"

        if entry.drop_reason:
            result.dropped.append(entry)
        else:
            kept.append((final, rec, entry))

    kept.sort(key=lambda item: rank_key(item[0], item[1]))
    for rank, (_, _, entry) in enumerate(kept, start=1):
        entry.rank = rank
        result.ranked.append(entry)

    return result


class StrategicPrioritizer:
    """Ranks a brand's unranked recommendations and persists the scores."""

    def __init__(
        self,
        store: BasePipelineStore,
        model: Any = None,
        signal_context: Any = None,
        config: Optional[PrioritizerConfig] = None,
    ):
        self.store = store
        self.model = model
        self.signal_context = signal_context
        self.config = config or PrioritizerConfig()

    async def prioritize(self, brand_id: str, now: Optional[datetime] = None) -> PrioritizationResult:
        brand = await self.store.get_brand(brand_id)
        if brand is None:
            raise NotFoundError(f"Brand {brand_id} not found")

        recs = await self.store.list_unranked_recommendations(brand_id)
        if not recs:
            logger.info("prioritizer_nothing_pending", brand_id=brand_id)
            return PrioritizationResult(brand_id=brand_id)

        now = now or utcnow()
        scored = [(rec, compute_base_score(rec, now)) for rec in recs]
        scored.sort(key=lambda item: rank_key(item[1], item[0]))

        adjustments, applications = await self._model_adjustments(brand, scored)
        result = rank_recommendations(brand_id, scored, adjustments, self.config)
        result.used_model = bool(adjustments)

        await self._persist(result)
        # After _persist: a retried run re-ranks only what is still unranked
        for signal_ids, rec_id in applications:
            await self.signal_context.record(brand_id, signal_ids, rec_id)

        for entry in result.dropped:
            logger.info("recommendation_dropped", brand_id=brand_id,
                        recommendation_id=entry.recommendation_id,
                        reason=entry.drop_reason, score=round(entry.final_score, 3))
        logger.info("prioritization_complete", brand_id=brand_id,
                    ranked=len(result.ranked), dropped=len(result.dropped),
                    adjustments_applied=result.adjustments_applied)
        return result

    async def _signal_text(
        self, brand_id: str, recs: list[Recommendation],
    ) -> tuple[str, list[tuple[list[str], str]]]:
        """One signal block per domain, plus the (signal ids, recommendation id) pairs it applies to."""
        if self.signal_context is None:
            return "", []
        blocks = []
        applications = []
        for domain in sorted({rec.domain for rec in recs}):
            context = await self.signal_context.build(brand_id, domain, record=False)
            if not context.text:
                continue
            blocks.append(context.text)
            applications.extend(
                (context.signal_ids, rec.id) for rec in recs if rec.domain == domain
            )
        return "\n".join(blocks), applications

    async def _model_adjustments(
        self, brand: Brand, scored: list[tuple[Recommendation, float]],
    ) -> tuple[dict[str, PriorityAdjustment], list[tuple[list[str], str]]]:
        if self.model is None:
            return {}, []

        recs = [rec for rec, _ in scored]
        payload = [
            {
                "recommendation_id": rec.id,
                "rank": i,
                "base_score": round(base, 3),
                "title": rec.title,
                "source": rec.source,
                "priority": rec.priority.value,
            }
            for i, (rec, base) in enumerate(scored, start=1)
        ]
        prompt = (
            f"Brand: {brand.name} (mode: {brand.mode.value})\n"
            f"Enabled modules: {json.dumps(brand.modules_enabled)}\n\n"
            f"Recommendations:\n{json.dumps(payload, indent=2)}"
        )

        try:
            signal_text, applications = await self._signal_text(brand.id, recs)
            output = await self.model.complete_json(
                with_signal_context(SYSTEM_PROMPT, signal_text), prompt, PrioritizerOutput,
            )
        except (ModelUnavailableError, ModelResponseError) as e:
            logger.warning("prioritizer_model_fallback", brand_id=brand.id, error=str(e))
            return {}, []

        known = {rec.id for rec in recs}
        adjustments = {}
        for adj in output.adjustments:
            if adj.recommendation_id not in known:
                logger.warning("prioritizer_ungrounded_adjustment", brand_id=brand.id,
                               recommendation_id=adj.recommendation_id)
                continue
            adjustments[adj.recommendation_id] = adj
        return adjustments, applications

    async def _persist(self, result: PrioritizationResult) -> None:
        for entry in result.ranked + result.dropped:
            await self.store.update_recommendation(
                entry.recommendation_id,
                base_score=round(entry.base_score, 3),
                claude_delta=round(entry.delta, 1),
                roi_score=round(entry.final_score, 3),
                priority_rank=entry.rank,
                effort_estimate=entry.effort_estimate,
                estimated_review_minutes=estimate_review_minutes(entry.effort_estimate),
                reasoning=entry.reasoning or None,
            )
