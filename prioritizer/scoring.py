"""
Deterministic scoring for recommendations.

    base = 0.30 * impact(priority)
         + 0.20 * aging           min(1, days_pending / 30)
         + 0.20 * confidence      (0.5 when unknown)
         + 0.15 * effort weight   (minutes 1.0, hours 0.6, days 0.3, unknown 0.5)
         + 0.15 * alignment       (float, or flag True 1.0 / False 0.0, unknown 0.5)

    final = clamp01(base + clamp(delta, -2, +2) * 0.1)

Older pending items gain up to 0.2 so low-priority work is not starved
forever by a steady stream of fresh high-priority items.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Optional, Union

from models.schemas import EffortEstimate, Priority, Recommendation

PRIORITY_IMPACT: dict[str, float] = {
    Priority.CRITICAL.value: 1.0,
    Priority.HIGH.value: 0.75,
    Priority.MEDIUM.value: 0.5,
    Priority.LOW.value: 0.25,
}

EFFORT_WEIGHT: dict[str, float] = {
    EffortEstimate.MINUTES.value: 1.0,
    EffortEstimate.HOURS.value: 0.6,
    EffortEstimate.DAYS.value: 0.3,
}

REVIEW_MINUTES: dict[str, int] = {
    EffortEstimate.MINUTES.value: 5,
    EffortEstimate.HOURS.value: 30,
    EffortEstimate.DAYS.value: 120,
}

WEIGHTS = {
    "impact": 0.30,
    "aging": 0.20,
    "confidence": 0.20,
    "effort": 0.15,
    "alignment": 0.15,
}

AGING_HORIZON_DAYS = 30
DEFAULT_REVIEW_MINUTES = 15


def _value(enum_or_str) -> Optional[str]:
    return getattr(enum_or_str, "value", enum_or_str)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def alignment_score(alignment: Union[bool, float, None]) -> float:
    if alignment is None:
        return 0.5
    if isinstance(alignment, bool):
        return 1.0 if alignment else 0.0
    return clamp01(float(alignment))


def aging_score(created_at: datetime, now: datetime) -> float:
    days_pending = (now - created_at).total_seconds() / 86400
    return clamp01(days_pending / AGING_HORIZON_DAYS)


def compute_base_score(rec: Recommendation, now: datetime) -> float:
    impact = PRIORITY_IMPACT.get(_value(rec.priority), 0.5)
    confidence = rec.confidence if rec.confidence is not None else 0.5
    effort = EFFORT_WEIGHT.get(_value(rec.effort_estimate), 0.5)

    return (
        WEIGHTS["impact"] * impact
        + WEIGHTS["aging"] * aging_score(rec.created_at, now)
        + WEIGHTS["confidence"] * clamp01(confidence)
        + WEIGHTS["effort"] * effort
        + WEIGHTS["alignment"] * alignment_score(rec.strategic_alignment)
    )


def clamp_delta(delta: float, max_delta: float = 2.0) -> float:
    # min(2, nan) is 2, so a non-finite delta counts as no adjustment
    if not math.isfinite(delta):
        return 0.0
    return max(-max_delta, min(max_delta, delta))


def apply_delta(base_score: float, delta: float, multiplier: float = 0.1,
                max_delta: float = 2.0) -> float:
    """Final score: base shifted by the bounded model delta, clamped to [0, 1]."""
    return clamp01(base_score + clamp_delta(delta, max_delta) * multiplier)


def estimate_review_minutes(effort_estimate: Optional[Union[EffortEstimate, str]]) -> int:
    return REVIEW_MINUTES.get(_value(effort_estimate), DEFAULT_REVIEW_MINUTES)


def rank_key(score: float, rec: Recommendation) -> tuple:
    """Sort key: score descending, then oldest first, then id. Always a total order."""
    return (-score, rec.created_at, rec.id)
