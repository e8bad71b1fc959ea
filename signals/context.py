"""
Cross-Tenant Signal Context — what other brands have learned, for one domain.

Signals are generalizable patterns extracted from measured outcomes. Before
the prioritizer asks the model for adjustments, it pulls the strongest
non-expired signals for the recommendation domain and renders them into a
short, bounded text block:

    weight = confidence × decay_weight × positive_rate

positive_rate comes from the signal's own track record: among applications
whose outcome has been measured, the share that turned out positive. An
untested signal gets 0.5 so it is neither favoured nor buried.

Every signal that makes it into the context is recorded as a Signal
Application against the target brand; outcome measurement back-fills those
rows later (see jobs.signals.signal_feedback), closing the loop.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Optional

from database.store_base import BasePipelineStore
from models.schemas import Signal, SignalApplication, utcnow

logger = structlog.get_logger()

MAX_SIGNALS = 5
MAX_CONTEXT_CHARS = 2000
UNTESTED_POSITIVE_RATE = 0.5


@dataclass
class WeightedSignal:
    signal: Signal
    positive_rate: float
    weight: float


@dataclass
class SignalContextResult:
    text: str = ""
    signal_ids: list[str] = field(default_factory=list)
    application_ids: list[str] = field(default_factory=list)


def positive_rate(measured: int, positive: int) -> float:
    if measured <= 0:
        return UNTESTED_POSITIVE_RATE
    return positive / measured


def weight_signal(signal: Signal, rate: float) -> float:
    return signal.confidence * signal.decay_weight * rate


def format_signal_context(domain: str, signals: list[Signal],
                          max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """Render signals as bullet lines. The result never exceeds max_chars."""
    if not signals:
        return ""

    text = f"Cross-brand signals for {domain}:\n"
    for sig in signals:
        signal_type = getattr(sig.signal_type, "value", sig.signal_type)
        entry = f"- [{signal_type}] {sig.title} (confidence: {sig.confidence:.2f}): {sig.description}\n"
        if len(text) + len(entry) <= max_chars:
            text += entry
            continue

        # Last entry that does not fit: keep as much of its description as the budget allows
        head = f"- [{signal_type}] {sig.title}: "
        available = max_chars - len(text) - len(head) - len("...\n")
        if available > 0:
            text += f"{head}{sig.description[:available]}...\n"
        break

    return text[:max_chars]


class SignalContext:
    """Builds the signal block for one (brand, domain) and records its applications."""

    def __init__(self, store: BasePipelineStore, max_signals: int = MAX_SIGNALS,
                 max_chars: int = MAX_CONTEXT_CHARS):
        self.store = store
        self.max_signals = max_signals
        self.max_chars = max_chars

    async def rank_signals(self, domain: str) -> list[WeightedSignal]:
        weighted = []
        for signal in await self.store.list_active_signals(domain, utcnow()):
            measured, positive = await self.store.application_stats(signal.id)
            rate = positive_rate(measured, positive)
            weighted.append(WeightedSignal(signal, rate, weight_signal(signal, rate)))

        weighted.sort(key=lambda w: (-w.weight, w.signal.created_at, w.signal.id))
        return weighted[: self.max_signals]

    async def build(self, brand_id: str, domain: str,
                    recommendation_id: Optional[str] = None,
                    record: bool = True) -> SignalContextResult:
        """Rank, render and (unless record=False) record one application per signal used."""
        top = await self.rank_signals(domain)
        if not top:
            return SignalContextResult()

        signals = [w.signal for w in top]
        result = SignalContextResult(
            text=format_signal_context(domain, signals, self.max_chars),
            signal_ids=[s.id for s in signals],
        )
        if record:
            result.application_ids = await self.record(brand_id, result.signal_ids, recommendation_id)

        logger.debug("signal_context_built", brand_id=brand_id, domain=domain,
                     signals=len(signals), chars=len(result.text))
        return result

    async def record(self, brand_id: str, signal_ids: list[str],
                     recommendation_id: Optional[str] = None) -> list[str]:
        """Write a Signal Application per signal. Returns the application ids."""
        ids = []
        for signal_id in signal_ids:
            application = await self.store.add_signal_application(SignalApplication(
                signal_id=signal_id,
                target_brand_id=brand_id,
                recommendation_id=recommendation_id,
            ))
            ids.append(application.id)
        return ids
