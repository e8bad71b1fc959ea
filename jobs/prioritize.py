"""strategic_prioritizer — ranks the brand's pending recommendations."""
from __future__ import annotations

from job_queue.registry import JobContext
from jobs.common import require_brand
from prioritizer.strategic import StrategicPrioritizer
from signals.context import SignalContext


async def strategic_prioritizer(ctx: JobContext) -> None:
    brand = await require_brand(ctx)
    config = ctx.settings.prioritizer if ctx.settings is not None else None

    signal_context = SignalContext(ctx.store)
    if config is not None:
        signal_context = SignalContext(ctx.store, config.max_signals, config.signal_context_chars)

    prioritizer = StrategicPrioritizer(ctx.store, ctx.model, signal_context, config)
    await prioritizer.prioritize(brand.id)
