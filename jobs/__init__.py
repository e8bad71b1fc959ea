"""Job handlers, one coroutine per JobType."""
from __future__ import annotations

from job_queue.registry import HandlerRegistry
from jobs.analysis import ANALYSIS_JOB_TYPES, run_analysis
from jobs.drafts import action_draft_generator
from jobs.evaluation import evaluation_scorer
from jobs.moderation import community_moderate_post
from jobs.outcomes import metric_snapshot, outcome_collector
from jobs.prioritize import strategic_prioritizer
from jobs.signals import signal_decay, signal_extractor, signal_feedback
from models.schemas import JobType


def build_handler_registry() -> HandlerRegistry:
    """Registry with a handler for every job type."""
    registry = HandlerRegistry()
    for job_type in ANALYSIS_JOB_TYPES:
        registry.register(job_type, run_analysis)

    registry.register(JobType.COMMUNITY_MODERATE_POST, community_moderate_post)
    registry.register(JobType.ACTION_DRAFT_GENERATOR, action_draft_generator)
    registry.register(JobType.STRATEGIC_PRIORITIZER, strategic_prioritizer)
    registry.register(JobType.METRIC_SNAPSHOT, metric_snapshot)
    registry.register(JobType.OUTCOME_COLLECTOR, outcome_collector)
    registry.register(JobType.SIGNAL_EXTRACTOR, signal_extractor)
    registry.register(JobType.SIGNAL_FEEDBACK, signal_feedback)
    registry.register(JobType.SIGNAL_DECAY, signal_decay)
    registry.register(JobType.EVALUATION_SCORER, evaluation_scorer)
    return registry
