"""
InMemoryPipelineStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlPipelineStore, including the
    (brand, type, dedupe_key) uniqueness rule on events
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from core.errors import DuplicateEventError
from database.store_base import BasePipelineStore
from models.schemas import (
    ActionDraft, ActionExecution, Brand, DomainEvent, DraftStatus,
    EvaluationRun, EventRule, EventStatus, ExecutionRules, Job, JobStatus,
    MetricSnapshot, Outcome, Recommendation, Signal, SignalApplication,
    utcnow,
)

logger = structlog.get_logger()

_EXECUTED = {DraftStatus.EXECUTED, DraftStatus.EXECUTED_STUB}


def _copy(record):
    return record.model_copy(deep=True) if record is not None else None


class InMemoryPipelineStore(BasePipelineStore):
    """
    Full-featured in-memory store with the same interface as SqlPipelineStore.
    Records are copied on the way in and out so callers never alias stored state.
    """

    def __init__(self):
        self._brands: dict[str, Brand] = {}
        self._execution_rules: dict[str, ExecutionRules] = {}   # brand_id → rules
        self._jobs: dict[str, Job] = {}
        self._events: dict[str, DomainEvent] = {}
        self._event_rules: dict[str, EventRule] = {}
        self._recommendations: dict[str, Recommendation] = {}
        self._drafts: dict[str, ActionDraft] = {}
        self._executions: dict[str, ActionExecution] = {}
        self._snapshots: list[MetricSnapshot] = []
        self._outcomes: dict[str, Outcome] = {}
        self._signals: dict[str, Signal] = {}
        self._applications: dict[str, SignalApplication] = {}
        self._evaluation_runs: list[EvaluationRun] = []

        # Indexes
        self._event_keys: dict[tuple[str, str, str], str] = {}   # (brand, type, dedupe) → event_id
        self._rec_keys: dict[tuple[str, str], str] = {}          # (brand, dedupe) → rec_id
        logger.info("inmemory_store_initialized")

    # ── Brands ────────────────────────────────────────────

    async def upsert_brand(self, brand: Brand) -> Brand:
        self._brands[brand.id] = _copy(brand)
        return brand

    async def get_brand(self, brand_id: str) -> Optional[Brand]:
        return _copy(self._brands.get(brand_id))

    async def list_active_brands(self) -> list[Brand]:
        brands = [b for b in self._brands.values() if b.is_active]
        brands.sort(key=lambda b: b.created_at)
        return [_copy(b) for b in brands]

    async def get_execution_rules(self, brand_id: str) -> Optional[ExecutionRules]:
        return _copy(self._execution_rules.get(brand_id))

    async def upsert_execution_rules(self, rules: ExecutionRules) -> ExecutionRules:
        self._execution_rules[rules.brand_id] = _copy(rules)
        return rules

    # ── Jobs ──────────────────────────────────────────────

    async def create_job(self, job: Job) -> Job:
        self._jobs[job.id] = _copy(job)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        return _copy(self._jobs.get(job_id))

    async def update_job(self, job_id: str, **fields: Any) -> None:
        job = self._jobs.get(job_id)
        if job:
            self._jobs[job_id] = job.model_copy(update={**fields, "updated_at": utcnow()})

    async def update_job_if(self, job_id: str, expected_status: JobStatus,
                            updated_before: Optional[datetime] = None, **fields: Any) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != expected_status:
            return False
        if updated_before is not None and job.updated_at >= updated_before:
            return False
        self._jobs[job_id] = job.model_copy(update={**fields, "updated_at": utcnow()})
        return True

    async def list_jobs(self, brand_id: Optional[str] = None,
                        status: Optional[JobStatus] = None,
                        limit: int = 100) -> list[Job]:
        jobs = [
            j for j in self._jobs.values()
            if (brand_id is None or j.brand_id == brand_id)
            and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [_copy(j) for j in jobs[:limit]]

    async def find_stale_jobs(self, status: JobStatus, updated_before: datetime,
                              min_attempts: int = 0) -> list[Job]:
        return [
            _copy(j) for j in self._jobs.values()
            if j.status == status and j.updated_at < updated_before
            and j.attempts >= min_attempts
        ]

    # ── Events & rules ────────────────────────────────────

    async def insert_event(self, event: DomainEvent) -> DomainEvent:
        if event.dedupe_key is not None:
            key = (event.brand_id, event.type, event.dedupe_key)
            if key in self._event_keys:
                raise DuplicateEventError(f"Duplicate event {key}")
            self._event_keys[key] = event.id
        self._events[event.id] = _copy(event)
        return event

    async def get_event(self, event_id: str) -> Optional[DomainEvent]:
        return _copy(self._events.get(event_id))

    async def update_event(self, event_id: str, **fields: Any) -> None:
        event = self._events.get(event_id)
        if event:
            self._events[event_id] = event.model_copy(update=fields)

    async def list_events(self, status: Optional[EventStatus] = None,
                          brand_id: Optional[str] = None,
                          max_attempts: Optional[int] = None,
                          limit: int = 100) -> list[DomainEvent]:
        events = [
            e for e in self._events.values()
            if (status is None or e.status == status)
            and (brand_id is None or e.brand_id == brand_id)
            and (max_attempts is None or e.attempts < max_attempts)
        ]
        events.sort(key=lambda e: e.created_at)
        return [_copy(e) for e in events[:limit]]

    async def upsert_event_rule(self, rule: EventRule) -> EventRule:
        self._event_rules[rule.id] = _copy(rule)
        return rule

    async def list_event_rules(self) -> list[EventRule]:
        return [_copy(r) for r in self._event_rules.values()]

    async def find_rules(self, event_type: str, brand_id: Optional[str]) -> list[EventRule]:
        return [
            _copy(r) for r in self._event_rules.values()
            if r.enabled and r.event_type == event_type
            and (r.brand_id is None or r.brand_id == brand_id)
        ]

    # ── Recommendations ───────────────────────────────────

    async def create_recommendation(self, rec: Recommendation) -> tuple[Recommendation, bool]:
        if rec.dedupe_key:
            existing_id = self._rec_keys.get((rec.brand_id, rec.dedupe_key))
            if existing_id:
                return _copy(self._recommendations[existing_id]), False
            self._rec_keys[(rec.brand_id, rec.dedupe_key)] = rec.id
        self._recommendations[rec.id] = _copy(rec)
        return rec, True

    async def get_recommendation(self, rec_id: str) -> Optional[Recommendation]:
        return _copy(self._recommendations.get(rec_id))

    async def update_recommendation(self, rec_id: str, **fields: Any) -> None:
        rec = self._recommendations.get(rec_id)
        if rec:
            self._recommendations[rec_id] = rec.model_copy(update={**fields, "updated_at": utcnow()})

    async def list_unranked_recommendations(self, brand_id: str) -> list[Recommendation]:
        recs = [
            r for r in self._recommendations.values()
            if r.brand_id == brand_id and r.priority_rank is None
        ]
        recs.sort(key=lambda r: (r.created_at, r.id))
        return [_copy(r) for r in recs]

    async def list_recommendations(self, brand_id: str,
                                   created_after: Optional[datetime] = None,
                                   limit: int = 200) -> list[Recommendation]:
        recs = [
            r for r in self._recommendations.values()
            if r.brand_id == brand_id
            and (created_after is None or r.created_at >= created_after)
        ]
        # Ranked first by rank, then unranked/dropped by recency
        recs.sort(key=lambda r: (
            0 if (r.priority_rank or 0) > 0 else 1,
            r.priority_rank if (r.priority_rank or 0) > 0 else 0,
            -r.created_at.timestamp(),
        ))
        return [_copy(r) for r in recs[:limit]]

    async def list_outcome_candidates(self, brand_id: str,
                                      created_before: datetime) -> list[Recommendation]:
        executed = {
            d.recommendation_id for d in self._drafts.values()
            if d.brand_id == brand_id and d.status in _EXECUTED
        }
        measured = {o.recommendation_id for o in self._outcomes.values()}
        return [
            _copy(r) for r in self._recommendations.values()
            if r.brand_id == brand_id and r.created_at < created_before
            and r.id in executed and r.id not in measured
        ]

    # ── Action drafts & executions ────────────────────────

    async def create_draft(self, draft: ActionDraft) -> ActionDraft:
        existing = await self.get_draft_for_recommendation(draft.recommendation_id)
        if existing:
            return existing
        self._drafts[draft.id] = _copy(draft)
        return draft

    async def get_draft(self, draft_id: str) -> Optional[ActionDraft]:
        return _copy(self._drafts.get(draft_id))

    async def get_draft_for_recommendation(self, rec_id: str) -> Optional[ActionDraft]:
        for draft in self._drafts.values():
            if draft.recommendation_id == rec_id:
                return _copy(draft)
        return None

    async def list_drafts(self, status: Optional[DraftStatus] = None,
                          brand_id: Optional[str] = None,
                          created_after: Optional[datetime] = None) -> list[ActionDraft]:
        drafts = [
            d for d in self._drafts.values()
            if (status is None or d.status == status)
            and (brand_id is None or d.brand_id == brand_id)
            and (created_after is None or d.created_at >= created_after)
        ]
        drafts.sort(key=lambda d: d.created_at)
        return [_copy(d) for d in drafts]

    async def transition_draft(self, draft_id: str, from_status: DraftStatus,
                               to_status: DraftStatus) -> bool:
        draft = self._drafts.get(draft_id)
        if draft is None or draft.status != from_status:
            return False
        self._drafts[draft_id] = draft.model_copy(update={"status": to_status, "updated_at": utcnow()})
        return True

    async def create_execution(self, execution: ActionExecution) -> ActionExecution:
        self._executions[execution.id] = _copy(execution)
        return execution

    async def list_executions(self, draft_id: str) -> list[ActionExecution]:
        return [_copy(e) for e in self._executions.values() if e.action_draft_id == draft_id]

    # ── Metrics & outcomes ────────────────────────────────

    async def add_metric_snapshot(self, snapshot: MetricSnapshot) -> MetricSnapshot:
        self._snapshots.append(_copy(snapshot))
        return snapshot

    async def latest_snapshot(self, brand_id: str, source: str, metric_key: str,
                              before: Optional[datetime] = None) -> Optional[MetricSnapshot]:
        matches = [
            s for s in self._snapshots
            if s.brand_id == brand_id and s.source == source and s.metric_key == metric_key
            and (before is None or s.captured_at < before)
        ]
        if not matches:
            return None
        return _copy(max(matches, key=lambda s: s.captured_at))

    async def create_outcome(self, outcome: Outcome) -> Outcome:
        existing = await self.get_outcome_for_recommendation(outcome.recommendation_id)
        if existing:
            return existing
        self._outcomes[outcome.id] = _copy(outcome)
        return outcome

    async def get_outcome_for_recommendation(self, rec_id: str) -> Optional[Outcome]:
        for outcome in self._outcomes.values():
            if outcome.recommendation_id == rec_id:
                return _copy(outcome)
        return None

    async def list_outcomes(self, brand_id: str,
                            measured_after: Optional[datetime] = None) -> list[Outcome]:
        return [
            _copy(o) for o in self._outcomes.values()
            if o.brand_id == brand_id
            and (measured_after is None or o.measured_at >= measured_after)
        ]

    # ── Signals ───────────────────────────────────────────

    async def create_signal(self, signal: Signal) -> Signal:
        if signal.recommendation_id:
            existing = await self.get_signal_for_recommendation(signal.recommendation_id)
            if existing:
                return existing
        self._signals[signal.id] = _copy(signal)
        return signal

    async def get_signal_for_recommendation(self, rec_id: str) -> Optional[Signal]:
        for signal in self._signals.values():
            if signal.recommendation_id == rec_id:
                return _copy(signal)
        return None

    async def list_active_signals(self, domain: str, now: datetime) -> list[Signal]:
        signals = [s for s in self._signals.values() if s.domain == domain and s.expires_at > now]
        signals.sort(key=lambda s: s.confidence, reverse=True)
        return [_copy(s) for s in signals]

    async def decay_signals(self, factor: float, floor: float, now: datetime) -> int:
        count = 0
        for sid, signal in self._signals.items():
            if signal.expires_at > now:
                weight = max(floor, signal.decay_weight * factor)
                self._signals[sid] = signal.model_copy(update={"decay_weight": weight})
                count += 1
        return count

    async def application_stats(self, signal_id: str) -> tuple[int, int]:
        measured = [
            a for a in self._applications.values()
            if a.signal_id == signal_id and a.outcome_positive is not None
        ]
        return len(measured), sum(1 for a in measured if a.outcome_positive)

    async def add_signal_application(self, application: SignalApplication) -> SignalApplication:
        self._applications[application.id] = _copy(application)
        return application

    async def list_applications_for_recommendation(self, rec_id: str) -> list[SignalApplication]:
        return [_copy(a) for a in self._applications.values() if a.recommendation_id == rec_id]

    async def set_application_outcome(self, application_id: str, positive: bool) -> None:
        app = self._applications.get(application_id)
        if app:
            self._applications[application_id] = app.model_copy(update={"outcome_positive": positive})

    # ── Evaluation ────────────────────────────────────────

    async def create_evaluation_run(self, run: EvaluationRun) -> EvaluationRun:
        self._evaluation_runs.append(_copy(run))
        return run

    async def list_evaluation_runs(self, brand_id: str, limit: int = 10) -> list[EvaluationRun]:
        runs = [r for r in self._evaluation_runs if r.brand_id == brand_id]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [_copy(r) for r in runs[:limit]]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "brands": len(self._brands),
            "jobs": len(self._jobs),
            "events": len(self._events),
            "recommendations": len(self._recommendations),
            "action_drafts": len(self._drafts),
            "action_executions": len(self._executions),
            "outcomes": len(self._outcomes),
            "signals": len(self._signals),
            "signal_applications": len(self._applications),
        }
