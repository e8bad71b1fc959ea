"""
Abstract Pipeline Store — Interface for all storage backends.

Implementations:
  - SqlPipelineStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryPipelineStore (dict-based, single-process, no persistence)

The store is the source of truth for job status and attempts; queue messages
are ephemeral. Every method returns pydantic records from models.schemas,
never ORM rows, so callers never touch a session.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    ActionDraft, ActionExecution, Brand, DomainEvent, DraftStatus,
    EvaluationRun, EventRule, EventStatus, ExecutionRules, Job, JobStatus,
    MetricSnapshot, Outcome, Recommendation, Signal, SignalApplication,
)


class BasePipelineStore(ABC):
    """Interface that all pipeline store backends must implement."""

    # ── Brands ────────────────────────────────────────────────

    @abstractmethod
    async def upsert_brand(self, brand: Brand) -> Brand:
        ...

    @abstractmethod
    async def get_brand(self, brand_id: str) -> Optional[Brand]:
        ...

    @abstractmethod
    async def list_active_brands(self) -> list[Brand]:
        ...

    @abstractmethod
    async def get_execution_rules(self, brand_id: str) -> Optional[ExecutionRules]:
        ...

    @abstractmethod
    async def upsert_execution_rules(self, rules: ExecutionRules) -> ExecutionRules:
        ...

    # ── Jobs ──────────────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> None:
        """Set status / attempts / error. Always bumps updated_at."""
        ...

    @abstractmethod
    async def update_job_if(self, job_id: str, expected_status: JobStatus,
                            updated_before: Optional[datetime] = None, **fields: Any) -> bool:
        """
        Compare-and-set update. Applies only while the job is still in
        expected_status (and, if given, last changed before updated_before).
        False when another writer got there first.
        """
        ...

    @abstractmethod
    async def list_jobs(self, brand_id: Optional[str] = None,
                        status: Optional[JobStatus] = None,
                        limit: int = 100) -> list[Job]:
        ...

    @abstractmethod
    async def find_stale_jobs(self, status: JobStatus, updated_before: datetime,
                              min_attempts: int = 0) -> list[Job]:
        ...

    # ── Events & rules ────────────────────────────────────────

    @abstractmethod
    async def insert_event(self, event: DomainEvent) -> DomainEvent:
        """Persist an event. Raises DuplicateEventError on (brand, type, dedupe_key) collision."""
        ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[DomainEvent]:
        ...

    @abstractmethod
    async def update_event(self, event_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def list_events(self, status: Optional[EventStatus] = None,
                          brand_id: Optional[str] = None,
                          max_attempts: Optional[int] = None,
                          limit: int = 100) -> list[DomainEvent]:
        ...

    @abstractmethod
    async def upsert_event_rule(self, rule: EventRule) -> EventRule:
        ...

    @abstractmethod
    async def list_event_rules(self) -> list[EventRule]:
        ...

    @abstractmethod
    async def find_rules(self, event_type: str, brand_id: Optional[str]) -> list[EventRule]:
        """Enabled rules for the event type, scoped to the brand or global."""
        ...

    # ── Recommendations ───────────────────────────────────────

    @abstractmethod
    async def create_recommendation(self, rec: Recommendation) -> tuple[Recommendation, bool]:
        """Insert unless (brand_id, dedupe_key) exists. Returns (record, created)."""
        ...

    @abstractmethod
    async def get_recommendation(self, rec_id: str) -> Optional[Recommendation]:
        ...

    @abstractmethod
    async def update_recommendation(self, rec_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def list_unranked_recommendations(self, brand_id: str) -> list[Recommendation]:
        ...

    @abstractmethod
    async def list_recommendations(self, brand_id: str,
                                   created_after: Optional[datetime] = None,
                                   limit: int = 200) -> list[Recommendation]:
        ...

    @abstractmethod
    async def list_outcome_candidates(self, brand_id: str,
                                      created_before: datetime) -> list[Recommendation]:
        """Recommendations older than the cutoff with an executed draft and no outcome yet."""
        ...

    # ── Action drafts & executions ────────────────────────────

    @abstractmethod
    async def create_draft(self, draft: ActionDraft) -> ActionDraft:
        """One draft per recommendation. Returns the stored draft, which may be an earlier one."""
        ...

    @abstractmethod
    async def get_draft(self, draft_id: str) -> Optional[ActionDraft]:
        ...

    @abstractmethod
    async def get_draft_for_recommendation(self, rec_id: str) -> Optional[ActionDraft]:
        ...

    @abstractmethod
    async def list_drafts(self, status: Optional[DraftStatus] = None,
                          brand_id: Optional[str] = None,
                          created_after: Optional[datetime] = None) -> list[ActionDraft]:
        ...

    @abstractmethod
    async def transition_draft(self, draft_id: str, from_status: DraftStatus,
                               to_status: DraftStatus) -> bool:
        """Compare-and-set on status. False if the draft was not in from_status."""
        ...

    @abstractmethod
    async def create_execution(self, execution: ActionExecution) -> ActionExecution:
        ...

    @abstractmethod
    async def list_executions(self, draft_id: str) -> list[ActionExecution]:
        ...

    # ── Metrics & outcomes ────────────────────────────────────

    @abstractmethod
    async def add_metric_snapshot(self, snapshot: MetricSnapshot) -> MetricSnapshot:
        ...

    @abstractmethod
    async def latest_snapshot(self, brand_id: str, source: str, metric_key: str,
                              before: Optional[datetime] = None) -> Optional[MetricSnapshot]:
        ...

    @abstractmethod
    async def create_outcome(self, outcome: Outcome) -> Outcome:
        """One outcome per recommendation. Returns the stored outcome."""
        ...

    @abstractmethod
    async def get_outcome_for_recommendation(self, rec_id: str) -> Optional[Outcome]:
        ...

    @abstractmethod
    async def list_outcomes(self, brand_id: str,
                            measured_after: Optional[datetime] = None) -> list[Outcome]:
        ...

    # ── Signals ───────────────────────────────────────────────

    @abstractmethod
    async def create_signal(self, signal: Signal) -> Signal:
        """One signal per source recommendation. Returns the stored signal."""
        ...

    @abstractmethod
    async def get_signal_for_recommendation(self, rec_id: str) -> Optional[Signal]:
        ...

    @abstractmethod
    async def list_active_signals(self, domain: str, now: datetime) -> list[Signal]:
        ...

    @abstractmethod
    async def decay_signals(self, factor: float, floor: float, now: datetime) -> int:
        ...

    @abstractmethod
    async def application_stats(self, signal_id: str) -> tuple[int, int]:
        """(measured, positive) counts over applications with a known outcome."""
        ...

    @abstractmethod
    async def add_signal_application(self, application: SignalApplication) -> SignalApplication:
        ...

    @abstractmethod
    async def list_applications_for_recommendation(self, rec_id: str) -> list[SignalApplication]:
        ...

    @abstractmethod
    async def set_application_outcome(self, application_id: str, positive: bool) -> None:
        """Single-row update; concurrent writers resolve last-writer-wins."""
        ...

    # ── Evaluation ────────────────────────────────────────────

    @abstractmethod
    async def create_evaluation_run(self, run: EvaluationRun) -> EvaluationRun:
        ...

    @abstractmethod
    async def list_evaluation_runs(self, brand_id: str, limit: int = 10) -> list[EvaluationRun]:
        """Newest first."""
        ...
