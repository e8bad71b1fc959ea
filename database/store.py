"""
SqlPipelineStore — Portable SQL queries for PostgreSQL and SQLite.

Notes:
  - Event idempotence relies on the uq_events_dedupe index: an IntegrityError
    on insert is translated into DuplicateEventError.
  - Draft status changes are compare-and-set UPDATEs (WHERE status = :from),
    so two execution loops can never both pick up the same approved draft.
  - Drafts, outcomes and signals are unique per recommendation; a losing
    concurrent insert returns the row that won.
  - Job status changes made by the reaper and the consumer are conditional
    UPDATEs (update_job_if), so a failed job is never flipped back.
  - Signal-application outcomes are single-row UPDATEs, never read-modify-write.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update, and_, case, func
from sqlalchemy.exc import IntegrityError

from core.errors import DuplicateEventError
from database.models import (
    ActionDraftRow, ActionExecutionRow, BrandRow, EvaluationRunRow,
    EventRow, EventRuleRow, ExecutionRuleRow, JobRow, MetricSnapshotRow,
    OutcomeRow, RecommendationRow, SignalApplicationRow, SignalRow,
)
from database.session import get_session
from database.store_base import BasePipelineStore
from models.schemas import (
    ActionDraft, ActionExecution, Brand, DomainEvent, DraftStatus,
    EvaluationRun, EventRule, EventStatus, ExecutionRules, Job, JobStatus,
    MetricSnapshot, Outcome, Recommendation, Signal, SignalApplication,
    utcnow,
)

logger = structlog.get_logger()

_EXECUTED = (DraftStatus.EXECUTED.value, DraftStatus.EXECUTED_STUB.value)


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _values(record_or_fields) -> dict[str, Any]:
    """Flatten a record (or update kwargs) into plain column values."""
    data = record_or_fields.model_dump() if hasattr(record_or_fields, "model_dump") else dict(record_or_fields)
    out = {k: _column_value(v) for k, v in data.items()}
    if isinstance(out.get("strategic_alignment"), bool):
        out["strategic_alignment"] = 1.0 if out["strategic_alignment"] else 0.0
    return out


def _to(model, row):
    return model.model_validate(row, from_attributes=True) if row is not None else None


class SqlPipelineStore(BasePipelineStore):
    """
    Persistent pipeline store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    # ── Brands ─────────────────────────────────────────────

    async def upsert_brand(self, brand: Brand) -> Brand:
        async with get_session() as db:
            await db.merge(BrandRow(**_values(brand)))
        return brand

    async def get_brand(self, brand_id: str) -> Optional[Brand]:
        async with get_session() as db:
            return _to(Brand, await db.get(BrandRow, brand_id))

    async def list_active_brands(self) -> list[Brand]:
        async with get_session() as db:
            stmt = select(BrandRow).where(BrandRow.is_active.is_(True)).order_by(BrandRow.created_at)
            result = await db.execute(stmt)
            return [_to(Brand, row) for row in result.scalars()]

    async def get_execution_rules(self, brand_id: str) -> Optional[ExecutionRules]:
        async with get_session() as db:
            return _to(ExecutionRules, await db.get(ExecutionRuleRow, brand_id))

    async def upsert_execution_rules(self, rules: ExecutionRules) -> ExecutionRules:
        async with get_session() as db:
            await db.merge(ExecutionRuleRow(**_values(rules)))
        return rules

    # ── Jobs ───────────────────────────────────────────────

    async def create_job(self, job: Job) -> Job:
        async with get_session() as db:
            db.add(JobRow(**_values(job)))
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with get_session() as db:
            return _to(Job, await db.get(JobRow, job_id))

    async def update_job(self, job_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(JobRow)
                .where(JobRow.id == job_id)
                .values(**_values(fields), updated_at=utcnow())
            )

    async def update_job_if(self, job_id: str, expected_status: JobStatus,
                            updated_before: Optional[datetime] = None, **fields: Any) -> bool:
        conditions = [JobRow.id == job_id, JobRow.status == _column_value(expected_status)]
        if updated_before is not None:
            conditions.append(JobRow.updated_at < updated_before)
        async with get_session() as db:
            result = await db.execute(
                update(JobRow)
                .where(and_(*conditions))
                .values(**_values(fields), updated_at=utcnow())
            )
            return result.rowcount == 1

    async def list_jobs(self, brand_id: Optional[str] = None,
                        status: Optional[JobStatus] = None,
                        limit: int = 100) -> list[Job]:
        async with get_session() as db:
            stmt = select(JobRow)
            if brand_id is not None:
                stmt = stmt.where(JobRow.brand_id == brand_id)
            if status is not None:
                stmt = stmt.where(JobRow.status == _column_value(status))
            stmt = stmt.order_by(JobRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [_to(Job, row) for row in result.scalars()]

    async def find_stale_jobs(self, status: JobStatus, updated_before: datetime,
                              min_attempts: int = 0) -> list[Job]:
        async with get_session() as db:
            stmt = select(JobRow).where(and_(
                JobRow.status == _column_value(status),
                JobRow.updated_at < updated_before,
                JobRow.attempts >= min_attempts,
            ))
            result = await db.execute(stmt)
            return [_to(Job, row) for row in result.scalars()]

    # ── Events & rules ─────────────────────────────────────

    async def insert_event(self, event: DomainEvent) -> DomainEvent:
        async with get_session() as db:
            db.add(EventRow(**_values(event)))
            try:
                await db.flush()
            except IntegrityError as e:
                raise DuplicateEventError(
                    f"Duplicate event ({event.brand_id}, {event.type}, {event.dedupe_key})"
                ) from e
        return event

    async def get_event(self, event_id: str) -> Optional[DomainEvent]:
        async with get_session() as db:
            return _to(DomainEvent, await db.get(EventRow, event_id))

    async def update_event(self, event_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(update(EventRow).where(EventRow.id == event_id).values(**_values(fields)))

    async def list_events(self, status: Optional[EventStatus] = None,
                          brand_id: Optional[str] = None,
                          max_attempts: Optional[int] = None,
                          limit: int = 100) -> list[DomainEvent]:
        async with get_session() as db:
            stmt = select(EventRow)
            if status is not None:
                stmt = stmt.where(EventRow.status == _column_value(status))
            if brand_id is not None:
                stmt = stmt.where(EventRow.brand_id == brand_id)
            if max_attempts is not None:
                stmt = stmt.where(EventRow.attempts < max_attempts)
            stmt = stmt.order_by(EventRow.created_at).limit(limit)
            result = await db.execute(stmt)
            return [_to(DomainEvent, row) for row in result.scalars()]

    async def upsert_event_rule(self, rule: EventRule) -> EventRule:
        async with get_session() as db:
            await db.merge(EventRuleRow(**_values(rule)))
        return rule

    async def list_event_rules(self) -> list[EventRule]:
        async with get_session() as db:
            result = await db.execute(select(EventRuleRow))
            return [_to(EventRule, row) for row in result.scalars()]

    async def find_rules(self, event_type: str, brand_id: Optional[str]) -> list[EventRule]:
        async with get_session() as db:
            scope = EventRuleRow.brand_id.is_(None)
            if brand_id is not None:
                scope = scope | (EventRuleRow.brand_id == brand_id)
            stmt = select(EventRuleRow).where(and_(
                EventRuleRow.event_type == event_type,
                EventRuleRow.enabled.is_(True),
                scope,
            ))
            result = await db.execute(stmt)
            return [_to(EventRule, row) for row in result.scalars()]

    # ── Recommendations ────────────────────────────────────

    async def _find_recommendation_by_key(self, brand_id: str, dedupe_key: str) -> Optional[Recommendation]:
        async with get_session() as db:
            stmt = select(RecommendationRow).where(and_(
                RecommendationRow.brand_id == brand_id,
                RecommendationRow.dedupe_key == dedupe_key,
            ))
            result = await db.execute(stmt)
            return _to(Recommendation, result.scalar_one_or_none())

    async def create_recommendation(self, rec: Recommendation) -> tuple[Recommendation, bool]:
        if rec.dedupe_key:
            existing = await self._find_recommendation_by_key(rec.brand_id, rec.dedupe_key)
            if existing:
                return existing, False
        try:
            async with get_session() as db:
                db.add(RecommendationRow(**_values(rec)))
        except IntegrityError:
            # Lost a race with a concurrent redelivery of the same job
            existing = await self._find_recommendation_by_key(rec.brand_id, rec.dedupe_key or "")
            if existing is None:
                raise
            return existing, False
        return rec, True

    async def get_recommendation(self, rec_id: str) -> Optional[Recommendation]:
        async with get_session() as db:
            return _to(Recommendation, await db.get(RecommendationRow, rec_id))

    async def update_recommendation(self, rec_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(RecommendationRow)
                .where(RecommendationRow.id == rec_id)
                .values(**_values(fields), updated_at=utcnow())
            )

    async def list_unranked_recommendations(self, brand_id: str) -> list[Recommendation]:
        async with get_session() as db:
            stmt = (
                select(RecommendationRow)
                .where(and_(
                    RecommendationRow.brand_id == brand_id,
                    RecommendationRow.priority_rank.is_(None),
                ))
                .order_by(RecommendationRow.created_at, RecommendationRow.id)
            )
            result = await db.execute(stmt)
            return [_to(Recommendation, row) for row in result.scalars()]

    async def list_recommendations(self, brand_id: str,
                                   created_after: Optional[datetime] = None,
                                   limit: int = 200) -> list[Recommendation]:
        async with get_session() as db:
            stmt = select(RecommendationRow).where(RecommendationRow.brand_id == brand_id)
            if created_after is not None:
                stmt = stmt.where(RecommendationRow.created_at >= created_after)
            ranked_first = case((RecommendationRow.priority_rank > 0, 0), else_=1)
            stmt = stmt.order_by(
                ranked_first,
                RecommendationRow.priority_rank,
                RecommendationRow.created_at.desc(),
            ).limit(limit)
            result = await db.execute(stmt)
            return [_to(Recommendation, row) for row in result.scalars()]

    async def list_outcome_candidates(self, brand_id: str,
                                      created_before: datetime) -> list[Recommendation]:
        async with get_session() as db:
            executed = select(ActionDraftRow.recommendation_id).where(
                ActionDraftRow.status.in_(_EXECUTED)
            )
            measured = select(OutcomeRow.recommendation_id)
            stmt = select(RecommendationRow).where(and_(
                RecommendationRow.brand_id == brand_id,
                RecommendationRow.created_at < created_before,
                RecommendationRow.id.in_(executed),
                RecommendationRow.id.not_in(measured),
            ))
            result = await db.execute(stmt)
            return [_to(Recommendation, row) for row in result.scalars()]

    # ── Action drafts & executions ─────────────────────────

    async def create_draft(self, draft: ActionDraft) -> ActionDraft:
        try:
            async with get_session() as db:
                db.add(ActionDraftRow(**_values(draft)))
        except IntegrityError:
            # Another consumer drafted this recommendation first
            existing = await self.get_draft_for_recommendation(draft.recommendation_id)
            if existing is None:
                raise
            return existing
        return draft

    async def get_draft(self, draft_id: str) -> Optional[ActionDraft]:
        async with get_session() as db:
            return _to(ActionDraft, await db.get(ActionDraftRow, draft_id))

    async def get_draft_for_recommendation(self, rec_id: str) -> Optional[ActionDraft]:
        async with get_session() as db:
            stmt = (
                select(ActionDraftRow)
                .where(ActionDraftRow.recommendation_id == rec_id)
                .order_by(ActionDraftRow.created_at)
                .limit(1)
            )
            result = await db.execute(stmt)
            return _to(ActionDraft, result.scalar_one_or_none())

    async def list_drafts(self, status: Optional[DraftStatus] = None,
                          brand_id: Optional[str] = None,
                          created_after: Optional[datetime] = None) -> list[ActionDraft]:
        async with get_session() as db:
            stmt = select(ActionDraftRow)
            if status is not None:
                stmt = stmt.where(ActionDraftRow.status == _column_value(status))
            if brand_id is not None:
                stmt = stmt.where(ActionDraftRow.brand_id == brand_id)
            if created_after is not None:
                stmt = stmt.where(ActionDraftRow.created_at >= created_after)
            result = await db.execute(stmt.order_by(ActionDraftRow.created_at))
            return [_to(ActionDraft, row) for row in result.scalars()]

    async def transition_draft(self, draft_id: str, from_status: DraftStatus,
                               to_status: DraftStatus) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(ActionDraftRow)
                .where(and_(
                    ActionDraftRow.id == draft_id,
                    ActionDraftRow.status == _column_value(from_status),
                ))
                .values(status=_column_value(to_status), updated_at=utcnow())
            )
            return result.rowcount == 1

    async def create_execution(self, execution: ActionExecution) -> ActionExecution:
        async with get_session() as db:
            db.add(ActionExecutionRow(**_values(execution)))
        return execution

    async def list_executions(self, draft_id: str) -> list[ActionExecution]:
        async with get_session() as db:
            stmt = select(ActionExecutionRow).where(ActionExecutionRow.action_draft_id == draft_id)
            result = await db.execute(stmt.order_by(ActionExecutionRow.executed_at))
            return [_to(ActionExecution, row) for row in result.scalars()]

    # ── Metrics & outcomes ─────────────────────────────────

    async def add_metric_snapshot(self, snapshot: MetricSnapshot) -> MetricSnapshot:
        async with get_session() as db:
            db.add(MetricSnapshotRow(**_values(snapshot)))
        return snapshot

    async def latest_snapshot(self, brand_id: str, source: str, metric_key: str,
                              before: Optional[datetime] = None) -> Optional[MetricSnapshot]:
        async with get_session() as db:
            stmt = select(MetricSnapshotRow).where(and_(
                MetricSnapshotRow.brand_id == brand_id,
                MetricSnapshotRow.source == source,
                MetricSnapshotRow.metric_key == metric_key,
            ))
            if before is not None:
                stmt = stmt.where(MetricSnapshotRow.captured_at < before)
            stmt = stmt.order_by(MetricSnapshotRow.captured_at.desc()).limit(1)
            result = await db.execute(stmt)
            return _to(MetricSnapshot, result.scalar_one_or_none())

    async def create_outcome(self, outcome: Outcome) -> Outcome:
        try:
            async with get_session() as db:
                db.add(OutcomeRow(**_values(outcome)))
        except IntegrityError:
            existing = await self.get_outcome_for_recommendation(outcome.recommendation_id)
            if existing is None:
                raise
            return existing
        return outcome

    async def get_outcome_for_recommendation(self, rec_id: str) -> Optional[Outcome]:
        async with get_session() as db:
            stmt = select(OutcomeRow).where(OutcomeRow.recommendation_id == rec_id).limit(1)
            result = await db.execute(stmt)
            return _to(Outcome, result.scalar_one_or_none())

    async def list_outcomes(self, brand_id: str,
                            measured_after: Optional[datetime] = None) -> list[Outcome]:
        async with get_session() as db:
            stmt = select(OutcomeRow).where(OutcomeRow.brand_id == brand_id)
            if measured_after is not None:
                stmt = stmt.where(OutcomeRow.measured_at >= measured_after)
            result = await db.execute(stmt)
            return [_to(Outcome, row) for row in result.scalars()]

    # ── Signals ────────────────────────────────────────────

    async def create_signal(self, signal: Signal) -> Signal:
        try:
            async with get_session() as db:
                db.add(SignalRow(**_values(signal)))
        except IntegrityError:
            existing = await self.get_signal_for_recommendation(signal.recommendation_id or "")
            if existing is None:
                raise
            return existing
        return signal

    async def get_signal_for_recommendation(self, rec_id: str) -> Optional[Signal]:
        async with get_session() as db:
            stmt = select(SignalRow).where(SignalRow.recommendation_id == rec_id).limit(1)
            result = await db.execute(stmt)
            return _to(Signal, result.scalar_one_or_none())

    async def list_active_signals(self, domain: str, now: datetime) -> list[Signal]:
        async with get_session() as db:
            stmt = (
                select(SignalRow)
                .where(and_(SignalRow.domain == domain, SignalRow.expires_at > now))
                .order_by(SignalRow.confidence.desc())
            )
            result = await db.execute(stmt)
            return [_to(Signal, row) for row in result.scalars()]

    async def decay_signals(self, factor: float, floor: float, now: datetime) -> int:
        decayed = SignalRow.decay_weight * factor
        async with get_session() as db:
            result = await db.execute(
                update(SignalRow)
                .where(SignalRow.expires_at > now)
                .values(decay_weight=case((decayed < floor, floor), else_=decayed))
            )
            return result.rowcount or 0

    async def application_stats(self, signal_id: str) -> tuple[int, int]:
        async with get_session() as db:
            stmt = select(
                func.count(SignalApplicationRow.id),
                func.sum(case((SignalApplicationRow.outcome_positive.is_(True), 1), else_=0)),
            ).where(and_(
                SignalApplicationRow.signal_id == signal_id,
                SignalApplicationRow.outcome_positive.is_not(None),
            ))
            measured, positive = (await db.execute(stmt)).one()
            return int(measured or 0), int(positive or 0)

    async def add_signal_application(self, application: SignalApplication) -> SignalApplication:
        async with get_session() as db:
            db.add(SignalApplicationRow(**_values(application)))
        return application

    async def list_applications_for_recommendation(self, rec_id: str) -> list[SignalApplication]:
        async with get_session() as db:
            stmt = select(SignalApplicationRow).where(SignalApplicationRow.recommendation_id == rec_id)
            result = await db.execute(stmt)
            return [_to(SignalApplication, row) for row in result.scalars()]

    async def set_application_outcome(self, application_id: str, positive: bool) -> None:
        async with get_session() as db:
            await db.execute(
                update(SignalApplicationRow)
                .where(SignalApplicationRow.id == application_id)
                .values(outcome_positive=positive)
            )

    # ── Evaluation ─────────────────────────────────────────

    async def create_evaluation_run(self, run: EvaluationRun) -> EvaluationRun:
        async with get_session() as db:
            db.add(EvaluationRunRow(**_values(run)))
        return run

    async def list_evaluation_runs(self, brand_id: str, limit: int = 10) -> list[EvaluationRun]:
        async with get_session() as db:
            stmt = (
                select(EvaluationRunRow)
                .where(EvaluationRunRow.brand_id == brand_id)
                .order_by(EvaluationRunRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [_to(EvaluationRun, row) for row in result.scalars()]
