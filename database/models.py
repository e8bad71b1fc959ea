"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on SQLite it serializes to TEXT.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Jobs, executions, outcomes and events are append-only: nothing in the
    codebase deletes these rows.
  - Event idempotence is a UNIQUE index on (brand_id, type, dedupe_key), so
    concurrent emitters race at the storage layer, not in application code.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Brands (tenants)
# ──────────────────────────────────────────────────────────────

class BrandRow(Base):
    __tablename__ = "brands"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    mode: Mapped[str] = mapped_column(String(16), default="observe")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    guardrails: Mapped[Any] = mapped_column(JSON, default=dict)
    modules_enabled: Mapped[Any] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ExecutionRuleRow(Base):
    __tablename__ = "execution_rules"

    brand_id: Mapped[str] = mapped_column(String(64), ForeignKey("brands.id"), primary_key=True)
    auto_execute: Mapped[bool] = mapped_column(Boolean, default=False)
    min_confidence: Mapped[float] = mapped_column(Float, default=0.9)
    max_risk: Mapped[str] = mapped_column(String(16), default="low")
    allowed_action_types: Mapped[Any] = mapped_column(JSON, default=list)


# ──────────────────────────────────────────────────────────────
#  Jobs
# ──────────────────────────────────────────────────────────────

class JobRow(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    brand_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="queued")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_jobs_status_updated", "status", "updated_at"),
        Index("ix_jobs_brand", "brand_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Recommendations & action drafts
# ──────────────────────────────────────────────────────────────

class RecommendationRow(Base):
    __tablename__ = "recommendations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    brand_id: Mapped[str] = mapped_column(String(64), ForeignKey("brands.id"), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    body: Mapped[str] = mapped_column(Text, default="")
    data: Mapped[Any] = mapped_column(JSON, default=dict)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    strategic_alignment: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    effort_estimate: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    base_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    claude_delta: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    roi_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    priority_rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    estimated_review_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_recommendations_brand_rank", "brand_id", "priority_rank"),
        UniqueConstraint("brand_id", "dedupe_key", name="uq_recommendations_dedupe"),
    )


class ActionDraftRow(Base):
    __tablename__ = "action_drafts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    brand_id: Mapped[str] = mapped_column(String(64), ForeignKey("brands.id"), nullable=False)
    recommendation_id: Mapped[str] = mapped_column(String(64), ForeignKey("recommendations.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    risk: Mapped[str] = mapped_column(String(16), default="low")
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    guardrails_applied: Mapped[Any] = mapped_column(JSON, default=dict)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_action_drafts_status", "status"),
        UniqueConstraint("recommendation_id", name="uq_action_drafts_recommendation"),
    )


class ActionExecutionRow(Base):
    __tablename__ = "action_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    action_draft_id: Mapped[str] = mapped_column(String(64), ForeignKey("action_drafts.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    result: Mapped[Any] = mapped_column(JSON, default=dict)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_action_executions_draft", "action_draft_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Measurement: snapshots, outcomes, evaluation runs
# ──────────────────────────────────────────────────────────────

class MetricSnapshotRow(Base):
    __tablename__ = "metric_snapshots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    brand_id: Mapped[str] = mapped_column(String(64), ForeignKey("brands.id"), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    metric_key: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_metric_snapshots_lookup", "brand_id", "source", "metric_key", "captured_at"),
    )


class OutcomeRow(Base):
    __tablename__ = "outcomes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    brand_id: Mapped[str] = mapped_column(String(64), ForeignKey("brands.id"), nullable=False)
    recommendation_id: Mapped[str] = mapped_column(String(64), ForeignKey("recommendations.id"), nullable=False)
    metric_source: Mapped[str] = mapped_column(String(64), nullable=False)
    metric_key: Mapped[str] = mapped_column(String(128), nullable=False)
    metric_value_before: Mapped[float] = mapped_column(Float, nullable=False)
    metric_value_after: Mapped[float] = mapped_column(Float, nullable=False)
    delta: Mapped[float] = mapped_column(Float, nullable=False)
    measured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("recommendation_id", name="uq_outcomes_recommendation"),
    )


class EvaluationRunRow(Base):
    __tablename__ = "evaluation_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    brand_id: Mapped[str] = mapped_column(String(64), ForeignKey("brands.id"), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_recommendations: Mapped[int] = mapped_column(Integer, default=0)
    acceptance_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    avg_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    calibration_error: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    avg_outcome_delta: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    metrics: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_evaluation_runs_brand", "brand_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Cross-tenant signals
# ──────────────────────────────────────────────────────────────

class SignalRow(Base):
    __tablename__ = "signals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    source_brand_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    recommendation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    signal_type: Mapped[str] = mapped_column(String(32), nullable=False)
    domain: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    decay_weight: Mapped[float] = mapped_column(Float, default=1.0)
    evidence: Mapped[Any] = mapped_column(JSON, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_signals_domain_expiry", "domain", "expires_at"),
        UniqueConstraint("recommendation_id", name="uq_signals_recommendation"),
    )


class SignalApplicationRow(Base):
    __tablename__ = "signal_applications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    signal_id: Mapped[str] = mapped_column(String(64), ForeignKey("signals.id"), nullable=False)
    target_brand_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recommendation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    outcome_positive: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_signal_applications_signal", "signal_id"),
        Index("ix_signal_applications_recommendation", "recommendation_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Events & rules
# ──────────────────────────────────────────────────────────────

class EventRow(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    brand_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    source: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(16), default="new")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("brand_id", "type", "dedupe_key", name="uq_events_dedupe"),
        Index("ix_events_status", "status"),
    )


class EventRuleRow(Base):
    __tablename__ = "event_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    brand_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    job_type: Mapped[str] = mapped_column(String(64), nullable=False)
    conditions: Mapped[Any] = mapped_column(JSON, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("ix_event_rules_lookup", "event_type", "enabled"),
    )
