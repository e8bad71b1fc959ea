"""
Core data models for the RecoPilot pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.errors import PayloadValidationError, UnknownJobTypeError

# Tenant marker carried by system-wide jobs and events
SYSTEM_TENANT = "__system__"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobType(str, Enum):
    COMMUNITY_MODERATE_POST = "community_moderate_post"
    GSC_DAILY_DIGEST = "gsc_daily_digest"
    TREND_SCAN_INDUSTRY = "trend_scan_industry"
    ANALYTICS_INSIGHTS = "analytics_insights"
    ADS_PERFORMANCE_DIGEST = "ads_performance_digest"
    ACTION_DRAFT_GENERATOR = "action_draft_generator"
    STRATEGIC_PRIORITIZER = "strategic_prioritizer"
    METRIC_SNAPSHOT = "metric_snapshot"
    OUTCOME_COLLECTOR = "outcome_collector"
    SIGNAL_EXTRACTOR = "signal_extractor"
    SIGNAL_FEEDBACK = "signal_feedback"
    SIGNAL_DECAY = "signal_decay"
    EVALUATION_SCORER = "evaluation_scorer"


class EventType(str, Enum):
    WEBHOOK_RECEIVED = "webhook.received"
    RECOMMENDATION_CREATED = "recommendation.created"
    ACTION_DRAFT_CREATED = "action_draft.created"
    ACTION_DRAFT_AUTO_APPROVED = "action_draft.auto_approved"
    ACTION_DRAFT_APPROVED = "action_draft.approved"
    ACTION_DRAFT_REJECTED = "action_draft.rejected"
    ACTION_EXECUTED = "action.executed"
    OUTCOME_COLLECTED = "outcome.collected"
    SIGNAL_OUTCOME_MEASURED = "signal.outcome_measured"


class EventStatus(str, Enum):
    NEW = "new"
    PROCESSED = "processed"
    FAILED = "failed"


class BrandMode(str, Enum):
    OBSERVE = "observe"
    ASSIST = "assist"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EffortEstimate(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DraftStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    EXECUTED_STUB = "executed_stub"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    STUBBED = "stubbed"


class SignalType(str, Enum):
    PATTERN = "pattern"
    ANTI_PATTERN = "anti-pattern"
    THRESHOLD = "threshold"
    CORRELATION = "correlation"


# ──────────────────────────────────────────────────────────────
#  Records
# ──────────────────────────────────────────────────────────────

class Record(BaseModel):
    """Base for persisted records. Naive datetimes coming back from SQLite are read as UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _aware_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Brand(Record):
    """A tenant. Most records are scoped to one."""
    id: str = Field(default_factory=new_id)
    name: str
    mode: BrandMode = BrandMode.OBSERVE
    is_active: bool = True
    guardrails: dict[str, Any] = {}
    modules_enabled: list[str] = []
    created_at: datetime = Field(default_factory=utcnow)


class Job(Record):
    id: str = Field(default_factory=new_id)
    brand_id: Optional[str] = None            # None for system-wide jobs
    type: str
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    error: Optional[str] = None
    payload: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Recommendation(Record):
    id: str = Field(default_factory=new_id)
    brand_id: str
    job_id: Optional[str] = None
    source: str
    priority: Priority = Priority.MEDIUM
    title: str
    body: str = ""
    data: dict[str, Any] = {}
    confidence: Optional[float] = None
    strategic_alignment: Optional[Union[bool, float]] = None
    effort_estimate: Optional[EffortEstimate] = None
    dedupe_key: Optional[str] = None

    # Filled in by the prioritizer
    base_score: Optional[float] = None
    claude_delta: Optional[float] = None
    roi_score: Optional[float] = None
    priority_rank: Optional[int] = None       # -1 = dropped by the relevance gate
    estimated_review_minutes: Optional[int] = None
    reasoning: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def domain(self) -> str:
        return "seo" if self.source == JobType.GSC_DAILY_DIGEST.value else "community"


class ActionDraft(Record):
    id: str = Field(default_factory=new_id)
    brand_id: str
    recommendation_id: str
    type: str
    payload: dict[str, Any] = {}
    risk: RiskLevel = RiskLevel.LOW
    confidence: float = 0.0
    guardrails_applied: dict[str, Any] = {}
    requires_approval: bool = True
    status: DraftStatus = DraftStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ActionExecution(Record):
    """Immutable record of one execution attempt."""
    id: str = Field(default_factory=new_id)
    action_draft_id: str
    status: ExecutionStatus
    result: dict[str, Any] = {}
    error: Optional[str] = None
    executed_at: datetime = Field(default_factory=utcnow)


class MetricSnapshot(Record):
    id: str = Field(default_factory=new_id)
    brand_id: str
    source: str
    metric_key: str
    value: float
    captured_at: datetime = Field(default_factory=utcnow)


class Outcome(Record):
    id: str = Field(default_factory=new_id)
    brand_id: str
    recommendation_id: str
    metric_source: str
    metric_key: str
    metric_value_before: float
    metric_value_after: float
    delta: float
    measured_at: datetime = Field(default_factory=utcnow)


class Signal(Record):
    id: str = Field(default_factory=new_id)
    source_brand_id: Optional[str] = None
    recommendation_id: Optional[str] = None
    signal_type: SignalType
    domain: str
    title: str
    description: str = ""
    confidence: float = 0.5
    decay_weight: float = 1.0
    evidence: dict[str, Any] = {}
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)


class SignalApplication(Record):
    id: str = Field(default_factory=new_id)
    signal_id: str
    target_brand_id: str
    recommendation_id: Optional[str] = None
    outcome_positive: Optional[bool] = None   # back-filled by outcome measurement
    applied_at: datetime = Field(default_factory=utcnow)


class DomainEvent(Record):
    id: str = Field(default_factory=new_id)
    brand_id: str = SYSTEM_TENANT
    type: str
    payload: dict[str, Any] = {}
    dedupe_key: Optional[str] = None
    source: str = ""
    status: EventStatus = EventStatus.NEW
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class EventRule(Record):
    """Maps an event type to a follow-on job type. brand_id None = global rule."""
    id: str = Field(default_factory=new_id)
    brand_id: Optional[str] = None
    event_type: str
    job_type: str
    conditions: dict[str, Any] = {}           # attribute equality against the event payload
    enabled: bool = True


class ExecutionRules(Record):
    """Per-brand auto-approval policy. Written by the surrounding application."""
    brand_id: str
    auto_execute: bool = False
    min_confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    max_risk: RiskLevel = RiskLevel.LOW
    allowed_action_types: list[str] = []


class EvaluationRun(Record):
    id: str = Field(default_factory=new_id)
    brand_id: str
    period_start: datetime
    period_end: datetime
    total_recommendations: int = 0
    acceptance_rate: Optional[float] = None
    avg_confidence: Optional[float] = None
    calibration_error: Optional[float] = None
    avg_outcome_delta: Optional[float] = None
    metrics: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class RuleCondition(BaseModel):
    field: str
    operator: str = "eq"    # eq | neq | gt | gte | lt | lte | in | contains | regex | exists
    value: Any = None


# ──────────────────────────────────────────────────────────────
#  Job payloads: one typed variant per job type
# ──────────────────────────────────────────────────────────────

class JobPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    brand_id: Optional[str] = None


class TenantJobPayload(JobPayload):
    """Cron-fired jobs: just the tenant (or the system marker)."""


class EventJobPayload(JobPayload):
    """Jobs enqueued by an event rule carry the originating event."""
    event_id: Optional[str] = None
    event_type: Optional[str] = None


class ActionDraftPayload(EventJobPayload):
    recommendation_id: str


class SignalExtractorPayload(EventJobPayload):
    recommendation_id: str
    outcome_id: Optional[str] = None


class SignalFeedbackPayload(EventJobPayload):
    recommendation_id: str
    outcome_positive: bool


class ModeratePostPayload(JobPayload):
    post_id: str
    title: str = ""
    body: str = ""
    author: str = ""


JOB_PAYLOADS: dict[JobType, type[JobPayload]] = {
    JobType.COMMUNITY_MODERATE_POST: ModeratePostPayload,
    JobType.GSC_DAILY_DIGEST: TenantJobPayload,
    JobType.TREND_SCAN_INDUSTRY: TenantJobPayload,
    JobType.ANALYTICS_INSIGHTS: TenantJobPayload,
    JobType.ADS_PERFORMANCE_DIGEST: TenantJobPayload,
    JobType.ACTION_DRAFT_GENERATOR: ActionDraftPayload,
    JobType.STRATEGIC_PRIORITIZER: TenantJobPayload,
    JobType.METRIC_SNAPSHOT: TenantJobPayload,
    JobType.OUTCOME_COLLECTOR: TenantJobPayload,
    JobType.SIGNAL_EXTRACTOR: SignalExtractorPayload,
    JobType.SIGNAL_FEEDBACK: SignalFeedbackPayload,
    JobType.SIGNAL_DECAY: TenantJobPayload,
    JobType.EVALUATION_SCORER: TenantJobPayload,
}


def parse_job_type(job_type: str) -> JobType:
    try:
        return JobType(job_type)
    except ValueError:
        raise UnknownJobTypeError(f"Unknown job type: {job_type}") from None


def validate_job_payload(job_type: str, payload: dict[str, Any]) -> JobPayload:
    """Validate a raw payload against the variant registered for its job type."""
    model = JOB_PAYLOADS[parse_job_type(job_type)]
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise PayloadValidationError(job_type, str(e)) from e


# ──────────────────────────────────────────────────────────────
#  Model output contracts
# ──────────────────────────────────────────────────────────────

class PriorityAdjustment(BaseModel):
    """One model-suggested adjustment. delta_rank is clamped by the caller; NaN and inf are rejected."""
    recommendation_id: str
    delta_rank: float = Field(0.0, allow_inf_nan=False)
    effort_estimate: Optional[EffortEstimate] = None
    reasoning: str = ""
    drop: bool = False


class PrioritizerOutput(BaseModel):
    adjustments: list[PriorityAdjustment] = []


class ActionDraftProposal(BaseModel):
    type: str
    payload: dict[str, Any] = {}
    risk: RiskLevel = RiskLevel.LOW
    guardrails_applied: dict[str, Any] = {}
    requires_approval: bool = True


class SignalProposal(BaseModel):
    signal_type: SignalType
    domain: str
    title: str
    description: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: dict[str, Any] = {}
    ttl_days: int = Field(default=90, ge=1, le=365)


class ModerationVerdict(BaseModel):
    decision: str                             # approve | flag | remove
    reason: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    priority: Priority = Priority.MEDIUM


class Finding(BaseModel):
    """A raw insight returned by an analysis data source."""
    title: str
    body: str = ""
    priority: Priority = Priority.MEDIUM
    confidence: Optional[float] = None
    strategic_alignment: Optional[Union[bool, float]] = None
    effort_estimate: Optional[EffortEstimate] = None
    data: dict[str, Any] = {}
