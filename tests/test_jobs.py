"""Tests for the job handlers: analysis, drafts, snapshots, outcomes, evaluation, moderation."""
import asyncio
from datetime import timedelta

import pytest

from core.errors import ModelResponseError, NotFoundError
from execution.executors import ExecutorRegistry
from execution.loop import ExecutionLoop
from jobs import build_handler_registry
from jobs.analysis import run_analysis
from jobs.drafts import action_draft_generator
from jobs.evaluation import calibration_report, evaluation_scorer
from jobs.moderation import community_moderate_post
from jobs.outcomes import is_positive_outcome, metric_snapshot, outcome_collector
from models.schemas import (
    ActionDraft, DraftStatus, EffortEstimate, EvaluationRun, ExecutionRules, JobType,
    MetricSnapshot, Priority, RiskLevel, utcnow,
)
from sources.connector import SourceRegistry, StaticSourceConnector

FINDINGS = [
    {"title": "CTR dropped on /tents", "body": "Position steady, CTR down 30%.",
     "priority": "high", "confidence": 0.8, "effort_estimate": "minutes"},
    {"body": "finding without a title"},
    {"title": "New query cluster: ultralight", "priority": "medium"},
]

DRAFT_PROPOSAL = {
    "type": "flag_for_review",
    "payload": {"reason": "CTR drop needs a title rewrite"},
    "risk": "low",
    "guardrails_applied": {"tone": "kept friendly"},
    "requires_approval": False,
}


class _SlowModel:
    """Yields to the event loop before answering, so concurrent handlers interleave."""

    def __init__(self, inner):
        self.inner = inner

    async def complete_json(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await self.inner.complete_json(*args, **kwargs)


async def _events_of(store, event_type):
    return [e for e in await store.list_events() if e.type == event_type]


def _gsc_sources(findings=None, metrics=None) -> SourceRegistry:
    return SourceRegistry({"gsc": StaticSourceConnector(
        "gsc", findings={"gsc_daily_digest": findings or []}, metrics=metrics,
    )})


class TestHandlerRegistry:
    def test_every_job_type_has_a_handler(self):
        registry = build_handler_registry()
        assert set(registry.types()) == {t.value for t in JobType}


class TestAnalysis:
    @pytest.mark.asyncio
    async def test_findings_become_recommendations(self, store, brand, make_ctx):
        ctx = make_ctx("gsc_daily_digest", sources=_gsc_sources(FINDINGS))

        await run_analysis(ctx)

        recs = await store.list_recommendations(brand.id)
        assert sorted(r.title for r in recs) == ["CTR dropped on /tents", "New query cluster: ultralight"]
        tents = next(r for r in recs if r.title.startswith("CTR"))
        assert tents.priority == Priority.HIGH
        assert tents.source == "gsc_daily_digest"
        assert tents.job_id == "job_test_001"
        assert tents.effort_estimate == EffortEstimate.MINUTES
        assert len(await _events_of(store, "recommendation.created")) == 2

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, store, brand, make_ctx):
        ctx = make_ctx("gsc_daily_digest", sources=_gsc_sources(FINDINGS))
        await run_analysis(ctx)
        await run_analysis(ctx)

        assert len(await store.list_recommendations(brand.id)) == 2
        assert len(await _events_of(store, "recommendation.created")) == 2

    @pytest.mark.asyncio
    async def test_brand_without_source_is_skipped(self, store, brand, make_ctx):
        await run_analysis(make_ctx("ads_performance_digest", sources=_gsc_sources(FINDINGS)))
        assert await store.list_recommendations(brand.id) == []

    @pytest.mark.asyncio
    async def test_unknown_brand(self, make_ctx):
        with pytest.raises(NotFoundError):
            await run_analysis(make_ctx("gsc_daily_digest", brand_id="ghost"))


class TestActionDraftGenerator:
    @pytest.mark.asyncio
    async def test_assist_brand_gets_a_pending_draft(self, store, brand, make_rec, make_ctx, fake_model):
        rec = make_rec(confidence=0.9)
        await store.create_recommendation(rec)
        model = fake_model(DRAFT_PROPOSAL)

        await action_draft_generator(make_ctx("action_draft_generator",
                                              payload={"recommendation_id": rec.id}, model=model))

        draft = await store.get_draft_for_recommendation(rec.id)
        assert draft.type == "flag_for_review"
        assert draft.status == DraftStatus.PENDING
        assert draft.confidence == 0.9
        assert draft.requires_approval is False
        assert "no_discounts" in model.calls[0]["prompt"]
        assert len(await _events_of(store, "action_draft.created")) == 1

    @pytest.mark.asyncio
    async def test_auto_approval_applies(self, store, brand, make_rec, make_ctx, fake_model):
        await store.upsert_execution_rules(ExecutionRules(
            brand_id=brand.id, auto_execute=True, min_confidence=0.8, max_risk=RiskLevel.MEDIUM,
        ))
        rec = make_rec(confidence=0.9)
        await store.create_recommendation(rec)

        await action_draft_generator(make_ctx("action_draft_generator",
                                              payload={"recommendation_id": rec.id},
                                              model=fake_model(DRAFT_PROPOSAL)))

        assert (await store.get_draft_for_recommendation(rec.id)).status == DraftStatus.APPROVED
        assert len(await _events_of(store, "action_draft.auto_approved")) == 1

    @pytest.mark.asyncio
    async def test_observe_brand_gets_no_draft(self, store, observe_brand, make_rec, make_ctx, fake_model):
        rec = make_rec(brand_id=observe_brand.id)
        await store.create_recommendation(rec)
        model = fake_model()

        await action_draft_generator(make_ctx("action_draft_generator", brand_id=observe_brand.id,
                                              payload={"recommendation_id": rec.id}, model=model))

        assert await store.get_draft_for_recommendation(rec.id) is None
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_redelivery_reuses_existing_draft(self, store, brand, make_rec, make_ctx, fake_model):
        rec = make_rec()
        await store.create_recommendation(rec)
        ctx = make_ctx("action_draft_generator", payload={"recommendation_id": rec.id},
                       model=fake_model(DRAFT_PROPOSAL))

        await action_draft_generator(ctx)
        await action_draft_generator(ctx)

        assert len(await store.list_drafts(brand_id=brand.id)) == 1
        assert len(ctx.model.calls) == 1
        assert len(await _events_of(store, "action_draft.created")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_share_one_draft(self, store, brand, make_rec, make_ctx, fake_model):
        await store.upsert_execution_rules(ExecutionRules(
            brand_id=brand.id, auto_execute=True, min_confidence=0.5, max_risk=RiskLevel.MEDIUM,
        ))
        rec = make_rec(confidence=0.9)
        await store.create_recommendation(rec)
        model = fake_model(DRAFT_PROPOSAL, DRAFT_PROPOSAL)
        ctx = make_ctx("action_draft_generator", payload={"recommendation_id": rec.id},
                       model=_SlowModel(model))

        await asyncio.gather(action_draft_generator(ctx), action_draft_generator(ctx))

        assert len(model.calls) == 2
        [draft] = await store.list_drafts(brand_id=brand.id)
        assert draft.status == DraftStatus.APPROVED
        assert len(await _events_of(store, "action_draft.created")) == 1
        assert len(await _events_of(store, "action_draft.auto_approved")) == 1
        stats = await ExecutionLoop(store, ExecutorRegistry()).run_once()
        assert stats["stubbed"] == 1

    @pytest.mark.asyncio
    async def test_missing_recommendation(self, brand, make_ctx, fake_model):
        ctx = make_ctx("action_draft_generator", payload={"recommendation_id": "gone"},
                       model=fake_model())
        with pytest.raises(NotFoundError):
            await action_draft_generator(ctx)

    @pytest.mark.asyncio
    async def test_bad_model_output_raises_for_retry(self, store, brand, make_rec, make_ctx, fake_model):
        rec = make_rec()
        await store.create_recommendation(rec)
        ctx = make_ctx("action_draft_generator", payload={"recommendation_id": rec.id},
                       model=fake_model(ModelResponseError("not json")))
        with pytest.raises(ModelResponseError):
            await action_draft_generator(ctx)
        assert await store.get_draft_for_recommendation(rec.id) is None


class TestMetricsAndOutcomes:
    @pytest.mark.asyncio
    async def test_snapshot_captures_every_metric(self, store, brand, make_ctx):
        sources = _gsc_sources(metrics={"*": {"avg_ctr": 0.031, "clicks": 1200.0}})

        await metric_snapshot(make_ctx("metric_snapshot", sources=sources))

        snap = await store.latest_snapshot(brand.id, "gsc", "avg_ctr")
        assert snap.value == 0.031
        assert await store.latest_snapshot(brand.id, "gsc", "clicks") is not None

    @pytest.mark.asyncio
    async def test_snapshot_without_sources(self, store, brand, make_ctx):
        await metric_snapshot(make_ctx("metric_snapshot"))
        assert await store.latest_snapshot(brand.id, "gsc", "avg_ctr") is None

    async def _executed_rec(self, store, make_rec, **fields):
        rec = make_rec(age_days=8, **fields)
        await store.create_recommendation(rec)
        await store.create_draft(ActionDraft(brand_id=rec.brand_id, recommendation_id=rec.id,
                                             type="flag_for_review", status=DraftStatus.EXECUTED))
        return rec

    async def _snapshot(self, store, source, key, value, days_ago):
        await store.add_metric_snapshot(MetricSnapshot(
            brand_id="brand_acme", source=source, metric_key=key, value=value,
            captured_at=utcnow() - timedelta(days=days_ago),
        ))

    @pytest.mark.asyncio
    async def test_outcome_measured_and_announced(self, store, brand, make_rec, make_ctx):
        rec = await self._executed_rec(store, make_rec)
        await self._snapshot(store, "gsc", "avg_ctr", 2.104, days_ago=10)
        await self._snapshot(store, "gsc", "avg_ctr", 2.6, days_ago=1)

        await outcome_collector(make_ctx("outcome_collector"))

        outcome = await store.get_outcome_for_recommendation(rec.id)
        assert (outcome.metric_value_before, outcome.metric_value_after) == (2.1, 2.6)
        assert outcome.delta == 0.5
        [feedback] = await _events_of(store, "signal.outcome_measured")
        assert feedback.payload == {"recommendation_id": rec.id, "outcome_positive": True}
        assert len(await _events_of(store, "outcome.collected")) == 1

    @pytest.mark.asyncio
    async def test_inverse_metric(self, store, brand, make_rec, make_ctx):
        rec = await self._executed_rec(store, make_rec, source="community_moderate_post")
        await self._snapshot(store, "community", "spam_rate", 0.12, days_ago=9)
        await self._snapshot(store, "community", "spam_rate", 0.04, days_ago=0)

        await outcome_collector(make_ctx("outcome_collector"))

        [feedback] = await _events_of(store, "signal.outcome_measured")
        assert feedback.payload["outcome_positive"] is True
        assert (await store.get_outcome_for_recommendation(rec.id)).delta == -0.08

    @pytest.mark.asyncio
    async def test_missing_snapshot_is_never_filled_in(self, store, brand, make_rec, make_ctx):
        rec = await self._executed_rec(store, make_rec)
        # Only a snapshot after the recommendation
        await self._snapshot(store, "gsc", "avg_ctr", 2.6, days_ago=1)

        await outcome_collector(make_ctx("outcome_collector"))

        assert await store.get_outcome_for_recommendation(rec.id) is None
        assert await store.list_events() == []

    @pytest.mark.asyncio
    async def test_recent_and_unexecuted_recs_wait(self, store, brand, make_rec, make_ctx):
        fresh = make_rec(age_days=2)
        idle = make_rec(age_days=20, title="never executed")
        for rec in (fresh, idle):
            await store.create_recommendation(rec)
        await store.create_draft(ActionDraft(brand_id=brand.id, recommendation_id=fresh.id,
                                             type="webhook", status=DraftStatus.EXECUTED))
        await self._snapshot(store, "gsc", "avg_ctr", 2.0, days_ago=30)
        await self._snapshot(store, "gsc", "avg_ctr", 2.6, days_ago=0)

        await outcome_collector(make_ctx("outcome_collector"))

        assert await store.list_outcomes(brand.id) == []

    @pytest.mark.asyncio
    async def test_measured_once(self, store, brand, make_rec, make_ctx):
        await self._executed_rec(store, make_rec)
        await self._snapshot(store, "gsc", "avg_ctr", 2.0, days_ago=10)
        await self._snapshot(store, "gsc", "avg_ctr", 2.6, days_ago=1)

        await outcome_collector(make_ctx("outcome_collector"))
        await outcome_collector(make_ctx("outcome_collector"))

        assert len(await store.list_outcomes(brand.id)) == 1

    @pytest.mark.asyncio
    async def test_events_lost_to_a_crash_are_emitted_on_retry(self, store, brand, make_rec, make_ctx):
        rec = await self._executed_rec(store, make_rec)
        await self._snapshot(store, "gsc", "avg_ctr", 2.0, days_ago=10)
        await self._snapshot(store, "gsc", "avg_ctr", 2.6, days_ago=1)

        class BrokenEvents:
            async def emit(self, *args, **kwargs):
                raise RuntimeError("event store unavailable")

        with pytest.raises(RuntimeError):
            await outcome_collector(make_ctx("outcome_collector", events=BrokenEvents()))
        assert await store.get_outcome_for_recommendation(rec.id) is not None
        assert await store.list_events() == []

        await outcome_collector(make_ctx("outcome_collector"))
        await outcome_collector(make_ctx("outcome_collector"))

        assert len(await store.list_outcomes(brand.id)) == 1
        assert len(await _events_of(store, "outcome.collected")) == 1
        [feedback] = await _events_of(store, "signal.outcome_measured")
        assert feedback.payload == {"recommendation_id": rec.id, "outcome_positive": True}

    @pytest.mark.parametrize("key,delta,expected", [
        ("avg_ctr", 0.4, True), ("avg_ctr", -0.1, False), ("avg_ctr", 0.0, False),
        ("spam_rate", -0.05, True), ("bounce_rate", 0.1, False),
    ])
    def test_positive_outcome(self, key, delta, expected):
        assert is_positive_outcome(key, delta) is expected


class TestEvaluation:
    @pytest.mark.asyncio
    async def test_scores_window(self, store, brand, make_rec, make_ctx):
        recs = [make_rec(title=f"r{n}", confidence=0.8) for n in range(2)]
        recs.append(make_rec(title="old", confidence=0.1, age_days=45))
        for rec in recs:
            await store.create_recommendation(rec)
        for rec, status in zip(recs, (DraftStatus.EXECUTED, DraftStatus.REJECTED)):
            await store.create_draft(ActionDraft(brand_id=brand.id, recommendation_id=rec.id,
                                                 type="webhook", status=status))

        await evaluation_scorer(make_ctx("evaluation_scorer"))

        [run] = await store.list_evaluation_runs(brand.id)
        assert run.total_recommendations == 2
        assert run.acceptance_rate == 0.5
        assert run.avg_confidence == 0.8
        assert run.calibration_error == 0.3
        assert run.avg_outcome_delta is None
        assert run.metrics == {"drafts": 2}

    @pytest.mark.asyncio
    async def test_no_recommendations_no_run(self, store, brand, make_ctx):
        await evaluation_scorer(make_ctx("evaluation_scorer"))
        assert await store.list_evaluation_runs(brand.id) == []

    async def _runs(self, store, errors):
        """errors are listed newest first."""
        now = utcnow()
        for n, error in enumerate(errors):
            await store.create_evaluation_run(EvaluationRun(
                brand_id="brand_acme", period_start=now - timedelta(days=30),
                period_end=now, calibration_error=error,
                created_at=now - timedelta(days=n),
            ))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("errors,trend", [
        ([0.1, 0.1, 0.1, 0.3, 0.3, 0.3], "improving"),
        ([0.3, 0.3, 0.3, 0.1, 0.1, 0.1], "degrading"),
        ([0.2, 0.21, 0.2, 0.2, 0.2, 0.2], "stable"),
        ([0.1, 0.1, 0.1, 0.3], "improving"),
        ([0.1, 0.1, 0.1], "insufficient_data"),
        ([0.1], "insufficient_data"),
    ])
    async def test_calibration_trend(self, store, errors, trend):
        await self._runs(store, errors)
        report = await calibration_report(store, "brand_acme")
        assert report.trend == trend
        assert report.recent_calibration_error == errors[0]
        assert report.runs_analyzed == len(errors)


class TestModeration:
    @pytest.mark.asyncio
    async def test_approved_post_leaves_no_trace(self, store, brand, make_ctx, fake_model):
        ctx = make_ctx("community_moderate_post", payload={"post_id": "p1", "title": "Hi all"},
                       model=fake_model({"decision": "approve", "confidence": 0.95}))
        await community_moderate_post(ctx)
        assert await store.list_recommendations(brand.id) == []

    @pytest.mark.asyncio
    async def test_flagged_post_becomes_recommendation(self, store, brand, make_ctx, fake_model):
        verdict = {"decision": "flag", "reason": "Affiliate links in every paragraph",
                   "confidence": 0.85, "priority": "high"}
        ctx = make_ctx("community_moderate_post",
                       payload={"post_id": "p7", "title": "Best deals!!", "author": "deals4u"},
                       model=fake_model(verdict, verdict))

        await community_moderate_post(ctx)
        await community_moderate_post(ctx)

        [rec] = await store.list_recommendations(brand.id)
        assert rec.dedupe_key == "post:p7"
        assert rec.priority == Priority.HIGH
        assert rec.effort_estimate == EffortEstimate.MINUTES
        assert rec.data["author"] == "deals4u"
        assert rec.domain == "community"

    @pytest.mark.asyncio
    async def test_unknown_decision_is_rejected(self, brand, make_ctx, fake_model):
        ctx = make_ctx("community_moderate_post", payload={"post_id": "p1"},
                       model=fake_model({"decision": "shadowban"}))
        with pytest.raises(ModelResponseError):
            await community_moderate_post(ctx)
