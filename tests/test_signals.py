"""Tests for the cross-brand signal context and the signal lifecycle handlers."""
from datetime import timedelta

import pytest
import pytest_asyncio

from core.errors import ModelResponseError
from jobs.signals import signal_decay, signal_extractor, signal_feedback
from models.schemas import Outcome, Signal, SignalApplication, SignalType, utcnow
from signals.context import (
    MAX_CONTEXT_CHARS, SignalContext, format_signal_context, positive_rate, weight_signal,
)


def _signal(title="Answer the query in the first paragraph", domain="seo", confidence=0.8,
            decay_weight=1.0, days_left=30, **fields) -> Signal:
    fields.setdefault("description", "Pages that answer up front hold their CTR after updates.")
    return Signal(signal_type=SignalType.PATTERN, domain=domain, title=title,
                  confidence=confidence, decay_weight=decay_weight,
                  expires_at=utcnow() + timedelta(days=days_left), **fields)


async def _track_record(store, signal_id, positive: int, negative: int, pending: int = 0):
    results = [True] * positive + [False] * negative + [None] * pending
    for n, outcome in enumerate(results):
        await store.add_signal_application(SignalApplication(
            signal_id=signal_id, target_brand_id=f"brand_{n}", outcome_positive=outcome,
        ))


class TestWeighting:
    def test_positive_rate(self):
        assert positive_rate(4, 3) == 0.75
        assert positive_rate(0, 0) == 0.5

    def test_weight(self):
        sig = _signal(confidence=0.8, decay_weight=0.5)
        assert weight_signal(sig, 0.75) == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_pending_applications_do_not_count(self, store):
        sig = await store.create_signal(_signal())
        await _track_record(store, sig.id, positive=1, negative=1, pending=5)
        [weighted] = await SignalContext(store).rank_signals("seo")
        assert weighted.positive_rate == 0.5


class TestFormatting:
    def test_empty(self):
        assert format_signal_context("seo", []) == ""

    def test_lines(self):
        text = format_signal_context("seo", [_signal(title="Short titles")])
        assert text.startswith("Cross-brand signals for seo:")
        assert "- [pattern] Short titles (confidence: 0.80)" in text

    def test_never_exceeds_budget(self):
        signals = [_signal(title=f"Signal {n}", description="x" * 900) for n in range(5)]
        text = format_signal_context("seo", signals)
        assert len(text) <= MAX_CONTEXT_CHARS
        assert text.rstrip().endswith("...")

    def test_tiny_budget(self):
        assert len(format_signal_context("seo", [_signal()], max_chars=40)) <= 40


class TestSignalContext:
    @pytest.mark.asyncio
    async def test_top_five_by_weight(self, store):
        for n in range(7):
            await store.create_signal(_signal(title=f"s{n}", confidence=0.1 * (n + 1)))
        # A high-confidence signal with a poor track record sinks
        loser = await store.create_signal(_signal(title="loser", confidence=1.0))
        await _track_record(store, loser.id, positive=0, negative=4)

        top = await SignalContext(store).rank_signals("seo")

        assert [w.signal.title for w in top] == ["s6", "s5", "s4", "s3", "s2"]

    @pytest.mark.asyncio
    async def test_filters_domain_and_expiry(self, store):
        await store.create_signal(_signal(title="community", domain="community"))
        await store.create_signal(_signal(title="expired", days_left=-1))
        live = await store.create_signal(_signal(title="live"))

        result = await SignalContext(store).build("brand_acme", "seo", record=False)

        assert result.signal_ids == [live.id]
        assert "expired" not in result.text

    @pytest.mark.asyncio
    async def test_build_records_applications(self, store):
        sig = await store.create_signal(_signal())

        result = await SignalContext(store).build("brand_acme", "seo", recommendation_id="rec_1")

        [app] = await store.list_applications_for_recommendation("rec_1")
        assert result.application_ids == [app.id]
        assert app.signal_id == sig.id
        assert app.target_brand_id == "brand_acme"
        assert app.outcome_positive is None

    @pytest.mark.asyncio
    async def test_build_without_recording(self, store):
        await store.create_signal(_signal())
        result = await SignalContext(store).build("brand_acme", "seo", "rec_1", record=False)
        assert result.text
        assert result.application_ids == []
        assert await store.list_applications_for_recommendation("rec_1") == []

    @pytest.mark.asyncio
    async def test_no_signals(self, store):
        result = await SignalContext(store).build("brand_acme", "community")
        assert result.text == "" and result.signal_ids == []


class TestSignalExtractor:
    @pytest_asyncio.fixture
    async def measured_rec(self, store, brand, make_rec):
        rec = make_rec(title="Rewrite meta description on /tents", data={"page": "/tents"})
        await store.create_recommendation(rec)
        await store.create_outcome(Outcome(
            brand_id=brand.id, recommendation_id=rec.id, metric_source="gsc",
            metric_key="ctr", metric_value_before=0.02, metric_value_after=0.03, delta=0.01,
        ))
        return rec

    @pytest.mark.asyncio
    async def test_extracts_signal(self, store, measured_rec, make_ctx, fake_model):
        model = fake_model({
            "signal_type": "pattern", "domain": "seo", "title": "Benefit-led meta descriptions",
            "description": "Leading with the benefit lifted CTR.", "confidence": 0.7,
            "evidence": {"ctr_delta": 0.01}, "ttl_days": 60,
        })
        ctx = make_ctx("signal_extractor", payload={"recommendation_id": measured_rec.id}, model=model)

        await signal_extractor(ctx)

        signal = await store.get_signal_for_recommendation(measured_rec.id)
        assert signal.source_brand_id == "brand_acme"
        assert signal.signal_type == SignalType.PATTERN
        assert signal.decay_weight == 1.0
        assert timedelta(days=59) < signal.expires_at - utcnow() <= timedelta(days=60)
        assert "0.02 → 0.03" in model.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_only_once_per_recommendation(self, store, measured_rec, make_ctx, fake_model):
        await store.create_signal(_signal(recommendation_id=measured_rec.id))
        model = fake_model()
        await signal_extractor(make_ctx("signal_extractor",
                                        payload={"recommendation_id": measured_rec.id}, model=model))
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_unknown_domain_is_rejected(self, measured_rec, make_ctx, fake_model):
        model = fake_model({"signal_type": "pattern", "domain": "email", "title": "x", "confidence": 0.5})
        ctx = make_ctx("signal_extractor", payload={"recommendation_id": measured_rec.id}, model=model)
        with pytest.raises(ModelResponseError):
            await signal_extractor(ctx)

    @pytest.mark.asyncio
    async def test_skips_without_outcome(self, store, brand, make_rec, make_ctx, fake_model):
        rec = make_rec()
        await store.create_recommendation(rec)
        model = fake_model()
        await signal_extractor(make_ctx("signal_extractor",
                                        payload={"recommendation_id": rec.id}, model=model))
        assert await store.get_signal_for_recommendation(rec.id) is None
        assert model.calls == []


class TestSignalFeedbackAndDecay:
    @pytest.mark.asyncio
    async def test_feedback_backfills_applications(self, store, make_ctx):
        sig = await store.create_signal(_signal())
        await SignalContext(store).build("brand_acme", "seo", recommendation_id="rec_1")

        await signal_feedback(make_ctx("signal_feedback", payload={
            "recommendation_id": "rec_1", "outcome_positive": True,
        }))

        [app] = await store.list_applications_for_recommendation("rec_1")
        assert app.outcome_positive is True
        assert await store.application_stats(sig.id) == (1, 1)

    @pytest.mark.asyncio
    async def test_decay_is_floored(self, store, make_ctx):
        await store.create_signal(_signal(title="fresh", decay_weight=1.0))
        await store.create_signal(_signal(title="faded", decay_weight=0.05))

        await signal_decay(make_ctx("signal_decay", brand_id="__system__"))

        weights = {s.title: s.decay_weight for s in await store.list_active_signals("seo", utcnow())}
        assert weights["fresh"] == pytest.approx(0.9)
        assert weights["faded"] == 0.05
