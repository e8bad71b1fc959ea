"""Tests for shared schemas and job payload validation."""
from datetime import datetime, timezone

import pytest

from core.errors import PayloadValidationError, UnknownJobTypeError
from models.schemas import (
    JOB_PAYLOADS, ActionDraftPayload, Job, JobType, ModeratePostPayload, Recommendation,
    SignalFeedbackPayload, TenantJobPayload, parse_job_type, validate_job_payload,
)


class TestJobPayloads:
    def test_every_job_type_has_a_variant(self):
        assert set(JOB_PAYLOADS) == set(JobType)

    def test_tenant_payload(self):
        payload = validate_job_payload("gsc_daily_digest", {"brand_id": "b1"})
        assert isinstance(payload, TenantJobPayload)
        assert payload.brand_id == "b1"

    def test_event_fields_are_carried(self):
        payload = validate_job_payload("action_draft_generator", {
            "brand_id": "b1", "recommendation_id": "r1", "event_id": "e1",
            "event_type": "recommendation.created", "source": "gsc_daily_digest",
        })
        assert isinstance(payload, ActionDraftPayload)
        assert payload.event_id == "e1"
        # Extra event attributes survive for handlers that want them
        assert payload.model_dump()["source"] == "gsc_daily_digest"

    def test_feedback_requires_outcome(self):
        with pytest.raises(PayloadValidationError) as exc:
            validate_job_payload("signal_feedback", {"recommendation_id": "r1"})
        assert exc.value.job_type == "signal_feedback"
        payload = validate_job_payload("signal_feedback", {"recommendation_id": "r1",
                                                           "outcome_positive": False})
        assert isinstance(payload, SignalFeedbackPayload)

    def test_moderation_payload(self):
        payload = validate_job_payload("community_moderate_post", {"brand_id": "b1", "post_id": "p1"})
        assert isinstance(payload, ModeratePostPayload)
        assert payload.body == ""

    def test_empty_payload_is_allowed_for_tenant_jobs(self):
        assert validate_job_payload("signal_decay", None).brand_id is None

    def test_unknown_type(self):
        with pytest.raises(UnknownJobTypeError):
            parse_job_type("send_newsletter")


class TestRecords:
    def test_naive_datetimes_read_as_utc(self):
        job = Job(type="signal_decay", created_at=datetime(2026, 10, 18, 3, 0))
        assert job.created_at.tzinfo == timezone.utc

    @pytest.mark.parametrize("source,domain", [
        ("gsc_daily_digest", "seo"),
        ("community_moderate_post", "community"),
        ("ads_performance_digest", "community"),
    ])
    def test_recommendation_domain(self, source, domain):
        assert Recommendation(brand_id="b1", source=source, title="t").domain == domain
