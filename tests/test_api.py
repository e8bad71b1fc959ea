"""Tests for the management API, with an embedded worker on in-memory backends."""
import asyncio
import time

import pytest
from fastapi.testclient import TestClient

import api.main as api_main
from config.settings import Settings
from database.store_factory import create_store, reset_store
from job_queue.message_queue import reset_message_queue
from models.schemas import ActionDraft, DraftStatus, Recommendation


@pytest.fixture
def store():
    reset_store()
    reset_message_queue()
    yield create_store({"store_backend": "memory"})
    reset_store()
    reset_message_queue()


@pytest.fixture
def client(store, monkeypatch):
    settings = Settings()
    settings.llm.api_key = ""
    settings.queue.pop_timeout = 1
    settings.scheduler.enabled = False
    settings.execution.enabled = False
    monkeypatch.setattr(api_main, "get_settings", lambda: settings)
    with TestClient(api_main.app) as c:
        yield c


def _wait_for_status(client, job_id, status, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/api/v1/jobs/{job_id}").json()
        if job["status"] == status:
            return job
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} never reached {status}")


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert len(body["handlers"]) == 13
        assert body["executors"] == ["flag_for_review", "webhook"]
        assert body["model_available"] is False


class TestJobs:
    def test_enqueue_runs_through_consumer(self, client):
        resp = client.post("/api/v1/jobs", json={"type": "signal_decay", "payload": {"brand_id": "__system__"}})
        assert resp.status_code == 200
        job = _wait_for_status(client, resp.json()["job_id"], "succeeded")
        assert job["attempts"] == 1
        assert job["brand_id"] is None

    def test_unknown_type(self, client):
        resp = client.post("/api/v1/jobs", json={"type": "send_fax", "brand_id": "b1"})
        assert resp.status_code == 422

    def test_invalid_payload(self, client):
        resp = client.post("/api/v1/jobs", json={"type": "action_draft_generator", "brand_id": "b1"})
        assert resp.status_code == 422
        assert "action_draft_generator" in resp.json()["detail"]

    def test_unknown_job(self, client):
        assert client.get("/api/v1/jobs/nope").status_code == 404

    def test_requeue_unknown_dead_letter(self, client):
        assert client.post("/api/v1/dlq/nope/requeue").status_code == 404
        assert client.get("/api/v1/dlq").json() == {"depth": 0, "messages": []}


class TestEvents:
    def test_dedupe(self, client):
        body = {"type": "webhook.received", "brand_id": "b1", "payload": {"kind": "ping"},
                "dedupe_key": "delivery-42"}
        first = client.post("/api/v1/events", json=body).json()
        assert first["status"] == "accepted"
        assert client.post("/api/v1/events", json=body).json() == {"status": "duplicate"}


class TestBrandsAndRecommendations:
    def test_brand_and_rules(self, client):
        resp = client.put("/api/v1/brands/b1", json={"name": "Acme", "mode": "assist"})
        assert resp.json()["mode"] == "assist"

        rules = client.put("/api/v1/brands/b1/execution-rules",
                           json={"auto_execute": True, "min_confidence": 0.8, "max_risk": "medium"})
        assert rules.json()["max_risk"] == "medium"
        assert client.put("/api/v1/brands/ghost/execution-rules", json={}).status_code == 404

    def test_rank_order(self, client, store):
        recs = {
            title: Recommendation(brand_id="b1", source="gsc_daily_digest", title=title, priority_rank=rank)
            for title, rank in (("second", 2), ("dropped", -1), ("first", 1), ("pending", None))
        }
        for rec in recs.values():
            asyncio.run(store.create_recommendation(rec))

        titles = [r["title"] for r in client.get("/api/v1/brands/b1/recommendations").json()]
        assert titles == ["first", "second", "pending"]

        with_dropped = client.get("/api/v1/brands/b1/recommendations",
                                  params={"include_dropped": True}).json()
        assert [r["title"] for r in with_dropped][-1] == "dropped"


class TestDrafts:
    def test_approve_once(self, client, store):
        draft = asyncio.run(store.create_draft(ActionDraft(
            brand_id="b1", recommendation_id="r1", type="flag_for_review",
        )))

        assert client.get("/api/v1/drafts", params={"status": "pending"}).json()[0]["id"] == draft.id
        resp = client.post(f"/api/v1/drafts/{draft.id}/approve")
        assert resp.json()["status"] == DraftStatus.APPROVED.value
        assert client.post(f"/api/v1/drafts/{draft.id}/reject").status_code == 409

    def test_unknown_draft(self, client):
        assert client.post("/api/v1/drafts/nope/approve").status_code == 404


class TestCron:
    def test_fire_per_tenant(self, client):
        client.put("/api/v1/brands/b1", json={"name": "Acme"})
        body = client.post("/api/v1/cron/strategic_prioritizer/fire").json()
        assert body["fan_out"] == "per_tenant"
        assert len(body["job_ids"]) == 1

    def test_not_a_cron_job(self, client):
        assert client.post("/api/v1/cron/signal_feedback/fire").status_code == 404
