"""Shared test fixtures for RecoPilot."""
from datetime import timedelta
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from core.errors import ModelResponseError
from database.store_memory import InMemoryPipelineStore
from job_queue.message_queue import InMemoryMessageQueue
from job_queue.registry import JobContext
from models.schemas import (
    Brand, BrandMode, Priority, Recommendation, utcnow, validate_job_payload,
)
from rules.dispatcher import EventRuleDispatcher


class FakeModel:
    """
    Stands in for core.model_client.ModelClient.

    Each complete_json() call consumes the next scripted answer: a dict is
    validated against the requested schema (and grounding check), an
    exception instance is raised as-is.
    """

    def __init__(self, *answers: Any):
        self.answers = list(answers)
        self.calls: list[dict[str, Any]] = []
        self.available = True

    async def complete_json(self, system, prompt, schema, grounding=None, max_tokens=None):
        self.calls.append({"system": system, "prompt": prompt, "schema": schema.__name__})
        if not self.answers:
            raise AssertionError(f"FakeModel has no scripted answer for {schema.__name__}")
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        output = schema.model_validate(answer)
        if grounding is not None:
            reason = grounding(output)
            if reason:
                raise ModelResponseError(f"Grounding validation failed: {reason}")
        return output


@pytest.fixture
def store():
    return InMemoryPipelineStore()


@pytest.fixture
def queue():
    return InMemoryMessageQueue()


@pytest.fixture
def events(store, queue):
    return EventRuleDispatcher(store, queue)


@pytest.fixture
def fake_model() -> Callable[..., FakeModel]:
    """Factory: fake_model({...answer...}, ModelUnavailableError(...), ...)."""
    return FakeModel


@pytest_asyncio.fixture
async def brand(store) -> Brand:
    return await store.upsert_brand(Brand(
        id="brand_acme",
        name="Acme Outdoors",
        mode=BrandMode.ASSIST,
        guardrails={"tone": "friendly", "no_discounts": True},
        modules_enabled=["seo", "community"],
    ))


@pytest_asyncio.fixture
async def observe_brand(store) -> Brand:
    return await store.upsert_brand(Brand(id="brand_watch", name="Watch Only Co", mode=BrandMode.OBSERVE))


@pytest.fixture
def make_rec() -> Callable[..., Recommendation]:
    """Factory for recommendations with sensible defaults; age_days backdates created_at."""
    def _make(brand_id: str = "brand_acme", title: str = "Fix title tags on /pricing",
              age_days: float = 0, **fields: Any) -> Recommendation:
        fields.setdefault("source", "gsc_daily_digest")
        fields.setdefault("priority", Priority.MEDIUM)
        created = utcnow() - timedelta(days=age_days)
        return Recommendation(brand_id=brand_id, title=title,
                              created_at=created, updated_at=created, **fields)
    return _make


@pytest.fixture
def make_ctx(store, queue, events) -> Callable[..., JobContext]:
    """Factory for handler contexts wired to the shared store, queue and dispatcher."""
    def _make(job_type: str, brand_id: Optional[str] = "brand_acme",
              payload: Optional[dict[str, Any]] = None, **services: Any) -> JobContext:
        body = {"brand_id": brand_id, **(payload or {})}
        services.setdefault("events", events)
        return JobContext(
            store=store,
            queue=queue,
            job_id="job_test_001",
            job_type=job_type,
            brand_id=brand_id,
            payload=validate_job_payload(job_type, body),
            **services,
        )
    return _make
