"""
Executors — pluggable side-effect runners for approved action drafts.

An executor is registered against an action-draft type. It returns a
structured ExecutionResult for outcomes it expected (including failures it
understands, e.g. a 4xx from a remote API); anything it raises is treated
by the execution loop as an unexpected failure.

Drafts whose type has no executor are stub-executed by the loop, so new
draft types can ship before their executor does.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from database.store_base import BasePipelineStore
from models.schemas import utcnow

logger = structlog.get_logger()


@dataclass
class ExecutionContext:
    brand_id: str
    action_draft_id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    success: bool
    result: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class Executor(abc.ABC):
    """Base class for all executors. Subclasses set `type` and implement execute()."""

    type: str = ""

    @abc.abstractmethod
    async def execute(self, ctx: ExecutionContext) -> ExecutionResult:
        ...


class ExecutorRegistry:
    """Mapping from action-draft type to executor, built at startup."""

    def __init__(self):
        self._executors: dict[str, Executor] = {}

    def register(self, executor: Executor) -> None:
        if executor.type in self._executors:
            logger.warning("executor_overwritten", type=executor.type)
        self._executors[executor.type] = executor
        logger.info("executor_registered", type=executor.type)

    def get(self, draft_type: str) -> Optional[Executor]:
        return self._executors.get(draft_type)

    def types(self) -> list[str]:
        return sorted(self._executors)

    def __contains__(self, draft_type: object) -> bool:
        return draft_type in self._executors


# ──────────────────────────────────────────────────────────────
#  Built-in executors
# ──────────────────────────────────────────────────────────────

class FlagForReviewExecutor(Executor):
    """Marks a draft as needing human attention. Surfaces in logs and the dashboard."""

    type = "flag_for_review"

    def __init__(self, store: BasePipelineStore):
        self.store = store

    async def execute(self, ctx: ExecutionContext) -> ExecutionResult:
        reason = ctx.payload.get("reason") or "Flagged for human review"
        urgency = ctx.payload.get("urgency") or "normal"
        category = ctx.payload.get("category") or "general"

        title = "Unknown"
        draft = await self.store.get_draft(ctx.action_draft_id)
        if draft:
            rec = await self.store.get_recommendation(draft.recommendation_id)
            if rec:
                title = rec.title

        logger.warning("flagged_for_review", brand_id=ctx.brand_id,
                       action_draft_id=ctx.action_draft_id, reason=reason,
                       urgency=urgency, category=category, recommendation_title=title)

        return ExecutionResult(success=True, result={
            "flagged": True,
            "reason": reason,
            "urgency": urgency,
            "category": category,
            "recommendation_title": title,
            "timestamp": utcnow().isoformat(),
        })


class WebhookExecutor(Executor):
    """
    POSTs the draft payload to a URL.

    The URL comes from the draft payload (`url`) or the executor default.
    Connection errors are retried; an HTTP error status is a structured failure.
    """

    type = "webhook"

    def __init__(self, default_url: str = "", headers: Optional[dict[str, str]] = None,
                 timeout_s: float = 30.0):
        self.default_url = default_url
        self.headers = headers or {}
        self.timeout_s = timeout_s
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(headers=self.headers, timeout=self.timeout_s)
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(url, json=body)

    async def execute(self, ctx: ExecutionContext) -> ExecutionResult:
        url = ctx.payload.get("url") or self.default_url
        if not url:
            return ExecutionResult(success=False, error="No webhook URL configured")

        body = {
            "brand_id": ctx.brand_id,
            "action_draft_id": ctx.action_draft_id,
            "type": ctx.type,
            "payload": ctx.payload,
        }
        response = await self._post(url, body)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("webhook_rejected", url=url, status=response.status_code)
            return ExecutionResult(success=False, error=f"Webhook returned {e.response.status_code}")

        return ExecutionResult(success=True, result={
            "status_code": response.status_code,
            "url": url,
        })

    async def close(self):
        if self.client:
            await self.client.aclose()


def build_executor_registry(store: BasePipelineStore, webhook_url: str = "") -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(FlagForReviewExecutor(store))
    registry.register(WebhookExecutor(default_url=webhook_url))
    return registry
