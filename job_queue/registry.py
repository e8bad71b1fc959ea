"""
Handler Registry — maps job types to handler coroutines.

The registry is an explicit object built at startup and injected into the
consumer; there is no module-level handler table. Tests build their own
registry per case.

Handler contract:
    async def handler(ctx: JobContext) -> None
Return normally on success (including "nothing to do" skips); raise to have
the consumer retry. A handler must be safe to re-run for the same job id.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from database.store_base import BasePipelineStore
from job_queue.message_queue import MessageQueue
from models.schemas import JobPayload, JobType, parse_job_type

logger = structlog.get_logger()


@dataclass
class JobContext:
    """Everything a handler may touch while running one job."""
    store: BasePipelineStore
    queue: MessageQueue
    job_id: str
    job_type: str
    brand_id: Optional[str]
    payload: JobPayload
    events: Any = None       # rules.dispatcher.EventRuleDispatcher (avoid circular import)
    model: Any = None        # core.model_client.ModelClient
    sources: Any = None      # sources.connector.SourceRegistry
    settings: Any = None     # config.settings.Settings


Handler = Callable[[JobContext], Awaitable[None]]


class HandlerRegistry:
    """Closed mapping from JobType to handler."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, job_type: JobType | str, handler: Handler) -> None:
        key = parse_job_type(job_type.value if isinstance(job_type, JobType) else job_type).value
        if key in self._handlers:
            logger.warning("handler_overwritten", job_type=key)
        self._handlers[key] = handler
        logger.debug("handler_registered", job_type=key, handler=getattr(handler, "__name__", repr(handler)))

    def handler(self, job_type: JobType | str) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""
        def decorator(fn: Handler) -> Handler:
            self.register(job_type, fn)
            return fn
        return decorator

    def get(self, job_type: str) -> Optional[Handler]:
        return self._handlers.get(job_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
