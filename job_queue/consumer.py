"""
Queue Consumer — Pops job envelopes, runs handlers, classifies outcomes.

Runs as one or more async tasks inside the worker process. For horizontal
scaling, run more consumers (or more processes) against the same list;
BRPOP delivers each message to exactly one of them.

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │ Cron / Event │─push─▶│ recopilot:jobs  │─pop──▶│  Consumer  │
  │ dispatcher   │       │ (Redis list)    │       │            │
  └──────────────┘       └────────▲────────┘       └─────┬──────┘
                                  │                      │
                                  └────── retry ─────────┤ attempts < max
                                                         │
                         ┌─────────────────┐             │
                         │ recopilot:dlq   │◀─ exhaust ──┘ attempts >= max
                         └─────────────────┘

Per-job state machine (the Job row is the source of truth):
  queued → running → succeeded
                   → queued  (handler raised, attempts < max, message re-pushed)
                   → failed  (handler raised at the ceiling, message dead-lettered)
Malformed envelopes, unknown job types and invalid payloads are failed
without retry: running them again cannot change the outcome.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from core.errors import MalformedEnvelopeError, PayloadValidationError
from database.store_base import BasePipelineStore
from job_queue.message_queue import MessageQueue, QueueMessage
from job_queue.registry import HandlerRegistry, JobContext
from models.schemas import SYSTEM_TENANT, JobStatus, validate_job_payload

logger = structlog.get_logger()

MAX_ATTEMPTS = 5

_TERMINAL = {JobStatus.SUCCEEDED, JobStatus.FAILED}


class Outcome:
    """What handle_message() did with a message (returned for logs and tests)."""
    SUCCEEDED = "succeeded"
    RETRY = "retry"
    DEAD_LETTERED = "dead_lettered"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobConsumer:
    """
    Consumes job envelopes from the work list and invokes registered handlers.

    Usage:
        consumer = JobConsumer(store, queue, registry)
        await consumer.start()              # blocks, runs until stop()
        await consumer.start_background()   # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        store: BasePipelineStore,
        queue: MessageQueue,
        registry: HandlerRegistry,
        max_attempts: int = MAX_ATTEMPTS,
        pop_timeout: float = 5,
        name: str = "consumer-0",
        events: Any = None,
        model: Any = None,
        sources: Any = None,
        settings: Any = None,
    ):
        self.store = store
        self.queue = queue
        self.registry = registry
        self.max_attempts = max_attempts
        self.pop_timeout = pop_timeout
        self.name = name
        self._services = {"events": events, "model": model, "sources": sources, "settings": settings}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        self._running = True
        logger.info("job_consumer_starting",
                     consumer=self.name,
                     queue=self.queue.queue_key,
                     handlers=len(self.registry))

        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # Store or queue unavailable: back off, never crash the worker
                logger.error("consumer_error", consumer=self.name, error=str(e), exc_info=True)
                await asyncio.sleep(1)

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._task = asyncio.create_task(self.start(), name=self.name)
        return self._task

    async def stop(self):
        """Stop the loop. An in-flight handler is cancelled at its next await."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("job_consumer_stopped", consumer=self.name)

    async def run_once(self) -> Optional[str]:
        """Pop one message (blocking up to pop_timeout) and handle it."""
        raw = await self.queue.pop(self.queue.queue_key, timeout=self.pop_timeout)
        if raw is None:
            return None
        return await self.handle_message(raw)

    async def handle_message(self, raw: str) -> str:
        """Run one envelope through the retry / dead-letter state machine."""
        try:
            message = QueueMessage.from_json(raw)
        except MalformedEnvelopeError as e:
            logger.error("queue_message_malformed", error=str(e), message=raw[:500])
            if e.job_id:
                await self.store.update_job(
                    e.job_id, status=JobStatus.FAILED,
                    error="Queue message failed schema validation",
                )
                return Outcome.FAILED
            # Not even a job id to blame: keep the body for inspection
            await self.queue.dead_letter(raw)
            return Outcome.DEAD_LETTERED

        handler = self.registry.get(message.type)
        if handler is None:
            logger.error("no_handler_registered", job_id=message.job_id, job_type=message.type)
            await self.store.update_job(
                message.job_id, status=JobStatus.FAILED,
                error=f"No handler registered for job type: {message.type}",
            )
            return Outcome.FAILED

        job = await self.store.get_job(message.job_id)
        if job is None:
            logger.error("job_record_missing", job_id=message.job_id, job_type=message.type)
            return Outcome.SKIPPED
        if job.status in _TERMINAL:
            logger.info("job_already_terminal", job_id=job.id, status=job.status.value)
            return Outcome.SKIPPED

        attempts = job.attempts + 1
        if attempts > self.max_attempts:
            await self.queue.dead_letter(raw)
            await self.store.update_job(
                job.id, status=JobStatus.FAILED, attempts=attempts,
                error="Max attempts exceeded",
            )
            logger.warning("job_max_attempts_exceeded", job_id=job.id, attempts=attempts)
            return Outcome.DEAD_LETTERED

        await self.store.update_job(job.id, status=JobStatus.RUNNING, attempts=attempts)

        try:
            payload = validate_job_payload(message.type, message.payload)
        except PayloadValidationError as e:
            logger.error("job_payload_invalid", job_id=job.id, job_type=message.type, error=str(e))
            await self.store.update_job(job.id, status=JobStatus.FAILED, error=str(e))
            return Outcome.FAILED

        brand_id = job.brand_id
        if brand_id is None and payload.brand_id not in (None, SYSTEM_TENANT):
            brand_id = payload.brand_id

        ctx = JobContext(
            store=self.store,
            queue=self.queue,
            job_id=job.id,
            job_type=message.type,
            brand_id=brand_id,
            payload=payload,
            **self._services,
        )

        logger.info("job_started", job_id=job.id, job_type=message.type,
                    brand_id=brand_id, attempts=attempts)
        try:
            await handler(ctx)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error("job_handler_failed", job_id=job.id, job_type=message.type,
                         attempts=attempts, error=error, exc_info=True)

            if attempts >= self.max_attempts:
                if not await self._finish(job.id, status=JobStatus.FAILED, error=error):
                    return Outcome.SKIPPED
                await self.queue.dead_letter(raw)
                logger.warning("job_moved_to_dlq", job_id=job.id, attempts=attempts)
                return Outcome.DEAD_LETTERED

            if not await self._finish(job.id, status=JobStatus.QUEUED, error=error):
                return Outcome.SKIPPED
            await self.queue.push(self.queue.queue_key, raw)
            logger.info("job_requeued_for_retry", job_id=job.id, attempts=attempts)
            return Outcome.RETRY

        if not await self._finish(job.id, status=JobStatus.SUCCEEDED):
            return Outcome.SKIPPED
        logger.info("job_succeeded", job_id=job.id, job_type=message.type, attempts=attempts)
        return Outcome.SUCCEEDED

    async def _finish(self, job_id: str, **fields) -> bool:
        """Record the run's result unless the job left `running` meanwhile (e.g. reaped)."""
        if await self.store.update_job_if(job_id, JobStatus.RUNNING, **fields):
            return True
        job = await self.store.get_job(job_id)
        logger.warning("job_status_changed_while_running", job_id=job_id,
                       status=job.status.value if job else None,
                       discarded_status=fields["status"].value)
        return False
