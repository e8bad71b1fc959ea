"""
Worker — wires the pipeline together and runs its loops.

One process runs:
  - N queue consumers (blocking pop, retry / dead-letter)
  - the execution loop (approved drafts → executors)
  - the cron scheduler (static table, per-tenant or system fan-out)
  - the reaper (stuck jobs, failed events)

Everything talks through the store, the queue and domain events; the loops
share no in-process state.

Run with:
    python -m core.worker
"""
from __future__ import annotations

import asyncio
import signal
import structlog
from typing import Optional

from config.settings import Settings, get_settings, load_settings
from core.model_client import ModelClient
from database.session import close_db, init_db
from database.store_base import BasePipelineStore
from database.store_factory import create_store
from execution.executors import build_executor_registry
from execution.loop import ExecutionLoop
from job_queue.consumer import JobConsumer
from job_queue.message_queue import MessageQueue, create_message_queue
from job_queue.reaper import JobReaper
from jobs import build_handler_registry
from rules.defaults import seed_default_rules
from rules.dispatcher import EventRuleDispatcher
from scheduling.cron import CronScheduler
from sources.connector import create_source_registry

logger = structlog.get_logger()


class Worker:
    """Owns every long-running component of one pipeline process."""

    def __init__(self, settings: Optional[Settings] = None,
                 store: Optional[BasePipelineStore] = None,
                 queue: Optional[MessageQueue] = None):
        self.settings = settings or get_settings()
        s = self.settings

        self.store = store or create_store({"store_backend": s.database.store_backend})
        self.queue = queue or create_message_queue({
            "backend": s.queue.backend,
            "redis_url": s.queue.redis_url,
            "queue_key": s.queue.queue_key,
            "dlq_key": s.queue.dlq_key,
        })
        self.events = EventRuleDispatcher(self.store, self.queue)
        self.model = ModelClient(s.llm)
        self.sources = create_source_registry(s.sources)
        self.registry = build_handler_registry()
        self.executors = build_executor_registry(self.store, s.execution.webhook_url)

        self.consumers = [
            JobConsumer(
                self.store, self.queue, self.registry,
                max_attempts=s.queue.max_attempts,
                pop_timeout=s.queue.pop_timeout,
                name=f"consumer-{i}",
                events=self.events, model=self.model,
                sources=self.sources, settings=s,
            )
            for i in range(max(1, s.queue.consumer_concurrency))
        ]
        self.execution_loop = ExecutionLoop(
            self.store, self.executors, self.events, interval_s=s.execution.interval_seconds,
        )
        self.scheduler = CronScheduler(self.store, self.queue, timezone=s.scheduler.timezone)
        self.reaper = JobReaper(
            self.store, self.events,
            interval_s=s.reaper.interval_seconds,
            running_timeout_minutes=s.reaper.running_timeout_minutes,
            queued_timeout_minutes=s.reaper.queued_timeout_minutes,
            event_max_attempts=s.reaper.event_max_attempts,
        )
        self._started = False

    async def start(self) -> None:
        s = self.settings
        if s.database.store_backend == "sql":
            await init_db()
        await self.queue.connect()
        await seed_default_rules(self.store, s.event_rules)

        for consumer in self.consumers:
            await consumer.start_background()
        if s.execution.enabled:
            await self.execution_loop.start()
        if s.scheduler.enabled:
            self.scheduler.start()
        await self.reaper.start()

        self._started = True
        logger.info("worker_started",
                    consumers=len(self.consumers),
                    handlers=len(self.registry),
                    executors=self.executors.types(),
                    sources=[c.name for c in self.sources.all()],
                    model_available=self.model.available,
                    queue_backend=type(self.queue).__name__,
                    store_backend=type(self.store).__name__)

    async def stop(self) -> None:
        if not self._started:
            return
        self.scheduler.stop()
        await self.reaper.stop()
        await self.execution_loop.stop()
        for consumer in self.consumers:
            await consumer.stop()

        await self.sources.close()
        await self.queue.close()
        if self.settings.database.store_backend == "sql":
            await close_db()
        self._started = False
        logger.info("worker_stopped")

    async def run_forever(self) -> None:
        """Start, then block until SIGINT / SIGTERM."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass  # Windows

        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()


def main() -> None:
    # Load .env before any config is read
    from dotenv import load_dotenv
    load_dotenv()

    settings = load_settings()
    asyncio.run(Worker(settings).run_forever())


if __name__ == "__main__":
    main()
