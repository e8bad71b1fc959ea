"""
Job Reaper — fails jobs whose queue message can no longer arrive.

BRPOP removes a message from Redis the moment a consumer takes it. If that
consumer dies mid-handler, or a retry push is lost, the Job row stays
`running` or `queued` forever. The reaper sweeps those rows on an interval
and marks them `failed` so they show up in dashboards and the DLQ tooling.

It also re-dispatches domain events whose rule fan-out failed.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import timedelta
from typing import Any, Optional

from database.store_base import BasePipelineStore
from models.schemas import JobStatus, utcnow

logger = structlog.get_logger()


class JobReaper:
    """
    Periodic sweep over stuck Job rows.

        reaper = JobReaper(store, events=dispatcher)
        await reaper.start()
        ...
        await reaper.stop()
    """

    def __init__(
        self,
        store: BasePipelineStore,
        events: Any = None,
        interval_s: int = 60,
        running_timeout_minutes: int = 30,
        queued_timeout_minutes: int = 10,
        event_max_attempts: int = 3,
    ):
        self.store = store
        self.events = events
        self.interval_s = interval_s
        self.running_timeout = timedelta(minutes=running_timeout_minutes)
        self.queued_timeout = timedelta(minutes=queued_timeout_minutes)
        self.event_max_attempts = event_max_attempts
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_reaper")
        logger.info("job_reaper_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("job_reaper_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.reap_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("reaper_cycle_error", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_s)

    async def reap_once(self) -> dict[str, int]:
        """One sweep. Returns {"timed_out": N, "orphaned": N, "events_retried": N}."""
        now = utcnow()
        stats = {"timed_out": 0, "orphaned": 0, "events_retried": 0}

        running_cutoff = now - self.running_timeout
        for job in await self.store.find_stale_jobs(JobStatus.RUNNING, running_cutoff):
            # A consumer may have finished the job since it was read
            if not await self.store.update_job_if(job.id, JobStatus.RUNNING, updated_before=running_cutoff,
                                                  status=JobStatus.FAILED,
                                                  error="Job timed out while running"):
                continue
            logger.warning("job_reaped_timeout", job_id=job.id, job_type=job.type,
                           attempts=job.attempts)
            stats["timed_out"] += 1

        # attempts > 0 means a retry was scheduled; attempts == 0 jobs are simply waiting their turn
        queued_cutoff = now - self.queued_timeout
        for job in await self.store.find_stale_jobs(JobStatus.QUEUED, queued_cutoff, min_attempts=1):
            if not await self.store.update_job_if(job.id, JobStatus.QUEUED, updated_before=queued_cutoff,
                                                  status=JobStatus.FAILED, error="Orphaned retry"):
                continue
            logger.warning("job_reaped_orphan", job_id=job.id, job_type=job.type,
                           attempts=job.attempts)
            stats["orphaned"] += 1

        if self.events is not None:
            stats["events_retried"] = await self.events.retry_failed(self.event_max_attempts)

        if any(stats.values()):
            logger.info("reaper_cycle_complete", **stats)
        return stats
