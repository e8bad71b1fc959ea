"""Tests for the job reaper."""
from datetime import timedelta

import pytest

from database.store_memory import InMemoryPipelineStore
from job_queue.reaper import JobReaper
from models.schemas import EventRule, EventStatus, Job, JobStatus, utcnow


async def _job(store, status, minutes_ago, attempts=0) -> Job:
    stamp = utcnow() - timedelta(minutes=minutes_ago)
    return await store.create_job(Job(type="gsc_daily_digest", brand_id="brand_acme", status=status,
                                      attempts=attempts, created_at=stamp, updated_at=stamp))


class TestJobReaper:
    @pytest.mark.asyncio
    async def test_times_out_running_jobs(self, store):
        stuck = await _job(store, JobStatus.RUNNING, minutes_ago=45, attempts=1)
        busy = await _job(store, JobStatus.RUNNING, minutes_ago=5, attempts=1)

        stats = await JobReaper(store).reap_once()

        assert stats["timed_out"] == 1
        job = await store.get_job(stuck.id)
        assert job.status == JobStatus.FAILED
        assert job.error == "Job timed out while running"
        assert (await store.get_job(busy.id)).status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_fails_orphaned_retries_only(self, store):
        orphan = await _job(store, JobStatus.QUEUED, minutes_ago=20, attempts=2)
        waiting = await _job(store, JobStatus.QUEUED, minutes_ago=20, attempts=0)

        stats = await JobReaper(store).reap_once()

        assert stats["orphaned"] == 1
        assert (await store.get_job(orphan.id)).error == "Orphaned retry"
        assert (await store.get_job(waiting.id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_job_finished_after_the_sweep_read_it(self):
        class FinishesAfterRead(InMemoryPipelineStore):
            async def find_stale_jobs(self, status, updated_before, min_attempts=0):
                jobs = await super().find_stale_jobs(status, updated_before, min_attempts)
                for job in jobs:
                    await self.update_job(job.id, status=JobStatus.SUCCEEDED)
                return jobs

        store = FinishesAfterRead()
        job = await _job(store, JobStatus.RUNNING, minutes_ago=45, attempts=1)

        stats = await JobReaper(store).reap_once()

        assert stats["timed_out"] == 0
        assert (await store.get_job(job.id)).status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_terminal_jobs_untouched(self, store):
        done = await _job(store, JobStatus.SUCCEEDED, minutes_ago=600, attempts=1)
        assert await JobReaper(store).reap_once() == {"timed_out": 0, "orphaned": 0, "events_retried": 0}
        assert (await store.get_job(done.id)).status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_custom_timeouts(self, store):
        await _job(store, JobStatus.RUNNING, minutes_ago=3)
        stats = await JobReaper(store, running_timeout_minutes=1).reap_once()
        assert stats["timed_out"] == 1

    @pytest.mark.asyncio
    async def test_retries_failed_events(self, store, queue, events):
        await store.upsert_event_rule(EventRule(
            id="drafts", event_type="recommendation.created", job_type="action_draft_generator",
        ))
        event_id = await events.emit("recommendation.created", "brand_acme", {})
        assert (await store.get_event(event_id)).status == EventStatus.FAILED
        await store.update_event(event_id, payload={"recommendation_id": "r1"})

        stats = await JobReaper(store, events=events).reap_once()

        assert stats["events_retried"] == 1
        assert (await store.get_event(event_id)).status == EventStatus.PROCESSED
        assert await queue.length(queue.queue_key) == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store):
        reaper = JobReaper(store, interval_s=3600)
        await reaper.start()
        await reaper.stop()
        assert reaper._task is None
