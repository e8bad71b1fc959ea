"""Tests for the cron table, crontab parsing and fan-out."""
from datetime import datetime, timezone

import pytest

from job_queue.message_queue import QueueMessage
from models.schemas import SYSTEM_TENANT, Brand, JobType
from scheduling.cron import CRON_TABLE, CronEntry, CronScheduler, FanOut, find_entry, parse_cron


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestParseCron:
    def test_sunday_is_zero(self):
        # 2026-10-15 is a Thursday; the next Sunday is the 18th
        trigger = parse_cron("0 3 * * 0")
        assert trigger.get_next_fire_time(None, _utc(2026, 10, 15)) == _utc(2026, 10, 18, 3)

    def test_seven_is_also_sunday(self):
        trigger = parse_cron("30 6 * * 7")
        assert trigger.get_next_fire_time(None, _utc(2026, 10, 15)) == _utc(2026, 10, 18, 6, 30)

    def test_weekday_range(self):
        # Saturday → next Monday
        trigger = parse_cron("0 9 * * 1-5")
        assert trigger.get_next_fire_time(None, _utc(2026, 10, 17, 12)) == _utc(2026, 10, 19, 9)

    def test_range_starting_on_sunday(self):
        # Wednesday → Sunday, then Monday and Tuesday
        trigger = parse_cron("0 9 * * 0-2")
        assert trigger.get_next_fire_time(None, _utc(2026, 10, 14, 12)) == _utc(2026, 10, 18, 9)
        assert trigger.get_next_fire_time(None, _utc(2026, 10, 20, 8)) == _utc(2026, 10, 20, 9)

    def test_step_counts_from_sunday(self):
        # Sunday, Tuesday, Thursday, Saturday: from Monday the next run is Tuesday
        trigger = parse_cron("0 6 * * */2")
        assert trigger.get_next_fire_time(None, _utc(2026, 10, 19, 12)) == _utc(2026, 10, 20, 6)

    def test_mixed_list(self):
        trigger = parse_cron("0 6 * * 6,0")
        assert trigger.get_next_fire_time(None, _utc(2026, 10, 15)) == _utc(2026, 10, 17, 6)

    @pytest.mark.parametrize("field", ["5-1", "*/0", "8", "1-", "2/x"])
    def test_bad_weekday_field(self, field):
        with pytest.raises(ValueError):
            parse_cron(f"0 6 * * {field}")

    def test_daily(self):
        trigger = parse_cron("0 8 * * *")
        assert trigger.get_next_fire_time(None, _utc(2026, 10, 18, 8, 0, 1)) == _utc(2026, 10, 19, 8)

    def test_wrong_field_count(self):
        with pytest.raises(ValueError):
            parse_cron("0 8 * *")


class TestCronTable:
    def test_entries(self):
        schedule = {e.job_type: (e.schedule, e.fan_out) for e in CRON_TABLE}
        assert schedule[JobType.GSC_DAILY_DIGEST] == ("0 8 * * *", FanOut.PER_TENANT)
        assert schedule[JobType.STRATEGIC_PRIORITIZER] == ("0 10 * * *", FanOut.PER_TENANT)
        assert schedule[JobType.SIGNAL_DECAY] == ("0 3 * * 0", FanOut.SYSTEM)

    def test_every_schedule_parses(self):
        for entry in CRON_TABLE:
            parse_cron(entry.schedule)

    def test_find_entry(self):
        assert find_entry("signal_decay").fan_out == FanOut.SYSTEM
        assert find_entry("community_moderate_post") is None


class TestFanOut:
    @pytest.mark.asyncio
    async def test_per_tenant_one_job_per_active_brand(self, store, queue):
        await store.upsert_brand(Brand(id="b1", name="One"))
        await store.upsert_brand(Brand(id="b2", name="Two"))
        await store.upsert_brand(Brand(id="b3", name="Paused", is_active=False))

        scheduler = CronScheduler(store, queue)
        job_ids = await scheduler.fire(find_entry("gsc_daily_digest"))

        assert len(job_ids) == 2
        brands = {(await store.get_job(j)).brand_id for j in job_ids}
        assert brands == {"b1", "b2"}
        assert await queue.length(queue.queue_key) == 2

    @pytest.mark.asyncio
    async def test_per_tenant_without_brands(self, store, queue):
        assert await CronScheduler(store, queue).fire(find_entry("metric_snapshot")) == []

    @pytest.mark.asyncio
    async def test_system_fan_out(self, store, queue):
        await store.upsert_brand(Brand(id="b1", name="One"))
        await store.upsert_brand(Brand(id="b2", name="Two"))

        [job_id] = await CronScheduler(store, queue).fire(find_entry("signal_decay"))

        job = await store.get_job(job_id)
        assert job.brand_id is None
        [raw] = await queue.peek(queue.queue_key)
        assert QueueMessage.from_json(raw).payload["brand_id"] == SYSTEM_TENANT

    @pytest.mark.asyncio
    async def test_overlapping_firings_both_enqueue(self, store, queue):
        await store.upsert_brand(Brand(id="b1", name="One"))
        scheduler = CronScheduler(store, queue)
        entry = find_entry("strategic_prioritizer")
        first = await scheduler.fire(entry)
        second = await scheduler.fire(entry)
        assert len(set(first + second)) == 2


class TestSchedulerLifecycle:
    @pytest.mark.asyncio
    async def test_registers_every_entry(self, store, queue):
        table = [
            CronEntry("0 8 * * *", JobType.GSC_DAILY_DIGEST),
            CronEntry("0 3 * * 0", JobType.SIGNAL_DECAY, FanOut.SYSTEM),
        ]
        scheduler = CronScheduler(store, queue, table=table)
        scheduler.start()
        try:
            ids = sorted(job.id for job in scheduler.scheduler.get_jobs())
            assert ids == ["cron:gsc_daily_digest", "cron:signal_decay"]
        finally:
            scheduler.stop()
        assert scheduler.scheduler is None
