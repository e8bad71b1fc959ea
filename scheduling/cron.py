"""
Cron Scheduler — fires jobs from a static schedule table.

Each entry fans out either per tenant (one Job per active brand) or once for
the whole system (one Job with no brand). Firings are independent: the
scheduler holds no locks, so a slow run never blocks the next one and two
runs of the same job type may overlap. Handlers are idempotent.

    scheduler = CronScheduler(store, queue)
    scheduler.start()          # inside a running event loop
    ...
    scheduler.stop()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from database.store_base import BasePipelineStore
from job_queue.message_queue import MessageQueue
from job_queue.producer import enqueue_job
from models.schemas import SYSTEM_TENANT, JobType

logger = structlog.get_logger()


class FanOut(str, Enum):
    PER_TENANT = "per_tenant"
    SYSTEM = "system"


@dataclass(frozen=True)
class CronEntry:
    schedule: str               # 5-field cron: minute hour day month day-of-week
    job_type: JobType
    fan_out: FanOut = FanOut.PER_TENANT


CRON_TABLE: list[CronEntry] = [
    CronEntry("0 1 * * *", JobType.METRIC_SNAPSHOT),
    CronEntry("0 2 * * *", JobType.OUTCOME_COLLECTOR),
    CronEntry("0 4 * * *", JobType.EVALUATION_SCORER),
    CronEntry("0 8 * * *", JobType.GSC_DAILY_DIGEST),
    CronEntry("0 9 * * *", JobType.TREND_SCAN_INDUSTRY),
    CronEntry("0 10 * * *", JobType.STRATEGIC_PRIORITIZER),
    CronEntry("0 3 * * 0", JobType.SIGNAL_DECAY, FanOut.SYSTEM),
]

# crontab counts weekdays from Sunday = 0 (7 is also Sunday); APScheduler from Monday = 0
_CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _weekday_field(expr: str) -> str:
    """
    Translate a crontab day-of-week field into APScheduler day names.

    Numeric items, ranges and steps are expanded to explicit names ("0-2" is
    "sun,mon,tue", "*/2" is "sun,tue,thu,sat"), so ranges that cross Sunday
    keep their crontab meaning. Named items ("mon-fri") pass through.
    """
    if expr == "*":
        return expr
    days: list[str] = []
    for item in expr.split(","):
        if item[:1].isalpha():
            days.append(item)
            continue
        body, _, step = item.partition("/")
        try:
            if body == "*":
                low, high = 0, 6
            elif "-" in body:
                low, high = (int(part) for part in body.split("-", 1))
            else:
                low = int(body)
                high = 7 if step else low
            stride = int(step) if step else 1
        except ValueError:
            raise ValueError(f"Invalid day-of-week field: {expr!r}") from None
        if not (0 <= low <= high <= 7) or stride < 1:
            raise ValueError(f"Invalid day-of-week field: {expr!r}")
        for n in range(low, high + 1, stride):
            if _CRON_WEEKDAYS[n] not in days:
                days.append(_CRON_WEEKDAYS[n])
    return ",".join(days)


def parse_cron(expr: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a 5-field crontab expression into a CronTrigger."""
    parts = expr.split()
    if len(parts) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(parts)}: {expr!r}")
    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=_weekday_field(parts[4]),
        timezone=timezone,
    )


def find_entry(job_type: str, table: Optional[list[CronEntry]] = None) -> Optional[CronEntry]:
    for entry in table if table is not None else CRON_TABLE:
        if entry.job_type.value == job_type:
            return entry
    return None


class CronScheduler:
    """Registers every table entry with an AsyncIOScheduler and enqueues on fire."""

    def __init__(
        self,
        store: BasePipelineStore,
        queue: MessageQueue,
        table: Optional[list[CronEntry]] = None,
        timezone: str = "UTC",
    ):
        self.store = store
        self.queue = queue
        self.table = list(table if table is not None else CRON_TABLE)
        self.timezone = timezone
        self.scheduler: Optional[AsyncIOScheduler] = None

    def start(self) -> None:
        """Register the table and start the timers. Must be called with a running loop."""
        self.scheduler = AsyncIOScheduler(timezone=self.timezone)
        for entry in self.table:
            self.scheduler.add_job(
                self.fire,
                trigger=parse_cron(entry.schedule, self.timezone),
                args=[entry],
                id=f"cron:{entry.job_type.value}",
                replace_existing=True,
                coalesce=False,
                max_instances=100,      # overlapping firings are allowed
                misfire_grace_time=300,
            )
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self.scheduler.start()
        logger.info("cron_scheduler_started", entries=len(self.table), timezone=self.timezone)

    def stop(self) -> None:
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("cron_scheduler_stopped")

    def _on_job_error(self, event) -> None:
        logger.error(
            "cron_job_error",
            job_id=event.job_id,
            exception=str(event.exception),
            traceback=event.traceback,
        )

    async def fire(self, entry: CronEntry) -> list[str]:
        """Enqueue the entry's job(s) now. Returns the created job ids."""
        job_type = entry.job_type.value
        logger.info("cron_fired", job_type=job_type, fan_out=entry.fan_out.value)

        if entry.fan_out == FanOut.SYSTEM:
            job_id = await enqueue_job(self.store, self.queue, job_type, None,
                                       {"brand_id": SYSTEM_TENANT})
            return [job_id]

        job_ids = []
        for brand in await self.store.list_active_brands():
            try:
                job_ids.append(await enqueue_job(self.store, self.queue, job_type, brand.id))
            except Exception as e:
                # One tenant's failure must not starve the rest of the fan-out
                logger.error("cron_enqueue_failed", job_type=job_type,
                             brand_id=brand.id, error=str(e))
        logger.info("cron_fan_out_complete", job_type=job_type, jobs=len(job_ids))
        return job_ids
