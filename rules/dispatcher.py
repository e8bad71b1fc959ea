"""
Event Rule Dispatcher — turns domain events into follow-on jobs.

emit() is the single entry point for every domain event in the system:

    event_id = await dispatcher.emit(
        "recommendation.created", brand_id,
        payload={"recommendation_id": rec.id, "source": rec.source},
        dedupe_key=f"rec:{rec.id}", source="gsc_daily_digest",
    )

Idempotency lives in the store: (brand, type, dedupe_key) is unique, so a
re-run handler that emits the same event again gets None back and nothing
downstream fires twice. Events without a dedupe key are never deduplicated.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from core.errors import DuplicateEventError
from database.store_base import BasePipelineStore
from job_queue.message_queue import MessageQueue
from job_queue.producer import enqueue_job
from models.schemas import SYSTEM_TENANT, DomainEvent, EventStatus
from utils.conditions import matches_conditions

logger = structlog.get_logger()


class EventRuleDispatcher:
    """Persists events, matches enabled rules, enqueues one job per matching rule."""

    def __init__(self, store: BasePipelineStore, queue: MessageQueue):
        self.store = store
        self.queue = queue

    async def emit(
        self,
        event_type: str,
        brand_id: Optional[str],
        payload: Optional[dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        source: str = "",
    ) -> Optional[str]:
        """Persist and dispatch an event. Returns the event id, or None for a duplicate."""
        event = DomainEvent(
            brand_id=brand_id or SYSTEM_TENANT,
            type=event_type,
            payload=dict(payload or {}),
            dedupe_key=dedupe_key,
            source=source,
        )
        try:
            await self.store.insert_event(event)
        except DuplicateEventError:
            logger.debug("event_deduplicated", event_type=event_type,
                         brand_id=event.brand_id, dedupe_key=dedupe_key)
            return None

        logger.info("event_emitted", event_id=event.id, event_type=event_type,
                    brand_id=event.brand_id, dedupe_key=dedupe_key, source=source)

        await self._dispatch(event)
        return event.id

    async def _dispatch(self, event: DomainEvent) -> bool:
        """Enqueue jobs for every matching rule, then record the event's status."""
        tenant = None if event.brand_id == SYSTEM_TENANT else event.brand_id
        try:
            rules = await self.store.find_rules(event.type, tenant)
            for rule in rules:
                if not matches_conditions(rule.conditions, event.payload):
                    logger.debug("event_rule_conditions_unmet", rule_id=rule.id, event_id=event.id)
                    continue

                job_id = await enqueue_job(
                    self.store, self.queue, rule.job_type, tenant,
                    {
                        **event.payload,
                        "brand_id": event.brand_id,
                        "event_id": event.id,
                        "event_type": event.type,
                    },
                )
                logger.info("event_rule_triggered", event_id=event.id, rule_id=rule.id,
                            job_type=rule.job_type, job_id=job_id, brand_id=event.brand_id)
        except Exception as e:
            logger.error("event_dispatch_failed", event_id=event.id, event_type=event.type,
                         error=str(e), exc_info=True)
            await self.store.update_event(event.id, status=EventStatus.FAILED,
                                          attempts=event.attempts + 1)
            return False

        await self.store.update_event(event.id, status=EventStatus.PROCESSED)
        return True

    async def retry_failed(self, max_attempts: int = 3, limit: int = 50) -> int:
        """Re-dispatch failed events below the attempt ceiling. Returns how many now succeeded."""
        failed = await self.store.list_events(status=EventStatus.FAILED,
                                              max_attempts=max_attempts, limit=limit)
        recovered = 0
        for event in failed:
            if await self._dispatch(event):
                recovered += 1
                logger.info("event_retry_succeeded", event_id=event.id, attempts=event.attempts)
        return recovered
