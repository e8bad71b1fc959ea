"""
Enqueue operation — the only way work enters the queue.

Order matters: the Job row is written before the message is pushed, so a
consumer can never pop a message whose job record does not exist yet.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from core.errors import MalformedEnvelopeError
from database.store_base import BasePipelineStore
from job_queue.message_queue import MessageQueue, QueueMessage
from models.schemas import Job, JobStatus, JobType, validate_job_payload

logger = structlog.get_logger()


async def enqueue_job(
    store: BasePipelineStore,
    queue: MessageQueue,
    job_type: JobType | str,
    brand_id: Optional[str],
    payload: Optional[dict[str, Any]] = None,
) -> str:
    """Create the Job row, then push {jobId, type, payload}. Returns the job id."""
    job_type = job_type.value if isinstance(job_type, JobType) else job_type
    body = dict(payload or {})
    body.setdefault("brand_id", brand_id)

    # Raises UnknownJobTypeError / PayloadValidationError before anything is written
    validated = validate_job_payload(job_type, body)
    body = validated.model_dump(mode="json")

    job = Job(type=job_type, brand_id=brand_id, status=JobStatus.QUEUED, payload=body)
    await store.create_job(job)
    await queue.enqueue(QueueMessage(job_id=job.id, type=job_type, payload=body))

    logger.info("job_enqueued", job_id=job.id, job_type=job_type, brand_id=brand_id)
    return job.id


async def requeue_dead_letter(store: BasePipelineStore, queue: MessageQueue, job_id: str) -> Optional[str]:
    """
    Move a dead-lettered job back onto the work queue with its attempts reset.

    Returns the job type, or None when no dead letter carries that job id.
    """
    for raw in await queue.peek(queue.dlq_key, await queue.length(queue.dlq_key)):
        try:
            message = QueueMessage.from_json(raw)
        except MalformedEnvelopeError:
            continue
        if message.job_id != job_id:
            continue

        await store.update_job(job_id, status=JobStatus.QUEUED, attempts=0, error=None)
        await queue.remove(queue.dlq_key, raw)
        await queue.push(queue.queue_key, raw)
        logger.info("dead_letter_requeued", job_id=job_id, job_type=message.type)
        return message.type
    return None
