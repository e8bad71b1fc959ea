"""
Message Queue — Abstract interface with Redis list and in-memory backends.

Queue Topology:
  recopilot:jobs    — Work list. Producers LPUSH, consumers BRPOP (FIFO).
  recopilot:dlq     — Dead-letter list. Same envelope shape; inspected and
                      drained manually (scripts/dlq.py), never auto-retried.

Message Schema (the envelope is not authoritative, the Job row is):
  {
      "jobId":   id of the Job row created before the push,
      "type":    one of the registered job types,
      "payload": key-value map validated against the job type's payload model,
  }

BRPOP hands each message to exactly one consumer. A consumer that crashes
mid-handler loses the message; the job reaper later fails the stuck Job row.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from core.errors import MalformedEnvelopeError

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Envelope
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueMessage:
    """The transient {jobId, type, payload} envelope."""
    job_id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {"jobId": self.job_id, "type": self.type, "payload": self.payload},
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> QueueMessage:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedEnvelopeError(f"Envelope is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedEnvelopeError("Envelope is not a JSON object")

        job_id = data.get("jobId")
        if not isinstance(job_id, str) or not job_id:
            raise MalformedEnvelopeError("Envelope has no jobId")
        job_type = data.get("type")
        if not isinstance(job_type, str) or not job_type:
            raise MalformedEnvelopeError("Envelope has no type", job_id=job_id)
        payload = data.get("payload", {})
        if not isinstance(payload, dict):
            raise MalformedEnvelopeError("Envelope payload is not an object", job_id=job_id)
        return cls(job_id=job_id, type=job_type, payload=payload)


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    JOBS = "recopilot:jobs"
    DLQ = "recopilot:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract named-list queue: push, blocking pop, dead-letter list."""

    def __init__(self, queue_key: str = Queues.JOBS, dlq_key: str = Queues.DLQ):
        self.queue_key = queue_key
        self.dlq_key = dlq_key

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def push(self, queue: str, raw: str):
        """Append a raw message to the named list."""
        ...

    @abstractmethod
    async def pop(self, queue: str, timeout: float = 5) -> Optional[str]:
        """Block up to `timeout` seconds for the oldest message. None when idle."""
        ...

    @abstractmethod
    async def length(self, queue: str) -> int:
        """Return the number of pending messages in a list."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[str]:
        """Return up to `count` messages, oldest first, without consuming them."""
        ...

    @abstractmethod
    async def remove(self, queue: str, raw: str) -> int:
        """Remove one occurrence of a raw message. Returns how many were removed."""
        ...

    async def enqueue(self, message: QueueMessage):
        await self.push(self.queue_key, message.to_json())
        logger.info("job_published",
                     queue=self.queue_key,
                     job_id=message.job_id,
                     job_type=message.type)

    async def dead_letter(self, raw: str):
        await self.push(self.dlq_key, raw)
        logger.warning("message_dead_lettered", queue=self.dlq_key, size=len(raw))


# ──────────────────────────────────────────────────────────────
#  Redis List Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis lists.

    - LPUSH at the head, BRPOP from the tail gives FIFO order
    - The dead-letter list is a plain list for LRANGE inspection
    """

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 queue_key: str = Queues.JOBS, dlq_key: str = Queues.DLQ):
        super().__init__(queue_key=queue_key, dlq_key=dlq_key)
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url.split("@")[-1])

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def push(self, queue: str, raw: str):
        await self._redis.lpush(queue, raw)

    async def pop(self, queue: str, timeout: float = 5) -> Optional[str]:
        item = await self._redis.brpop([queue], timeout=max(1, int(timeout)))
        if not item:
            return None
        _, raw = item
        return raw

    async def length(self, queue: str) -> int:
        return await self._redis.llen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[str]:
        # Oldest entries sit at the tail
        items = await self._redis.lrange(queue, -count, -1)
        return list(reversed(items))

    async def remove(self, queue: str, raw: str) -> int:
        return await self._redis.lrem(queue, -1, raw)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by deques and an asyncio.Condition.
    Single-process only — no persistence.
    """

    def __init__(self, queue_key: str = Queues.JOBS, dlq_key: str = Queues.DLQ):
        super().__init__(queue_key=queue_key, dlq_key=dlq_key)
        self._lists: dict[str, deque[str]] = {}
        self._cond: Optional[asyncio.Condition] = None

    def _get_list(self, name: str) -> deque[str]:
        if name not in self._lists:
            self._lists[name] = deque()
        return self._lists[name]

    def _condition(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        pass

    async def push(self, queue: str, raw: str):
        cond = self._condition()
        async with cond:
            self._get_list(queue).appendleft(raw)
            cond.notify_all()

    async def pop(self, queue: str, timeout: float = 5) -> Optional[str]:
        items = self._get_list(queue)
        cond = self._condition()
        async with cond:
            if not items:
                try:
                    await asyncio.wait_for(cond.wait_for(lambda: bool(items)), timeout)
                except asyncio.TimeoutError:
                    return None
            return items.pop()

    async def length(self, queue: str) -> int:
        return len(self._get_list(queue))

    async def peek(self, queue: str, count: int = 10) -> list[str]:
        return list(reversed(self._get_list(queue)))[:count]

    async def remove(self, queue: str, raw: str) -> int:
        items = self._get_list(queue)
        try:
            items.remove(raw)
        except ValueError:
            return 0
        return 1


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    keys = {
        "queue_key": config.get("queue_key", Queues.JOBS),
        "dlq_key": config.get("dlq_key", Queues.DLQ),
    }

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisMessageQueue(redis_url=url, **keys)
    else:
        _instance = InMemoryMessageQueue(**keys)

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
