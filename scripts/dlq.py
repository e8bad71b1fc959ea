#!/usr/bin/env python3
"""
Dead-letter queue tool.

Usage:
    python scripts/dlq.py list [--limit 20]
    python scripts/dlq.py requeue <job_id>     # back to the work queue, attempts reset
    python scripts/dlq.py purge                # drop every dead letter

Only meaningful against the redis queue backend; the in-memory backend does
not outlive the process that filled it.
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _open():
    from config.settings import load_settings
    from database.session import init_db
    from database.store_factory import create_store
    from job_queue.message_queue import create_message_queue

    settings = load_settings()
    queue = create_message_queue({
        "backend": settings.queue.backend,
        "redis_url": settings.queue.redis_url,
        "queue_key": settings.queue.queue_key,
        "dlq_key": settings.queue.dlq_key,
    })
    await queue.connect()
    store = create_store({"store_backend": settings.database.store_backend})
    if settings.database.store_backend == "sql":
        await init_db()
    return store, queue


async def cmd_list(limit: int) -> int:
    _, queue = await _open()
    try:
        depth = await queue.length(queue.dlq_key)
        print(f"{queue.dlq_key}: {depth} message(s)")
        for raw in await queue.peek(queue.dlq_key, limit):
            try:
                data = json.loads(raw)
                print(f"  {data.get('jobId', '?'):<34} {data.get('type', '?'):<26} "
                      f"{json.dumps(data.get('payload', {}))[:80]}")
            except ValueError:
                print(f"  (unparseable) {raw[:100]}")
    finally:
        await queue.close()
    return 0


async def cmd_requeue(job_id: str) -> int:
    from job_queue.producer import requeue_dead_letter

    store, queue = await _open()
    try:
        job_type = await requeue_dead_letter(store, queue, job_id)
    finally:
        await queue.close()
    if job_type is None:
        print(f"Job {job_id} is not in {queue.dlq_key}")
        return 1
    print(f"Requeued {job_id} ({job_type})")
    return 0


async def cmd_purge() -> int:
    _, queue = await _open()
    try:
        removed = 0
        for raw in await queue.peek(queue.dlq_key, await queue.length(queue.dlq_key)):
            removed += await queue.remove(queue.dlq_key, raw)
        print(f"Purged {removed} message(s) from {queue.dlq_key}")
    finally:
        await queue.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Inspect and manage the RecoPilot dead-letter queue")
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list", help="Show dead-lettered messages")
    p_list.add_argument("--limit", type=int, default=20)

    p_requeue = sub.add_parser("requeue", help="Move one job back onto the work queue")
    p_requeue.add_argument("job_id")

    sub.add_parser("purge", help="Remove every dead-lettered message")

    args = parser.parse_args()
    if args.command == "list":
        code = asyncio.run(cmd_list(args.limit))
    elif args.command == "requeue":
        code = asyncio.run(cmd_requeue(args.job_id))
    else:
        code = asyncio.run(cmd_purge())
    sys.exit(code)


if __name__ == "__main__":
    main()
