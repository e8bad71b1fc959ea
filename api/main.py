"""
FastAPI Application — management surface for the pipeline.

Provides:
- Health and queue diagnostics
- Job inspection and manual enqueue
- Dead-letter inspection and requeue
- Domain event intake (webhooks land here)
- Recommendation listing in rank order
- Human approval / rejection of action drafts
- Manual cron firing

The API process embeds a Worker, so the consumers, execution loop, cron
scheduler and reaper run alongside it.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import get_settings
from core.errors import (
    InvalidTransitionError, NotFoundError, PayloadValidationError, UnknownJobTypeError,
)
from core.worker import Worker
from execution.approval import approve_draft, reject_draft
from job_queue.producer import enqueue_job, requeue_dead_letter
from models.schemas import (
    Brand, BrandMode, DraftStatus, ExecutionRules, JobStatus, RiskLevel, utcnow,
)
from scheduling.cron import find_entry

logger = structlog.get_logger()

_worker: Optional[Worker] = None


def get_worker() -> Worker:
    if _worker is None:
        raise HTTPException(503, "Worker not started")
    return _worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _worker
    settings = get_settings()
    _worker = Worker(settings)
    await _worker.start()
    logger.info("recopilot_api_started", app_name=settings.app_name)
    yield

    await _worker.stop()
    _worker = None
    logger.info("recopilot_api_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="RecoPilot API",
    description="Autonomous recommendation pipeline",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EnqueueJobRequest(BaseModel):
    type: str
    brand_id: Optional[str] = None
    payload: dict[str, Any] = {}


class EmitEventRequest(BaseModel):
    type: str
    brand_id: Optional[str] = None
    payload: dict[str, Any] = {}
    dedupe_key: Optional[str] = None
    source: str = "api"


class BrandRequest(BaseModel):
    name: str
    mode: BrandMode = BrandMode.OBSERVE
    is_active: bool = True
    guardrails: dict[str, Any] = {}
    modules_enabled: list[str] = []


class ExecutionRulesRequest(BaseModel):
    auto_execute: bool = False
    min_confidence: float = 0.9
    max_risk: RiskLevel = RiskLevel.LOW
    allowed_action_types: list[str] = []


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    w = get_worker()
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "queue_depth": await w.queue.length(w.queue.queue_key),
        "dlq_depth": await w.queue.length(w.queue.dlq_key),
        "handlers": w.registry.types(),
        "executors": w.executors.types(),
        "model_available": w.model.available,
    }


# ══════════════════════════════════════════════════════════════
#  JOBS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/jobs")
async def list_jobs(
    brand_id: str = None,
    status: str = None,
    limit: int = Query(50, le=500),
):
    jobs = await get_worker().store.list_jobs(
        brand_id=brand_id,
        status=JobStatus(status) if status else None,
        limit=limit,
    )
    return [j.model_dump(mode="json") for j in jobs]


@app.get("/api/v1/jobs/{job_id}")
async def get_job(job_id: str):
    job = await get_worker().store.get_job(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return job.model_dump(mode="json")


@app.post("/api/v1/jobs")
async def create_job(req: EnqueueJobRequest):
    w = get_worker()
    try:
        job_id = await enqueue_job(w.store, w.queue, req.type, req.brand_id, req.payload)
    except (UnknownJobTypeError, PayloadValidationError) as e:
        raise HTTPException(422, str(e))
    return {"status": "enqueued", "job_id": job_id}


# ══════════════════════════════════════════════════════════════
#  DEAD LETTERS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/dlq")
async def list_dead_letters(limit: int = Query(50, le=500)):
    w = get_worker()
    raws = await w.queue.peek(w.queue.dlq_key, limit)
    return {
        "depth": await w.queue.length(w.queue.dlq_key),
        "messages": raws,
    }


@app.post("/api/v1/dlq/{job_id}/requeue")
async def requeue(job_id: str):
    """Move a dead-lettered job back onto the work queue with a fresh attempt budget."""
    w = get_worker()
    job_type = await requeue_dead_letter(w.store, w.queue, job_id)
    if job_type is None:
        raise HTTPException(404, "Job not in dead-letter queue")
    return {"status": "requeued", "job_id": job_id, "type": job_type}


# ══════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/events")
async def emit_event(req: EmitEventRequest):
    event_id = await get_worker().events.emit(
        req.type, req.brand_id, req.payload,
        dedupe_key=req.dedupe_key, source=req.source,
    )
    if event_id is None:
        return {"status": "duplicate"}
    return {"status": "accepted", "event_id": event_id}


# ══════════════════════════════════════════════════════════════
#  BRANDS & RECOMMENDATIONS
# ══════════════════════════════════════════════════════════════

@app.put("/api/v1/brands/{brand_id}")
async def upsert_brand(brand_id: str, req: BrandRequest):
    brand = await get_worker().store.upsert_brand(Brand(id=brand_id, **req.model_dump()))
    return brand.model_dump(mode="json")


@app.put("/api/v1/brands/{brand_id}/execution-rules")
async def upsert_execution_rules(brand_id: str, req: ExecutionRulesRequest):
    w = get_worker()
    if not await w.store.get_brand(brand_id):
        raise HTTPException(404, "Brand not found")
    rules = await w.store.upsert_execution_rules(ExecutionRules(brand_id=brand_id, **req.model_dump()))
    return rules.model_dump(mode="json")


@app.get("/api/v1/brands/{brand_id}/recommendations")
async def list_recommendations(brand_id: str, include_dropped: bool = False,
                               limit: int = Query(50, le=500)):
    recs = await get_worker().store.list_recommendations(brand_id, limit=10_000)
    ranked = [r for r in recs if r.priority_rank is not None and r.priority_rank > 0]
    ranked.sort(key=lambda r: r.priority_rank)
    unranked = [r for r in recs if r.priority_rank is None]
    dropped = [r for r in recs if r.priority_rank == -1] if include_dropped else []
    return [r.model_dump(mode="json") for r in (ranked + unranked + dropped)[:limit]]


# ══════════════════════════════════════════════════════════════
#  ACTION DRAFTS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/drafts")
async def list_drafts(brand_id: str = None, status: str = None):
    drafts = await get_worker().store.list_drafts(
        status=DraftStatus(status) if status else None,
        brand_id=brand_id,
    )
    return [d.model_dump(mode="json") for d in drafts]


@app.post("/api/v1/drafts/{draft_id}/approve")
async def approve(draft_id: str):
    w = get_worker()
    try:
        draft = await approve_draft(w.store, w.events, draft_id)
    except NotFoundError:
        raise HTTPException(404, "Draft not found")
    except InvalidTransitionError as e:
        raise HTTPException(409, str(e))
    return draft.model_dump(mode="json")


@app.post("/api/v1/drafts/{draft_id}/reject")
async def reject(draft_id: str):
    w = get_worker()
    try:
        draft = await reject_draft(w.store, w.events, draft_id)
    except NotFoundError:
        raise HTTPException(404, "Draft not found")
    except InvalidTransitionError as e:
        raise HTTPException(409, str(e))
    return draft.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  CRON
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/cron/{job_type}/fire")
async def fire_cron(job_type: str):
    w = get_worker()
    entry = find_entry(job_type, w.scheduler.table)
    if entry is None:
        raise HTTPException(404, "No cron entry for this job type")
    job_ids = await w.scheduler.fire(entry)
    return {"job_type": job_type, "fan_out": entry.fan_out.value, "job_ids": job_ids}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
