"""
FastAPI Application — fan-out entry point and operator endpoints.

Provides:
- POST /activities            fan out a newly created activity (202)
- POST /actors                register or update an actor in the social store
- GET  /queues                per-queue depth and handled/retried/dead-lettered counters
- GET  /dead-letters          inspect dead-lettered jobs
- POST /dead-letters/{id}/replay
- GET  /health
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError

from config.settings import get_settings
from core.pipeline import Pipeline, build_pipeline
from job_queue.job import DeadLetterNotFoundError, DeliveryFailedError
from models.schemas import Activity, Actor, ActorType, DeadLetter, FanOutReport, Verb

logger = structlog.get_logger()

pipeline: Optional[Pipeline] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global pipeline
    settings = get_settings()
    pipeline = build_pipeline(settings)
    await pipeline.start()

    worker_task = None
    if settings.queue.embedded_worker:
        worker_task = asyncio.create_task(pipeline.manager.run_loop(settings.queue.queues))

    logger.info("fanout_api_started", queue_backend=pipeline.backend.name,
                embedded_worker=settings.queue.embedded_worker)
    yield

    pipeline.manager.stop()
    if worker_task is not None:
        await worker_task
    await pipeline.close()
    pipeline = None
    logger.info("fanout_api_stopped")


def get_pipeline() -> Pipeline:
    if pipeline is None:
        raise HTTPException(503, "Pipeline not started")
    return pipeline


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Fan-out API",
    description="Notification fan-out and federation delivery queue",
    version="0.1.0",
    lifespan=lifespan,
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ActivityRequest(BaseModel):
    id: Optional[str] = None
    verb: Verb = Verb.POST
    actor_id: str
    object_id: str = ""
    object_actor_id: Optional[str] = None
    in_reply_to_actor_id: Optional[str] = None
    mentions: list[str] = []
    group_ids: list[str] = []
    content: str = ""
    is_public: bool = True
    ids_already_known: Optional[dict[str, list[str]]] = None
    reason: Optional[str] = None


class ActorRequest(BaseModel):
    id: str
    nickname: str = ""
    uri: str = ""
    type: ActorType = ActorType.PERSON
    is_local: bool = True
    inbox: str = ""
    shared_inbox: str = ""
    subscribers: list[str] = []
    blocks: list[str] = []
    members: list[str] = []


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    p = get_pipeline()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queue_backend": p.backend.name,
        "store": type(p.store).__name__,
        "queues": p.registry.queues,
    }


# ══════════════════════════════════════════════════════════════
#  FAN-OUT
# ══════════════════════════════════════════════════════════════

@app.post("/activities", status_code=202, response_model=FanOutReport)
async def create_activity(req: ActivityRequest):
    p = get_pipeline()
    sender = await p.store.get_actor(req.actor_id)
    if sender is None:
        raise HTTPException(404, f"Unknown actor {req.actor_id}")

    fields = req.model_dump(exclude={"ids_already_known", "reason"}, exclude_none=True)
    activity = Activity(**fields)
    try:
        return await p.fanout.fan_out(sender, activity, req.ids_already_known, req.reason)
    except OperationalError as e:
        # enqueue failures are reported per target; only the store can fail here
        logger.error("fanout_store_unavailable", activity_id=activity.id, error=str(e.orig))
        raise HTTPException(503, "Social store unavailable")


@app.post("/actors")
async def upsert_actor(req: ActorRequest):
    p = get_pipeline()
    actor = Actor(**req.model_dump(exclude={"subscribers", "blocks", "members"}))
    await p.store.upsert_actor(actor)
    for subscriber_id in req.subscribers:
        await p.store.follow(subscriber_id, actor.id)
    for blocked_id in req.blocks:
        await p.store.block(actor.id, blocked_id)
    for member_id in req.members:
        await p.store.add_group_member(actor.id, member_id)
    return actor.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  QUEUES & DEAD LETTERS
# ══════════════════════════════════════════════════════════════

@app.get("/queues")
async def queue_stats() -> dict[str, Any]:
    p = get_pipeline()
    return {"backend": p.backend.name, "queues": await p.manager.queue_report()}


@app.get("/dead-letters", response_model=list[DeadLetter])
async def list_dead_letters(queue: Optional[str] = None, limit: int = Query(50, ge=1, le=500)):
    return await get_pipeline().manager.dead_letters(queue, limit)


@app.post("/dead-letters/{dead_letter_id}/replay")
async def replay_dead_letter(dead_letter_id: str):
    try:
        job_id = await get_pipeline().manager.replay(dead_letter_id)
    except DeadLetterNotFoundError:
        raise HTTPException(404, "Dead letter not found")
    except DeliveryFailedError as e:
        # in-process replay ran the handler and it failed again
        raise HTTPException(409, str(e))
    return {"dead_letter_id": dead_letter_id, "job_id": job_id}


# ══════════════════════════════════════════════════════════════
#  RUN
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
