"""
RedisQueueBackend — Redis Streams + consumer group.

Key layout (prefix defaults to "fanout:"):
  {prefix}{queue}             stream, one entry per waiting/in-flight job
  {prefix}delayed:{queue}     sorted set of retry frames scored by due time
  {prefix}dead_letter         stream of dead-lettered frames

Every consumer reads through one consumer group, so an entry is delivered
to exactly one worker. Entries left pending longer than claim_timeout
(crashed worker) are taken over with XAUTOCLAIM on the next poll.
"""
from __future__ import annotations

import time
import uuid
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from job_queue.backend import QueueBackend
from job_queue.job import (
    BackendUnavailableError, BadFrameError, DeadLetterNotFoundError, QueueJob,
)
from models.schemas import DeadLetter

logger = structlog.get_logger()


class RedisQueueBackend(QueueBackend):

    name = "redis"
    poll_blocks = True

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "fanout:",
        consumer_group: str = "fanout-workers",
        claim_timeout: float = 300,
        block_ms: int = 2000,
        consumer_name: str = "",
        client=None,
    ):
        self._redis_url = redis_url
        self._redis = client
        self.prefix = prefix
        self.consumer_group = consumer_group
        self.claim_timeout = claim_timeout
        self.block_ms = block_ms
        self.consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self._groups: set[str] = set()

    # ── Keys ────────────────────────────────────────────────

    def stream_key(self, queue: str) -> str:
        return f"{self.prefix}{queue}"

    def delayed_key(self, queue: str) -> str:
        return f"{self.prefix}delayed:{queue}"

    @property
    def dead_key(self) -> str:
        return f"{self.prefix}dead_letter"

    # ── Connection ──────────────────────────────────────────

    @asynccontextmanager
    async def _guard(self) -> AsyncGenerator[None, None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise BackendUnavailableError(f"Redis unavailable: {e}") from e

    async def connect(self):
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        async with self._guard():
            await self._redis.ping()
        self._groups.clear()
        logger.info("redis_queue_connected", url=self._redis_url,
                    group=self.consumer_group, consumer=self.consumer_name)

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _ensure_group(self, queue: str):
        """Create the consumer group if it doesn't exist."""
        if queue in self._groups:
            return
        try:
            await self._redis.xgroup_create(self.stream_key(queue), self.consumer_group,
                                            id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups.add(queue)

    # ── Producer side ───────────────────────────────────────

    async def enqueue(self, queue: str, payload: dict[str, Any]) -> str:
        job = QueueJob(queue=queue, payload=payload)
        async with self._guard():
            await self._redis.xadd(self.stream_key(queue), {"frame": job.encode()})
        logger.debug("job_enqueued", backend=self.name, queue=queue, job_id=job.job_id)
        return job.job_id

    async def _promote_delayed(self, queue: str):
        """Move due retry frames back onto the stream."""
        key = self.delayed_key(queue)
        ready = await self._redis.zrangebyscore(key, "-inf", time.time())
        promoted = 0
        for frame in ready:
            # ZREM decides which worker owns the promotion
            if await self._redis.zrem(key, frame):
                await self._redis.xadd(self.stream_key(queue), {"frame": frame})
                promoted += 1
        if promoted:
            logger.info("delayed_jobs_promoted", queue=queue, count=promoted)

    # ── Consumer side ───────────────────────────────────────

    async def _times_delivered(self, stream: str, entry_id: str) -> int:
        """Delivery count from the group's pending list; XAUTOCLAIM bumps it on every claim."""
        pending = await self._redis.xpending_range(
            stream, self.consumer_group, min=entry_id, max=entry_id, count=1,
        )
        if not pending:
            return 1
        return max(int(pending[0].get("times_delivered", 1)), 1)

    async def poll(self, queue: str) -> Optional[QueueJob]:
        async with self._guard():
            await self._ensure_group(queue)
            await self._promote_delayed(queue)
            stream = self.stream_key(queue)

            entry = None
            deliveries = 1
            reclaimed = await self._redis.xautoclaim(
                stream, self.consumer_group, self.consumer_name,
                min_idle_time=int(self.claim_timeout * 1000), start_id="0-0", count=1,
            )
            if reclaimed and reclaimed[1]:
                entry = reclaimed[1][0]
                deliveries = await self._times_delivered(stream, entry[0])
                logger.info("redis_entry_reclaimed", queue=queue, entry_id=entry[0],
                            times_delivered=deliveries)
            else:
                messages = await self._redis.xreadgroup(
                    groupname=self.consumer_group,
                    consumername=self.consumer_name,
                    streams={stream: ">"},
                    count=1,
                    block=self.block_ms,
                )
                if messages and messages[0][1]:
                    entry = messages[0][1][0]

            if entry is None:
                return None

            entry_id, fields = entry
            try:
                job = QueueJob.decode((fields or {}).get("frame"))
            except BadFrameError as e:
                logger.error("queue_bad_frame", queue=queue, entry_id=entry_id, error=str(e))
                await self._bury_raw(queue, entry_id, fields or {}, str(e))
                return None

        # the frame counts earlier retry rounds; this entry adds one per delivery
        job.attempts += deliveries
        job.receipt = entry_id
        return job

    async def ack(self, job: QueueJob):
        stream = self.stream_key(job.queue)
        async with self._guard():
            pipe = self._redis.pipeline()
            pipe.xack(stream, self.consumer_group, job.receipt)
            pipe.xdel(stream, job.receipt)
            await pipe.execute()

    async def nack(self, job: QueueJob, retry: bool, error: str = "", delay: float = 0.0):
        stream = self.stream_key(job.queue)
        job.last_error = error
        async with self._guard():
            pipe = self._redis.pipeline()
            pipe.xack(stream, self.consumer_group, job.receipt)
            pipe.xdel(stream, job.receipt)
            if retry and delay > 0:
                pipe.zadd(self.delayed_key(job.queue), {job.encode(): time.time() + delay})
            elif retry:
                pipe.xadd(stream, {"frame": job.encode()})
            else:
                pipe.xadd(self.dead_key, {
                    "frame": job.encode(),
                    "error": error,
                    "failed_at": datetime.now(timezone.utc).isoformat(),
                })
            await pipe.execute()

        if not retry:
            logger.warning("job_dead_lettered", backend=self.name, queue=job.queue,
                           job_id=job.job_id, attempts=job.attempts)

    async def _bury_raw(self, queue: str, entry_id: str, fields: dict, error: str):
        stream = self.stream_key(queue)
        pipe = self._redis.pipeline()
        pipe.xack(stream, self.consumer_group, entry_id)
        pipe.xdel(stream, entry_id)
        pipe.xadd(self.dead_key, {
            "frame": fields.get("frame", ""),
            "queue": queue,
            "error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        })
        await pipe.execute()

    # ── Inspection ──────────────────────────────────────────

    async def queue_length(self, queue: str) -> int:
        async with self._guard():
            waiting = await self._redis.xlen(self.stream_key(queue))
            delayed = await self._redis.zcard(self.delayed_key(queue))
        return waiting + delayed

    @staticmethod
    def _to_dead_letter(entry_id: str, fields: dict) -> DeadLetter:
        try:
            job = QueueJob.decode(fields.get("frame"))
        except BadFrameError:
            job = None
        return DeadLetter(
            id=entry_id,
            queue=job.queue if job else fields.get("queue", ""),
            payload=job.payload if job else {},
            error=fields.get("error", ""),
            attempts=job.attempts if job else 0,
            enqueued_at=job.enqueued_at if job else None,
            failed_at=fields.get("failed_at") or datetime.now(timezone.utc),
        )

    async def dead_letters(self, queue: str = None, limit: int = 50) -> list[DeadLetter]:
        async with self._guard():
            # Newest first; over-read when filtering so the limit still holds
            entries = await self._redis.xrevrange(
                self.dead_key, count=limit if queue is None else limit * 10,
            )
        letters = [self._to_dead_letter(entry_id, fields) for entry_id, fields in entries]
        if queue is not None:
            letters = [d for d in letters if d.queue == queue]
        return letters[:limit]

    async def replay_dead_letter(self, dead_letter_id: str) -> str:
        async with self._guard():
            entries = await self._redis.xrange(self.dead_key, min=dead_letter_id,
                                               max=dead_letter_id, count=1)
            if not entries:
                raise DeadLetterNotFoundError(dead_letter_id)
            dead = self._to_dead_letter(*entries[0])
            if not dead.queue:
                raise BadFrameError(f"Dead letter '{dead_letter_id}' has no decodable frame")
            job = QueueJob(queue=dead.queue, payload=dead.payload)
            pipe = self._redis.pipeline()
            pipe.xadd(self.stream_key(job.queue), {"frame": job.encode()})
            pipe.xdel(self.dead_key, dead_letter_id)
            await pipe.execute()
        logger.info("dead_letter_replayed", id=dead_letter_id, queue=job.queue, job_id=job.job_id)
        return job.job_id
