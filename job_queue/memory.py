"""
MemoryQueueBackend — development/test queue held in process memory.

Single-process only: no persistence, no cross-process claims. Behaves like
the persistent backends otherwise (claim on poll, delayed retries, dead
letters), which makes it the default for local runs and unit tests.
"""
from __future__ import annotations

import copy
import time
import structlog
from collections import deque
from datetime import datetime
from typing import Any, Optional

from job_queue.backend import QueueBackend
from job_queue.job import DeadLetterNotFoundError, QueueJob
from models.schemas import DeadLetter

logger = structlog.get_logger()


class MemoryQueueBackend(QueueBackend):

    name = "memory"

    def __init__(self):
        self._queues: dict[str, deque[QueueJob]] = {}
        self._delayed: list[tuple[float, QueueJob]] = []  # (monotonic due time, job)
        self._in_flight: dict[str, QueueJob] = {}
        self._dead: dict[str, DeadLetter] = {}

    def _get_queue(self, name: str) -> deque[QueueJob]:
        if name not in self._queues:
            self._queues[name] = deque()
        return self._queues[name]

    def _promote_delayed(self):
        now = time.monotonic()
        ready = [(ts, job) for ts, job in self._delayed if ts <= now]
        if not ready:
            return
        self._delayed = [(ts, job) for ts, job in self._delayed if ts > now]
        for _, job in ready:
            self._get_queue(job.queue).append(job)

    async def enqueue(self, queue: str, payload: dict[str, Any]) -> str:
        job = QueueJob(queue=queue, payload=copy.deepcopy(payload))
        self._get_queue(queue).append(job)
        logger.debug("job_enqueued", backend=self.name, queue=queue, job_id=job.job_id)
        return job.job_id

    async def poll(self, queue: str) -> Optional[QueueJob]:
        self._promote_delayed()
        q = self._get_queue(queue)
        if not q:
            return None
        job = q.popleft()
        job.attempts += 1
        self._in_flight[job.job_id] = job
        return job

    async def ack(self, job: QueueJob):
        self._in_flight.pop(job.job_id, None)

    async def nack(self, job: QueueJob, retry: bool, error: str = "", delay: float = 0.0):
        self._in_flight.pop(job.job_id, None)
        job.last_error = error
        if retry:
            if delay > 0:
                self._delayed.append((time.monotonic() + delay, job))
            else:
                self._get_queue(job.queue).append(job)
            return

        self._dead[job.job_id] = DeadLetter(
            id=job.job_id, queue=job.queue, payload=job.payload, error=error,
            attempts=job.attempts, enqueued_at=datetime.fromisoformat(job.enqueued_at),
        )
        logger.warning("job_dead_lettered", backend=self.name, queue=job.queue,
                       job_id=job.job_id, attempts=job.attempts)

    async def queue_length(self, queue: str) -> int:
        waiting = len(self._get_queue(queue))
        return waiting + sum(1 for _, job in self._delayed if job.queue == queue)

    async def dead_letters(self, queue: str = None, limit: int = 50) -> list[DeadLetter]:
        letters = [d for d in self._dead.values() if queue is None or d.queue == queue]
        letters.sort(key=lambda d: d.failed_at, reverse=True)
        return letters[:limit]

    async def replay_dead_letter(self, dead_letter_id: str) -> str:
        dead = self._dead.pop(dead_letter_id, None)
        if dead is None:
            raise DeadLetterNotFoundError(dead_letter_id)
        job_id = await self.enqueue(dead.queue, dead.payload)
        logger.info("dead_letter_replayed", id=dead_letter_id, queue=dead.queue, job_id=job_id)
        return job_id
