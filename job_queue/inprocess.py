"""
InProcessQueueBackend — does everything immediately.

enqueue() resolves the handler and runs it before returning, so there is
nothing to poll, ack or nack. Used where no queue infrastructure exists
and latency matters more than isolation. A failed delivery surfaces to the
caller as DeliveryFailedError; it is also kept as a dead letter so operators
can see and replay it.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from job_queue.backend import QueueBackend
from job_queue.handlers import HandlerRegistry, run_handler
from job_queue.job import DeadLetterNotFoundError, DeliveryFailedError, QueueJob
from models.schemas import DeadLetter, DeliveryOutcome

logger = structlog.get_logger()


class InProcessQueueBackend(QueueBackend):

    name = "inprocess"

    def __init__(self, registry: HandlerRegistry):
        self.registry = registry
        self._dead: dict[str, DeadLetter] = {}

    async def enqueue(self, queue: str, payload: dict[str, Any]) -> str:
        handler = self.registry.resolve(queue)
        job = QueueJob(queue=queue, payload=payload, attempts=1)
        result = await run_handler(handler, payload)

        if result.ok:
            logger.debug("inprocess_job_handled", queue=queue, job_id=job.job_id)
            return job.job_id

        self._dead[job.job_id] = DeadLetter(
            id=job.job_id, queue=queue, payload=payload, error=result.error,
            attempts=1, enqueued_at=datetime.fromisoformat(job.enqueued_at),
        )
        logger.warning("inprocess_job_failed", queue=queue, job_id=job.job_id,
                       outcome=result.outcome.value, error=result.error)
        raise DeliveryFailedError(queue, result.error,
                                  retryable=result.outcome == DeliveryOutcome.RETRYABLE)

    async def poll(self, queue: str) -> Optional[QueueJob]:
        return None

    async def ack(self, job: QueueJob):
        pass  # no-op: handled inside enqueue

    async def nack(self, job: QueueJob, retry: bool, error: str = "", delay: float = 0.0):
        pass  # no-op: handled inside enqueue

    async def queue_length(self, queue: str) -> int:
        return 0

    async def dead_letters(self, queue: str = None, limit: int = 50) -> list[DeadLetter]:
        letters = [d for d in self._dead.values() if queue is None or d.queue == queue]
        letters.sort(key=lambda d: d.failed_at, reverse=True)
        return letters[:limit]

    async def replay_dead_letter(self, dead_letter_id: str) -> str:
        dead = self._dead.pop(dead_letter_id, None)
        if dead is None:
            raise DeadLetterNotFoundError(dead_letter_id)
        logger.info("dead_letter_replayed", id=dead_letter_id, queue=dead.queue)
        # a failing replay is dead-lettered again under the new job id
        return await self.enqueue(dead.queue, dead.payload)
