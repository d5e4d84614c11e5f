"""
Queue Manager — the cooperative polling loop on top of a QueueBackend.

One manager serves every registered queue. Each pass polls each queue
once, runs the handler for whatever was claimed, and settles the job:

    SUCCESS                         → ack
    RETRYABLE, attempts < max       → nack(retry=True) with exponential backoff
    RETRYABLE, attempts >= max      → nack(retry=False)  (dead letter)
    TERMINAL                        → nack(retry=False), payload logged at error

A job claimed with attempts already past max (its earlier workers crashed
or hung and the claim was recovered) is dead-lettered without running.

A pass that claimed nothing sleeps poll_interval (unless the backend
already blocked inside poll). Losing the transport never ends the loop:
the manager logs, waits at least RECONNECT_MIN_WAIT seconds and reconnects.

Usage:
    manager = QueueManager(backend, registry, max_attempts=10)
    await manager.start()
    await manager.run_loop(["notification", "activitypub"])   # until stop()
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Iterable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential

from job_queue.backend import QueueBackend
from job_queue.handlers import HandlerRegistry, QueueHandler, run_handler
from job_queue.job import BackendUnavailableError, QueueJob, UnknownQueueError
from models.schemas import DeadLetter, DeliveryOutcome, DeliveryResult

logger = structlog.get_logger()


class QueueManager:

    RECONNECT_MIN_WAIT = 10.0
    RECONNECT_MAX_WAIT = 300.0

    def __init__(
        self,
        backend: QueueBackend,
        registry: HandlerRegistry,
        max_attempts: int = 10,
        poll_interval: float = 10.0,
        backoff_base: float = 30.0,
        backoff_max: float = 3600.0,
    ):
        self.backend = backend
        self.registry = registry
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._stopping = asyncio.Event()
        self._stats: dict[str, dict[str, int]] = {}

    # ── Setup ───────────────────────────────────────────────

    def register_handler(self, queue: str, handler: QueueHandler):
        self.registry.register(queue, handler)

    def validate(self, queues: Iterable[str] = None):
        self.registry.validate(queues if queues is not None else self.registry.queues)

    async def start(self):
        await self.backend.connect()

    async def close(self):
        self.stop()
        await self.backend.close()

    def stop(self):
        self._stopping.set()

    # ── Producer side ───────────────────────────────────────

    async def enqueue(self, queue: str, payload: dict[str, Any]) -> str:
        if queue not in self.registry:
            raise UnknownQueueError(queue)
        return await self.backend.enqueue(queue, payload)

    # ── Consumer side ───────────────────────────────────────

    def backoff_for(self, job: QueueJob, result: DeliveryResult) -> float:
        """Seconds before the next attempt. Retry-After from the remote side wins."""
        if result.retry_after is not None:
            return min(max(result.retry_after, 0.0), self.backoff_max)
        exponent = max(job.attempts - 1, 0)
        return min(self.backoff_base * (2 ** exponent), self.backoff_max)

    def _count(self, queue: str, key: str):
        stats = self._stats.setdefault(
            queue, {"handled": 0, "retried": 0, "dead_lettered": 0, "errors": 0},
        )
        stats[key] += 1

    async def process(self, job: QueueJob) -> DeliveryResult:
        """Run the handler for one claimed job and settle it on the backend."""
        if job.attempts > self.max_attempts:
            # claimed again after the worker holding it was lost
            error = "exceeded max attempts (worker lost)"
            await self.backend.nack(job, retry=False, error=error)
            self._count(job.queue, "dead_lettered")
            logger.error("job_attempts_exceeded", queue=job.queue, job=job.logrep(),
                         attempts=job.attempts, max_attempts=self.max_attempts)
            return DeliveryResult.terminal(error)

        try:
            handler = self.registry.resolve(job.queue)
        except UnknownQueueError as e:
            logger.error("job_queue_unregistered", queue=job.queue, job_id=job.job_id)
            result = DeliveryResult.terminal(str(e))
        else:
            result = await run_handler(handler, job.payload)

        if result.outcome == DeliveryOutcome.SUCCESS:
            await self.backend.ack(job)
            self._count(job.queue, "handled")
            logger.info("job_handled", queue=job.queue, job=job.logrep(), attempts=job.attempts)

        elif result.outcome == DeliveryOutcome.RETRYABLE and job.attempts < self.max_attempts:
            delay = self.backoff_for(job, result)
            await self.backend.nack(job, retry=True, error=result.error, delay=delay)
            self._count(job.queue, "retried")
            logger.warning("job_retry_scheduled", queue=job.queue, job=job.logrep(),
                           attempts=job.attempts, delay=delay, error=result.error)

        elif result.outcome == DeliveryOutcome.RETRYABLE:
            await self.backend.nack(job, retry=False, error=result.error)
            self._count(job.queue, "dead_lettered")
            logger.error("job_retries_exhausted", queue=job.queue, job=job.logrep(),
                         attempts=job.attempts, error=result.error)

        else:
            await self.backend.nack(job, retry=False, error=result.error)
            self._count(job.queue, "dead_lettered")
            logger.error("job_failed_terminal", queue=job.queue, job_id=job.job_id,
                         attempts=job.attempts, error=result.error, payload=job.payload)

        return result

    async def run_once(self, queues: Iterable[str] = None) -> int:
        """Poll each queue once. Returns how many jobs were processed."""
        processed = 0
        for queue in (queues if queues is not None else self.registry.queues):
            job = await self.backend.poll(queue)
            if job is None:
                continue
            await self.process(job)
            processed += 1
        return processed

    async def _sleep(self, seconds: float):
        """Sleep, waking early if stop() is called."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _reconnect(self):
        def _log_attempt(retry_state):
            logger.warning("queue_backend_reconnect_failed", backend=self.backend.name,
                           attempt=retry_state.attempt_number,
                           error=str(retry_state.outcome.exception()))

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(BackendUnavailableError),
            wait=wait_exponential(multiplier=1, min=self.RECONNECT_MIN_WAIT,
                                  max=self.RECONNECT_MAX_WAIT),
            before_sleep=_log_attempt,
            reraise=True,
        ):
            with attempt:
                await self.backend.connect()
        logger.info("queue_backend_reconnected", backend=self.backend.name)

    async def run_loop(self, queues: Iterable[str] = None):
        """Poll until stop() is called."""
        queues = list(queues) if queues is not None else self.registry.queues
        self.validate(queues)
        self._stopping.clear()
        logger.info("queue_manager_started", backend=self.backend.name, queues=queues,
                    max_attempts=self.max_attempts, poll_interval=self.poll_interval)

        while not self._stopping.is_set():
            try:
                processed = await self.run_once(queues)
            except BackendUnavailableError as e:
                for queue in queues:
                    self._count(queue, "errors")
                logger.error("queue_backend_unavailable", backend=self.backend.name, error=str(e))
                await self._sleep(max(self.poll_interval, self.RECONNECT_MIN_WAIT))
                if not self._stopping.is_set():
                    await self._reconnect()
                continue
            except Exception as e:
                logger.error("queue_loop_error", backend=self.backend.name, error=str(e),
                             exc_info=True)
                await self._sleep(self.poll_interval)
                continue

            if processed == 0 and not self.backend.poll_blocks:
                await self._sleep(self.poll_interval)

        logger.info("queue_manager_stopped", backend=self.backend.name, stats=self._stats)

    # ── Operator views ──────────────────────────────────────

    def stats(self) -> dict[str, dict[str, int]]:
        return {q: dict(s) for q, s in self._stats.items()}

    async def queue_report(self) -> list[dict[str, Any]]:
        report = []
        for queue in self.registry.queues:
            counters = self._stats.get(
                queue, {"handled": 0, "retried": 0, "dead_lettered": 0, "errors": 0},
            )
            report.append({
                "queue": queue,
                "backend": self.backend.name,
                "waiting": await self.backend.queue_length(queue),
                **counters,
            })
        return report

    async def dead_letters(self, queue: Optional[str] = None, limit: int = 50) -> list[DeadLetter]:
        return await self.backend.dead_letters(queue, limit)

    async def replay(self, dead_letter_id: str) -> str:
        return await self.backend.replay_dead_letter(dead_letter_id)
