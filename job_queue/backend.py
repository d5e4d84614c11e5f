"""
Queue Backend — abstract transport interface.

Implementations:
  - InProcessQueueBackend  (runs the handler inside enqueue, no infrastructure)
  - MemoryQueueBackend     (asyncio-free deques, single process, dev/test)
  - DatabaseQueueBackend   (queue_items table, atomic claim, dead_letters table)
  - RedisQueueBackend      (Redis Streams + consumer group)
  - StompQueueBackend      (STOMP broker, client-individual acks)

Every mutation of stored jobs goes through enqueue / poll / ack / nack.
No other component reads or writes job rows or broker messages directly.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from job_queue.job import QueueJob
from models.schemas import DeadLetter


class QueueBackend(ABC):
    """Abstract queue backend interface."""

    name: str = "abstract"

    # True when poll() waits on the transport itself, so the manager
    # does not need to sleep between empty passes.
    poll_blocks: bool = False

    async def connect(self):
        """Establish connection to the transport."""

    async def close(self):
        """Gracefully shut down."""

    @abstractmethod
    async def enqueue(self, queue: str, payload: dict[str, Any]) -> str:
        """Store a new job and return its id."""
        ...

    @abstractmethod
    async def poll(self, queue: str) -> Optional[QueueJob]:
        """Claim the next job of a queue, or None when nothing is ready."""
        ...

    @abstractmethod
    async def ack(self, job: QueueJob):
        """Acknowledge successful processing; the job is gone afterwards."""
        ...

    @abstractmethod
    async def nack(self, job: QueueJob, retry: bool, error: str = "", delay: float = 0.0):
        """
        Negative-acknowledge. retry=True makes the job visible again after
        `delay` seconds; retry=False moves it to the dead letters.
        """
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Number of jobs waiting on a queue."""
        ...

    @abstractmethod
    async def dead_letters(self, queue: str = None, limit: int = 50) -> list[DeadLetter]:
        """Dead-lettered jobs, newest first."""
        ...

    @abstractmethod
    async def replay_dead_letter(self, dead_letter_id: str) -> str:
        """Put a dead letter back on its queue with a fresh attempt count."""
        ...
