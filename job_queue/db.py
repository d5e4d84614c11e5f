"""
DatabaseQueueBackend — queue items stored in the relational database.

Every job is a row in queue_items. Claiming is a guarded update:

    UPDATE queue_items
       SET claimed_at = :now, claim_token = :token, attempts = attempts + 1
     WHERE id = :candidate
       AND (claimed_at IS NULL OR claimed_at < :now - claim_timeout)

Only one poller can win that update for a given row, on any dialect, so a
job is never handed to two workers at once. Claims older than
claim_timeout are treated as abandoned (crashed worker) and become
claimable again. ack/nack carry the claim token; a worker whose claim was
taken over cannot ack or nack someone else's attempt.

On PostgreSQL the candidate select also uses FOR UPDATE SKIP LOCKED so
concurrent pollers spread over different rows instead of racing for one.
"""
from __future__ import annotations

import uuid
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import DeadLetterRow, QueueItemRow
from job_queue.backend import QueueBackend
from job_queue.job import (
    BackendUnavailableError, BadFrameError, DeadLetterNotFoundError, QueueJob,
)
from models.schemas import DeadLetter

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DatabaseQueueBackend(QueueBackend):

    name = "db"

    # Candidates tried per poll before giving up on a contended queue
    CLAIM_ATTEMPTS = 5

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        claim_timeout: float = 300,
        skip_locked: bool = False,
    ):
        self._session_factory = session_factory
        self.claim_timeout = claim_timeout
        self.skip_locked = skip_locked

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session:
                yield session
        except DBAPIError as e:
            # Integrity and programming errors are bugs, not outages
            if not (isinstance(e, OperationalError) or e.connection_invalidated):
                raise
            raise BackendUnavailableError(f"Database unavailable: {e}") from e

    async def connect(self):
        async with self._session() as session:
            await session.execute(select(1))
        logger.info("db_queue_connected", claim_timeout=self.claim_timeout,
                    skip_locked=self.skip_locked)

    # ── Producer side ───────────────────────────────────────

    async def enqueue(self, queue: str, payload: dict[str, Any]) -> str:
        job = QueueJob(queue=queue, payload=payload)
        async with self._session() as session:
            session.add(QueueItemRow(
                job_id=job.job_id,
                transport=queue,
                frame=job.to_dict(),
                created_at=datetime.fromisoformat(job.enqueued_at),
                available_at=_utcnow(),
            ))
            await session.commit()
        logger.debug("job_enqueued", backend=self.name, queue=queue, job_id=job.job_id)
        return job.job_id

    # ── Consumer side ───────────────────────────────────────

    async def poll(self, queue: str) -> Optional[QueueJob]:
        for _ in range(self.CLAIM_ATTEMPTS):
            now = _utcnow()
            stale = now - timedelta(seconds=self.claim_timeout)
            claimable = or_(QueueItemRow.claimed_at.is_(None), QueueItemRow.claimed_at < stale)

            async with self._session() as session:
                candidate = (
                    select(QueueItemRow.id)
                    .where(QueueItemRow.transport == queue,
                           QueueItemRow.available_at <= now,
                           claimable)
                    .order_by(QueueItemRow.id)
                    .limit(1)
                )
                if self.skip_locked:
                    candidate = candidate.with_for_update(skip_locked=True)
                item_id = (await session.execute(candidate)).scalar_one_or_none()
                if item_id is None:
                    await session.rollback()
                    return None

                token = uuid.uuid4().hex
                claimed = await session.execute(
                    update(QueueItemRow)
                    .where(QueueItemRow.id == item_id, claimable)
                    .values(claimed_at=now, claim_token=token,
                            attempts=QueueItemRow.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    # Another poller won this row
                    await session.rollback()
                    logger.debug("queue_claim_lost", queue=queue, item_id=item_id)
                    continue

                row = (await session.execute(
                    select(QueueItemRow).where(QueueItemRow.id == item_id)
                )).scalar_one()
                await session.commit()

            try:
                job = self._row_to_job(row)
            except BadFrameError as e:
                logger.error("queue_bad_frame", queue=queue, item_id=item_id, error=str(e))
                await self._bury(item_id, token, str(e))
                continue
            job.receipt = (item_id, token)
            logger.debug("job_claimed", backend=self.name, queue=queue,
                         job_id=job.job_id, attempts=job.attempts)
            return job

        logger.info("queue_claim_contended", queue=queue, attempts=self.CLAIM_ATTEMPTS)
        return None

    @staticmethod
    def _row_to_job(row: QueueItemRow) -> QueueJob:
        frame = row.frame
        if not isinstance(frame, dict) or not isinstance(frame.get("payload"), dict):
            raise BadFrameError("Queue item frame is missing payload", row.transport)
        job = QueueJob.from_dict({**frame, "queue": row.transport})
        job.attempts = row.attempts
        job.last_error = row.last_error or ""
        return job

    async def ack(self, job: QueueJob):
        item_id, token = job.receipt
        async with self._session() as session:
            result = await session.execute(
                delete(QueueItemRow)
                .where(QueueItemRow.id == item_id, QueueItemRow.claim_token == token)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning("queue_ack_claim_lost", queue=job.queue, job_id=job.job_id)

    async def nack(self, job: QueueJob, retry: bool, error: str = "", delay: float = 0.0):
        item_id, token = job.receipt
        if not retry:
            await self._bury(item_id, token, error)
            logger.warning("job_dead_lettered", backend=self.name, queue=job.queue,
                           job_id=job.job_id, attempts=job.attempts)
            return

        async with self._session() as session:
            result = await session.execute(
                update(QueueItemRow)
                .where(QueueItemRow.id == item_id, QueueItemRow.claim_token == token)
                .values(claimed_at=None, claim_token=None, last_error=error,
                        available_at=_utcnow() + timedelta(seconds=delay))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning("queue_nack_claim_lost", queue=job.queue, job_id=job.job_id)

    async def _bury(self, item_id: int, token: str, error: str):
        """Move a claimed row to dead_letters in one transaction."""
        async with self._session() as session:
            row = (await session.execute(
                select(QueueItemRow)
                .where(QueueItemRow.id == item_id, QueueItemRow.claim_token == token)
            )).scalar_one_or_none()
            if row is None:
                await session.rollback()
                logger.warning("queue_bury_claim_lost", item_id=item_id)
                return
            frame = row.frame if isinstance(row.frame, dict) else {"raw": row.frame}
            await session.merge(DeadLetterRow(
                id=row.job_id,
                transport=row.transport,
                frame=frame,
                error=error,
                attempts=row.attempts,
                enqueued_at=row.created_at,
                failed_at=_utcnow(),
            ))
            await session.delete(row)
            await session.commit()

    # ── Inspection ──────────────────────────────────────────

    async def queue_length(self, queue: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count(QueueItemRow.id))
                .where(QueueItemRow.transport == queue, QueueItemRow.claimed_at.is_(None))
            )
            return result.scalar_one()

    async def dead_letters(self, queue: str = None, limit: int = 50) -> list[DeadLetter]:
        stmt = select(DeadLetterRow).order_by(DeadLetterRow.failed_at.desc()).limit(limit)
        if queue:
            stmt = stmt.where(DeadLetterRow.transport == queue)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            DeadLetter(
                id=r.id, queue=r.transport,
                payload=(r.frame or {}).get("payload") or {},
                error=r.error or "", attempts=r.attempts,
                enqueued_at=r.enqueued_at, failed_at=r.failed_at,
            )
            for r in rows
        ]

    async def replay_dead_letter(self, dead_letter_id: str) -> str:
        async with self._session() as session:
            dead = await session.get(DeadLetterRow, dead_letter_id)
            if dead is None:
                raise DeadLetterNotFoundError(dead_letter_id)
            job = QueueJob(queue=dead.transport, payload=(dead.frame or {}).get("payload") or {})
            session.add(QueueItemRow(
                job_id=job.job_id,
                transport=job.queue,
                frame=job.to_dict(),
                created_at=datetime.fromisoformat(job.enqueued_at),
                available_at=_utcnow(),
            ))
            await session.delete(dead)
            await session.commit()
        logger.info("dead_letter_replayed", id=dead_letter_id, queue=job.queue, job_id=job.job_id)
        return job.job_id
