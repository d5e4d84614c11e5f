"""
StompQueueBackend — jobs carried by a STOMP 1.2 broker (ActiveMQ, RabbitMQ, Artemis).

Destinations are {basename}{queue}, e.g. /queue/fanout/activitypub.
Frame body is a JSON envelope:

    {"site": ..., "handler": queue, "job_id": ..., "payload": {...},
     "attempts": n, "created": iso, "last_error": ...}

Subscriptions use ack mode client-individual with a prefetch of one, so an
unacknowledged frame goes back to the broker (redelivered=true) if this
worker disconnects. stomp.py delivers frames on its receiver thread; the
listener hands them to the event loop through a per-queue asyncio.Queue.

Retry re-sends the envelope (with AMQ_SCHEDULED_DELAY when the broker
supports scheduling) and then acks the original. Dead letters are sent to
{basename}dead_letter and, when dead_letter_dir is set, dumped there as
JSON files; those files back dead_letters() and replay_dead_letter().
"""
from __future__ import annotations

import asyncio
import json
import os
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote, urlparse

import stomp
from stomp.exception import StompException

from job_queue.backend import QueueBackend
from job_queue.job import (
    BackendUnavailableError, DeadLetterNotFoundError, QueueJob,
)
from models.schemas import DeadLetter

logger = structlog.get_logger()


def parse_server(server: str) -> tuple[str, int]:
    """'tcp://broker:61613' or 'broker:61613' → ('broker', 61613)."""
    if "://" not in server:
        server = f"tcp://{server}"
    parsed = urlparse(server)
    return parsed.hostname or "localhost", parsed.port or 61613


class _FrameListener(stomp.ConnectionListener):
    """Runs on the stomp.py receiver thread; never touches asyncio state directly."""

    def __init__(self, backend: StompQueueBackend, loop: asyncio.AbstractEventLoop):
        self.backend = backend
        self.loop = loop

    def on_message(self, frame):
        self.loop.call_soon_threadsafe(self.backend._deliver, frame)

    def on_error(self, frame):
        logger.error("stomp_error_frame", message=frame.headers.get("message", ""),
                     body=(frame.body or "")[:200])

    def on_disconnected(self):
        self.loop.call_soon_threadsafe(self.backend._mark_disconnected)


class StompQueueBackend(QueueBackend):

    name = "stomp"
    poll_blocks = True

    def __init__(
        self,
        servers: list[str],
        username: str = "",
        password: str = "",
        vhost: str = "",
        basename: str = "/queue/fanout/",
        persistent: bool = True,
        site: str = "default",
        dead_letter_dir: str = "",
        max_redeliveries: int = 10,
        block_seconds: float = 2.0,
        connection_factory=None,
    ):
        self.servers = servers
        self.username = username
        self.password = password
        self.vhost = vhost
        self.basename = basename
        self.persistent = persistent
        self.site = site
        self.dead_letter_dir = dead_letter_dir
        self.max_redeliveries = max_redeliveries
        self.block_seconds = block_seconds
        self._connection_factory = connection_factory or self._default_connection
        self._conn = None
        self._connected = False
        self._inbox: dict[str, asyncio.Queue] = {}
        self._subscribed: set[str] = set()
        # message-id → times seen with redelivered=true
        self._redeliveries: dict[str, int] = {}

    def _default_connection(self):
        return stomp.Connection12(
            host_and_ports=[parse_server(s) for s in self.servers],
            vhost=self.vhost or None,
            heartbeats=(10000, 10000),
        )

    def destination(self, queue: str) -> str:
        return f"{self.basename}{queue}"

    # ── Connection ──────────────────────────────────────────

    async def connect(self):
        loop = asyncio.get_running_loop()
        self._conn = self._connection_factory()
        self._conn.set_listener("fanout", _FrameListener(self, loop))
        try:
            await asyncio.to_thread(self._conn.connect, self.username, self.password, wait=True)
        except StompException as e:
            raise BackendUnavailableError(f"STOMP broker unavailable: {e}") from e
        self._connected = True
        # Broker re-delivers whatever we had not acked; drop the local copies
        self._subscribed.clear()
        self._inbox.clear()
        logger.info("stomp_queue_connected", servers=self.servers, basename=self.basename)

    async def close(self):
        if self._conn is not None and self._connected:
            await asyncio.to_thread(self._conn.disconnect)
        self._connected = False
        self._conn = None

    def _mark_disconnected(self):
        if self._connected:
            logger.warning("stomp_disconnected", servers=self.servers)
        self._connected = False

    def _require_connection(self):
        if self._conn is None or not self._connected:
            raise BackendUnavailableError("STOMP connection lost")

    async def _call(self, method, *args, **kwargs):
        self._require_connection()
        try:
            return await asyncio.to_thread(method, *args, **kwargs)
        except StompException as e:
            self._connected = False
            raise BackendUnavailableError(f"STOMP call failed: {e}") from e

    def _deliver(self, frame):
        queue = frame.headers.get("subscription", "")
        self._inbox.setdefault(queue, asyncio.Queue()).put_nowait(frame)

    async def _ensure_subscribed(self, queue: str):
        if queue in self._subscribed:
            return
        self._inbox.setdefault(queue, asyncio.Queue())
        await self._call(
            self._conn.subscribe, self.destination(queue), id=queue,
            ack="client-individual", headers={"activemq.prefetchSize": "1", "prefetch-count": "1"},
        )
        self._subscribed.add(queue)
        logger.info("stomp_subscribed", queue=queue, destination=self.destination(queue))

    # ── Producer side ───────────────────────────────────────

    def _envelope(self, job: QueueJob) -> str:
        return json.dumps({
            "site": self.site,
            "handler": job.queue,
            "job_id": job.job_id,
            "payload": job.payload,
            "attempts": job.attempts,
            "created": job.enqueued_at,
            "last_error": job.last_error,
        })

    def _send_headers(self, delay: float = 0.0) -> dict[str, str]:
        headers = {"created": datetime.now(timezone.utc).isoformat()}
        if self.persistent:
            headers["persistent"] = "true"
        if delay > 0:
            headers["AMQ_SCHEDULED_DELAY"] = str(int(delay * 1000))
        return headers

    async def _send(self, job: QueueJob, delay: float = 0.0):
        await self._call(self._conn.send, self.destination(job.queue), self._envelope(job),
                         content_type="application/json", headers=self._send_headers(delay))

    async def enqueue(self, queue: str, payload: dict[str, Any]) -> str:
        job = QueueJob(queue=queue, payload=payload)
        await self._send(job)
        logger.debug("job_enqueued", backend=self.name, queue=queue, job_id=job.job_id)
        return job.job_id

    # ── Consumer side ───────────────────────────────────────

    async def poll(self, queue: str) -> Optional[QueueJob]:
        self._require_connection()
        await self._ensure_subscribed(queue)
        try:
            frame = await asyncio.wait_for(self._inbox[queue].get(), timeout=self.block_seconds)
        except asyncio.TimeoutError:
            return None

        ack_id = frame.headers.get("ack") or frame.headers.get("message-id")
        msg_id = frame.headers.get("message-id", ack_id)
        try:
            message = json.loads(frame.body)
            job = QueueJob(
                queue=message["handler"],
                payload=message["payload"],
                job_id=message.get("job_id", ""),
                enqueued_at=message.get("created", ""),
                attempts=int(message.get("attempts", 0)),
                last_error=message.get("last_error", ""),
            )
        except (TypeError, ValueError, KeyError) as e:
            logger.error("stomp_bad_frame", queue=queue, error=str(e),
                         body_length=len(frame.body or ""))
            await self._call(self._conn.ack, ack_id)
            return None
        job.receipt = (ack_id, msg_id)

        if message.get("site", self.site) != self.site:
            logger.warning("stomp_foreign_site", queue=queue, site=message.get("site"),
                           job_id=job.job_id)

        if frame.headers.get("redelivered") == "true":
            count = self._redeliveries.get(msg_id, 0) + 1
            self._redeliveries[msg_id] = count
            if count > self.max_redeliveries:
                logger.error("stomp_redelivery_exhausted", queue=queue, job_id=job.job_id,
                             redeliveries=count)
                await self.nack(job, retry=False, error=f"Gave up after {count} redeliveries")
                return None
            logger.info("stomp_redelivered", queue=queue, job_id=job.job_id, redeliveries=count)

        job.attempts += 1
        return job

    def _settle(self, job: QueueJob) -> str:
        ack_id, msg_id = job.receipt
        self._redeliveries.pop(msg_id, None)
        return ack_id

    async def ack(self, job: QueueJob):
        await self._call(self._conn.ack, self._settle(job))

    async def nack(self, job: QueueJob, retry: bool, error: str = "", delay: float = 0.0):
        job.last_error = error
        # Send before ack: a crash in between duplicates the job instead of losing it
        if retry:
            await self._send(job, delay)
        else:
            await self._call(
                self._conn.send, f"{self.basename}dead_letter", self._envelope(job),
                content_type="application/json",
                headers={**self._send_headers(), "error": error[:500]},
            )
            self._dump_dead_letter(job, error)
            logger.warning("job_dead_lettered", backend=self.name, queue=job.queue,
                           job_id=job.job_id, attempts=job.attempts)
        await self._call(self._conn.ack, self._settle(job))

    # ── Dead letter files ───────────────────────────────────

    def _dead_letter_path(self, dead_letter_id: str) -> str:
        return os.path.join(self.dead_letter_dir, f"{quote(dead_letter_id, safe='')}.json")

    def _dump_dead_letter(self, job: QueueJob, error: str):
        if not self.dead_letter_dir:
            return
        os.makedirs(self.dead_letter_dir, exist_ok=True)
        dead_id = f"{self.site}-{job.queue}-{job.job_id}"
        dead = DeadLetter(
            id=dead_id, queue=job.queue, payload=job.payload, error=error,
            attempts=job.attempts, enqueued_at=job.enqueued_at or None,
        )
        path = self._dead_letter_path(dead_id)
        with open(path, "w") as f:
            f.write(dead.model_dump_json())
        logger.error("stomp_dead_letter_dumped", path=path, job_id=job.job_id)

    async def queue_length(self, queue: str) -> int:
        # Broker-side depth is not exposed over STOMP; report what is buffered here
        inbox = self._inbox.get(queue)
        return inbox.qsize() if inbox else 0

    async def dead_letters(self, queue: str = None, limit: int = 50) -> list[DeadLetter]:
        if not self.dead_letter_dir or not os.path.isdir(self.dead_letter_dir):
            return []
        letters = []
        for name in os.listdir(self.dead_letter_dir):
            if not name.endswith(".json"):
                continue
            with open(os.path.join(self.dead_letter_dir, name)) as f:
                dead = DeadLetter.model_validate_json(f.read())
            if queue is None or dead.queue == queue:
                letters.append(dead)
        letters.sort(key=lambda d: d.failed_at, reverse=True)
        return letters[:limit]

    async def replay_dead_letter(self, dead_letter_id: str) -> str:
        path = self._dead_letter_path(dead_letter_id) if self.dead_letter_dir else ""
        if not path or not os.path.exists(path):
            raise DeadLetterNotFoundError(dead_letter_id)
        with open(path) as f:
            dead = DeadLetter.model_validate_json(f.read())
        job_id = await self.enqueue(dead.queue, dead.payload)
        os.remove(path)
        logger.info("dead_letter_replayed", id=dead_letter_id, queue=dead.queue, job_id=job_id)
        return job_id
