"""
Tests for the queue backends and the backend factory.

Covers:
- MemoryQueueBackend: FIFO claim, delayed retry, dead letters, replay
- InProcessQueueBackend: handler runs inside enqueue, failures dead-lettered
- DatabaseQueueBackend on a temp SQLite file: atomic claim, concurrent
  pollers, stale-claim takeover, stale ack, dead letters, replay
- RedisQueueBackend with a mocked client: stream/delayed/dead key usage,
  BUSYGROUP tolerance, connection errors → BackendUnavailableError
- StompQueueBackend with a fake connection: send headers, redelivery
  limit, dead letter files
- create_queue_backend configuration checks
"""
import asyncio
import json
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from job_queue.job import (
    BackendUnavailableError, ConfigurationError, DeadLetterNotFoundError,
    DeliveryFailedError, QueueJob,
)
from models.schemas import DeliveryResult


# ══════════════════════════════════════════════════════════════
#  Memory
# ══════════════════════════════════════════════════════════════

class TestMemoryQueueBackend:

    @pytest.fixture
    def backend(self):
        from job_queue.memory import MemoryQueueBackend
        return MemoryQueueBackend()

    @pytest.mark.asyncio
    async def test_poll_is_fifo_and_counts_attempts(self, backend):
        first = await backend.enqueue("notification", {"n": 1})
        second = await backend.enqueue("notification", {"n": 2})

        job = await backend.poll("notification")
        assert job.job_id == first
        assert job.attempts == 1
        job2 = await backend.poll("notification")
        assert job2.job_id == second
        assert await backend.poll("notification") is None

    @pytest.mark.asyncio
    async def test_enqueued_payload_is_isolated_from_caller(self, backend):
        payload = {"target_id": "local1", "mentions": ["a"]}
        await backend.enqueue("notification", payload)
        payload["target_id"] = "local2"
        payload["mentions"].append("b")

        job = await backend.poll("notification")
        assert job.payload == {"target_id": "local1", "mentions": ["a"]}

    @pytest.mark.asyncio
    async def test_queues_are_separate(self, backend):
        await backend.enqueue("notification", {"n": 1})
        assert await backend.poll("activitypub") is None
        assert await backend.queue_length("notification") == 1

    @pytest.mark.asyncio
    async def test_delayed_retry_waits(self, backend):
        await backend.enqueue("notification", {"n": 1})
        job = await backend.poll("notification")
        await backend.nack(job, retry=True, error="boom", delay=60)

        assert await backend.poll("notification") is None
        assert await backend.queue_length("notification") == 1

    @pytest.mark.asyncio
    async def test_immediate_retry_keeps_job_id(self, backend):
        job_id = await backend.enqueue("notification", {"n": 1})
        job = await backend.poll("notification")
        await backend.nack(job, retry=True, error="boom")

        again = await backend.poll("notification")
        assert again.job_id == job_id
        assert again.attempts == 2
        assert again.last_error == "boom"

    @pytest.mark.asyncio
    async def test_dead_letter_and_replay(self, backend):
        job_id = await backend.enqueue("notification", {"n": 1})
        job = await backend.poll("notification")
        await backend.nack(job, retry=False, error="gone")

        letters = await backend.dead_letters()
        assert [d.id for d in letters] == [job_id]
        assert letters[0].error == "gone"
        assert letters[0].attempts == 1

        new_id = await backend.replay_dead_letter(job_id)
        assert new_id != job_id
        assert await backend.dead_letters() == []
        replayed = await backend.poll("notification")
        assert replayed.payload == {"n": 1}
        assert replayed.attempts == 1

    @pytest.mark.asyncio
    async def test_replay_unknown_raises(self, backend):
        with pytest.raises(DeadLetterNotFoundError):
            await backend.replay_dead_letter("nope")


# ══════════════════════════════════════════════════════════════
#  In-process
# ══════════════════════════════════════════════════════════════

class TestInProcessQueueBackend:

    @pytest.fixture
    def handler(self, make_handler):
        return make_handler()

    @pytest.fixture
    def backend(self, registry, handler):
        from job_queue.inprocess import InProcessQueueBackend
        registry.register("notification", handler)
        return InProcessQueueBackend(registry)

    @pytest.mark.asyncio
    async def test_enqueue_runs_handler(self, backend, handler):
        job_id = await backend.enqueue("notification", {"n": 1})
        assert job_id.startswith("job_")
        assert handler.payloads == [{"n": 1}]
        assert await backend.poll("notification") is None
        assert await backend.queue_length("notification") == 0

    @pytest.mark.asyncio
    async def test_failure_surfaces_and_is_dead_lettered(self, backend, handler):
        handler.results = [DeliveryResult.retryable("remote down")]
        with pytest.raises(DeliveryFailedError) as exc:
            await backend.enqueue("notification", {"n": 1})
        assert exc.value.retryable is True

        letters = await backend.dead_letters("notification")
        assert len(letters) == 1
        assert letters[0].error == "remote down"

    @pytest.mark.asyncio
    async def test_replay_runs_handler_again(self, backend, handler):
        handler.results = [DeliveryResult.terminal("bad")]
        with pytest.raises(DeliveryFailedError):
            await backend.enqueue("notification", {"n": 1})
        dead = (await backend.dead_letters())[0]

        await backend.replay_dead_letter(dead.id)
        assert len(handler.payloads) == 2
        assert await backend.dead_letters() == []

    @pytest.mark.asyncio
    async def test_unknown_queue(self, backend):
        from job_queue.job import UnknownQueueError
        with pytest.raises(UnknownQueueError):
            await backend.enqueue("missing", {})


# ══════════════════════════════════════════════════════════════
#  Database (SQLite temp file)
# ══════════════════════════════════════════════════════════════

class TestDatabaseQueueBackend:

    @pytest.fixture
    def backend(self, session_factory):
        from job_queue.db import DatabaseQueueBackend
        return DatabaseQueueBackend(session_factory, claim_timeout=300)

    @pytest.mark.asyncio
    async def test_connect(self, backend):
        await backend.connect()

    @pytest.mark.asyncio
    async def test_enqueue_poll_ack(self, backend):
        job_id = await backend.enqueue("notification", {"target_id": "local1"})
        assert await backend.queue_length("notification") == 1

        job = await backend.poll("notification")
        assert job.job_id == job_id
        assert job.payload == {"target_id": "local1"}
        assert job.attempts == 1
        # claimed rows are not waiting
        assert await backend.queue_length("notification") == 0
        assert await backend.poll("notification") is None

        await backend.ack(job)
        assert await backend.poll("notification") is None

    @pytest.mark.asyncio
    async def test_concurrent_pollers_get_distinct_jobs(self, backend):
        await backend.enqueue("notification", {"n": 1})
        await backend.enqueue("notification", {"n": 2})

        results = await asyncio.gather(*(backend.poll("notification") for _ in range(3)))
        claimed = [j for j in results if j is not None]
        assert len(claimed) == 2
        assert len({j.job_id for j in claimed}) == 2

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, backend, session_factory):
        from sqlalchemy import update
        from database.models import QueueItemRow

        await backend.enqueue("notification", {"n": 1})
        first = await backend.poll("notification")

        # Simulate a worker that crashed long ago
        async with session_factory() as session:
            await session.execute(
                update(QueueItemRow).values(
                    claimed_at=datetime.now(timezone.utc) - timedelta(seconds=3600))
            )
            await session.commit()

        second = await backend.poll("notification")
        assert second.job_id == first.job_id
        assert second.attempts == 2

        # The original worker's late ack does nothing; the new claim still stands
        await backend.ack(first)
        await backend.nack(second, retry=False, error="bad")
        letters = await backend.dead_letters()
        assert [d.id for d in letters] == [first.job_id]

    @pytest.mark.asyncio
    async def test_nack_retry_with_delay(self, backend):
        await backend.enqueue("activitypub", {"n": 1})
        job = await backend.poll("activitypub")
        await backend.nack(job, retry=True, error="HTTP 503", delay=600)

        assert await backend.poll("activitypub") is None
        assert await backend.queue_length("activitypub") == 1

    @pytest.mark.asyncio
    async def test_nack_retry_immediate_keeps_error(self, backend):
        await backend.enqueue("activitypub", {"n": 1})
        job = await backend.poll("activitypub")
        await backend.nack(job, retry=True, error="HTTP 503")

        again = await backend.poll("activitypub")
        assert again.attempts == 2
        assert again.last_error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_dead_letter_and_replay(self, backend):
        job_id = await backend.enqueue("activitypub", {"inbox": "https://remote.example/inbox"})
        job = await backend.poll("activitypub")
        await backend.nack(job, retry=False, error="HTTP 410")

        assert await backend.queue_length("activitypub") == 0
        letters = await backend.dead_letters("activitypub")
        assert len(letters) == 1
        assert letters[0].id == job_id
        assert letters[0].error == "HTTP 410"
        assert letters[0].payload == {"inbox": "https://remote.example/inbox"}
        assert await backend.dead_letters("notification") == []

        new_id = await backend.replay_dead_letter(job_id)
        assert await backend.dead_letters() == []
        replayed = await backend.poll("activitypub")
        assert replayed.job_id == new_id
        assert replayed.attempts == 1

    @pytest.mark.asyncio
    async def test_replay_unknown_raises(self, backend):
        with pytest.raises(DeadLetterNotFoundError):
            await backend.replay_dead_letter("job_missing")

    @pytest.mark.asyncio
    async def test_bad_frame_is_buried(self, backend, session_factory):
        from database.models import QueueItemRow

        async with session_factory() as session:
            session.add(QueueItemRow(job_id="job_bad", transport="notification",
                                     frame={"queue": "notification"}))
            await session.commit()
        await backend.enqueue("notification", {"n": 1})

        job = await backend.poll("notification")
        assert job.payload == {"n": 1}
        letters = await backend.dead_letters()
        assert [d.id for d in letters] == ["job_bad"]

    @pytest.mark.asyncio
    async def test_unreachable_database(self, tmp_path):
        from database.session import create_engine_for, make_session_factory
        from job_queue.db import DatabaseQueueBackend

        engine = create_engine_for(f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
        backend = DatabaseQueueBackend(make_session_factory(engine))
        try:
            with pytest.raises(BackendUnavailableError):
                await backend.connect()
        finally:
            await engine.dispose()


# ══════════════════════════════════════════════════════════════
#  Redis (mocked client)
# ══════════════════════════════════════════════════════════════

class TestRedisQueueBackend:

    @pytest.fixture
    def pipe(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[])
        return pipe

    @pytest.fixture
    def client(self, pipe):
        client = AsyncMock()
        client.pipeline = MagicMock(return_value=pipe)
        client.zrangebyscore.return_value = []
        client.xautoclaim.return_value = ["0-0", [], []]
        client.xreadgroup.return_value = []
        client.xpending_range.return_value = []
        return client

    @pytest.fixture
    def backend(self, client):
        from job_queue.redis_queue import RedisQueueBackend
        return RedisQueueBackend(prefix="test:", consumer_name="w1", block_ms=10, client=client)

    @pytest.mark.asyncio
    async def test_enqueue_adds_frame_to_stream(self, backend, client):
        job_id = await backend.enqueue("notification", {"n": 1})
        key, fields = client.xadd.call_args.args
        assert key == "test:notification"
        job = QueueJob.decode(fields["frame"])
        assert job.job_id == job_id
        assert job.payload == {"n": 1}

    @pytest.mark.asyncio
    async def test_poll_reads_through_group(self, backend, client):
        frame = QueueJob(queue="notification", payload={"n": 1}).encode()
        client.xreadgroup.return_value = [["test:notification", [("1-0", {"frame": frame})]]]

        job = await backend.poll("notification")
        assert job.payload == {"n": 1}
        assert job.attempts == 1
        assert job.receipt == "1-0"
        client.xgroup_create.assert_awaited_once_with(
            "test:notification", "fanout-workers", id="0", mkstream=True)

    @pytest.mark.asyncio
    async def test_existing_group_is_fine(self, backend, client):
        from redis.exceptions import ResponseError
        client.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
        assert await backend.poll("notification") is None

    @pytest.mark.asyncio
    async def test_stale_entry_is_reclaimed(self, backend, client):
        frame = QueueJob(queue="notification", payload={"n": 1}, attempts=1).encode()
        client.xautoclaim.return_value = ["0-0", [("5-0", {"frame": frame})], []]
        client.xpending_range.return_value = [
            {"message_id": "5-0", "consumer": "w1", "time_since_delivered": 0,
             "times_delivered": 2},
        ]

        job = await backend.poll("notification")
        assert job.receipt == "5-0"
        # one earlier retry round, plus the crashed delivery and this claim
        assert job.attempts == 3
        client.xpending_range.assert_awaited_once_with(
            "test:notification", "fanout-workers", min="5-0", max="5-0", count=1)
        client.xreadgroup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_crash_looping_entry_is_dead_lettered(self, backend, client, pipe,
                                                        registry, make_handler):
        from job_queue.manager import QueueManager

        handler = make_handler()
        registry.register("notification", handler)
        manager = QueueManager(backend, registry, max_attempts=3, backoff_base=0)

        frame = QueueJob(queue="notification", payload={"n": 1}).encode()
        client.xautoclaim.return_value = ["0-0", [("5-0", {"frame": frame})], []]
        client.xpending_range.return_value = [{"message_id": "5-0", "times_delivered": 4}]

        await manager.run_once(["notification"])

        assert handler.payloads == []
        key, fields = pipe.xadd.call_args.args
        assert key == "test:dead_letter"
        assert fields["error"] == "exceeded max attempts (worker lost)"
        assert QueueJob.decode(fields["frame"]).attempts == 4

    @pytest.mark.asyncio
    async def test_due_delayed_frames_are_promoted(self, backend, client):
        frame = QueueJob(queue="notification", payload={"n": 1}).encode()
        client.zrangebyscore.return_value = [frame]
        client.zrem.return_value = 1

        await backend.poll("notification")
        client.zrem.assert_awaited_once_with("test:delayed:notification", frame)
        client.xadd.assert_awaited_once_with("test:notification", {"frame": frame})

    @pytest.mark.asyncio
    async def test_nack_with_delay_goes_to_sorted_set(self, backend, pipe):
        job = QueueJob(queue="activitypub", payload={"n": 1}, attempts=1, receipt="1-0")
        before = time.time()
        await backend.nack(job, retry=True, error="HTTP 503", delay=30)

        pipe.xack.assert_called_once_with("test:activitypub", "fanout-workers", "1-0")
        pipe.xdel.assert_called_once_with("test:activitypub", "1-0")
        key, mapping = pipe.zadd.call_args.args
        assert key == "test:delayed:activitypub"
        (frame, due), = mapping.items()
        assert QueueJob.decode(frame).last_error == "HTTP 503"
        assert due >= before + 30

    @pytest.mark.asyncio
    async def test_nack_dead_letters(self, backend, pipe):
        job = QueueJob(queue="activitypub", payload={"n": 1}, attempts=3, receipt="1-0")
        await backend.nack(job, retry=False, error="HTTP 410")

        key, fields = pipe.xadd.call_args.args
        assert key == "test:dead_letter"
        assert fields["error"] == "HTTP 410"
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ack(self, backend, pipe):
        job = QueueJob(queue="notification", payload={}, receipt="9-0")
        await backend.ack(job)
        pipe.xack.assert_called_once_with("test:notification", "fanout-workers", "9-0")
        pipe.xdel.assert_called_once_with("test:notification", "9-0")

    @pytest.mark.asyncio
    async def test_queue_length_counts_delayed(self, backend, client):
        client.xlen.return_value = 2
        client.zcard.return_value = 3
        assert await backend.queue_length("notification") == 5

    @pytest.mark.asyncio
    async def test_dead_letters_and_replay(self, backend, client, pipe):
        frame = QueueJob(queue="activitypub", payload={"n": 1}, attempts=10).encode()
        entry = ("7-0", {"frame": frame, "error": "HTTP 500",
                         "failed_at": datetime.now(timezone.utc).isoformat()})
        client.xrevrange.return_value = [entry]
        client.xrange.return_value = [entry]

        letters = await backend.dead_letters("activitypub")
        assert letters[0].id == "7-0"
        assert letters[0].attempts == 10
        assert await backend.dead_letters("notification") == []

        await backend.replay_dead_letter("7-0")
        key, fields = pipe.xadd.call_args.args
        assert key == "test:activitypub"
        assert QueueJob.decode(fields["frame"]).attempts == 0
        pipe.xdel.assert_called_once_with("test:dead_letter", "7-0")

    @pytest.mark.asyncio
    async def test_replay_unknown_raises(self, backend, client):
        client.xrange.return_value = []
        with pytest.raises(DeadLetterNotFoundError):
            await backend.replay_dead_letter("1-1")

    @pytest.mark.asyncio
    async def test_connection_error_maps_to_unavailable(self, backend, client):
        from redis.exceptions import ConnectionError as RedisConnectionError
        client.xadd.side_effect = RedisConnectionError("refused")
        with pytest.raises(BackendUnavailableError):
            await backend.enqueue("notification", {})


# ══════════════════════════════════════════════════════════════
#  STOMP (fake connection)
# ══════════════════════════════════════════════════════════════

def _frame(body: str, message_id: str = "m1", redelivered: bool = False, queue: str = "notification"):
    headers = {"subscription": queue, "message-id": message_id, "ack": f"ack-{message_id}"}
    if redelivered:
        headers["redelivered"] = "true"
    return SimpleNamespace(headers=headers, body=body)


class TestStompQueueBackend:

    @pytest.fixture
    def conn(self):
        return MagicMock()

    @pytest_asyncio.fixture
    async def backend(self, conn, tmp_path):
        from job_queue.stomp_queue import StompQueueBackend
        backend = StompQueueBackend(
            servers=["broker:61613"], basename="/queue/test/", site="example",
            dead_letter_dir=str(tmp_path / "dead"), max_redeliveries=1,
            block_seconds=0.05, connection_factory=lambda: conn,
        )
        await backend.connect()
        return backend

    def test_parse_server(self):
        from job_queue.stomp_queue import parse_server
        assert parse_server("broker:61614") == ("broker", 61614)
        assert parse_server("tcp://mq.example") == ("mq.example", 61613)

    @pytest.mark.asyncio
    async def test_enqueue_sends_envelope(self, backend, conn):
        job_id = await backend.enqueue("notification", {"n": 1})

        destination, body = conn.send.call_args.args
        assert destination == "/queue/test/notification"
        envelope = json.loads(body)
        assert envelope["site"] == "example"
        assert envelope["handler"] == "notification"
        assert envelope["job_id"] == job_id
        assert conn.send.call_args.kwargs["headers"]["persistent"] == "true"

    @pytest.mark.asyncio
    async def test_poll_subscribes_and_claims(self, backend, conn):
        body = json.dumps({"site": "example", "handler": "notification", "job_id": "job_1",
                           "payload": {"n": 1}, "attempts": 0})
        backend._deliver(_frame(body))

        job = await backend.poll("notification")
        assert job.job_id == "job_1"
        assert job.attempts == 1
        assert job.receipt == ("ack-m1", "m1")
        assert conn.subscribe.call_args.kwargs["ack"] == "client-individual"

        await backend.ack(job)
        conn.ack.assert_called_once_with("ack-m1")

    @pytest.mark.asyncio
    async def test_poll_times_out_empty(self, backend):
        assert await backend.poll("notification") is None

    @pytest.mark.asyncio
    async def test_bad_frame_is_acked_and_dropped(self, backend, conn):
        backend._deliver(_frame("not json"))
        assert await backend.poll("notification") is None
        conn.ack.assert_called_once_with("ack-m1")

    @pytest.mark.asyncio
    async def test_retry_resends_with_schedule_delay(self, backend, conn):
        job = QueueJob(queue="activitypub", payload={"n": 1}, attempts=1, receipt=("ack-x", "x"))
        await backend.nack(job, retry=True, error="HTTP 503", delay=30)

        headers = conn.send.call_args.kwargs["headers"]
        assert headers["AMQ_SCHEDULED_DELAY"] == "30000"
        assert json.loads(conn.send.call_args.args[1])["last_error"] == "HTTP 503"
        conn.ack.assert_called_once_with("ack-x")

    @pytest.mark.asyncio
    async def test_redelivery_limit_dead_letters(self, backend, conn):
        body = json.dumps({"site": "example", "handler": "notification", "job_id": "job_1",
                           "payload": {"n": 1}})
        backend._deliver(_frame(body, redelivered=True))
        assert (await backend.poll("notification")) is not None

        backend._deliver(_frame(body, redelivered=True))
        assert await backend.poll("notification") is None
        assert conn.send.call_args.args[0] == "/queue/test/dead_letter"

        letters = await backend.dead_letters("notification")
        assert len(letters) == 1
        assert letters[0].payload == {"n": 1}
        assert backend._redeliveries == {}

    @pytest.mark.asyncio
    async def test_redelivery_count_dropped_once_settled(self, backend, conn):
        body = json.dumps({"site": "example", "handler": "notification", "job_id": "job_1",
                           "payload": {"n": 1}})
        backend._deliver(_frame(body, message_id="m7", redelivered=True))
        job = await backend.poll("notification")
        assert backend._redeliveries == {"m7": 1}

        await backend.ack(job)
        conn.ack.assert_called_once_with("ack-m7")
        assert backend._redeliveries == {}

        backend._deliver(_frame(body, message_id="m8", redelivered=True))
        job = await backend.poll("notification")
        await backend.nack(job, retry=True, error="HTTP 503")
        assert backend._redeliveries == {}

    @pytest.mark.asyncio
    async def test_dead_letter_file_replay(self, backend, conn):
        job = QueueJob(queue="activitypub", payload={"n": 2}, attempts=10, receipt=("ack-y", "y"))
        await backend.nack(job, retry=False, error="HTTP 410")

        dead = (await backend.dead_letters())[0]
        assert dead.id == f"example-activitypub-{job.job_id}"
        assert dead.error == "HTTP 410"

        await backend.replay_dead_letter(dead.id)
        assert await backend.dead_letters() == []
        assert conn.send.call_args.args[0] == "/queue/test/activitypub"

        with pytest.raises(DeadLetterNotFoundError):
            await backend.replay_dead_letter(dead.id)

    @pytest.mark.asyncio
    async def test_connect_failure(self, tmp_path):
        from stomp.exception import ConnectFailedException
        from job_queue.stomp_queue import StompQueueBackend

        conn = MagicMock()
        conn.connect.side_effect = ConnectFailedException()
        backend = StompQueueBackend(servers=["broker:61613"], connection_factory=lambda: conn)
        with pytest.raises(BackendUnavailableError):
            await backend.connect()

    @pytest.mark.asyncio
    async def test_lost_connection(self, backend):
        backend._mark_disconnected()
        with pytest.raises(BackendUnavailableError):
            await backend.enqueue("notification", {})


# ══════════════════════════════════════════════════════════════
#  Factory
# ══════════════════════════════════════════════════════════════

class TestQueueBackendFactory:

    def test_memory_and_inprocess(self, registry):
        from config.settings import QueueConfig
        from job_queue.factory import create_queue_backend

        assert create_queue_backend(QueueConfig(backend="memory"), registry).name == "memory"
        assert create_queue_backend(QueueConfig(backend="inprocess"), registry).name == "inprocess"

    def test_db_requires_session_factory(self, registry):
        from config.settings import QueueConfig
        from job_queue.factory import create_queue_backend

        with pytest.raises(ConfigurationError):
            create_queue_backend(QueueConfig(backend="db"), registry)

    @pytest.mark.asyncio
    async def test_db_skip_locked_on_postgres(self, registry, session_factory):
        from config.settings import QueueConfig
        from job_queue.factory import create_queue_backend

        backend = create_queue_backend(QueueConfig(backend="db"), registry, session_factory,
                                       database_url="postgresql://u:p@db/fanout")
        assert backend.name == "db"
        assert backend.skip_locked is True

    def test_redis(self, registry):
        from config.settings import QueueConfig
        from job_queue.factory import create_queue_backend

        backend = create_queue_backend(
            QueueConfig(backend="redis", redis_url="redis://cache:6379", redis_prefix="x:"), registry)
        assert backend.name == "redis"
        assert backend.stream_key("notification") == "x:notification"

    def test_stomp_requires_servers(self, registry):
        from config.settings import QueueConfig, StompConfig
        from job_queue.factory import create_queue_backend

        with pytest.raises(ConfigurationError):
            create_queue_backend(QueueConfig(backend="stomp"), registry)

        backend = create_queue_backend(
            QueueConfig(backend="stomp", max_attempts=4,
                        stomp=StompConfig(servers=["mq:61613"])), registry)
        assert backend.name == "stomp"
        assert backend.max_redeliveries == 4

    def test_unknown_backend(self, registry):
        from config.settings import QueueConfig
        from job_queue.factory import create_queue_backend

        with pytest.raises(ConfigurationError, match="Unknown queue backend"):
            create_queue_backend(QueueConfig(backend="kafka"), registry)
