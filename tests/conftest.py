"""Shared test fixtures for the fan-out pipeline."""
import pytest
import pytest_asyncio

from config.settings import Settings, QueueConfig, reset_settings
from database.session import create_engine_for, create_tables, make_session_factory
from database.store_factory import reset_store
from database.store_memory import InMemorySocialStore
from federation.signatures import generate_key_pair
from job_queue.handlers import HandlerRegistry, QueueHandler
from job_queue.manager import QueueManager
from job_queue.memory import MemoryQueueBackend
from models.schemas import Actor, ActorType, DeliveryResult


class RecordingHandler(QueueHandler):
    """Returns queued results in order (success once exhausted) and records payloads."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.payloads = []

    async def handle(self, payload):
        self.payloads.append(payload)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return DeliveryResult.success()


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()


@pytest.fixture(scope="session")
def key_pair():
    """(private_pem, public_pem); generated once, RSA keygen is slow."""
    return generate_key_pair()


# ──────────────────────────────────────────────────────────────
#  Actors
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def alice() -> Actor:
    return Actor(id="alice", nickname="alice", is_local=True)


@pytest.fixture
def local_actors() -> list[Actor]:
    return [Actor(id=f"local{i}", nickname=f"local{i}", is_local=True) for i in range(1, 4)]


@pytest.fixture
def remote_actors() -> list[Actor]:
    """Two remote actors on the same server, sharing one inbox."""
    return [
        Actor(id=f"remote{i}", nickname=f"remote{i}", uri=f"https://remote.example/users/r{i}",
              is_local=False, inbox=f"https://remote.example/users/r{i}/inbox",
              shared_inbox="https://remote.example/inbox")
        for i in range(1, 3)
    ]


@pytest.fixture
def group() -> Actor:
    return Actor(id="group1", nickname="devs", type=ActorType.GROUP, is_local=True)


@pytest_asyncio.fixture
async def store(alice, local_actors, remote_actors, group):
    """In-memory social graph: everyone else subscribes to alice."""
    s = InMemorySocialStore()
    for actor in [alice, *local_actors, *remote_actors, group]:
        await s.upsert_actor(actor)
    for actor in [*local_actors, *remote_actors]:
        await s.follow(actor.id, alice.id)
    return s


# ──────────────────────────────────────────────────────────────
#  Queue
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def make_handler():
    return RecordingHandler


@pytest.fixture
def memory_backend():
    return MemoryQueueBackend()


@pytest.fixture
def manager(memory_backend, registry):
    registry.register("notification", RecordingHandler())
    registry.register("activitypub", RecordingHandler())
    return QueueManager(memory_backend, registry, max_attempts=3, poll_interval=0.01,
                        backoff_base=0, backoff_max=0)


# ──────────────────────────────────────────────────────────────
#  SQLite
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite:///{tmp_path / 'fanout_test.db'}"


@pytest_asyncio.fixture
async def session_factory(sqlite_url):
    engine = create_engine_for(sqlite_url)
    await create_tables(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def settings(tmp_path) -> Settings:
    s = Settings()
    s.database.url = f"sqlite:///{tmp_path / 'pipeline.db'}"
    s.database.store_backend = "memory"
    s.queue = QueueConfig(backend="memory", max_attempts=3, poll_interval=0.01,
                          retry_backoff_base=0, retry_backoff_max=0)
    return s
