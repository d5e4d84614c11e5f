"""
Queue backend factory — picks the transport from configuration.

    backend = create_queue_backend(settings.queue, registry, session_factory)

Backends are selected by name; there is no class lookup by string beyond
this table. Missing credentials or an unknown name fail here, at startup,
rather than on the first job.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import QueueConfig
from job_queue.backend import QueueBackend
from job_queue.handlers import HandlerRegistry
from job_queue.job import ConfigurationError

logger = structlog.get_logger()

BACKENDS = ("inprocess", "memory", "db", "redis", "stomp")


def create_queue_backend(
    config: QueueConfig,
    registry: HandlerRegistry,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    database_url: str = "",
) -> QueueBackend:
    backend_name = (config.backend or "").lower()

    if backend_name == "inprocess":
        from job_queue.inprocess import InProcessQueueBackend
        backend = InProcessQueueBackend(registry)

    elif backend_name == "memory":
        from job_queue.memory import MemoryQueueBackend
        backend = MemoryQueueBackend()

    elif backend_name == "db":
        if session_factory is None:
            raise ConfigurationError("queue.backend=db requires a database session factory")
        from job_queue.db import DatabaseQueueBackend
        backend = DatabaseQueueBackend(
            session_factory,
            claim_timeout=config.claim_timeout,
            skip_locked=database_url.startswith(("postgresql", "postgres")),
        )

    elif backend_name == "redis":
        if not config.redis_url:
            raise ConfigurationError("queue.backend=redis requires queue.redis_url")
        from job_queue.redis_queue import RedisQueueBackend
        backend = RedisQueueBackend(
            redis_url=config.redis_url,
            prefix=config.redis_prefix,
            consumer_group=config.consumer_group,
            claim_timeout=config.claim_timeout,
        )

    elif backend_name == "stomp":
        if not config.stomp.servers:
            raise ConfigurationError("queue.backend=stomp requires queue.stomp.servers")
        from job_queue.stomp_queue import StompQueueBackend
        backend = StompQueueBackend(
            servers=config.stomp.servers,
            username=config.stomp.username,
            password=config.stomp.password,
            vhost=config.stomp.vhost,
            basename=config.stomp.basename,
            persistent=config.stomp.persistent,
            site=config.site,
            dead_letter_dir=config.dead_letter_dir,
            max_redeliveries=config.max_attempts,
        )

    else:
        raise ConfigurationError(
            f"Unknown queue backend '{config.backend}' (expected one of: {', '.join(BACKENDS)})"
        )

    logger.info("queue_backend_selected", backend=backend.name)
    return backend
