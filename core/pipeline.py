"""
Pipeline — wires store, handlers, queue backend, manager and fan-out engine
from one Settings object.

    pipeline = build_pipeline(get_settings())
    await pipeline.start()
    report = await pipeline.fanout.fan_out(sender, activity)
    ...
    await pipeline.close()

Both the web process (enqueue side) and queue_daemon (poll side) build the
same pipeline; the backend decides whether work happens inline or later.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from config.settings import Settings, get_settings
from database.session import create_engine_for, create_tables, make_session_factory
from database.store_base import BaseSocialStore
from database.store_factory import create_store
from federation.delivery import FederationDeliveryHandler, LocalNotificationHandler
from job_queue.backend import QueueBackend
from job_queue.factory import create_queue_backend
from job_queue.handlers import HandlerRegistry
from job_queue.manager import QueueManager
from notifications.fanout import FanOutEngine

logger = structlog.get_logger()


@dataclass
class Pipeline:
    settings: Settings
    store: BaseSocialStore
    registry: HandlerRegistry
    backend: QueueBackend
    manager: QueueManager
    fanout: FanOutEngine
    federation_handler: FederationDeliveryHandler
    engine: Optional[AsyncEngine] = None

    async def start(self):
        if self.engine is not None:
            await create_tables(self.engine)
        await self.manager.start()
        logger.info("pipeline_started", backend=self.backend.name,
                    store=type(self.store).__name__, queues=self.registry.queues)

    async def close(self):
        await self.manager.close()
        await self.federation_handler.close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("pipeline_closed")


def build_pipeline(
    settings: Settings = None,
    store: BaseSocialStore = None,
    http_client: httpx.AsyncClient = None,
) -> Pipeline:
    settings = settings or get_settings()

    engine = None
    session_factory = None
    if settings.database.store_backend == "sql" or settings.queue.backend == "db":
        engine = create_engine_for(settings.database.url, settings.debug)
        session_factory = make_session_factory(engine)

    if store is None:
        store = create_store(settings.database, session_factory)

    registry = HandlerRegistry()
    federation_handler = FederationDeliveryHandler(store, settings.federation, client=http_client)
    registry.register(settings.notifications.notification_queue, LocalNotificationHandler(store))
    registry.register(settings.notifications.federation_queue, federation_handler)
    registry.validate(settings.queue.queues)

    backend = create_queue_backend(settings.queue, registry, session_factory, settings.database.url)
    manager = QueueManager(
        backend,
        registry,
        max_attempts=settings.queue.max_attempts,
        poll_interval=settings.queue.poll_interval,
        backoff_base=settings.queue.retry_backoff_base,
        backoff_max=settings.queue.retry_backoff_max,
    )
    fanout = FanOutEngine(
        store,
        manager,
        notify_self=settings.notifications.notify_self,
        notification_queue=settings.notifications.notification_queue,
        federation_queue=settings.notifications.federation_queue,
        max_batch_size=settings.federation.max_batch_size,
    )
    return Pipeline(
        settings=settings, store=store, registry=registry, backend=backend,
        manager=manager, fanout=fanout, federation_handler=federation_handler,
        engine=engine,
    )
