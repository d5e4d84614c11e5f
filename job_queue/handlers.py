"""
Handler Registry — maps a logical queue name to the handler that processes it.

The registry is an explicit object built at startup and handed to the
QueueManager (and to the in-process backend). Feature modules register
their handlers before the manager validates the configured queues:

    registry = HandlerRegistry()
    registry.register("notification", LocalNotificationHandler(store))
    registry.register("activitypub", FederationDeliveryHandler(store, settings))
    registry.validate(settings.queue.queues)   # fails fast on a missing handler
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Iterable

from job_queue.job import ConfigurationError, UnknownQueueError
from models.schemas import DeliveryOutcome, DeliveryResult

logger = structlog.get_logger()


class HandlerError(Exception):
    """Base for errors a handler may raise instead of returning a result."""

    retryable = False


class RetryableError(HandlerError):
    """Transient failure: network, timeout, broker hiccup."""

    retryable = True


class TerminalError(HandlerError):
    """Permanent failure: malformed payload, unknown target, rejected request."""

    retryable = False


class QueueHandler(abc.ABC):
    """A consumer of one logical queue."""

    @abc.abstractmethod
    async def handle(self, payload: dict[str, Any]) -> DeliveryResult:
        ...


class HandlerRegistry:
    """Static queue name → handler mapping, populated at startup."""

    def __init__(self):
        self._handlers: dict[str, QueueHandler] = {}

    def register(self, queue: str, handler: QueueHandler):
        if queue in self._handlers and self._handlers[queue] is not handler:
            logger.warning("queue_handler_replaced", queue=queue,
                           old=type(self._handlers[queue]).__name__,
                           new=type(handler).__name__)
        self._handlers[queue] = handler
        logger.info("queue_handler_registered", queue=queue, handler=type(handler).__name__)

    def resolve(self, queue: str) -> QueueHandler:
        try:
            return self._handlers[queue]
        except KeyError:
            raise UnknownQueueError(queue) from None

    def __contains__(self, queue: str) -> bool:
        return queue in self._handlers

    @property
    def queues(self) -> list[str]:
        return list(self._handlers)

    def validate(self, required: Iterable[str]):
        """Raise ConfigurationError if any configured queue has no handler."""
        missing = [q for q in required if q not in self._handlers]
        if missing:
            logger.error("queue_handlers_missing", queues=missing, registered=self.queues)
            raise ConfigurationError(f"No handler registered for queue(s): {', '.join(missing)}")


async def run_handler(handler: QueueHandler, payload: dict[str, Any]) -> DeliveryResult:
    """
    Invoke a handler and normalize whatever it does into a DeliveryResult.

    - DeliveryResult / DeliveryOutcome → used as-is
    - True / None → success, False → retryable (legacy boolean handlers)
    - HandlerError → retryable or terminal per its class
    - any other exception → retryable, logged with traceback
    """
    try:
        result = await handler.handle(payload)
    except HandlerError as e:
        if e.retryable:
            return DeliveryResult.retryable(str(e))
        return DeliveryResult.terminal(str(e))
    except Exception as e:
        logger.error("queue_handler_crashed", handler=type(handler).__name__,
                     error=str(e), exc_info=True)
        return DeliveryResult.retryable(f"{type(e).__name__}: {e}")

    if isinstance(result, DeliveryResult):
        return result
    if isinstance(result, DeliveryOutcome):
        return DeliveryResult(outcome=result)
    if result is None or result is True:
        return DeliveryResult.success()
    if result is False:
        return DeliveryResult.retryable("handler reported failure")
    return DeliveryResult.terminal(f"handler returned unexpected {type(result).__name__}")
