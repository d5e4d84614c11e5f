"""
Queue Job — the unit of work carried by every backend, plus queue errors.

Frame Schema (JSON, identical across backends):
  {
      "job_id":       unique job identifier (stable across retries),
      "queue":        logical queue name ("notification", "activitypub", ...),
      "payload":      handler-specific dict,
      "enqueued_at":  ISO timestamp of the first enqueue,
      "attempts":     deliveries so far, incremented on every claim,
      "last_error":   error text of the previous failed attempt,
  }
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class QueueError(Exception):
    """Base exception for queue operations."""

    def __init__(self, message: str, queue: str = "", retryable: bool = False):
        self.queue = queue
        self.retryable = retryable
        super().__init__(message)


class BackendUnavailableError(QueueError):
    """The transport (database, Redis, STOMP broker) cannot be reached."""

    def __init__(self, message: str, queue: str = ""):
        super().__init__(message, queue, retryable=True)


class UnknownQueueError(QueueError):
    """No handler is registered for the queue. A configuration error."""

    def __init__(self, queue: str):
        super().__init__(f"No handler registered for queue '{queue}'", queue)


class ConfigurationError(Exception):
    """Deployment configuration is unusable (missing credentials, unknown backend)."""


class DeliveryFailedError(QueueError):
    """Raised by the in-process backend when the handler did not succeed."""

    def __init__(self, queue: str, error: str, retryable: bool = False):
        super().__init__(f"Delivery on '{queue}' failed: {error}", queue, retryable)


class BadFrameError(QueueError):
    """A stored frame cannot be decoded into a job."""


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    """A unit of work on the queue."""
    queue: str
    payload: dict[str, Any]
    job_id: str = ""
    enqueued_at: str = ""
    attempts: int = 0
    last_error: str = ""
    # Transport-specific handle (row claim token, stream entry id, STOMP ack id)
    receipt: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:16]}"
        if not self.enqueued_at:
            self.enqueued_at = _utcnow().isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue": self.queue,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        data["attempts"] = int(data.get("attempts", 0))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "receipt"})

    def encode(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def decode(cls, frame: str | bytes) -> QueueJob:
        try:
            data = json.loads(frame)
        except (TypeError, ValueError) as e:
            raise BadFrameError(f"Bad frame in queue item: {e}") from e
        if not isinstance(data, dict) or "queue" not in data or not isinstance(data.get("payload"), dict):
            raise BadFrameError("Queue item frame is missing queue or payload")
        return cls.from_dict(data)

    def logrep(self) -> str:
        """Short description for log lines."""
        kind = self.payload.get("kind", "item")
        keys = ",".join(sorted(self.payload.keys()))
        return f"{kind} {self.job_id} (keys:[{keys}])"


class DeadLetterNotFoundError(QueueError):
    def __init__(self, dead_letter_id: str):
        super().__init__(f"Dead letter '{dead_letter_id}' not found")
        self.dead_letter_id = dead_letter_id
