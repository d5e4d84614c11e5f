"""
Core data models for the fan-out pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ActorType(str, Enum):
    PERSON = "person"
    GROUP = "group"
    ORGANIZATION = "organization"
    SERVICE = "service"
    APPLICATION = "application"


class Verb(str, Enum):
    POST = "post"
    REPLY = "reply"
    LIKE = "like"
    REPEAT = "repeat"
    FOLLOW = "follow"
    UNDO = "undo"
    DELETE = "delete"
    UPDATE = "update"


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


# ──────────────────────────────────────────────────────────────
#  Actor — a local or remote identity
# ──────────────────────────────────────────────────────────────

class Actor(BaseModel):
    """A person, group or organization, hosted here or on another server."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    nickname: str = ""
    uri: str = ""                             # canonical ActivityPub id
    type: ActorType = ActorType.PERSON
    is_local: bool = True
    inbox: str = ""                           # remote actors only
    shared_inbox: str = ""                    # optional, advertised in endpoints

    @property
    def is_group(self) -> bool:
        return self.type == ActorType.GROUP

    @property
    def delivery_inbox(self) -> str:
        """Shared inbox when the remote server advertises one, personal inbox otherwise."""
        return self.shared_inbox or self.inbox


# ──────────────────────────────────────────────────────────────
#  Activity — who did what to what, when
# ──────────────────────────────────────────────────────────────

class Activity(BaseModel):
    """
    Immutable record of an action. Amendments are new activities, so the
    model is frozen once built.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    verb: Verb = Verb.POST
    actor_id: str
    object_id: str = ""
    object_actor_id: Optional[str] = None     # author of the object (liked/repeated note)
    in_reply_to_actor_id: Optional[str] = None
    mentions: list[str] = []                  # actor ids explicitly addressed
    group_ids: list[str] = []                 # groups the activity is addressed to
    content: str = ""
    is_public: bool = True
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Delivery results
# ──────────────────────────────────────────────────────────────

class DeliveryResult(BaseModel):
    """Outcome of one delivery attempt, returned by every queue handler."""
    outcome: DeliveryOutcome
    error: str = ""
    status_code: Optional[int] = None
    retry_after: Optional[float] = None       # seconds, from Retry-After

    @classmethod
    def success(cls, **kwargs) -> DeliveryResult:
        return cls(outcome=DeliveryOutcome.SUCCESS, **kwargs)

    @classmethod
    def retryable(cls, error: str, **kwargs) -> DeliveryResult:
        return cls(outcome=DeliveryOutcome.RETRYABLE, error=error, **kwargs)

    @classmethod
    def terminal(cls, error: str, **kwargs) -> DeliveryResult:
        return cls(outcome=DeliveryOutcome.TERMINAL, error=error, **kwargs)

    @property
    def ok(self) -> bool:
        return self.outcome == DeliveryOutcome.SUCCESS


class DeadLetter(BaseModel):
    """A job removed from retry, kept for operator inspection and replay."""
    id: str
    queue: str
    payload: dict[str, Any] = {}
    error: str = ""
    attempts: int = 0
    enqueued_at: Optional[datetime] = None
    failed_at: datetime = Field(default_factory=_utcnow)


class FanOutReport(BaseModel):
    """What a single fan-out call produced."""
    activity_id: str
    targets: int = 0
    local_jobs: list[str] = []
    remote_jobs: list[str] = []
    blocked: list[str] = []                   # actor ids dropped because of a block
    duplicates: list[str] = []                # actor ids already notified for this activity
    failed: list[str] = []                    # actor ids whose job could not be enqueued
