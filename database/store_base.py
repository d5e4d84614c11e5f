"""
Abstract Social Store — Interface for all storage backends.

Implementations:
  - SqlSocialStore       (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemorySocialStore  (dict-based, single-process, no persistence)

The store owns the actor graph (actors, subscriptions, blocks, group
membership), actor signing keys, the notification rows written by
delivery handlers and the idempotency keys written by fan-out.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from models.schemas import Actor


@dataclass
class TargetSnapshot:
    """
    Everything fan-out needs about one activity's audience, read at once.

    actors:       every actor referenced (addressees, subscribers, groups,
                  group members), keyed by id
    subscribers:  ids of the sender's subscribers
    group_members: group id → member ids, for the addressed groups
    blocked_by:   ids (among the actors above) that have blocked the sender
    notified:     targets that already hold a notification for the activity
                  (filled only when an activity id is passed)
    """
    actors: dict[str, Actor] = field(default_factory=dict)
    subscribers: list[str] = field(default_factory=list)
    group_members: dict[str, list[str]] = field(default_factory=dict)
    blocked_by: set[str] = field(default_factory=set)
    notified: list[str] = field(default_factory=list)


class BaseSocialStore(ABC):
    """Interface that all social store backends must implement."""

    # ── Actors ────────────────────────────────────────────────

    @abstractmethod
    async def get_actor(self, actor_id: str) -> Optional[Actor]:
        ...

    @abstractmethod
    async def upsert_actor(self, actor: Actor) -> Actor:
        ...

    @abstractmethod
    async def follow(self, subscriber_id: str, subscribed_id: str) -> None:
        ...

    @abstractmethod
    async def block(self, blocker_id: str, blocked_id: str) -> None:
        ...

    @abstractmethod
    async def add_group_member(self, group_id: str, actor_id: str) -> None:
        ...

    @abstractmethod
    async def snapshot_targets(
        self, sender_id: str, explicit_ids: Iterable[str], group_ids: Iterable[str],
        activity_id: Optional[str] = None,
    ) -> TargetSnapshot:
        """
        Resolve explicit addressees, the sender's subscribers, the members
        of the addressed groups and (given activity_id) the actors already
        notified of it, plus who among them blocked the sender, in one
        consistent read.
        """
        ...

    # ── Keys ──────────────────────────────────────────────────

    @abstractmethod
    async def set_actor_key(self, actor_id: str, private_key_pem: str, public_key_pem: str = "") -> None:
        ...

    @abstractmethod
    async def get_actor_key(self, actor_id: str) -> Optional[str]:
        """Private key PEM used to sign outgoing requests for actor_id."""
        ...

    # ── Notifications ─────────────────────────────────────────

    @abstractmethod
    async def record_notification(self, activity_id: str, target_id: str, reason: str = None) -> bool:
        """Insert a notification row. Returns False if it already existed."""
        ...

    @abstractmethod
    async def record_group_inbox(self, group_id: str, activity_id: str) -> bool:
        ...

    @abstractmethod
    async def get_notification_target_ids(self, activity_id: str) -> list[str]:
        ...

    @abstractmethod
    async def list_notifications(self, target_id: str, limit: int = 50) -> list[dict]:
        ...

    # ── Idempotency ───────────────────────────────────────────

    @abstractmethod
    async def reserve_delivery_keys(self, keys: Iterable[str]) -> set[str]:
        """Record keys not seen before. Returns the subset that was newly reserved."""
        ...

    @abstractmethod
    async def release_delivery_keys(self, keys: Iterable[str]) -> None:
        ...
