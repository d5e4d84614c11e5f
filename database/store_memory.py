"""
InMemorySocialStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlSocialStore
  - Thread-safe via asyncio (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Optional

from database.store_base import BaseSocialStore, TargetSnapshot
from models.schemas import Actor

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySocialStore(BaseSocialStore):

    def __init__(self):
        self._actors: dict[str, Actor] = {}
        self._subscribers: dict[str, set[str]] = defaultdict(set)   # subscribed → subscribers
        self._blocks: set[tuple[str, str]] = set()                   # (blocker, blocked)
        self._members: dict[str, set[str]] = defaultdict(set)        # group → members
        self._keys: dict[str, tuple[str, str]] = {}                  # actor → (private, public)
        self._notifications: dict[tuple[str, str], dict] = {}        # (activity, target) → row
        self._group_inbox: set[tuple[str, str]] = set()              # (group, activity)
        self._delivery_keys: set[str] = set()
        logger.info("inmemory_store_initialized")

    # ── Actors ────────────────────────────────────────────

    async def get_actor(self, actor_id: str) -> Optional[Actor]:
        return self._actors.get(actor_id)

    async def upsert_actor(self, actor: Actor) -> Actor:
        self._actors[actor.id] = actor
        return actor

    async def follow(self, subscriber_id: str, subscribed_id: str) -> None:
        self._subscribers[subscribed_id].add(subscriber_id)

    async def block(self, blocker_id: str, blocked_id: str) -> None:
        self._blocks.add((blocker_id, blocked_id))

    async def add_group_member(self, group_id: str, actor_id: str) -> None:
        self._members[group_id].add(actor_id)

    async def snapshot_targets(
        self, sender_id: str, explicit_ids: Iterable[str], group_ids: Iterable[str],
        activity_id: Optional[str] = None,
    ) -> TargetSnapshot:
        snapshot = TargetSnapshot()
        if activity_id is not None:
            snapshot.notified = sorted(t for a, t in self._notifications if a == activity_id)
        snapshot.subscribers = sorted(self._subscribers.get(sender_id, ()))
        for group_id in group_ids:
            snapshot.group_members[group_id] = sorted(self._members.get(group_id, ()))

        wanted = (set(explicit_ids) | set(snapshot.notified)
                  | set(snapshot.subscribers) | set(snapshot.group_members))
        for members in snapshot.group_members.values():
            wanted.update(members)

        snapshot.actors = {aid: self._actors[aid] for aid in wanted if aid in self._actors}
        snapshot.blocked_by = {aid for aid in snapshot.actors if (aid, sender_id) in self._blocks}
        return snapshot

    # ── Keys ──────────────────────────────────────────────

    async def set_actor_key(self, actor_id: str, private_key_pem: str, public_key_pem: str = "") -> None:
        self._keys[actor_id] = (private_key_pem, public_key_pem)

    async def get_actor_key(self, actor_id: str) -> Optional[str]:
        key = self._keys.get(actor_id)
        return key[0] if key else None

    # ── Notifications ─────────────────────────────────────

    async def record_notification(self, activity_id: str, target_id: str, reason: str = None) -> bool:
        key = (activity_id, target_id)
        if key in self._notifications:
            return False
        self._notifications[key] = {
            "activity_id": activity_id, "target_id": target_id,
            "reason": reason, "created_at": _utcnow().isoformat(),
        }
        return True

    async def record_group_inbox(self, group_id: str, activity_id: str) -> bool:
        key = (group_id, activity_id)
        if key in self._group_inbox:
            return False
        self._group_inbox.add(key)
        return True

    async def get_notification_target_ids(self, activity_id: str) -> list[str]:
        return sorted(t for a, t in self._notifications if a == activity_id)

    async def list_notifications(self, target_id: str, limit: int = 50) -> list[dict]:
        rows = [n for (_, t), n in self._notifications.items() if t == target_id]
        rows.sort(key=lambda n: n["created_at"], reverse=True)
        return rows[:limit]

    # ── Idempotency ───────────────────────────────────────

    async def reserve_delivery_keys(self, keys: Iterable[str]) -> set[str]:
        fresh = {k for k in keys if k not in self._delivery_keys}
        self._delivery_keys.update(fresh)
        return fresh

    async def release_delivery_keys(self, keys: Iterable[str]) -> None:
        self._delivery_keys.difference_update(keys)

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "actors": len(self._actors),
            "blocks": len(self._blocks),
            "notifications": len(self._notifications),
            "group_inbox": len(self._group_inbox),
            "delivery_keys": len(self._delivery_keys),
        }
