"""
SqlSocialStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Idempotent inserts (notifications, group inbox, delivery keys) rely on the
composite primary keys: each insert runs in its own short transaction and
an IntegrityError means "already there", so no dialect-specific
ON CONFLICT syntax is needed.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    ActorKeyRow, ActorRow, BlockRow, DeliveryKeyRow, GroupInboxRow,
    GroupMemberRow, NotificationRow, SubscriptionRow,
)
from database.session import get_session_factory
from database.store_base import BaseSocialStore, TargetSnapshot
from models.schemas import Actor, ActorType

logger = structlog.get_logger()

# Dialects where a multi-statement read can be pinned to one snapshot
_SNAPSHOT_DIALECTS = {"postgresql", "mysql"}


class SqlSocialStore(BaseSocialStore):
    """
    Persistent social store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        factory = self._session_factory or get_session_factory()
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _insert_once(self, row) -> bool:
        try:
            async with self._session() as db:
                db.add(row)
        except IntegrityError:
            return False
        return True

    # ── Actors ─────────────────────────────────────────────

    async def get_actor(self, actor_id: str) -> Optional[Actor]:
        async with self._session() as db:
            row = await db.get(ActorRow, actor_id)
            return self._row_to_actor(row) if row else None

    async def upsert_actor(self, actor: Actor) -> Actor:
        async with self._session() as db:
            existing = await db.get(ActorRow, actor.id)
            if existing:
                existing.nickname = actor.nickname
                existing.uri = actor.uri
                existing.type = actor.type.value
                existing.is_local = actor.is_local
                existing.inbox = actor.inbox
                existing.shared_inbox = actor.shared_inbox
            else:
                db.add(ActorRow(
                    id=actor.id, nickname=actor.nickname, uri=actor.uri,
                    type=actor.type.value, is_local=actor.is_local,
                    inbox=actor.inbox, shared_inbox=actor.shared_inbox,
                ))
        return actor

    async def follow(self, subscriber_id: str, subscribed_id: str) -> None:
        await self._insert_once(SubscriptionRow(subscriber_id=subscriber_id, subscribed_id=subscribed_id))

    async def block(self, blocker_id: str, blocked_id: str) -> None:
        await self._insert_once(BlockRow(blocker_id=blocker_id, blocked_id=blocked_id))

    async def add_group_member(self, group_id: str, actor_id: str) -> None:
        await self._insert_once(GroupMemberRow(group_id=group_id, actor_id=actor_id))

    async def snapshot_targets(
        self, sender_id: str, explicit_ids: Iterable[str], group_ids: Iterable[str],
        activity_id: Optional[str] = None,
    ) -> TargetSnapshot:
        explicit_ids = list(explicit_ids)
        group_ids = list(group_ids)
        snapshot = TargetSnapshot()

        async with self._session() as db:
            dialect = db.get_bind().dialect.name
            if dialect in _SNAPSHOT_DIALECTS:
                await db.connection(execution_options={"isolation_level": "REPEATABLE READ"})
            elif dialect == "sqlite":
                # pysqlite only opens a transaction before DML; without BEGIN
                # every SELECT below would read its own snapshot
                await db.execute(text("BEGIN"))

            if activity_id is not None:
                result = await db.execute(
                    select(NotificationRow.target_id)
                    .where(NotificationRow.activity_id == activity_id)
                    .order_by(NotificationRow.target_id)
                )
                snapshot.notified = list(result.scalars())

            result = await db.execute(
                select(SubscriptionRow.subscriber_id)
                .where(SubscriptionRow.subscribed_id == sender_id)
                .order_by(SubscriptionRow.subscriber_id)
            )
            snapshot.subscribers = list(result.scalars())

            snapshot.group_members = {gid: [] for gid in group_ids}
            if group_ids:
                result = await db.execute(
                    select(GroupMemberRow.group_id, GroupMemberRow.actor_id)
                    .where(GroupMemberRow.group_id.in_(group_ids))
                    .order_by(GroupMemberRow.actor_id)
                )
                for group_id, actor_id in result:
                    snapshot.group_members[group_id].append(actor_id)

            wanted = (set(explicit_ids) | set(snapshot.notified)
                      | set(snapshot.subscribers) | set(group_ids))
            for members in snapshot.group_members.values():
                wanted.update(members)
            if not wanted:
                return snapshot

            result = await db.execute(select(ActorRow).where(ActorRow.id.in_(wanted)))
            snapshot.actors = {row.id: self._row_to_actor(row) for row in result.scalars()}

            result = await db.execute(
                select(BlockRow.blocker_id)
                .where(BlockRow.blocked_id == sender_id, BlockRow.blocker_id.in_(wanted))
            )
            snapshot.blocked_by = set(result.scalars())

        return snapshot

    # ── Keys ───────────────────────────────────────────────

    async def set_actor_key(self, actor_id: str, private_key_pem: str, public_key_pem: str = "") -> None:
        async with self._session() as db:
            await db.merge(ActorKeyRow(
                actor_id=actor_id, private_key_pem=private_key_pem, public_key_pem=public_key_pem,
            ))

    async def get_actor_key(self, actor_id: str) -> Optional[str]:
        async with self._session() as db:
            row = await db.get(ActorKeyRow, actor_id)
            return row.private_key_pem if row else None

    # ── Notifications ──────────────────────────────────────

    async def record_notification(self, activity_id: str, target_id: str, reason: str = None) -> bool:
        return await self._insert_once(
            NotificationRow(activity_id=activity_id, target_id=target_id, reason=reason)
        )

    async def record_group_inbox(self, group_id: str, activity_id: str) -> bool:
        return await self._insert_once(GroupInboxRow(group_id=group_id, activity_id=activity_id))

    async def get_notification_target_ids(self, activity_id: str) -> list[str]:
        async with self._session() as db:
            result = await db.execute(
                select(NotificationRow.target_id)
                .where(NotificationRow.activity_id == activity_id)
                .order_by(NotificationRow.target_id)
            )
            return list(result.scalars())

    async def list_notifications(self, target_id: str, limit: int = 50) -> list[dict]:
        async with self._session() as db:
            result = await db.execute(
                select(NotificationRow)
                .where(NotificationRow.target_id == target_id)
                .order_by(NotificationRow.created_at.desc())
                .limit(limit)
            )
            return [
                {
                    "activity_id": r.activity_id, "target_id": r.target_id,
                    "reason": r.reason, "created_at": r.created_at.isoformat(),
                }
                for r in result.scalars()
            ]

    # ── Idempotency ────────────────────────────────────────

    async def reserve_delivery_keys(self, keys: Iterable[str]) -> set[str]:
        keys = set(keys)
        if not keys:
            return set()
        async with self._session() as db:
            result = await db.execute(select(DeliveryKeyRow.key).where(DeliveryKeyRow.key.in_(keys)))
            seen = set(result.scalars())

        fresh = set()
        for key in sorted(keys - seen):
            # A concurrent fan-out may win the insert; its key counts as seen
            if await self._insert_once(DeliveryKeyRow(key=key)):
                fresh.add(key)
        return fresh

    async def release_delivery_keys(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        async with self._session() as db:
            await db.execute(delete(DeliveryKeyRow).where(DeliveryKeyRow.key.in_(keys)))

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_actor(row: ActorRow) -> Actor:
        return Actor(
            id=row.id, nickname=row.nickname or "", uri=row.uri or "",
            type=ActorType(row.type or "person"), is_local=bool(row.is_local),
            inbox=row.inbox or "", shared_inbox=row.shared_inbox or "",
        )
