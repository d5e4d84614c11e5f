"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys for actors/activities (ids come from the web app).
  - Composite primary keys on notifications, group inbox and delivery keys
    make every insert idempotent per (activity, target).
  - queue_items.claimed_at + claim_token implement the atomic claim used by
    DatabaseQueueBackend; nothing else touches those columns.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Actor graph (owned by the web application, read by fan-out)
# ──────────────────────────────────────────────────────────────

class ActorRow(Base):
    __tablename__ = "actors"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    nickname: Mapped[str] = mapped_column(String(256), default="")
    uri: Mapped[str] = mapped_column(String(512), default="")
    type: Mapped[str] = mapped_column(String(32), default="person")
    is_local: Mapped[bool] = mapped_column(Boolean, default=True)
    inbox: Mapped[str] = mapped_column(String(512), default="")
    shared_inbox: Mapped[str] = mapped_column(String(512), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "nickname": self.nickname, "uri": self.uri,
            "type": self.type, "is_local": self.is_local,
            "inbox": self.inbox, "shared_inbox": self.shared_inbox,
        }


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    subscriber_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscribed_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_subscriptions_subscribed", "subscribed_id"),
    )


class BlockRow(Base):
    __tablename__ = "blocks"

    blocker_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    blocked_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_blocks_blocked", "blocked_id"),
    )


class GroupMemberRow(Base):
    __tablename__ = "group_members"

    group_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    actor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ActorKeyRow(Base):
    __tablename__ = "actor_keys"

    actor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    private_key_pem: Mapped[str] = mapped_column(Text, nullable=False)
    public_key_pem: Mapped[str] = mapped_column(Text, default="")


# ──────────────────────────────────────────────────────────────
#  Notification results
# ──────────────────────────────────────────────────────────────

class NotificationRow(Base):
    __tablename__ = "notifications"

    activity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reason: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_notifications_target", "target_id"),
    )


class GroupInboxRow(Base):
    __tablename__ = "group_inbox"

    group_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    activity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class DeliveryKeyRow(Base):
    """One row per (activity id, target actor id) handed to a queue."""
    __tablename__ = "delivery_keys"

    key: Mapped[str] = mapped_column(String(160), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Relational queue
# ──────────────────────────────────────────────────────────────

class QueueItemRow(Base):
    __tablename__ = "queue_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    transport: Mapped[str] = mapped_column(String(64), nullable=False)
    frame: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default="")

    __table_args__ = (
        Index("ix_queue_items_transport_created", "transport", "created_at"),
        Index("ix_queue_items_claim_token", "claim_token"),
    )


class DeadLetterRow(Base):
    __tablename__ = "dead_letters"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transport: Mapped[str] = mapped_column(String(64), nullable=False)
    frame: Mapped[Any] = mapped_column(JSON, nullable=False)
    error: Mapped[str] = mapped_column(Text, default="")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    enqueued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_dead_letters_transport", "transport"),
    )
