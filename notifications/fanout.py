"""
Notification Fan-Out Engine — turns one new Activity into delivery jobs.

Flow:
  1. Gather raw target ids (explicit addressees, object author, sender's
     subscribers, addressed groups and their members, prior notification
     targets, caller-supplied extras)
  2. Resolve them against one store snapshot (actors + who blocked the sender)
  3. Dedup, drop the sender (unless notify_self), drop blockers
  4. Reserve one idempotency key per (activity id, target id); keys already
     taken are duplicates from an earlier run and are skipped
  5. Local targets → one job each on the notification queue
     Remote targets → one job per delivery inbox (batched) on the federation
     queue, only when the sender is local

Enqueue failures are per recipient: logged, reservation released, the rest
of the batch continues. The caller's activity is never rolled back.

Known limitation: posting to a local group does not verify the sender is a
member of that group; the group inbox entry is written regardless.
"""
from __future__ import annotations

import structlog
from typing import Any, Iterable, Optional

from database.store_base import BaseSocialStore, TargetSnapshot
from job_queue.job import DeliveryFailedError
from job_queue.manager import QueueManager
from models.schemas import Activity, Actor, FanOutReport

logger = structlog.get_logger()

# Keys of ids_already_known; each one, when present, replaces the lookup
# that would otherwise produce that part of the audience.
KNOWN_ACTOR_CIRCLE = "actor_circle"
KNOWN_NOTIFICATION_ACTIVITY = "notification_activity"
KNOWN_OBJECT = "object"
KNOWN_ADDITIONAL = "additional"


def idempotency_key(activity_id: str, target_id: str) -> str:
    return f"{activity_id}:{target_id}"


def _chunks(items: list, size: int) -> Iterable[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class FanOutEngine:

    def __init__(
        self,
        store: BaseSocialStore,
        manager: QueueManager,
        notify_self: bool = False,
        notification_queue: str = "notification",
        federation_queue: str = "activitypub",
        max_batch_size: int = 100,
    ):
        self.store = store
        self.manager = manager
        self.notify_self = notify_self
        self.notification_queue = notification_queue
        self.federation_queue = federation_queue
        self.max_batch_size = max(1, max_batch_size)

    # ── Target gathering ─────────────────────────────────────

    @staticmethod
    def object_target_ids(sender: Actor, activity: Activity) -> list[str]:
        """Mentions, the replied-to author and the object's author (unless it is the sender)."""
        ids = list(activity.mentions)
        if activity.in_reply_to_actor_id:
            ids.append(activity.in_reply_to_actor_id)
        if activity.object_actor_id and activity.object_actor_id != sender.id:
            ids.append(activity.object_actor_id)
        return ids

    async def gather_targets(
        self,
        sender: Actor,
        activity: Activity,
        ids_already_known: Optional[dict[str, list[str]]] = None,
    ) -> tuple[list[Actor], TargetSnapshot]:
        known = ids_already_known or {}

        if KNOWN_OBJECT in known:
            object_ids = list(known[KNOWN_OBJECT])
        else:
            object_ids = self.object_target_ids(sender, activity)

        # prior notifications come from the same snapshot as the rest
        known_notified = known.get(KNOWN_NOTIFICATION_ACTIVITY)
        use_circle = KNOWN_ACTOR_CIRCLE not in known
        others = ([] if use_circle else list(known[KNOWN_ACTOR_CIRCLE]))
        others.extend(known.get(KNOWN_ADDITIONAL, []))

        group_ids = list(activity.group_ids) if use_circle else []
        snapshot = await self.store.snapshot_targets(
            sender.id, object_ids + list(known_notified or []) + others, group_ids,
            activity_id=activity.id if known_notified is None else None,
        )

        notified = snapshot.notified if known_notified is None else list(known_notified)
        ordered = object_ids + notified + others
        if use_circle:
            ordered.extend(snapshot.subscribers)
            for group_id in group_ids:
                ordered.append(group_id)
                ordered.extend(snapshot.group_members.get(group_id, []))

        targets, seen = [], set()
        for actor_id in ordered:
            if actor_id in seen:
                continue
            seen.add(actor_id)
            actor = snapshot.actors.get(actor_id)
            if actor is None:
                logger.debug("fanout_target_unknown", activity_id=activity.id, target_id=actor_id)
                continue
            targets.append(actor)
        return targets, snapshot

    # ── Entry points ─────────────────────────────────────────

    async def fan_out(
        self,
        sender: Actor,
        activity: Activity,
        ids_already_known: Optional[dict[str, list[str]]] = None,
        reason: Optional[str] = None,
    ) -> FanOutReport:
        targets, snapshot = await self.gather_targets(sender, activity, ids_already_known)
        return await self.notify(sender, activity, targets, reason, snapshot=snapshot)

    async def notify(
        self,
        sender: Actor,
        activity: Activity,
        targets: list[Actor],
        reason: Optional[str] = None,
        snapshot: Optional[TargetSnapshot] = None,
    ) -> FanOutReport:
        """Bring an activity to the given targets' attention."""
        reason = reason or activity.verb.value
        report = FanOutReport(activity_id=activity.id)

        if snapshot is None:
            snapshot = await self.store.snapshot_targets(sender.id, [t.id for t in targets], [])

        eligible: list[Actor] = []
        seen: set[str] = set()
        for target in targets:
            if target.id in seen:
                continue
            seen.add(target.id)
            if target.id == sender.id and not self.notify_self:
                continue
            if target.id in snapshot.blocked_by:
                logger.info("fanout_target_blocked", activity_id=activity.id,
                            target_id=target.id, sender_id=sender.id)
                report.blocked.append(target.id)
                continue
            if not target.is_local and not sender.is_local:
                # No authority over a remote actor's doings towards other remote actors
                logger.debug("fanout_remote_skipped", activity_id=activity.id,
                             target_id=target.id, sender_id=sender.id)
                continue
            if not target.is_local and not target.delivery_inbox:
                logger.warning("fanout_remote_without_inbox", activity_id=activity.id,
                               target_id=target.id)
                report.failed.append(target.id)
                continue
            eligible.append(target)

        report.targets = len(eligible)
        if not eligible:
            logger.info("fanout_no_targets", activity_id=activity.id, sender_id=sender.id,
                        blocked=len(report.blocked))
            return report

        keys = {t.id: idempotency_key(activity.id, t.id) for t in eligible}
        fresh = await self.store.reserve_delivery_keys(keys.values())

        local, remote = [], []
        for target in eligible:
            if keys[target.id] not in fresh:
                report.duplicates.append(target.id)
                continue
            (local if target.is_local else remote).append(target)

        for target in local:
            await self._enqueue_local(activity, target, reason, keys[target.id], report)

        if remote:
            await self._enqueue_remote(sender, activity, remote, keys, report)

        logger.info("fanout_complete", activity_id=activity.id, sender_id=sender.id,
                    verb=activity.verb.value, targets=report.targets,
                    local_jobs=len(report.local_jobs), remote_jobs=len(report.remote_jobs),
                    blocked=len(report.blocked), duplicates=len(report.duplicates),
                    failed=len(report.failed))
        return report

    # ── Enqueueing ───────────────────────────────────────────

    async def _enqueue(self, queue: str, payload: dict[str, Any], target_ids: list[str],
                       keys: list[str], report: FanOutReport) -> Optional[str]:
        try:
            return await self.manager.enqueue(queue, payload)
        except DeliveryFailedError as e:
            # In-process delivery ran and failed; it is kept as a dead letter, not retried here
            logger.warning("fanout_delivery_failed", queue=queue, target_ids=target_ids,
                           error=str(e), retryable=e.retryable)
        except Exception as e:
            logger.error("fanout_enqueue_failed", queue=queue, target_ids=target_ids,
                         error=str(e), exc_info=True)
            await self.store.release_delivery_keys(keys)
        report.failed.extend(target_ids)
        return None

    async def _enqueue_local(self, activity: Activity, target: Actor, reason: str,
                             key: str, report: FanOutReport):
        payload = {
            "kind": "notification",
            "activity_id": activity.id,
            "target_id": target.id,
            "reason": reason,
            "group": target.is_group,
            "idempotency_key": key,
        }
        job_id = await self._enqueue(self.notification_queue, payload, [target.id], [key], report)
        if job_id:
            report.local_jobs.append(job_id)

    async def _enqueue_remote(self, sender: Actor, activity: Activity, remote: list[Actor],
                              keys: dict[str, str], report: FanOutReport):
        by_inbox: dict[str, list[Actor]] = {}
        for target in remote:
            by_inbox.setdefault(target.delivery_inbox, []).append(target)

        activity_doc = activity.model_dump(mode="json")
        for inbox, actors in by_inbox.items():
            for batch in _chunks(actors, self.max_batch_size):
                target_ids = [a.id for a in batch]
                batch_keys = [keys[a.id] for a in batch]
                payload = {
                    "kind": "federation",
                    "activity": activity_doc,
                    "sender_id": sender.id,
                    "inbox": inbox,
                    "target_ids": target_ids,
                    "idempotency_keys": batch_keys,
                }
                job_id = await self._enqueue(self.federation_queue, payload, target_ids,
                                             batch_keys, report)
                if job_id:
                    report.remote_jobs.append(job_id)
