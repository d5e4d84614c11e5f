"""
Delivery Job Handlers — the consumers of the notification and federation queues.

LocalNotificationHandler
    payload: {"kind": "notification", "activity_id", "target_id", "reason", "group", ...}
    Writes the notification row (and the group inbox row for groups).

FederationDeliveryHandler
    payload: {"kind": "federation", "activity", "sender_id", "inbox", "target_ids", ...}
    Builds the AS2 document, signs it as the sender and POSTs it to the inbox.

Status classification:
    2xx          → success
    429, 5xx     → retryable (Retry-After honoured)
    other        → terminal
Network errors and timeouts are retryable. A request that cannot be signed
is terminal and logged as signature_failure for operator attention.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from config.settings import FederationConfig
from database.store_base import BaseSocialStore
from federation.activitystreams import ACCEPT, CONTENT_TYPE, build_activity, key_id
from federation.signatures import SignatureError, sign_request
from job_queue.handlers import QueueHandler
from models.schemas import Activity, DeliveryOutcome, DeliveryResult

logger = structlog.get_logger()


def classify_status(status_code: int) -> DeliveryOutcome:
    if 200 <= status_code < 300:
        return DeliveryOutcome.SUCCESS
    if status_code == 429 or 500 <= status_code < 600:
        return DeliveryOutcome.RETRYABLE
    return DeliveryOutcome.TERMINAL


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class LocalNotificationHandler(QueueHandler):
    """Records a notification for a local actor."""

    def __init__(self, store: BaseSocialStore):
        self.store = store

    async def handle(self, payload: dict[str, Any]) -> DeliveryResult:
        activity_id = payload.get("activity_id")
        target_id = payload.get("target_id")
        if payload.get("kind") != "notification" or not activity_id or not target_id:
            return DeliveryResult.terminal("Malformed notification payload")

        target = await self.store.get_actor(target_id)
        if target is None:
            logger.warning("notification_target_gone", activity_id=activity_id, target_id=target_id)
            return DeliveryResult.terminal(f"Target actor {target_id} no longer exists")

        if payload.get("group") or target.is_group:
            await self.store.record_group_inbox(target.id, activity_id)

        created = await self.store.record_notification(activity_id, target.id, payload.get("reason"))
        logger.debug("notification_recorded", activity_id=activity_id, target_id=target.id,
                     duplicate=not created)
        return DeliveryResult.success()


class FederationDeliveryHandler(QueueHandler):
    """POSTs a signed activity to one remote inbox."""

    def __init__(self, store: BaseSocialStore, config: FederationConfig,
                 client: Optional[httpx.AsyncClient] = None):
        self.store = store
        self.config = config
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                headers={"User-Agent": self.config.user_agent, "Accept": ACCEPT},
                timeout=self.config.timeout,
            )
        return self.client

    async def close(self):
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()

    async def handle(self, payload: dict[str, Any]) -> DeliveryResult:
        inbox = payload.get("inbox")
        sender_id = payload.get("sender_id")
        if payload.get("kind") != "federation" or not inbox or not sender_id:
            return DeliveryResult.terminal("Malformed federation payload")
        try:
            activity = Activity.model_validate(payload.get("activity") or {})
        except ValidationError as e:
            return DeliveryResult.terminal(f"Malformed activity in payload: {e.error_count()} error(s)")

        sender = await self.store.get_actor(sender_id)
        if sender is None:
            return DeliveryResult.terminal(f"Sender {sender_id} no longer exists")

        recipients = []
        for target_id in payload.get("target_ids") or []:
            actor = await self.store.get_actor(target_id)
            if actor is not None:
                recipients.append(actor)

        doc = build_activity(activity, sender, recipients, self.config.base_url)
        body = json.dumps(doc).encode()

        try:
            private_key = await self.store.get_actor_key(sender.id)
            headers = sign_request("POST", inbox, body, private_key or "",
                                   key_id(sender, self.config.base_url),
                                   content_type=CONTENT_TYPE)
        except SignatureError as e:
            logger.error("signature_failure", escalate=True, sender_id=sender.id,
                         inbox=inbox, activity_id=activity.id, error=str(e))
            return DeliveryResult.terminal(f"Signature failure: {e}")

        client = await self._get_client()
        try:
            response = await client.post(inbox, content=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("federation_timeout", inbox=inbox, activity_id=activity.id)
            return DeliveryResult.retryable(f"Timeout posting to {inbox}: {e}")
        except httpx.TransportError as e:
            logger.warning("federation_network_error", inbox=inbox, activity_id=activity.id,
                           error=str(e))
            return DeliveryResult.retryable(f"Network error posting to {inbox}: {e}")

        outcome = classify_status(response.status_code)
        log = logger.info if outcome == DeliveryOutcome.SUCCESS else logger.warning
        log("federation_delivered", inbox=inbox, activity_id=activity.id,
            status=response.status_code, outcome=outcome.value,
            targets=len(payload.get("target_ids") or []))

        if outcome == DeliveryOutcome.SUCCESS:
            return DeliveryResult.success(status_code=response.status_code)
        error = f"HTTP {response.status_code} from {inbox}"
        if outcome == DeliveryOutcome.RETRYABLE:
            return DeliveryResult.retryable(
                error, status_code=response.status_code,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        return DeliveryResult.terminal(error, status_code=response.status_code)
