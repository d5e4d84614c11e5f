"""
ActivityStreams 2.0 documents for outgoing federation.

    doc = build_activity(activity, sender, recipients, base_url)
"""
from __future__ import annotations

from typing import Any, Iterable

from models.schemas import Activity, Actor, Verb

AS2_CONTEXT = "https://www.w3.org/ns/activitystreams"
PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
CONTENT_TYPE = "application/activity+json"
ACCEPT = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'

VERB_TYPES = {
    Verb.POST: "Create",
    Verb.REPLY: "Create",
    Verb.LIKE: "Like",
    Verb.REPEAT: "Announce",
    Verb.FOLLOW: "Follow",
    Verb.UNDO: "Undo",
    Verb.DELETE: "Delete",
    Verb.UPDATE: "Update",
}


def _absolute(value: str, base_url: str, kind: str) -> str:
    if value.startswith(("http://", "https://")):
        return value
    return f"{base_url.rstrip('/')}/{kind}/{value}"


def actor_uri(actor: Actor, base_url: str) -> str:
    return actor.uri or _absolute(actor.id, base_url, "actor")


def key_id(actor: Actor, base_url: str) -> str:
    return f"{actor_uri(actor, base_url)}#main-key"


def build_activity(
    activity: Activity,
    sender: Actor,
    recipients: Iterable[Actor],
    base_url: str,
) -> dict[str, Any]:
    sender_uri = actor_uri(sender, base_url)
    followers = f"{sender_uri}/followers"
    recipient_uris = [actor_uri(r, base_url) for r in recipients]

    if activity.is_public:
        to, cc = [PUBLIC], [followers, *recipient_uris]
    else:
        to, cc = recipient_uris, []

    object_uri = _absolute(activity.object_id or activity.id, base_url, "object")
    published = activity.created_at.isoformat()

    if VERB_TYPES[activity.verb] == "Create":
        obj: Any = {
            "id": object_uri,
            "type": "Note",
            "attributedTo": sender_uri,
            "content": activity.content,
            "published": published,
            "to": to,
            "cc": cc,
        }
        if activity.in_reply_to_actor_id and activity.verb == Verb.REPLY:
            obj["tag"] = [{"type": "Mention", "href": uri} for uri in recipient_uris]
    else:
        obj = object_uri

    return {
        "@context": AS2_CONTEXT,
        "id": _absolute(activity.id, base_url, "activity"),
        "type": VERB_TYPES[activity.verb],
        "actor": sender_uri,
        "object": obj,
        "published": published,
        "to": to,
        "cc": cc,
    }
