"""
Closed mapping from provider notification topics to normalized kinds.

Anything not listed here is rejected at intake, so the normalizer never
sees a topic it cannot handle.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from vigil.clock import ensure_utc
from vigil.constants import EventKind
from vigil.errors import UnknownTopicError


@dataclass(frozen=True)
class TopicRoute:
    topic: str
    kind: EventKind
    event_type: str


TOPIC_ROUTES: dict[str, TopicRoute] = {
    "orders_v2": TopicRoute("orders_v2", EventKind.ORDER, "order.updated"),
    "payments": TopicRoute("payments", EventKind.PAYMENT, "payment.updated"),
    "questions": TopicRoute("questions", EventKind.QUESTION, "question.received"),
    "messages": TopicRoute("messages", EventKind.MESSAGE, "message.received"),
}


def resolve_topic(topic: str) -> TopicRoute:
    """
    Look up a topic.

    Raises:
        UnknownTopicError: The topic is not in the mapping.
    """
    route = TOPIC_ROUTES.get((topic or "").strip())
    if route is None:
        raise UnknownTopicError(topic)
    return route


def entity_id_from_resource(resource: str) -> str:
    """Last path segment of a resource, e.g. ``/orders/123`` -> ``123``."""
    segment = resource.strip().rstrip("/").rsplit("/", 1)[-1]
    return segment.split("?", 1)[0]


def occurred_at_from_payload(payload: dict[str, Any], fallback: datetime) -> datetime:
    """``date_created`` from the payload (or a nested order), else ``fallback``."""
    candidates = [payload.get("date_created")]
    order = payload.get("order")
    if isinstance(order, dict):
        candidates.extend([order.get("date_created"), order.get("date_closed")])

    for value in candidates:
        if not isinstance(value, str):
            continue
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            continue
        return ensure_utc(parsed)
    return fallback
