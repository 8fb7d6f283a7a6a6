"""
Inbound notification intake and topic mapping.
"""

from vigil.ingest.intake import InboundNotification, IntakeResult, NotificationIntake
from vigil.ingest.topics import TOPIC_ROUTES, TopicRoute, resolve_topic

__all__ = [
    "InboundNotification",
    "IntakeResult",
    "NotificationIntake",
    "TOPIC_ROUTES",
    "TopicRoute",
    "resolve_topic",
]
