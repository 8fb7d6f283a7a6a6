"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Lifecycle states shared by jobs and ingested events.

    State transitions:
    - PENDING -> PROCESSING (claimed, lease set)
    - PROCESSING -> COMPLETED (success)
    - PROCESSING -> PENDING (retry with backoff, or stale lease reclaimed)
    - PROCESSING -> DEAD_LETTER (attempts exhausted or terminal failure)
    - PENDING | PROCESSING -> CANCELLED (operator)
    - DEAD_LETTER -> PENDING (single re-enqueue)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.DEAD_LETTER, JobStatus.CANCELLED)
PURGEABLE_STATUSES = (JobStatus.COMPLETED, JobStatus.CANCELLED)


class JobPriority(StrEnum):
    """Job priority tiers for queue ordering."""

    SCHEDULED = "scheduled"
    URGENT = "urgent"
    CRITICAL = "critical"


# Priority ranks for ordering (higher = claimed first)
PRIORITY_RANKS: dict[JobPriority, int] = {
    JobPriority.SCHEDULED: 1,
    JobPriority.URGENT: 10,
    JobPriority.CRITICAL: 100,
}


class ErrorCategory(StrEnum):
    """Failure classes understood by the retry policy."""

    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    CREDENTIAL_INVALID = "credential_invalid"
    TIMEOUT = "timeout"
    OTHER = "other"


# Categories eligible for the dead-letter re-enqueue
REQUEUEABLE_CATEGORIES = (
    ErrorCategory.TRANSIENT_NETWORK,
    ErrorCategory.RATE_LIMITED,
    ErrorCategory.TIMEOUT,
)


class JobType(StrEnum):
    """Executor dispatch keys."""

    CREDENTIAL_REFRESH = "credential_refresh"
    ORDER_BACKFILL = "order_backfill"
    NORMALIZE_EVENT = "normalize_event"


class EventKind(StrEnum):
    """Closed set of normalized notification kinds."""

    ORDER = "order"
    PAYMENT = "payment"
    QUESTION = "question"
    MESSAGE = "message"


class CredentialStatus(StrEnum):
    """Credential health."""

    ACTIVE = "active"
    REAUTH_REQUIRED = "reauth_required"


class ConnectionStatus(StrEnum):
    """Store connection state."""

    ACTIVE = "active"
    REAUTH_REQUIRED = "reauth_required"
    DISCONNECTED = "disconnected"


class TriggerName(StrEnum):
    """Externally invoked ticks."""

    CREDENTIAL_SCAN = "credential-scan"
    CREDENTIAL_URGENT = "credential-urgent"
    BACKFILL_SCAN = "backfill-scan"
    JOBS_WORKER = "jobs-worker"
    EVENTS_WORKER = "events-worker"
    DEAD_LETTERS = "dead-letters"
    MAINTENANCE = "maintenance"


# Provider identifiers
PROVIDER_MERCADOLIBRE = "mercadolibre"
SOURCE_WEBHOOK = "webhook"
SOURCE_SYNC = "sync"

# User-visible replacement for credential failure detail
REAUTH_MESSAGE = "reauthorization required"

# Lock keys, one per job family
LOCK_CREDENTIAL_SCAN = "cron:credential_scan"
LOCK_CREDENTIAL_URGENT = "cron:credential_urgent"
LOCK_BACKFILL_SCAN = "cron:backfill_scan"
LOCK_DEAD_LETTERS = "cron:dead_letters"
LOCK_MAINTENANCE = "cron:maintenance"

# API constants
API_V1_PREFIX = "/v1"
TRIGGER_SECRET_HEADER = "X-Trigger-Secret"

# Metrics names
METRIC_QUEUE_DEPTH = "vigil_queue_depth"
METRIC_ENQUEUED = "vigil_enqueued_total"
METRIC_CLAIMED = "vigil_claimed_total"
METRIC_OUTCOMES = "vigil_outcomes_total"
METRIC_EXECUTION_DURATION = "vigil_execution_duration_seconds"
METRIC_LEASES_RECLAIMED = "vigil_leases_reclaimed_total"
METRIC_LOCK_ATTEMPTS = "vigil_lock_attempts_total"
METRIC_SCAN_SUBJECTS = "vigil_scan_subjects_total"
METRIC_DEAD_LETTERS = "vigil_dead_letters"
METRIC_DEAD_LETTER_REQUEUES = "vigil_dead_letter_requeues_total"
METRIC_INGESTED = "vigil_notifications_total"

# Trace span names
SPAN_CLAIM = "queue.claim"
SPAN_EXECUTE = "queue.execute"
SPAN_REPORT = "queue.report_outcome"
SPAN_SCAN = "scheduler.scan"
SPAN_TRIGGER = "trigger.run"
