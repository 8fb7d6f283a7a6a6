"""
Failure classification and retry/backoff decisions.

The policy is pure: given the record as claimed, the outcome and the
current time it returns the next state. The queue applies that state with
a conditional update.

Backoff formula:
    delay = min(base * 2 ** attempts, cap)

where ``attempts`` already includes the failure being reported. There is
no jitter, so delays never shrink as attempts grow.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from vigil.config import Settings, get_settings
from vigil.constants import ErrorCategory, JobPriority, JobStatus
from vigil.errors import ExecutorError, RateLimitedError
from vigil.types.job import ExecutionOutcome

# 2 ** 20 seconds is past any sane cap
_MAX_EXPONENT = 20


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception raised by an executor to an error category."""
    if isinstance(exc, ExecutorError):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if code == 429:
            return ErrorCategory.RATE_LIMITED
        if code in (401, 403):
            return ErrorCategory.CREDENTIAL_INVALID
        if code >= 500:
            return ErrorCategory.TRANSIENT_NETWORK
        return ErrorCategory.OTHER
    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return ErrorCategory.TRANSIENT_NETWORK
    return ErrorCategory.OTHER


def outcome_from_exception(exc: BaseException) -> ExecutionOutcome:
    """Build a failed outcome from a raised exception."""
    retry_after = exc.retry_after if isinstance(exc, RateLimitedError) else None
    return ExecutionOutcome.failed(
        error=str(exc) or type(exc).__name__,
        category=classify_error(exc),
        retry_after=retry_after,
    )


def compute_backoff(
    attempts: int,
    base_delay_seconds: int,
    max_delay_seconds: int,
) -> float:
    """
    Exponential backoff capped at ``max_delay_seconds``.

    Args:
        attempts: Failed attempts so far, including the current one.
        base_delay_seconds: Delay unit.
        max_delay_seconds: Upper bound.

    Returns:
        Delay in seconds.
    """
    exponent = min(max(attempts, 0), _MAX_EXPONENT)
    return float(min(base_delay_seconds * (2**exponent), max_delay_seconds))


@dataclass(frozen=True)
class RetryDecision:
    """Next state of a record after an outcome."""

    status: JobStatus
    attempts: int
    scheduled_at: datetime | None
    category: ErrorCategory | None
    error: str | None
    flag_subject: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.DEAD_LETTER)

    def as_values(self, now: datetime) -> dict:
        """Column values for the conditional update."""
        values = {
            "status": self.status,
            "attempts": self.attempts,
            "lease_owner": None,
            "lease_expires_at": None,
        }
        if self.status == JobStatus.COMPLETED:
            values["completed_at"] = now
            return values
        values["last_error"] = self.error
        values["last_error_category"] = self.category
        if self.status == JobStatus.PENDING:
            values["scheduled_at"] = self.scheduled_at
        else:
            values["completed_at"] = now
        return values


class RetryPolicy:
    """
    Decides retry vs. terminal for one outcome.

    - success: completed, attempts unchanged
    - credential_invalid: dead letter immediately, subject flagged
    - timeout after a timeout: dead letter (when enabled)
    - other: retried up to ``retry_other_max_attempts``
    - everything else: retried with backoff until ``max_attempts``
    """

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    def max_attempts_for(self, priority: JobPriority | None) -> int:
        """Attempt budget fixed at enqueue time."""
        s = self._settings
        return {
            JobPriority.CRITICAL: s.max_attempts_critical,
            JobPriority.URGENT: s.max_attempts_urgent,
            JobPriority.SCHEDULED: s.max_attempts_scheduled,
        }.get(priority, s.max_attempts_scheduled)

    def backoff(self, attempts: int, category: ErrorCategory, retry_after: float | None = None) -> float:
        s = self._settings
        base = s.retry_base_delay_seconds
        if category == ErrorCategory.RATE_LIMITED:
            base = s.retry_rate_limited_base_delay_seconds
        delay = compute_backoff(attempts, base, s.retry_max_delay_seconds)
        if retry_after is not None:
            delay = min(max(delay, retry_after), s.retry_max_delay_seconds)
        return delay

    def decide(
        self,
        attempts: int,
        max_attempts: int,
        outcome: ExecutionOutcome,
        now: datetime,
        previous_category: ErrorCategory | None = None,
    ) -> RetryDecision:
        """
        Compute the next state.

        Args:
            attempts: Failed attempts recorded before this execution.
            max_attempts: The record's attempt budget.
            outcome: What the executor reported.
            now: Decision time.
            previous_category: Category of the previous failure, if any.
        """
        if outcome.success:
            return RetryDecision(
                status=JobStatus.COMPLETED,
                attempts=attempts,
                scheduled_at=None,
                category=None,
                error=None,
            )

        category = outcome.error_category or ErrorCategory.OTHER
        error = outcome.error or "unknown error"
        next_attempts = attempts + 1

        if category == ErrorCategory.CREDENTIAL_INVALID:
            return RetryDecision(
                status=JobStatus.DEAD_LETTER,
                attempts=next_attempts,
                scheduled_at=None,
                category=category,
                error=error,
                flag_subject=True,
            )

        budget = max_attempts
        if category == ErrorCategory.OTHER:
            budget = min(max_attempts, self._settings.retry_other_max_attempts)

        repeated_timeout = (
            category == ErrorCategory.TIMEOUT
            and previous_category == ErrorCategory.TIMEOUT
            and self._settings.retry_dead_letter_repeated_timeouts
        )

        if next_attempts >= budget or repeated_timeout:
            return RetryDecision(
                status=JobStatus.DEAD_LETTER,
                attempts=next_attempts,
                scheduled_at=None,
                category=category,
                error=error,
            )

        delay = self.backoff(next_attempts, category, outcome.retry_after)
        return RetryDecision(
            status=JobStatus.PENDING,
            attempts=next_attempts,
            scheduled_at=now + timedelta(seconds=delay),
            category=category,
            error=error,
        )
