"""
Exception hierarchy.

Executor failures carry an ``ErrorCategory`` so the retry policy can
classify them without string matching. Contention (a lost claim race or a
held lock) is never an exception.
"""

from vigil.constants import REAUTH_MESSAGE, ErrorCategory


class VigilError(Exception):
    """Base exception for vigil errors."""


class JobNotFoundError(VigilError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(VigilError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")
        self.current_status = current_status
        self.target_status = target_status


class ExecutorError(VigilError):
    """Failure raised by an executor with an explicit category."""

    category: ErrorCategory = ErrorCategory.OTHER

    def __init__(self, message: str, category: ErrorCategory | None = None):
        super().__init__(message)
        if category is not None:
            self.category = category


class TransientNetworkError(ExecutorError):
    category = ErrorCategory.TRANSIENT_NETWORK


class RateLimitedError(ExecutorError):
    category = ErrorCategory.RATE_LIMITED

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class CredentialInvalidError(ExecutorError):
    """The provider rejected the credential; only the seller can fix it."""

    category = ErrorCategory.CREDENTIAL_INVALID

    def __init__(self, subject_id: str | None = None, detail: str | None = None):
        super().__init__(detail or REAUTH_MESSAGE)
        self.subject_id = subject_id


class NotificationRejected(VigilError):
    """Inbound notification failed validation."""

    status_code = 422


class UnknownTopicError(NotificationRejected):
    def __init__(self, topic: str):
        super().__init__(f"Unsupported topic: {topic}")
        self.topic = topic


class UnknownAccountError(VigilError):
    """No connected store matches the notification's account."""

    status_code = 404

    def __init__(self, external_account_id: str):
        super().__init__(f"No store for account {external_account_id}")
        self.external_account_id = external_account_id
