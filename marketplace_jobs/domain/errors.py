from enum import StrEnum
from typing import Any, Optional


class JobError(Exception):
    """Base exception for scheduling-core errors."""
    pass

class ConfigurationError(JobError):
    pass

class UnknownQueueError(JobError):
    def __init__(self, queue_name):
        super().__init__(f"Unknown queue: {queue_name}")
        self.queue_name = queue_name

class QueueMismatchError(JobError):
    def __init__(self, job_type, queue_name, expected):
        super().__init__(f"Job type {job_type} belongs to queue {expected}, not {queue_name}")

class PayloadValidationError(JobError):
    pass

class UnknownJobTypeError(JobError):
    def __init__(self, job_type, queue_name):
        super().__init__(f"Unknown job type: {job_type} in queue {queue_name}")

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class SiteNotFoundError(JobError):
    def __init__(self, site_id):
        super().__init__(f"Site {site_id} not found")

class SettingsUnavailableError(JobError):
    pass


class ErrorCategory(StrEnum):
    EXTERNAL_API = "EXTERNAL_API"
    DATABASE = "DATABASE"
    CONFIGURATION = "CONFIGURATION"
    BUSINESS_LOGIC = "BUSINESS_LOGIC"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"
    # Assigned by the dispatcher rather than by handlers
    PAUSED = "paused"
    UNKNOWN_JOB_TYPE = "unknown_job_type"
    STUCK = "stuck"

class ErrorSeverity(StrEnum):
    TEMPORARY = "TEMPORARY"      # likely to succeed on retry
    RECOVERABLE = "RECOVERABLE"  # may succeed with backoff
    PERMANENT = "PERMANENT"      # will not succeed without intervention
    CRITICAL = "CRITICAL"


class HandlerError(JobError):
    """
    Error raised by a job handler, carrying enough classification for the
    dispatcher to decide between retry and terminal failure.

    Handlers that know a failure is permanent (bad payload, business rule)
    should raise with severity PERMANENT so the job fails without consuming
    its retry budget.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.RECOVERABLE,
        retryable: Optional[bool] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.category = category
        self.severity = severity
        if retryable is None:
            retryable = severity not in (ErrorSeverity.PERMANENT, ErrorSeverity.CRITICAL)
        self.retryable = retryable
        self.context = context or {}

class ExternalApiError(HandlerError):
    def __init__(self, message: str, service: str, status_code: Optional[int] = None):
        # 4xx (other than 429) will not improve on retry
        permanent = status_code is not None and 400 <= status_code < 500 and status_code != 429
        super().__init__(
            f"{service}: {message}",
            category=ErrorCategory.EXTERNAL_API,
            severity=ErrorSeverity.PERMANENT if permanent else ErrorSeverity.RECOVERABLE,
            context={"service": service, "status_code": status_code},
        )

class RateLimitError(HandlerError):
    def __init__(self, service: str, retry_after: Optional[float] = None):
        super().__init__(
            f"{service}: rate limit exceeded",
            category=ErrorCategory.RATE_LIMIT,
            severity=ErrorSeverity.TEMPORARY,
            context={"service": service, "retry_after": retry_after},
        )

class BusinessLogicError(HandlerError):
    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(
            message,
            category=ErrorCategory.BUSINESS_LOGIC,
            severity=ErrorSeverity.PERMANENT,
            context=context,
        )


def to_handler_error(error: BaseException) -> HandlerError:
    """
    Classifies an arbitrary exception raised by a handler.
    Unrecognised errors default to RECOVERABLE so the standard retry policy applies.
    """
    if isinstance(error, HandlerError):
        return error

    if isinstance(error, PayloadValidationError):
        return HandlerError(
            str(error),
            category=ErrorCategory.BUSINESS_LOGIC,
            severity=ErrorSeverity.PERMANENT,
        )

    message = str(error) or type(error).__name__
    lowered = message.lower()

    if "rate limit" in lowered or "too many requests" in lowered:
        return HandlerError(message, ErrorCategory.RATE_LIMIT, ErrorSeverity.TEMPORARY)

    if isinstance(error, (TimeoutError, ConnectionError)) or any(
        marker in lowered for marker in ("network", "econnrefused", "timeout", "dns")
    ):
        return HandlerError(message, ErrorCategory.NETWORK, ErrorSeverity.TEMPORARY)

    if "not found" in lowered or "does not exist" in lowered:
        return HandlerError(message, ErrorCategory.NOT_FOUND, ErrorSeverity.RECOVERABLE)

    if "database" in lowered or "sqlalchemy" in type(error).__module__:
        return HandlerError(message, ErrorCategory.DATABASE, ErrorSeverity.RECOVERABLE)

    if any(marker in lowered for marker in ("config", "api key", "api secret")):
        return HandlerError(message, ErrorCategory.CONFIGURATION, ErrorSeverity.CRITICAL)

    return HandlerError(message, ErrorCategory.UNKNOWN, ErrorSeverity.RECOVERABLE)
