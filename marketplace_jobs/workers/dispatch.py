import asyncio
import inspect
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from marketplace_jobs.domain.errors import (
    ConfigurationError,
    ErrorCategory,
    PayloadValidationError,
    UnknownJobTypeError,
    to_handler_error,
)
from marketplace_jobs.domain.models import JobContext, JobResult
from marketplace_jobs.domain.payloads import validate_payload
from marketplace_jobs.domain.queues import QUEUE_NAMES

logger = logging.getLogger(__name__)

Handler = Callable[[JobContext], Union[Awaitable[Any], Any]]
Processors = Mapping[str, Mapping[str, Handler]]

@dataclass(frozen=True)
class DispatchOutcome:
    result: JobResult
    # False means fail now regardless of attempts left
    retryable: bool = True

def merge_processors(*tables: Processors) -> dict[str, dict[str, Handler]]:
    """Later tables win on (queue, job_type) collisions."""
    merged: dict[str, dict[str, Handler]] = {}
    for table in tables:
        for queue, handlers in table.items():
            merged.setdefault(str(queue), {}).update({str(k): v for k, v in handlers.items()})
    return merged

class Dispatcher:
    """
    The queue -> {job_type -> handler} table and the rules that turn a
    handler's return value or exception into a retry-or-fail decision.
    Handler errors never escape `dispatch`.
    """

    def __init__(self, processors: Processors):
        unknown = [q for q in processors if q not in QUEUE_NAMES]
        if unknown:
            raise ConfigurationError(f"Processors registered for unknown queue(s): {', '.join(map(str, unknown))}")
        self.processors = merge_processors(processors)

    def resolve(self, queue: str, job_type: str) -> Handler:
        handler = self.processors.get(queue, {}).get(job_type)
        if handler is None:
            raise UnknownJobTypeError(job_type, queue)
        return handler

    async def dispatch(self, job: JobContext, timeout: Optional[float] = None) -> DispatchOutcome:
        try:
            handler = self.resolve(job.queue, job.type)
        except UnknownJobTypeError as e:
            # Deployment/version mismatch, retrying cannot help
            logger.error("No handler for job %s: %s", job.id, e)
            return DispatchOutcome(
                JobResult(success=False, error=str(e), error_category=ErrorCategory.UNKNOWN_JOB_TYPE),
                retryable=False,
            )

        try:
            job.data = validate_payload(job.type, job.payload)
            raw = handler(job)
            if inspect.isawaitable(raw):
                raw = await asyncio.wait_for(raw, timeout=timeout) if timeout else await raw
            result = JobResult.coerce(raw)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError) and timeout:
                e = TimeoutError(f"Handler exceeded timeout of {timeout:g}s")
            error = to_handler_error(e)
            level = logging.ERROR if not error.retryable or isinstance(e, PayloadValidationError) else logging.WARNING
            logger.log(level, "Job %s (%s) attempt %s/%s raised: %s",
                       job.id, job.type, job.attempts_made, job.max_attempts, error, exc_info=True)
            return DispatchOutcome(
                JobResult(success=False, error=str(error), error_category=error.category),
                retryable=error.retryable,
            )

        if result.success:
            return DispatchOutcome(result)

        if result.error_category == ErrorCategory.PAUSED:
            # Policy block: logged apart from crashes, never retried
            logger.info("Job %s (%s) blocked by pause control: %s", job.id, job.type, result.error)
            return DispatchOutcome(result, retryable=False)

        logger.warning("Job %s (%s) attempt %s/%s reported failure: %s",
                       job.id, job.type, job.attempts_made, job.max_attempts, result.error or result.message)
        return DispatchOutcome(result)
