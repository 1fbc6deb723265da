"""
Tests for the dispatch table and the retry/fail classification of handler
outcomes.
"""

import asyncio
import uuid

import pytest

from marketplace_jobs.domain.errors import (
    ConfigurationError,
    ErrorCategory,
    ExternalApiError,
    HandlerError,
    ErrorSeverity,
    RateLimitError,
    UnknownJobTypeError,
    to_handler_error,
)
from marketplace_jobs.domain.models import JobContext, JobResult
from marketplace_jobs.domain.payloads import SeoAnalyzePayload
from marketplace_jobs.workers.dispatch import Dispatcher, merge_processors


def seo_job(payload=None, job_type="SEO_ANALYZE") -> JobContext:
    return JobContext(
        id=uuid.uuid4(),
        type=job_type,
        queue="seo",
        payload=payload if payload is not None else {"siteId": "s1"},
        attempts_made=1,
        max_attempts=5,
    )


# -----------------------------------------------------------------------------
# Test Cases: Dispatch table
# -----------------------------------------------------------------------------
class TestDispatchTable:
    """Tests for building and resolving the queue -> type -> handler table."""

    def test_unknown_queue_rejected_at_startup(self):
        with pytest.raises(ConfigurationError):
            Dispatcher({"emails": {"SEND": lambda job: None}})

    def test_resolve_unknown_type(self):
        dispatcher = Dispatcher({"seo": {}})
        with pytest.raises(UnknownJobTypeError):
            dispatcher.resolve("seo", "SEO_ANALYZE")

    def test_merge_later_tables_win(self):
        first = lambda job: "first"
        second = lambda job: "second"

        merged = merge_processors({"seo": {"SEO_ANALYZE": first}}, {"seo": {"SEO_ANALYZE": second}})

        assert merged["seo"]["SEO_ANALYZE"] is second


# -----------------------------------------------------------------------------
# Test Cases: Outcomes
# -----------------------------------------------------------------------------
class TestDispatchOutcome:
    """Tests for turning handler results and errors into outcomes."""

    @pytest.mark.asyncio
    async def test_typed_payload_passed_to_handler(self):
        received = []

        async def analyze(job):
            received.append(job.data)
            return JobResult(success=True)

        outcome = await Dispatcher({"seo": {"SEO_ANALYZE": analyze}}).dispatch(
            seo_job({"siteId": "s1", "fullSiteAudit": True})
        )

        assert outcome.result.success
        assert isinstance(received[0], SeoAnalyzePayload)
        assert received[0].site_id == "s1"
        assert received[0].full_site_audit is True

    @pytest.mark.asyncio
    async def test_invalid_payload_is_terminal(self):
        async def analyze(job):
            return JobResult(success=True)

        outcome = await Dispatcher({"seo": {"SEO_ANALYZE": analyze}}).dispatch(seo_job({}))

        assert outcome.retryable is False
        assert outcome.result.error_category == ErrorCategory.BUSINESS_LOGIC

    @pytest.mark.asyncio
    async def test_unknown_type_is_terminal(self):
        outcome = await Dispatcher({"seo": {}}).dispatch(seo_job())

        assert outcome.retryable is False
        assert outcome.result.error_category == ErrorCategory.UNKNOWN_JOB_TYPE

    @pytest.mark.asyncio
    async def test_reported_failure_is_retryable(self):
        async def analyze(job):
            return JobResult(success=False, error="Lighthouse returned no data")

        outcome = await Dispatcher({"seo": {"SEO_ANALYZE": analyze}}).dispatch(seo_job())

        assert outcome.retryable is True
        assert outcome.result.error == "Lighthouse returned no data"

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def analyze(job):
            await asyncio.sleep(5)

        outcome = await Dispatcher({"seo": {"SEO_ANALYZE": analyze}}).dispatch(seo_job(), timeout=0.05)

        assert outcome.retryable is True
        assert outcome.result.error_category == ErrorCategory.NETWORK
        assert "timeout" in outcome.result.error

    @pytest.mark.asyncio
    async def test_dict_result_coerced(self):
        outcome = await Dispatcher({"seo": {"SEO_ANALYZE": lambda job: {"success": False, "error": "nope"}}}).dispatch(
            seo_job()
        )
        assert outcome.result.success is False
        assert outcome.result.error == "nope"


# -----------------------------------------------------------------------------
# Test Cases: Error classification
# -----------------------------------------------------------------------------
class TestErrorClassification:
    """Tests for mapping arbitrary exceptions onto retry decisions."""

    def test_client_errors_are_permanent(self):
        error = ExternalApiError("bad request", service="cloudflare", status_code=400)
        assert error.retryable is False

    def test_server_errors_are_retried(self):
        error = ExternalApiError("bad gateway", service="cloudflare", status_code=502)
        assert error.retryable is True

    def test_rate_limit_is_temporary(self):
        error = RateLimitError("google", retry_after=30)
        assert error.severity == ErrorSeverity.TEMPORARY
        assert error.retryable

    def test_message_heuristics(self):
        assert to_handler_error(Exception("429 Too Many Requests")).category == ErrorCategory.RATE_LIMIT
        assert to_handler_error(Exception("getaddrinfo ENOTFOUND: dns lookup")).category == ErrorCategory.NETWORK
        assert to_handler_error(Exception("Site abc not found")).category == ErrorCategory.NOT_FOUND
        assert to_handler_error(Exception("Missing API key")).retryable is False
        assert to_handler_error(Exception("weird")).category == ErrorCategory.UNKNOWN

    def test_handler_errors_pass_through(self):
        error = HandlerError("custom", retryable=False)
        assert to_handler_error(error) is error
