"""
Typed payloads per job type.

Each job type maps to a pydantic model; the dispatch table is keyed by the
same job type, so enqueue-time validation and handler dispatch share one
source of truth. Types without a dedicated model accept any JSON object.
Field names accept both the camelCase keys used by the marketplace and
snake_case.
"""
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from marketplace_jobs.domain.errors import PayloadValidationError
from marketplace_jobs.domain.queues import JobType

class JobPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)

class SitePayload(JobPayload):
    site_id: str

class SiteCreatePayload(JobPayload):
    name: Optional[str] = None
    opportunity_id: Optional[str] = None
    brand_config: Optional[dict[str, Any]] = None

class ContentGeneratePayload(JobPayload):
    site_id: Optional[str] = None
    page_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    content_type: Literal["destination", "experience", "category", "blog", "about"] = "destination"
    target_keyword: Optional[str] = None

class ContentOptimizePayload(SitePayload):
    page_id: Optional[str] = None
    optimization_type: str = "seo"

class SeoAnalyzePayload(SitePayload):
    page_ids: list[str] = Field(default_factory=list)
    full_site_audit: bool = False
    trigger_optimizations: bool = False
    force_audit: bool = False

class SeoAutoOptimizePayload(SitePayload):
    scope: Literal["all", "metadata", "structured-data", "content"] = "all"

class OpportunityScanPayload(JobPayload):
    site_id: Optional[str] = None
    force_rescan: bool = False
    destinations: list[str] = Field(default_factory=list)

class GscSyncPayload(SitePayload):
    dimensions: list[str] = Field(default_factory=lambda: ["query", "page"])

class DomainRegisterPayload(SitePayload):
    registrar: str = "cloudflare"
    auto_renew: bool = True

class SiteDeployPayload(SitePayload):
    environment: Literal["staging", "production"] = "staging"

class MetricsAggregatePayload(JobPayload):
    site_id: Optional[str] = None
    aggregation_type: Literal["daily", "weekly"] = "daily"

class PerformanceReportPayload(JobPayload):
    report_type: Literal["daily", "weekly", "monthly"] = "weekly"

class AbTestRebalancePayload(JobPayload):
    ab_test_id: str = "all"
    algorithm: Literal["thompson_sampling", "epsilon_greedy"] = "thompson_sampling"

class QueueCleanupPayload(JobPayload):
    completed_max_age: Optional[int] = None
    failed_max_age: Optional[int] = None


PAYLOAD_MODELS: dict[str, type[JobPayload]] = {
    JobType.SITE_CREATE: SiteCreatePayload,
    JobType.CONTENT_GENERATE: ContentGeneratePayload,
    JobType.CONTENT_OPTIMIZE: ContentOptimizePayload,
    JobType.CONTENT_REVIEW: SitePayload,
    JobType.SEO_ANALYZE: SeoAnalyzePayload,
    JobType.SEO_AUTO_OPTIMIZE: SeoAutoOptimizePayload,
    JobType.SEO_OPPORTUNITY_SCAN: OpportunityScanPayload,
    JobType.GSC_SETUP: SitePayload,
    JobType.GSC_VERIFY: SitePayload,
    JobType.GSC_SYNC: GscSyncPayload,
    JobType.GA4_SETUP: SitePayload,
    JobType.DOMAIN_REGISTER: DomainRegisterPayload,
    JobType.SITE_DEPLOY: SiteDeployPayload,
    JobType.METRICS_AGGREGATE: MetricsAggregatePayload,
    JobType.PERFORMANCE_REPORT: PerformanceReportPayload,
    JobType.ABTEST_REBALANCE: AbTestRebalancePayload,
    JobType.QUEUE_CLEANUP: QueueCleanupPayload,
}

def payload_model_for(job_type: str) -> type[JobPayload]:
    return PAYLOAD_MODELS.get(job_type, JobPayload)

def validate_payload(job_type: str, payload: dict[str, Any]) -> JobPayload:
    if not isinstance(payload, dict):
        raise PayloadValidationError(f"Payload for {job_type} must be an object")
    try:
        return payload_model_for(job_type).model_validate(payload)
    except ValidationError as e:
        raise PayloadValidationError(f"Payload validation failed for {job_type}: {e}") from e
