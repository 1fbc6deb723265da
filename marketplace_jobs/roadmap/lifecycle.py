"""
Site lifecycle: which jobs take a site from DRAFT to live, in what order,
what each one leaves behind, and which pause-control feature gates it.
"""
from dataclasses import dataclass
from typing import Any, Optional

from marketplace_jobs.db.models import Site
from marketplace_jobs.domain.queues import JobType
from marketplace_jobs.services.pause_control import Feature, RateLimitType

@dataclass(frozen=True)
class Phase:
    key: str
    name: str
    description: str
    tasks: tuple[JobType, ...]

SITE_LIFECYCLE_PHASES: tuple[Phase, ...] = (
    Phase("setup", "Site Setup", "Creating site structure and brand identity", (JobType.SITE_CREATE,)),
    Phase("content", "Content Creation", "Generating and optimizing site content",
          (JobType.CONTENT_GENERATE, JobType.CONTENT_OPTIMIZE, JobType.CONTENT_REVIEW)),
    Phase("domain", "Domain & SSL", "Registering domain and setting up SSL",
          (JobType.DOMAIN_REGISTER, JobType.DOMAIN_VERIFY, JobType.SSL_PROVISION)),
    Phase("seo", "SEO & Analytics", "Setting up Google Search Console, Analytics, and SEO",
          (JobType.GSC_SETUP, JobType.GSC_VERIFY, JobType.GA4_SETUP, JobType.GSC_SYNC)),
    Phase("launch", "Site Launch", "Deploying site to production", (JobType.SITE_DEPLOY,)),
    Phase("optimization", "Ongoing Optimization", "Continuous content and performance optimization",
          (JobType.SEO_ANALYZE, JobType.SEO_OPPORTUNITY_SCAN, JobType.SEO_OPPORTUNITY_OPTIMIZE,
           JobType.ABTEST_ANALYZE, JobType.METRICS_AGGREGATE)),
)

TASK_DESCRIPTIONS: dict[str, tuple[str, str]] = {
    JobType.SITE_CREATE: ("Create Site", "Set up site structure and brand identity"),
    JobType.CONTENT_GENERATE: ("Generate Content", "Write homepage and key pages"),
    JobType.CONTENT_OPTIMIZE: ("Optimize Content", "Improve content for SEO and conversions"),
    JobType.CONTENT_REVIEW: ("Review Content", "Quality check all generated content"),
    JobType.DOMAIN_REGISTER: ("Register Domain", "Purchase and configure domain name"),
    JobType.DOMAIN_VERIFY: ("Verify Domain", "Confirm domain ownership and DNS settings"),
    JobType.SSL_PROVISION: ("Setup SSL", "Install security certificate for HTTPS"),
    JobType.GSC_SETUP: ("Setup Search Console", "Add site to Google Search Console"),
    JobType.GSC_VERIFY: ("Verify Search Console", "Verify site ownership in GSC"),
    JobType.GA4_SETUP: ("Setup Google Analytics", "Create GA4 property and tracking"),
    JobType.GSC_SYNC: ("Sync Search Data", "Import search performance data"),
    JobType.SITE_DEPLOY: ("Deploy Site", "Publish site to the web"),
    JobType.SEO_ANALYZE: ("Analyze SEO", "Check and improve search optimization"),
    JobType.SEO_OPPORTUNITY_SCAN: ("Scan Opportunities", "Find new keyword opportunities"),
    JobType.SEO_OPPORTUNITY_OPTIMIZE: ("Optimize Opportunities", "Iterative optimization for SEO"),
    JobType.ABTEST_ANALYZE: ("Analyze Tests", "Evaluate A/B test results"),
    JobType.METRICS_AGGREGATE: ("Collect Metrics", "Gather performance analytics"),
}

# A task may only be queued once every listed task is done (with its artifact)
TASK_DEPENDENCIES: dict[str, tuple[JobType, ...]] = {
    JobType.CONTENT_OPTIMIZE: (JobType.CONTENT_GENERATE,),
    JobType.CONTENT_REVIEW: (JobType.CONTENT_OPTIMIZE,),
    JobType.DOMAIN_VERIFY: (JobType.DOMAIN_REGISTER,),
    JobType.SSL_PROVISION: (JobType.DOMAIN_VERIFY,),
    JobType.GSC_VERIFY: (JobType.GSC_SETUP,),
    JobType.GSC_SYNC: (JobType.GSC_VERIFY,),
    JobType.SITE_DEPLOY: (JobType.CONTENT_REVIEW, JobType.SSL_PROVISION),
    JobType.SEO_ANALYZE: (JobType.SITE_DEPLOY,),
    JobType.SEO_OPPORTUNITY_SCAN: (JobType.SEO_ANALYZE,),
    JobType.SEO_OPPORTUNITY_OPTIMIZE: (JobType.SEO_OPPORTUNITY_SCAN,),
    JobType.METRICS_AGGREGATE: (JobType.SITE_DEPLOY,),
}

# Interleaves independent tracks (content, domain, search console)
EXECUTION_ORDER: tuple[JobType, ...] = (
    JobType.CONTENT_GENERATE,
    JobType.DOMAIN_REGISTER,
    JobType.CONTENT_OPTIMIZE,
    JobType.DOMAIN_VERIFY,
    JobType.CONTENT_REVIEW,
    JobType.SSL_PROVISION,
    JobType.GSC_SETUP,
    JobType.GSC_VERIFY,
    JobType.GA4_SETUP,
    JobType.GSC_SYNC,
    JobType.SITE_DEPLOY,
    JobType.SEO_ANALYZE,
    JobType.SEO_OPPORTUNITY_SCAN,
    JobType.SEO_OPPORTUNITY_OPTIMIZE,
    JobType.METRICS_AGGREGATE,
)

TASK_FEATURES: dict[str, Feature] = {
    JobType.CONTENT_GENERATE: Feature.CONTENT_GENERATION,
    JobType.CONTENT_OPTIMIZE: Feature.CONTENT_OPTIMIZATION,
    JobType.CONTENT_REVIEW: Feature.CONTENT_OPTIMIZATION,
    JobType.SEO_OPPORTUNITY_OPTIMIZE: Feature.CONTENT_OPTIMIZATION,
    JobType.GSC_SETUP: Feature.GSC_VERIFICATION,
    JobType.GSC_VERIFY: Feature.GSC_VERIFICATION,
    JobType.GSC_SYNC: Feature.GSC_VERIFICATION,
}

TASK_RATE_LIMITS: dict[str, RateLimitType] = {
    JobType.CONTENT_GENERATE: RateLimitType.CONTENT_GENERATE,
    JobType.GSC_SYNC: RateLimitType.GSC_REQUEST,
    JobType.SEO_OPPORTUNITY_SCAN: RateLimitType.OPPORTUNITY_SCAN,
}

_EXTRA_PAYLOAD: dict[str, dict[str, Any]] = {
    JobType.CONTENT_GENERATE: {"contentType": "destination"},
    JobType.CONTENT_OPTIMIZE: {"optimizationType": "seo"},
    JobType.CONTENT_REVIEW: {"reviewType": "quality"},
    JobType.DOMAIN_REGISTER: {"registrar": "cloudflare", "autoRenew": True},
    JobType.SITE_DEPLOY: {"environment": "staging"},
    JobType.METRICS_AGGREGATE: {"aggregationType": "daily"},
}

def build_task_payload(site_id: str, job_type: str) -> dict[str, Any]:
    return {"siteId": site_id, **_EXTRA_PAYLOAD.get(job_type, {})}

def validate_task_artifacts(site: Optional[Site]) -> dict[str, tuple[bool, Optional[str]]]:
    """
    For each lifecycle task, whether the artifact it should have produced
    exists, with the reason when it does not. Tasks that leave nothing
    persistent behind are always valid.
    """
    if site is None:
        return {task: (False, "Site record not found") for task in TASK_DESCRIPTIONS}

    has_content = site.content_count > 0
    checks = {
        JobType.SITE_CREATE: (True, None),
        JobType.CONTENT_GENERATE: (has_content, "No generated content found"),
        JobType.CONTENT_OPTIMIZE: (has_content, "No content to optimize"),
        JobType.CONTENT_REVIEW: (has_content, "No content to review"),
        JobType.DOMAIN_REGISTER: (site.domain_registered or bool(site.primary_domain), "No domain registered for site"),
        JobType.DOMAIN_VERIFY: (site.domain_verified, "No verified domains found"),
        JobType.SSL_PROVISION: (site.ssl_enabled, "No domains with SSL enabled"),
        JobType.GSC_SETUP: (bool(site.gsc_property_url), "No GSC property URL configured"),
        JobType.GSC_VERIFY: (site.gsc_verified, "GSC not verified"),
        JobType.GSC_SYNC: (site.gsc_verified, "GSC not ready for sync"),
        JobType.GA4_SETUP: (bool(site.ga_measurement_id), "No GA4 measurement ID configured"),
        JobType.SITE_DEPLOY: (bool(site.primary_domain) and site.domain_active, "Site not deployed (no active domain)"),
    }
    result = {task: (True, None) for task in TASK_DESCRIPTIONS}
    for task, (valid, reason) in checks.items():
        result[task] = (bool(valid), None if valid else reason)
    return result
