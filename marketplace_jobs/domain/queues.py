from dataclasses import dataclass
from enum import StrEnum

from marketplace_jobs.domain.retry import RetryPolicy

class QueueName(StrEnum):
    CONTENT = "content"
    SEO = "seo"
    GSC = "gsc"
    SITE = "site"
    DOMAIN = "domain"
    ANALYTICS = "analytics"
    ABTEST = "abtest"
    SYNC = "sync"
    ADS = "ads"
    MICROSITE = "microsite"
    SOCIAL = "social"

QUEUE_NAMES = frozenset(q.value for q in QueueName)

class JobType(StrEnum):
    # content
    CONTENT_GENERATE = "CONTENT_GENERATE"
    CONTENT_OPTIMIZE = "CONTENT_OPTIMIZE"
    CONTENT_REVIEW = "CONTENT_REVIEW"
    MICROSITE_CONTENT_GENERATE = "MICROSITE_CONTENT_GENERATE"
    CONTENT_BLOG_FANOUT = "CONTENT_BLOG_FANOUT"
    CONTENT_FAQ_FANOUT = "CONTENT_FAQ_FANOUT"
    CONTENT_REFRESH_FANOUT = "CONTENT_REFRESH_FANOUT"
    META_TITLE_MAINTENANCE = "META_TITLE_MAINTENANCE"
    COLLECTION_REFRESH = "COLLECTION_REFRESH"
    # seo
    SEO_ANALYZE = "SEO_ANALYZE"
    SEO_AUTO_OPTIMIZE = "SEO_AUTO_OPTIMIZE"
    SEO_OPPORTUNITY_SCAN = "SEO_OPPORTUNITY_SCAN"
    SEO_OPPORTUNITY_OPTIMIZE = "SEO_OPPORTUNITY_OPTIMIZE"
    LINK_OPPORTUNITY_SCAN = "LINK_OPPORTUNITY_SCAN"
    LINK_BACKLINK_MONITOR = "LINK_BACKLINK_MONITOR"
    LINK_OUTREACH_GENERATE = "LINK_OUTREACH_GENERATE"
    LINK_ASSET_GENERATE = "LINK_ASSET_GENERATE"
    CROSS_SITE_LINK_ENRICHMENT = "CROSS_SITE_LINK_ENRICHMENT"
    # gsc
    GSC_SETUP = "GSC_SETUP"
    GSC_VERIFY = "GSC_VERIFY"
    GSC_SYNC = "GSC_SYNC"
    # site
    SITE_CREATE = "SITE_CREATE"
    SITE_DEPLOY = "SITE_DEPLOY"
    PIPELINE_HEALTH_CHECK = "PIPELINE_HEALTH_CHECK"
    QUEUE_CLEANUP = "QUEUE_CLEANUP"
    # domain
    DOMAIN_REGISTER = "DOMAIN_REGISTER"
    DOMAIN_VERIFY = "DOMAIN_VERIFY"
    SSL_PROVISION = "SSL_PROVISION"
    # analytics
    GA4_SETUP = "GA4_SETUP"
    GA4_DAILY_SYNC = "GA4_DAILY_SYNC"
    METRICS_AGGREGATE = "METRICS_AGGREGATE"
    PERFORMANCE_REPORT = "PERFORMANCE_REPORT"
    REFRESH_ANALYTICS_VIEWS = "REFRESH_ANALYTICS_VIEWS"
    # abtest
    ABTEST_ANALYZE = "ABTEST_ANALYZE"
    ABTEST_REBALANCE = "ABTEST_REBALANCE"
    # sync
    SUPPLIER_SYNC = "SUPPLIER_SYNC"
    SUPPLIER_SYNC_INCREMENTAL = "SUPPLIER_SYNC_INCREMENTAL"
    PRODUCT_SYNC = "PRODUCT_SYNC"
    PRODUCT_SYNC_INCREMENTAL = "PRODUCT_SYNC_INCREMENTAL"
    BULK_PRODUCT_SYNC = "BULK_PRODUCT_SYNC"
    KEYWORD_ENRICHMENT = "KEYWORD_ENRICHMENT"
    # ads
    PAID_KEYWORD_SCAN = "PAID_KEYWORD_SCAN"
    AD_CAMPAIGN_SYNC = "AD_CAMPAIGN_SYNC"
    AD_PERFORMANCE_REPORT = "AD_PERFORMANCE_REPORT"
    AD_BUDGET_OPTIMIZER = "AD_BUDGET_OPTIMIZER"
    BIDDING_ENGINE_RUN = "BIDDING_ENGINE_RUN"
    AD_CONVERSION_UPLOAD = "AD_CONVERSION_UPLOAD"
    AD_PLATFORM_IDS_SYNC = "AD_PLATFORM_IDS_SYNC"
    # microsite
    MICROSITE_CREATE = "MICROSITE_CREATE"
    MICROSITE_BRAND_GENERATE = "MICROSITE_BRAND_GENERATE"
    MICROSITE_PUBLISH = "MICROSITE_PUBLISH"
    MICROSITE_ARCHIVE = "MICROSITE_ARCHIVE"
    MICROSITE_HEALTH_CHECK = "MICROSITE_HEALTH_CHECK"
    MICROSITE_HOMEPAGE_ENRICH = "MICROSITE_HOMEPAGE_ENRICH"
    # social
    SOCIAL_DAILY_POSTING = "SOCIAL_DAILY_POSTING"
    SOCIAL_POST_GENERATE = "SOCIAL_POST_GENERATE"
    SOCIAL_POST_PUBLISH = "SOCIAL_POST_PUBLISH"


_QUEUE_JOB_TYPES: dict[QueueName, tuple[JobType, ...]] = {
    QueueName.CONTENT: (
        JobType.CONTENT_GENERATE, JobType.CONTENT_OPTIMIZE, JobType.CONTENT_REVIEW,
        JobType.MICROSITE_CONTENT_GENERATE, JobType.CONTENT_BLOG_FANOUT,
        JobType.CONTENT_FAQ_FANOUT, JobType.CONTENT_REFRESH_FANOUT,
        JobType.META_TITLE_MAINTENANCE, JobType.COLLECTION_REFRESH,
    ),
    QueueName.SEO: (
        JobType.SEO_ANALYZE, JobType.SEO_AUTO_OPTIMIZE, JobType.SEO_OPPORTUNITY_SCAN,
        JobType.SEO_OPPORTUNITY_OPTIMIZE, JobType.LINK_OPPORTUNITY_SCAN,
        JobType.LINK_BACKLINK_MONITOR, JobType.LINK_OUTREACH_GENERATE,
        JobType.LINK_ASSET_GENERATE, JobType.CROSS_SITE_LINK_ENRICHMENT,
    ),
    QueueName.GSC: (JobType.GSC_SETUP, JobType.GSC_VERIFY, JobType.GSC_SYNC),
    QueueName.SITE: (
        JobType.SITE_CREATE, JobType.SITE_DEPLOY,
        JobType.PIPELINE_HEALTH_CHECK, JobType.QUEUE_CLEANUP,
    ),
    QueueName.DOMAIN: (JobType.DOMAIN_REGISTER, JobType.DOMAIN_VERIFY, JobType.SSL_PROVISION),
    QueueName.ANALYTICS: (
        JobType.GA4_SETUP, JobType.GA4_DAILY_SYNC, JobType.METRICS_AGGREGATE,
        JobType.PERFORMANCE_REPORT, JobType.REFRESH_ANALYTICS_VIEWS,
    ),
    QueueName.ABTEST: (JobType.ABTEST_ANALYZE, JobType.ABTEST_REBALANCE),
    QueueName.SYNC: (
        JobType.SUPPLIER_SYNC, JobType.SUPPLIER_SYNC_INCREMENTAL, JobType.PRODUCT_SYNC,
        JobType.PRODUCT_SYNC_INCREMENTAL, JobType.BULK_PRODUCT_SYNC, JobType.KEYWORD_ENRICHMENT,
    ),
    QueueName.ADS: (
        JobType.PAID_KEYWORD_SCAN, JobType.AD_CAMPAIGN_SYNC, JobType.AD_PERFORMANCE_REPORT,
        JobType.AD_BUDGET_OPTIMIZER, JobType.BIDDING_ENGINE_RUN,
        JobType.AD_CONVERSION_UPLOAD, JobType.AD_PLATFORM_IDS_SYNC,
    ),
    QueueName.MICROSITE: (
        JobType.MICROSITE_CREATE, JobType.MICROSITE_BRAND_GENERATE, JobType.MICROSITE_PUBLISH,
        JobType.MICROSITE_ARCHIVE, JobType.MICROSITE_HEALTH_CHECK, JobType.MICROSITE_HOMEPAGE_ENRICH,
    ),
    QueueName.SOCIAL: (
        JobType.SOCIAL_DAILY_POSTING, JobType.SOCIAL_POST_GENERATE, JobType.SOCIAL_POST_PUBLISH,
    ),
}

JOB_TYPE_TO_QUEUE: dict[str, QueueName] = {
    job_type.value: queue
    for queue, job_types in _QUEUE_JOB_TYPES.items()
    for job_type in job_types
}

def queue_for(job_type: str) -> QueueName | None:
    return JOB_TYPE_TO_QUEUE.get(job_type)


@dataclass(frozen=True)
class QueueConfig:
    timeout_seconds: int
    attempts: int
    backoff_delay_seconds: float
    default_concurrency: int

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.attempts,
            backoff_type="exponential",
            delay_seconds=self.backoff_delay_seconds,
        )

# External-API-heavy queues get more retries with longer backoff.
QUEUE_CONFIG: dict[QueueName, QueueConfig] = {
    QueueName.CONTENT: QueueConfig(300, 3, 10, 5),
    QueueName.SEO: QueueConfig(180, 5, 15, 3),
    QueueName.GSC: QueueConfig(120, 5, 30, 2),
    QueueName.SITE: QueueConfig(600, 3, 10, 2),
    QueueName.DOMAIN: QueueConfig(180, 5, 30, 2),
    QueueName.ANALYTICS: QueueConfig(120, 3, 10, 3),
    QueueName.ABTEST: QueueConfig(60, 3, 5, 5),
    QueueName.SYNC: QueueConfig(14_400, 2, 60, 1),  # full catalog sync, up to 4 hours
    QueueName.ADS: QueueConfig(300, 3, 30, 2),
    QueueName.MICROSITE: QueueConfig(300, 3, 15, 2),
    QueueName.SOCIAL: QueueConfig(120, 3, 30, 2),
}

# Job types that legitimately carry no single siteId
SITE_OPTIONAL_TYPES = frozenset({
    JobType.DOMAIN_VERIFY, JobType.SSL_PROVISION,
    JobType.SEO_OPPORTUNITY_SCAN, JobType.SEO_OPPORTUNITY_OPTIMIZE,
    JobType.SITE_CREATE, JobType.CONTENT_GENERATE,
    JobType.MICROSITE_CREATE, JobType.MICROSITE_BRAND_GENERATE, JobType.MICROSITE_PUBLISH,
    JobType.MICROSITE_CONTENT_GENERATE, JobType.MICROSITE_HOMEPAGE_ENRICH,
    JobType.MICROSITE_ARCHIVE, JobType.MICROSITE_HEALTH_CHECK,
    JobType.GA4_DAILY_SYNC, JobType.REFRESH_ANALYTICS_VIEWS,
    JobType.METRICS_AGGREGATE, JobType.PERFORMANCE_REPORT,
    JobType.ABTEST_ANALYZE, JobType.ABTEST_REBALANCE,
    JobType.AD_CAMPAIGN_SYNC, JobType.AD_PERFORMANCE_REPORT, JobType.AD_BUDGET_OPTIMIZER,
    JobType.SOCIAL_POST_PUBLISH, JobType.SOCIAL_DAILY_POSTING,
    JobType.PAID_KEYWORD_SCAN, JobType.BIDDING_ENGINE_RUN, JobType.KEYWORD_ENRICHMENT,
    JobType.AD_CONVERSION_UPLOAD, JobType.AD_PLATFORM_IDS_SYNC,
    JobType.SUPPLIER_SYNC, JobType.SUPPLIER_SYNC_INCREMENTAL,
    JobType.PRODUCT_SYNC, JobType.PRODUCT_SYNC_INCREMENTAL, JobType.BULK_PRODUCT_SYNC,
    JobType.CONTENT_BLOG_FANOUT, JobType.CONTENT_FAQ_FANOUT, JobType.CONTENT_REFRESH_FANOUT,
    JobType.META_TITLE_MAINTENANCE, JobType.COLLECTION_REFRESH,
    JobType.PIPELINE_HEALTH_CHECK, JobType.QUEUE_CLEANUP,
    JobType.CROSS_SITE_LINK_ENRICHMENT,
})

# Different platforms share the same job type for the same site
DEDUPE_EXEMPT_TYPES = frozenset({
    JobType.SOCIAL_POST_GENERATE,
    JobType.SOCIAL_POST_PUBLISH,
    JobType.SOCIAL_DAILY_POSTING,
})

ALL_SITES = "all"
