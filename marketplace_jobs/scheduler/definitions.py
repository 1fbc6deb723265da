from marketplace_jobs.domain.models import ScheduledJobDefinition
from marketplace_jobs.domain.queues import JobType

# Recurring jobs registered in the store by the scheduler role.
# "all" as siteId fans out to every active site inside the handler.
SCHEDULED_JOBS: tuple[ScheduledJobDefinition, ...] = (
    ScheduledJobDefinition(
        JobType.GSC_SYNC, "0 */6 * * *", "Sync Google Search Console data every 6 hours",
        {"siteId": "all", "dimensions": ["query", "page", "country", "device"]},
    ),
    ScheduledJobDefinition(
        JobType.SEO_OPPORTUNITY_SCAN, "0 2 * * *", "Scan for new SEO opportunities daily at 2 AM",
        {"forceRescan": False},
    ),
    ScheduledJobDefinition(
        JobType.SEO_ANALYZE, "0 3 * * *", "Daily SEO health audit with auto-optimization at 3 AM",
        {"siteId": "all", "fullSiteAudit": False, "triggerOptimizations": True},
    ),
    ScheduledJobDefinition(
        JobType.SEO_ANALYZE, "0 5 * * 0", "Weekly deep SEO audit on Sundays at 5 AM",
        {"siteId": "all", "fullSiteAudit": True, "forceAudit": True, "triggerOptimizations": True},
    ),
    ScheduledJobDefinition(
        JobType.SEO_AUTO_OPTIMIZE, "0 6 * * 0", "Weekly SEO auto-optimization on Sundays at 6 AM",
        {"siteId": "all", "scope": "all"},
    ),
    ScheduledJobDefinition(
        JobType.METRICS_AGGREGATE, "0 1 * * *", "Aggregate daily metrics at 1 AM",
        {"aggregationType": "daily"},
    ),
    ScheduledJobDefinition(
        JobType.PERFORMANCE_REPORT, "0 9 * * 1", "Weekly performance report on Mondays at 9 AM",
        {"reportType": "weekly"},
    ),
    ScheduledJobDefinition(
        JobType.ABTEST_REBALANCE, "0 * * * *", "Rebalance A/B test traffic every hour",
        {"abTestId": "all", "algorithm": "thompson_sampling"},
    ),
    ScheduledJobDefinition(
        JobType.LINK_BACKLINK_MONITOR, "0 3 * * 3", "Monitor backlinks on Wednesdays at 3 AM",
        {"siteId": "all"},
    ),
    ScheduledJobDefinition(
        JobType.LINK_OPPORTUNITY_SCAN, "0 2 * * 2", "Scan for link opportunities on Tuesdays at 2 AM",
        {"siteId": "all"},
    ),
    ScheduledJobDefinition(
        JobType.QUEUE_CLEANUP, "30 * * * *", "Trim finished queue entries every hour at :30",
        {},
    ),
)

# Interval-driven loops, listed for visibility only
ROADMAP_DEFINITION = ScheduledJobDefinition(
    "AUTONOMOUS_ROADMAP", "*/5 * * * *", "Autonomous roadmap processor: queue the next tasks for every site",
)
STUCK_DETECTION_DEFINITION = ScheduledJobDefinition(
    "STUCK_TASK_DETECTION", "*/10 * * * *", "Heal or fail jobs stuck in RUNNING/RETRYING",
)
