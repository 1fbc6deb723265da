from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_ENQUEUED = Counter('jobs_enqueued_total', 'Jobs written to the store and queued', ['queue', 'type'])
JOBS_DEDUPLICATED = Counter('jobs_deduplicated_total', 'Enqueue calls answered with an existing in-flight job', ['queue'])

QUEUE_DEPTH = Gauge('job_queue_depth', 'Queue entries by state', ['queue', 'state'])
JOB_FAILURES = Counter('job_failures_total', 'Total job failures', ['queue', 'type', 'kind'])  # kind=retryable|final
JOB_COMPLETE_TOTAL = Counter('job_complete_total', 'Total jobs completed successfully', ['queue', 'type'])
JOB_START_DELAY = Histogram('job_start_delay_seconds', 'Time from available_at to lease', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])

JOB_DURATION = Histogram('job_duration_seconds', 'Time from lease to completion', ['queue'], buckets=[1.0, 5.0, 10.0, 60.0, 120.0, 600.0, 3600.0])

JOBS_INFLIGHT = Gauge(
    "jobs_inflight",
    "Number of jobs currently executing in this worker",
    ["queue"]
)

JOB_DISPATCH_COUNT = Counter(
    "job_dispatch_total",
    "Total number of queue entries leased by workers",
    ["queue"]
)

RATE_LIMIT_WAITS = Counter(
    "worker_rate_limit_waits_total",
    "Times a consumer waited for a rate-limit token",
    ["queue"]
)

STUCK_HEALED_TOTAL = Counter("stuck_jobs_healed_total", "Stuck jobs reset to PENDING")
STUCK_FAILED_TOTAL = Counter("stuck_jobs_failed_total", "Stuck jobs failed permanently")
ORPHANS_RESUBMITTED_TOTAL = Counter("orphaned_jobs_resubmitted_total", "PENDING jobs given a fresh queue entry")

ROADMAP_TASKS_QUEUED = Counter("roadmap_tasks_queued_total", "Jobs enqueued by the roadmap processor", ["type"])
ROADMAP_SITE_ERRORS = Counter("roadmap_site_errors_total", "Sites whose roadmap step raised")

SCHEDULED_TRIGGERS = Counter("scheduler_triggers_total", "Recurring schedules fired", ["type"])
QUEUE_ENTRIES_CLEANED = Counter("queue_entries_cleaned_total", "Finished queue entries removed", ["queue", "state"])

PAUSE_DENIALS = Counter("pause_control_denials_total", "Autonomous operations blocked by pause control", ["feature"])

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
