import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_jobs.api.v1.metrics import ROADMAP_SITE_ERRORS, ROADMAP_TASKS_QUEUED
from marketplace_jobs.db.models import Job, Site
from marketplace_jobs.db.session import AsyncSessionLocal
from marketplace_jobs.domain.errors import JobError, SiteNotFoundError
from marketplace_jobs.domain.models import RoadmapProcessingResult
from marketplace_jobs.domain.queues import queue_for
from marketplace_jobs.domain.states import ACTIVE_STATUSES, JobStatus
from marketplace_jobs.queues.registry import EnqueueOptions, QueueRegistry
from marketplace_jobs.roadmap.lifecycle import (
    EXECUTION_ORDER,
    SITE_LIFECYCLE_PHASES,
    TASK_DEPENDENCIES,
    TASK_DESCRIPTIONS,
    TASK_FEATURES,
    TASK_RATE_LIMITS,
    build_task_payload,
    validate_task_artifacts,
)
from marketplace_jobs.services.pause_control import PauseControl

logger = logging.getLogger(__name__)

# Sites in these states get no autonomous work
INACTIVE_SITE_STATUSES = ("PAUSED", "ARCHIVED")

@dataclass
class TaskPlan:
    queued: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    rerun: list[str] = field(default_factory=list)

class RoadmapProcessor:
    """
    Walks every active site through its lifecycle: on each tick, queue the
    tasks whose dependencies are done and that are not already in flight.

    Overlapping ticks in one process are skipped; across processes the
    per-site dedupe key keeps a task from being queued twice.
    """

    def __init__(
        self,
        registry: QueueRegistry,
        pause_control: PauseControl,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ):
        self.registry = registry
        self.pause_control = pause_control
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    async def process_all_site_roadmaps(self) -> RoadmapProcessingResult:
        if self._lock.locked():
            logger.debug("Roadmap tick skipped: previous tick still running")
            return RoadmapProcessingResult(skipped=True)

        async with self._lock:
            return await self._process_all()

    async def _process_all(self) -> RoadmapProcessingResult:
        result = RoadmapProcessingResult()

        check = await self.pause_control.can_execute_autonomous_operation()
        if not check.allowed:
            logger.debug("Roadmap tick skipped: %s", check.reason)
            return result

        async with self._session_factory() as session:
            stmt = select(Site).where(
                Site.autonomous_processes_paused.is_(False),
                Site.status.not_in(INACTIVE_SITE_STATUSES),
            ).order_by(Site.created_at.asc())
            sites = list((await session.execute(stmt)).scalars().all())

        for site in sites:
            result.sites_processed += 1
            try:
                plan = await self.execute_next_tasks(site)
            except Exception as e:
                message = f"Site {site.id} ({site.name}): {e}"
                logger.error(f"Roadmap error: {message}", exc_info=True)
                ROADMAP_SITE_ERRORS.inc()
                result.errors.append(message)
                continue

            if plan.queued:
                logger.info('Site "%s": queued %s task(s): %s', site.name, len(plan.queued), ", ".join(plan.queued))
                result.tasks_queued += len(plan.queued)

        if result.tasks_queued or result.errors:
            logger.info(
                "Roadmap complete. Processed %s sites, queued %s tasks, %s errors",
                result.sites_processed, result.tasks_queued, len(result.errors),
            )
        return result

    async def execute_next_tasks(self, site: Site) -> TaskPlan:
        """
        Queues every lifecycle task for the site that is neither done nor in
        flight and whose dependencies are done. A COMPLETED job whose
        artifact is missing does not count as done, so the task runs again.
        """
        async with self._session_factory() as session:
            fresh = await session.get(Site, site.id)
            if fresh is None:
                raise SiteNotFoundError(site.id)
            jobs = (await session.execute(
                select(Job).where(Job.site_id == site.id)
            )).scalars().all()

        artifacts = validate_task_artifacts(fresh)
        done: set[str] = set()
        completed_without_artifact: set[str] = set()
        in_flight: set[str] = set()
        for job in jobs:
            if job.status == JobStatus.COMPLETED:
                if artifacts.get(job.type, (True, None))[0]:
                    done.add(job.type)
                else:
                    completed_without_artifact.add(job.type)
            elif job.status in ACTIVE_STATUSES:
                in_flight.add(job.type)

        plan = TaskPlan()
        for job_type in sorted(completed_without_artifact - done):
            reason = artifacts[job_type][1]
            logger.warning("Site %s: %s completed but artifact missing (%s), re-running", site.id, job_type, reason)
            plan.rerun.append(f"{job_type} ({reason})")

        for job_type in EXECUTION_ORDER:
            if job_type in done or job_type in in_flight:
                plan.skipped.append(job_type)
                continue

            unmet = [dep for dep in TASK_DEPENDENCIES.get(job_type, ()) if dep not in done]
            if unmet:
                plan.blocked.append(f"{job_type} (waiting for: {', '.join(unmet)})")
                continue

            check = await self.pause_control.can_execute_autonomous_operation(
                TASK_FEATURES.get(job_type),
                site_id=site.id,
                rate_limit_type=TASK_RATE_LIMITS.get(job_type),
            )
            if not check.allowed:
                plan.blocked.append(f"{job_type} (paused: {check.reason})")
                continue

            try:
                handle = await self.registry.enqueue(
                    queue_for(job_type),
                    job_type,
                    build_task_payload(site.id, job_type),
                    EnqueueOptions(dedupe_key=f"{site.id}:{job_type}"),
                )
            except JobError as e:
                logger.error("Site %s: failed to queue %s: %s", site.id, job_type, e)
                plan.blocked.append(f"{job_type} (error: {e})")
                continue

            if handle.deduplicated:
                plan.skipped.append(job_type)
            else:
                plan.queued.append(job_type)
                ROADMAP_TASKS_QUEUED.labels(type=job_type).inc()

        return plan

    async def get_site_roadmap(self, site_id: str) -> dict[str, Any]:
        """
        Lifecycle view of one site: each phase with its tasks' effective
        status and progress. A COMPLETED task whose artifact is missing is
        reported as INVALID.
        """
        async with self._session_factory() as session:
            site = await session.get(Site, site_id)
            if site is None:
                raise SiteNotFoundError(site_id)
            jobs = (await session.execute(
                select(Job).where(Job.site_id == site_id).order_by(Job.created_at.desc())
            )).scalars().all()

        artifacts = validate_task_artifacts(site)
        latest: dict[str, Job] = {}
        for job in jobs:
            latest.setdefault(job.type, job)

        phases = []
        for phase in SITE_LIFECYCLE_PHASES:
            tasks = [self._task_view(task, latest.get(task), artifacts) for task in phase.tasks]
            completed = sum(1 for t in tasks if t["status"] == JobStatus.COMPLETED)
            failed = sum(1 for t in tasks if t["status"] in (JobStatus.FAILED, "INVALID"))
            running = sum(1 for t in tasks if t["status"] == JobStatus.RUNNING)

            if failed:
                status = "failed"
            elif completed == len(tasks):
                status = "completed"
            elif running or completed:
                status = "in_progress"
            else:
                status = "pending"

            phases.append({
                "key": phase.key,
                "name": phase.name,
                "description": phase.description,
                "status": status,
                "progress": _progress(completed, len(tasks)),
                "tasks": tasks,
            })

        all_tasks = [t for p in phases for t in p["tasks"]]
        completed_count = sum(1 for t in all_tasks if t["status"] == JobStatus.COMPLETED)
        return {
            "site_id": site_id,
            "phases": phases,
            "overall": {
                **_progress(completed_count, len(all_tasks)),
                "invalid_tasks": sum(1 for t in all_tasks if t["status"] == "INVALID"),
            },
        }

    def _task_view(self, task: str, job: Optional[Job], artifacts) -> dict[str, Any]:
        label, description = TASK_DESCRIPTIONS[task]
        status = job.status if job else "PLANNED"
        validation_error = None
        valid, reason = artifacts.get(task, (True, None))
        if job and job.status == JobStatus.COMPLETED and not valid:
            status = "INVALID"
            validation_error = reason
        return {
            "type": str(task),
            "label": label,
            "description": description,
            "status": str(status),
            "validation_error": validation_error,
            "job": {
                "id": str(job.id),
                "status": job.status,
                "started_at": job.started_at,
                "completed_at": job.completed_at,
                "error": job.error,
                "attempts": job.attempts,
            } if job else None,
        }

def _progress(completed: int, total: int) -> dict[str, int]:
    return {
        "completed": completed,
        "total": total,
        "percentage": round(completed / total * 100) if total else 0,
    }
