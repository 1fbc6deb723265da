"""
Tests for the roadmap processor: dependency ordering, in-flight and artifact
checks, pause gating, per-site error isolation and overlap skipping.
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update

from marketplace_jobs.db.models import Job, Site
from marketplace_jobs.domain.errors import SiteNotFoundError
from marketplace_jobs.domain.queues import JobType
from marketplace_jobs.domain.states import JobStatus
from marketplace_jobs.roadmap.lifecycle import (
    EXECUTION_ORDER,
    SITE_LIFECYCLE_PHASES,
    TASK_FEATURES,
    TASK_RATE_LIMITS,
    build_task_payload,
    validate_task_artifacts,
)
from marketplace_jobs.roadmap.processor import RoadmapProcessor, TaskPlan
from marketplace_jobs.services.pause_control import Feature

FIRST_WAVE = [
    JobType.CONTENT_GENERATE,
    JobType.DOMAIN_REGISTER,
    JobType.GSC_SETUP,
    JobType.GA4_SETUP,
]


@pytest.fixture
def processor(registry, pause_control, session_factory):
    return RoadmapProcessor(registry, pause_control, session_factory)


@pytest.fixture
def finish_job(session_factory):
    """Marks the site's job of `job_type` COMPLETED, as a worker would."""
    async def _finish(site_id: str, job_type: str):
        async with session_factory() as session:
            await session.execute(
                update(Job)
                .where(Job.site_id == site_id, Job.type == job_type)
                .values(status=JobStatus.COMPLETED)
            )
            await session.commit()
    return _finish


@pytest.fixture
def site_jobs(session_factory):
    async def _site_jobs(site_id: str) -> list[Job]:
        async with session_factory() as session:
            return list((await session.execute(
                select(Job).where(Job.site_id == site_id).order_by(Job.created_at)
            )).scalars().all())
    return _site_jobs


# -----------------------------------------------------------------------------
# Test Cases: Task selection
# -----------------------------------------------------------------------------
class TestExecuteNextTasks:
    """Tests for which lifecycle tasks get queued for a site."""

    @pytest.mark.asyncio
    async def test_new_site_queues_tasks_without_dependencies(self, processor, make_site, site_jobs):
        site = await make_site("s1")

        plan = await processor.execute_next_tasks(site)

        assert plan.queued == FIRST_WAVE
        assert any(b.startswith("CONTENT_OPTIMIZE (waiting for: CONTENT_GENERATE") for b in plan.blocked)
        jobs = await site_jobs("s1")
        assert sorted(j.type for j in jobs) == sorted(FIRST_WAVE)
        assert all(j.dedupe_key == f"s1:{j.type}" for j in jobs)

    @pytest.mark.asyncio
    async def test_inflight_tasks_not_queued_again(self, processor, make_site):
        site = await make_site("s1")
        await processor.execute_next_tasks(site)

        plan = await processor.execute_next_tasks(site)

        assert plan.queued == []
        assert set(FIRST_WAVE) <= set(plan.skipped)

    @pytest.mark.asyncio
    async def test_completed_dependency_unblocks_next_task(self, processor, make_site, session_factory, finish_job):
        site = await make_site("s1")
        await processor.execute_next_tasks(site)
        await finish_job("s1", JobType.CONTENT_GENERATE)
        async with session_factory() as session:
            await session.execute(update(Site).where(Site.id == "s1").values(content_count=4))
            await session.commit()

        plan = await processor.execute_next_tasks(site)

        assert plan.queued == [JobType.CONTENT_OPTIMIZE]

    @pytest.mark.asyncio
    async def test_completed_without_artifact_reruns(self, processor, make_site, finish_job, site_jobs):
        site = await make_site("s1")
        await processor.execute_next_tasks(site)
        await finish_job("s1", JobType.CONTENT_GENERATE)

        plan = await processor.execute_next_tasks(site)

        assert plan.rerun == ["CONTENT_GENERATE (No generated content found)"]
        assert plan.queued == [JobType.CONTENT_GENERATE]
        assert JobType.CONTENT_OPTIMIZE not in plan.queued
        types = [j.type for j in await site_jobs("s1")]
        assert types.count(JobType.CONTENT_GENERATE) == 2

    @pytest.mark.asyncio
    async def test_failed_task_is_queued_again(self, processor, make_site, session_factory):
        site = await make_site("s1")
        await processor.execute_next_tasks(site)
        async with session_factory() as session:
            await session.execute(
                update(Job).where(Job.type == JobType.GSC_SETUP).values(status=JobStatus.FAILED)
            )
            await session.commit()

        plan = await processor.execute_next_tasks(site)

        assert plan.queued == [JobType.GSC_SETUP]

    @pytest.mark.asyncio
    async def test_disabled_feature_blocks_task(self, processor, pause_control, make_site):
        await pause_control.set_feature(Feature.CONTENT_GENERATION, False)
        site = await make_site("s1")

        plan = await processor.execute_next_tasks(site)

        assert JobType.CONTENT_GENERATE not in plan.queued
        assert JobType.DOMAIN_REGISTER in plan.queued
        assert any(
            b == "CONTENT_GENERATE (paused: Feature enableContentGeneration is disabled)" for b in plan.blocked
        )


# -----------------------------------------------------------------------------
# Test Cases: Processing all sites
# -----------------------------------------------------------------------------
class TestProcessAllSiteRoadmaps:
    """Tests for the periodic pass over every active site."""

    @pytest.mark.asyncio
    async def test_processes_active_sites_only(self, processor, make_site):
        await make_site("s1", created_offset=1)
        await make_site("s2", created_offset=2, status="PAUSED")
        await make_site("s3", created_offset=3, status="ARCHIVED")
        await make_site("s4", created_offset=4, autonomous_processes_paused=True)

        result = await processor.process_all_site_roadmaps()

        assert result.sites_processed == 1
        assert result.tasks_queued == len(FIRST_WAVE)
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_one_site_failing_does_not_stop_others(self, processor, make_site):
        await make_site("a", name="Alpha", created_offset=1)
        await make_site("b", name="Bravo", created_offset=2)
        await make_site("c", name="Charlie", created_offset=3)
        visited = []

        async def fake_execute(site):
            visited.append(site.id)
            if site.id == "b":
                raise RuntimeError("artifact lookup failed")
            return TaskPlan(queued=[JobType.CONTENT_GENERATE])

        with patch.object(processor, "execute_next_tasks", AsyncMock(side_effect=fake_execute)):
            result = await processor.process_all_site_roadmaps()

        assert visited == ["a", "b", "c"]
        assert result.sites_processed == 3
        assert result.tasks_queued == 2
        assert result.errors == ["Site b (Bravo): artifact lookup failed"]

    @pytest.mark.asyncio
    async def test_global_pause_skips_everything(self, processor, pause_control, make_site, site_jobs):
        await make_site("s1")
        await pause_control.pause_all("launch freeze", "ops")

        result = await processor.process_all_site_roadmaps()

        assert result.sites_processed == 0
        assert await site_jobs("s1") == []

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, processor, make_site):
        await make_site("s1")

        async with processor._lock:
            result = await processor.process_all_site_roadmaps()

        assert result.skipped is True
        assert result.sites_processed == 0

    @pytest.mark.asyncio
    async def test_noop_tick_is_silent(self, processor, pause_control, make_site, caplog):
        await pause_control.set_feature(Feature.CONTENT_GENERATION, False)
        await pause_control.set_feature(Feature.GSC_VERIFICATION, False)
        await make_site("s1")
        await processor.process_all_site_roadmaps()

        caplog.clear()
        with caplog.at_level(logging.INFO):
            result = await processor.process_all_site_roadmaps()

        assert result.sites_processed == 1
        assert result.tasks_queued == 0
        assert result.errors == []
        assert [r.getMessage() for r in caplog.records if r.levelno >= logging.INFO] == []

    @pytest.mark.asyncio
    async def test_paused_tick_is_silent(self, processor, pause_control, make_site, caplog):
        await make_site("s1")
        await pause_control.pause_all("launch freeze", "ops")

        caplog.clear()
        with caplog.at_level(logging.INFO):
            await processor.process_all_site_roadmaps()

        assert [r for r in caplog.records if r.levelno >= logging.INFO] == []


# -----------------------------------------------------------------------------
# Test Cases: Roadmap view
# -----------------------------------------------------------------------------
class TestGetSiteRoadmap:
    """Tests for the per-site lifecycle view."""

    @pytest.mark.asyncio
    async def test_unknown_site(self, processor):
        with pytest.raises(SiteNotFoundError):
            await processor.get_site_roadmap("missing")

    @pytest.mark.asyncio
    async def test_fresh_site_is_all_planned(self, processor, make_site):
        await make_site("s1")

        roadmap = await processor.get_site_roadmap("s1")

        assert [p["key"] for p in roadmap["phases"]] == [p.key for p in SITE_LIFECYCLE_PHASES]
        assert roadmap["overall"]["completed"] == 0
        assert roadmap["overall"]["total"] == sum(len(p.tasks) for p in SITE_LIFECYCLE_PHASES)
        assert all(t["status"] == "PLANNED" for p in roadmap["phases"] for t in p["tasks"])

    @pytest.mark.asyncio
    async def test_completed_task_without_artifact_is_invalid(self, processor, make_site, finish_job):
        site = await make_site("s1")
        await processor.execute_next_tasks(site)
        await finish_job("s1", JobType.DOMAIN_REGISTER)

        roadmap = await processor.get_site_roadmap("s1")

        domain = next(p for p in roadmap["phases"] if p["key"] == "domain")
        register = domain["tasks"][0]
        assert register["status"] == "INVALID"
        assert register["validation_error"] == "No domain registered for site"
        assert domain["status"] == "failed"
        assert roadmap["overall"]["invalid_tasks"] == 1

    @pytest.mark.asyncio
    async def test_progress_counts_completed_tasks(self, processor, make_site, finish_job):
        site = await make_site("s1", primary_domain="rome-tours.example", domain_registered=True)
        await processor.execute_next_tasks(site)
        await finish_job("s1", JobType.DOMAIN_REGISTER)

        roadmap = await processor.get_site_roadmap("s1")

        domain = next(p for p in roadmap["phases"] if p["key"] == "domain")
        assert domain["status"] == "in_progress"
        assert domain["progress"] == {"completed": 1, "total": 3, "percentage": 33}


# -----------------------------------------------------------------------------
# Test Cases: Lifecycle tables
# -----------------------------------------------------------------------------
class TestLifecycle:
    def test_gates_only_cover_scheduled_tasks(self):
        assert set(TASK_FEATURES) <= set(EXECUTION_ORDER)
        assert set(TASK_RATE_LIMITS) <= set(EXECUTION_ORDER)

    def test_task_payloads_carry_site(self):
        assert build_task_payload("s1", JobType.DOMAIN_REGISTER) == {
            "siteId": "s1", "registrar": "cloudflare", "autoRenew": True,
        }

    def test_missing_site_invalidates_everything(self):
        checks = validate_task_artifacts(None)
        assert all(valid is False for valid, _ in checks.values())
