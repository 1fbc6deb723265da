"""
Pause Control: the gate every autonomous operation consults before it runs.

Settings come from the platform_settings singleton through a
SettingsProvider, which keeps a short-TTL copy so hot handlers do not hit
the store on every check. Reads may be stale by at most the TTL; an
operation that started just before a pause flips is allowed to finish.

Any failure to read settings denies the operation.
"""
import functools
import logging
import time
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_jobs.api.v1.metrics import PAUSE_DENIALS
from marketplace_jobs.db.models import Job, PLATFORM_SETTINGS_ID, PlatformSettings, Site
from marketplace_jobs.db.session import AsyncSessionLocal
from marketplace_jobs.domain.errors import ErrorCategory, SettingsUnavailableError
from marketplace_jobs.domain.models import JobContext, JobResult, PauseCheckResult
from marketplace_jobs.domain.queues import JobType
from marketplace_jobs.settings import settings as app_settings
from marketplace_jobs.utils.time import utcnow

logger = logging.getLogger(__name__)

SETTINGS_UNAVAILABLE = "settings unavailable"

class Feature(StrEnum):
    SITE_CREATION = "enableSiteCreation"
    CONTENT_GENERATION = "enableContentGeneration"
    GSC_VERIFICATION = "enableGSCVerification"
    CONTENT_OPTIMIZATION = "enableContentOptimization"
    AB_TESTING = "enableABTesting"

FEATURE_COLUMNS: dict[Feature, str] = {
    Feature.SITE_CREATION: "enable_site_creation",
    Feature.CONTENT_GENERATION: "enable_content_generation",
    Feature.GSC_VERIFICATION: "enable_gsc_verification",
    Feature.CONTENT_OPTIMIZATION: "enable_content_optimization",
    Feature.AB_TESTING: "enable_ab_testing",
}

class RateLimitType(StrEnum):
    SITE_CREATE = "SITE_CREATE"
    CONTENT_GENERATE = "CONTENT_GENERATE"
    GSC_REQUEST = "GSC_REQUEST"
    OPPORTUNITY_SCAN = "OPPORTUNITY_SCAN"

GSC_JOB_TYPES = (JobType.GSC_SETUP, JobType.GSC_VERIFY, JobType.GSC_SYNC)

@dataclass(frozen=True)
class PlatformSettingsSnapshot:
    all_autonomous_processes_paused: bool = False
    pause_reason: Optional[str] = None
    paused_by: Optional[str] = None
    paused_at: Optional[datetime] = None
    enable_site_creation: bool = True
    enable_content_generation: bool = True
    enable_gsc_verification: bool = True
    enable_content_optimization: bool = True
    enable_ab_testing: bool = True
    max_total_sites: int = 200
    max_sites_per_hour: int = 10
    max_content_pages_per_hour: int = 100
    max_gsc_requests_per_hour: int = 200
    max_opportunity_scans_per_day: int = 50

    @classmethod
    def from_row(cls, row: PlatformSettings) -> "PlatformSettingsSnapshot":
        return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})

    def feature_enabled(self, feature: Feature) -> bool:
        return bool(getattr(self, FEATURE_COLUMNS[Feature(feature)]))

async def load_platform_settings(session: AsyncSession, create: bool = True) -> PlatformSettings:
    row = await session.get(PlatformSettings, PLATFORM_SETTINGS_ID)
    if row is None and create:
        row = PlatformSettings(id=PLATFORM_SETTINGS_ID)
        session.add(row)
        await session.flush()
    return row

class SettingsProvider:
    """
    Reads the platform settings singleton with a per-instance TTL cache.
    Raises SettingsUnavailableError when the store cannot be read.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._ttl = app_settings.SETTINGS_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._cached: Optional[PlatformSettingsSnapshot] = None
        self._fetched_at = 0.0

    async def get(self) -> PlatformSettingsSnapshot:
        if self._cached is not None and self._clock() - self._fetched_at < self._ttl:
            return self._cached
        try:
            async with self._session_factory() as session:
                row = await load_platform_settings(session, create=False)
                # No row yet means nobody has changed the defaults
                snapshot = PlatformSettingsSnapshot.from_row(row) if row else PlatformSettingsSnapshot()
        except Exception as e:
            raise SettingsUnavailableError(f"Could not load platform settings: {e}") from e
        self._cached = snapshot
        self._fetched_at = self._clock()
        return snapshot

    def invalidate(self) -> None:
        self._cached = None

class PauseControl:
    def __init__(
        self,
        provider: Optional[SettingsProvider] = None,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ):
        self._session_factory = session_factory
        self.provider = provider or SettingsProvider(session_factory)

    async def is_processing_allowed(self, site_id: Optional[str] = None) -> PauseCheckResult:
        """Global kill switch, then the per-site pause flag."""
        snapshot = await self.provider.get()
        if snapshot.all_autonomous_processes_paused:
            reason = snapshot.pause_reason or "No reason given"
            return PauseCheckResult(
                allowed=False,
                reason=f"All autonomous processes paused by {snapshot.paused_by or 'unknown'}: {reason}",
            )

        if site_id:
            async with self._session_factory() as session:
                paused = await session.scalar(
                    select(Site.autonomous_processes_paused).where(Site.id == site_id)
                )
            if paused:
                return PauseCheckResult(allowed=False, reason=f"Autonomous processes paused for site {site_id}")

        return PauseCheckResult(allowed=True)

    async def is_feature_enabled(self, feature: Feature) -> bool:
        snapshot = await self.provider.get()
        return snapshot.feature_enabled(feature)

    async def check_rate_limit(self, limit_type: RateLimitType) -> PauseCheckResult:
        snapshot = await self.provider.get()
        now = utcnow()
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(days=1)

        async with self._session_factory() as session:
            if limit_type == RateLimitType.SITE_CREATE:
                total = await session.scalar(select(func.count(Site.id))) or 0
                if total >= snapshot.max_total_sites:
                    return PauseCheckResult(False, f"Maximum total sites limit reached ({snapshot.max_total_sites})")
                recent = await session.scalar(
                    select(func.count(Site.id)).where(Site.created_at >= hour_ago)
                ) or 0
                if recent >= snapshot.max_sites_per_hour:
                    return PauseCheckResult(False, f"Maximum sites per hour limit reached ({snapshot.max_sites_per_hour})")

            elif limit_type == RateLimitType.CONTENT_GENERATE:
                recent = await self._count_jobs(session, (JobType.CONTENT_GENERATE,), hour_ago)
                if recent >= snapshot.max_content_pages_per_hour:
                    return PauseCheckResult(
                        False,
                        f"Maximum content pages per hour limit reached ({snapshot.max_content_pages_per_hour})",
                    )

            elif limit_type == RateLimitType.GSC_REQUEST:
                recent = await self._count_jobs(session, GSC_JOB_TYPES, hour_ago)
                if recent >= snapshot.max_gsc_requests_per_hour:
                    return PauseCheckResult(
                        False,
                        f"Maximum GSC requests per hour limit reached ({snapshot.max_gsc_requests_per_hour})",
                    )

            elif limit_type == RateLimitType.OPPORTUNITY_SCAN:
                recent = await self._count_jobs(session, (JobType.SEO_OPPORTUNITY_SCAN,), day_ago)
                if recent >= snapshot.max_opportunity_scans_per_day:
                    return PauseCheckResult(
                        False,
                        f"Maximum opportunity scans per day limit reached ({snapshot.max_opportunity_scans_per_day})",
                    )

        return PauseCheckResult(allowed=True)

    async def _count_jobs(self, session: AsyncSession, job_types, since: datetime) -> int:
        stmt = select(func.count(Job.id)).where(Job.type.in_(job_types), Job.created_at >= since)
        return await session.scalar(stmt) or 0

    async def can_execute_autonomous_operation(
        self,
        feature: Optional[Feature] = None,
        site_id: Optional[str] = None,
        rate_limit_type: Optional[RateLimitType] = None,
    ) -> PauseCheckResult:
        """
        Combined check: global pause, site pause, feature flag, rate cap.
        Denies with reason "settings unavailable" if the store cannot be read.
        """
        try:
            result = await self.is_processing_allowed(site_id)
            if result.allowed and feature is not None and not await self.is_feature_enabled(feature):
                result = PauseCheckResult(allowed=False, reason=f"Feature {Feature(feature).value} is disabled")
            if result.allowed and rate_limit_type is not None:
                result = await self.check_rate_limit(rate_limit_type)
        except Exception:
            logger.exception("Pause control check failed, denying %s", feature or "operation")
            result = PauseCheckResult(allowed=False, reason=SETTINGS_UNAVAILABLE)

        if not result.allowed:
            PAUSE_DENIALS.labels(feature=str(feature or "global")).inc()
            logger.debug("Autonomous operation %s blocked: %s", feature or "", result.reason)
        return result

    # Administrative mutations

    async def pause_all(self, reason: str, actor: str) -> None:
        async with self._session_factory() as session:
            row = await load_platform_settings(session)
            row.all_autonomous_processes_paused = True
            row.pause_reason = reason
            row.paused_by = actor
            row.paused_at = utcnow()
            await session.commit()
        self.provider.invalidate()
        logger.warning("All autonomous processes paused by %s: %s", actor, reason)

    async def resume_all(self) -> None:
        async with self._session_factory() as session:
            row = await load_platform_settings(session)
            row.all_autonomous_processes_paused = False
            row.pause_reason = None
            row.paused_by = None
            row.paused_at = None
            await session.commit()
        self.provider.invalidate()
        logger.warning("Autonomous processes resumed")

    async def set_feature(self, feature: Feature, enabled: bool) -> None:
        async with self._session_factory() as session:
            row = await load_platform_settings(session)
            setattr(row, FEATURE_COLUMNS[Feature(feature)], enabled)
            await session.commit()
        self.provider.invalidate()
        logger.info("Feature %s set to %s", Feature(feature).value, enabled)

Handler = Callable[[JobContext], Awaitable[Any]]

def require_autonomy(
    pause_control: PauseControl,
    feature: Optional[Feature] = None,
    rate_limit_type: Optional[RateLimitType] = None,
) -> Callable[[Handler], Handler]:
    """
    Wraps a job handler so it short-circuits with a "paused" JobResult when
    Pause Control denies the operation. The site is taken from the payload.
    """
    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def wrapper(job: JobContext) -> Any:
            site_id = job.payload.get("siteId") or job.payload.get("site_id")
            if site_id == "all":
                site_id = None
            check = await pause_control.can_execute_autonomous_operation(
                feature, site_id=site_id, rate_limit_type=rate_limit_type
            )
            if not check.allowed:
                return JobResult(
                    success=False,
                    error=check.reason,
                    error_category=ErrorCategory.PAUSED,
                    message=f"{job.type} skipped: {check.reason}",
                )
            return await handler(job)
        return wrapper
    return decorator
