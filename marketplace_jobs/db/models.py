from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace_jobs.db.session import Base
from marketplace_jobs.domain.states import EntryState, JobStatus
from marketplace_jobs.utils.time import utcnow

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JsonType = JSON().with_variant(JSONB(), "postgresql")

PLATFORM_SETTINGS_ID = "platform_settings_singleton"

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    queue: Mapped[str] = mapped_column(String, nullable=False, index=True)

    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)

    # Retry bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    # RetryPolicy override; null means the queue's policy
    backoff: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType, nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error_category: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    site_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    entry: Mapped[Optional["QueueEntry"]] = relationship(
        "QueueEntry", back_populates="job", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        # At most one in-flight job per dedupe key
        Index(
            "ix_jobs_dedupe_inflight",
            "dedupe_key",
            unique=True,
            postgresql_where=text("dedupe_key IS NOT NULL AND status IN ('PENDING', 'RUNNING', 'RETRYING')"),
            sqlite_where=text("dedupe_key IS NOT NULL AND status IN ('PENDING', 'RUNNING', 'RETRYING')"),
        ),
        # Stuck-job scan: status + started_at
        Index("ix_jobs_status_started", "status", "started_at"),
    )

class QueueEntry(Base):
    """
    Broker-side record of a job. Ephemeral: finished entries are trimmed by
    queue cleanup while the Job row stays as history.
    """
    __tablename__ = "queue_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), unique=True)
    queue: Mapped[str] = mapped_column(String, nullable=False)
    job_type: Mapped[str] = mapped_column(String, nullable=False)

    state: Mapped[EntryState] = mapped_column(String, default=EntryState.WAITING)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    leased_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    job: Mapped["Job"] = relationship("Job", back_populates="entry")

    __table_args__ = (
        # Lease query: queue + state=waiting + available_at <= now
        Index("ix_queue_entries_poll", "queue", "state", "available_at"),
        Index("ix_queue_entries_cleanup", "queue", "state", "finished_at"),
    )

class RecurringSchedule(Base):
    __tablename__ = "recurring_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    cron_expression: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(String, default="")
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("job_type", "cron_expression", name="uq_recurring_type_cron"),
    )

class PlatformSettings(Base):
    __tablename__ = "platform_settings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=PLATFORM_SETTINGS_ID)

    # Global kill switch
    all_autonomous_processes_paused: Mapped[bool] = mapped_column(Boolean, default=False)
    pause_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    paused_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Feature flags
    enable_site_creation: Mapped[bool] = mapped_column(Boolean, default=True)
    enable_content_generation: Mapped[bool] = mapped_column(Boolean, default=True)
    enable_gsc_verification: Mapped[bool] = mapped_column(Boolean, default=True)
    enable_content_optimization: Mapped[bool] = mapped_column(Boolean, default=True)
    enable_ab_testing: Mapped[bool] = mapped_column(Boolean, default=True)

    # Rate caps
    max_total_sites: Mapped[int] = mapped_column(Integer, default=200)
    max_sites_per_hour: Mapped[int] = mapped_column(Integer, default=10)
    max_content_pages_per_hour: Mapped[int] = mapped_column(Integer, default=100)
    max_gsc_requests_per_hour: Mapped[int] = mapped_column(Integer, default=200)
    max_opportunity_scans_per_day: Mapped[int] = mapped_column(Integer, default=50)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

class Site(Base):
    """
    Minimal projection of the marketplace site record: the lifecycle status
    and the artifact columns the roadmap reads.
    """
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="DRAFT", index=True)
    autonomous_processes_paused: Mapped[bool] = mapped_column(Boolean, default=False)

    content_count: Mapped[int] = mapped_column(Integer, default=0)
    primary_domain: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    domain_registered: Mapped[bool] = mapped_column(Boolean, default=False)
    domain_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    domain_active: Mapped[bool] = mapped_column(Boolean, default=False)
    ssl_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    gsc_property_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    gsc_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    ga_measurement_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
