from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from marketplace_jobs.utils.time import utcnow

@dataclass
class JobResult:
    """
    What a handler returns. Raising is equivalent to success=False.
    """
    success: bool
    message: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_category: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "error": self.error,
            "errorCategory": self.error_category,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def coerce(cls, value: Any) -> "JobResult":
        """Accepts a JobResult, a JobResult-shaped dict or any other return value."""
        if isinstance(value, JobResult):
            return value
        if isinstance(value, dict) and "success" in value:
            return cls(
                success=bool(value["success"]),
                message=value.get("message"),
                data=value.get("data") or {},
                error=value.get("error"),
                error_category=value.get("errorCategory") or value.get("error_category"),
            )
        if value is None:
            return cls(success=True)
        if isinstance(value, dict):
            return cls(success=True, data=value)
        return cls(success=True, data={"value": value})

@dataclass
class JobContext:
    """The view of a job that handlers receive."""
    id: UUID
    type: str
    queue: str
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int
    # Typed payload model, set by the dispatcher after validation
    data: Any = None

@dataclass(frozen=True)
class JobHandle:
    job_id: UUID
    queue: str
    deduplicated: bool = False

@dataclass(frozen=True)
class ScheduledJobDefinition:
    job_type: str
    cron_expression: str
    description: str
    payload: dict[str, Any] = field(default_factory=dict)

@dataclass
class RoadmapProcessingResult:
    sites_processed: int = 0
    tasks_queued: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False

@dataclass(frozen=True)
class PauseCheckResult:
    allowed: bool
    reason: Optional[str] = None

@dataclass(frozen=True)
class StuckDetectionResult:
    healed: int = 0
    permanently_failed: int = 0
    resubmitted: int = 0
