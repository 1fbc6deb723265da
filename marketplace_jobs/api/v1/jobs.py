from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from marketplace_jobs.api.deps import DbSession, Registry
from marketplace_jobs.db.models import Job
from marketplace_jobs.domain.errors import JobNotFoundError, PayloadValidationError, QueueMismatchError, UnknownQueueError
from marketplace_jobs.domain.queues import queue_for
from marketplace_jobs.domain.states import JobStatus
from marketplace_jobs.queues.registry import EnqueueOptions

router = APIRouter()

class JobCreate(BaseModel):
    type: str
    queue: Optional[str] = None  # defaults to the queue the type belongs to
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    dedupe_key: Optional[str] = None
    attempts: Optional[int] = Field(default=None, ge=1)
    delay_seconds: float = Field(default=0, ge=0)

class JobHandleResponse(BaseModel):
    job_id: UUID
    queue: str
    deduplicated: bool

class JobResponse(BaseModel):
    id: UUID
    type: str
    queue: str
    status: JobStatus
    payload: dict[str, Any]
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    attempts: int
    max_attempts: int
    site_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("", response_model=JobHandleResponse, status_code=status.HTTP_201_CREATED)
async def create_job(body: JobCreate, registry: Registry):
    queue = body.queue or queue_for(body.type)
    if queue is None:
        raise HTTPException(status_code=422, detail=f"No queue given and {body.type} has no default queue")

    try:
        handle = await registry.enqueue(
            queue,
            body.type,
            body.payload,
            EnqueueOptions(
                delay_seconds=body.delay_seconds,
                dedupe_key=body.dedupe_key,
                attempts=body.attempts,
                priority=body.priority,
            ),
        )
    except UnknownQueueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (QueueMismatchError, PayloadValidationError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    return JobHandleResponse(job_id=handle.job_id, queue=handle.queue, deduplicated=handle.deduplicated)

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, session: DbSession):
    job = await session.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.delete("/{job_id}")
async def remove_job(job_id: UUID, registry: Registry):
    try:
        removed = await registry.remove_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    if not removed:
        raise HTTPException(status_code=409, detail="Job already started or finished")
    return {"removed": True}
