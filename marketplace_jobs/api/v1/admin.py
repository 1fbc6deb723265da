from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from marketplace_jobs.api.deps import Detector, Pause, Registry
from marketplace_jobs.services.pause_control import Feature

router = APIRouter()

@router.post("/detect_stuck")
async def trigger_detect_stuck(detector: Detector):
    result = await detector.detect_stuck_tasks()
    return {
        "healed": result.healed,
        "permanently_failed": result.permanently_failed,
        "resubmitted": result.resubmitted,
    }

class CleanQueuesRequest(BaseModel):
    completed_max_age: Optional[int] = None
    failed_max_age: Optional[int] = None

@router.post("/clean_queues")
async def trigger_clean_queues(registry: Registry, body: Optional[CleanQueuesRequest] = None):
    body = body or CleanQueuesRequest()
    return await registry.clean_all_queues(body.completed_max_age, body.failed_max_age)

class PauseRequest(BaseModel):
    reason: str
    actor: str = "admin"

@router.post("/pause")
async def pause_all(body: PauseRequest, pause_control: Pause):
    await pause_control.pause_all(body.reason, body.actor)
    return {"paused": True, "reason": body.reason, "paused_by": body.actor}

@router.post("/resume")
async def resume_all(pause_control: Pause):
    await pause_control.resume_all()
    return {"paused": False}

class FeatureUpdate(BaseModel):
    enabled: bool

@router.put("/features/{feature}")
async def set_feature(feature: str, body: FeatureUpdate, pause_control: Pause):
    try:
        parsed = Feature(feature)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown feature {feature}")
    await pause_control.set_feature(parsed, body.enabled)
    return {"feature": parsed.value, "enabled": body.enabled}

@router.get("/autonomy")
async def autonomy_status(pause_control: Pause, feature: Optional[str] = None, site_id: Optional[str] = None):
    try:
        parsed = Feature(feature) if feature else None
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown feature {feature}")
    check = await pause_control.can_execute_autonomous_operation(parsed, site_id=site_id)
    return {"allowed": check.allowed, "reason": check.reason}
