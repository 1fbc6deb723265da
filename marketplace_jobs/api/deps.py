from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_jobs.db.session import get_db_session
from marketplace_jobs.queues.registry import QueueRegistry
from marketplace_jobs.roadmap.processor import RoadmapProcessor
from marketplace_jobs.services.pause_control import PauseControl
from marketplace_jobs.services.stuck_detector import StuckTaskDetector

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

@lru_cache
def get_registry() -> QueueRegistry:
    return QueueRegistry()

@lru_cache
def get_pause_control() -> PauseControl:
    return PauseControl()

@lru_cache
def get_stuck_detector() -> StuckTaskDetector:
    return StuckTaskDetector()

Registry = Annotated[QueueRegistry, Depends(get_registry)]
Pause = Annotated[PauseControl, Depends(get_pause_control)]
Detector = Annotated[StuckTaskDetector, Depends(get_stuck_detector)]

@lru_cache
def get_roadmap_processor() -> RoadmapProcessor:
    return RoadmapProcessor(get_registry(), get_pause_control())

Roadmap = Annotated[RoadmapProcessor, Depends(get_roadmap_processor)]
