from fastapi import APIRouter, HTTPException

from marketplace_jobs.api.deps import Roadmap
from marketplace_jobs.domain.errors import SiteNotFoundError

router = APIRouter()

@router.get("/{site_id}/roadmap")
async def get_site_roadmap(site_id: str, roadmap: Roadmap):
    try:
        return await roadmap.get_site_roadmap(site_id)
    except SiteNotFoundError:
        raise HTTPException(status_code=404, detail="Site not found")

@router.post("/roadmap/process")
async def process_roadmaps(roadmap: Roadmap):
    result = await roadmap.process_all_site_roadmaps()
    return {
        "sites_processed": result.sites_processed,
        "tasks_queued": result.tasks_queued,
        "errors": result.errors,
        "skipped": result.skipped,
    }
