import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from marketplace_jobs.api.v1.admin import router as admin_router
from marketplace_jobs.api.v1.jobs import router as jobs_router
from marketplace_jobs.api.v1.metrics import router as metrics_router
from marketplace_jobs.api.v1.queues import router as queues_router
from marketplace_jobs.api.v1.sites import router as sites_router
from marketplace_jobs.db.session import wait_for_db
from marketplace_jobs.settings import settings

logger = logging.getLogger("uvicorn")

@asynccontextmanager
async def lifespan(app: FastAPI):
    # The API only submits and inspects work. Scheduling runs in the worker
    # process that has ENABLE_SCHEDULER set.
    await wait_for_db()
    logger.info(f"{settings.PROJECT_NAME} API ready")
    yield

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(queues_router, prefix="/api/v1", tags=["queues"])
app.include_router(sites_router, prefix="/api/v1/sites", tags=["sites"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
