import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from slotwatch.api import jobs
from slotwatch.config import get_settings
from slotwatch.services.pipeline import get_pipeline
from slotwatch.services.scheduler import start_scheduler, stop_scheduler

# Configure logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - start and stop background services."""
    settings = get_settings()
    if settings.SCHEDULER_ENABLED:
        log.info("Starting background scheduler...")
        start_scheduler()
    else:
        log.info("Scheduler disabled, jobs run only through /api/v1/jobs")
    yield
    if settings.SCHEDULER_ENABLED:
        log.info("Stopping background scheduler...")
        stop_scheduler()
    await get_pipeline().close()


description = """
Slotwatch turns appointment availability scans into deduplicated, policy-aware
email and Web Push notifications for subscribed users.
"""

tags_metadata = [
    {"name": "jobs", "description": "Scheduler-triggered pipeline runs"},
]

app = FastAPI(
    title="Slotwatch Notification Pipeline",
    description=description,
    version="1.0.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

# Include routers
app.include_router(jobs.router)


@app.get("/")
def root():
    return {"message": "Slotwatch pipeline is running", "version": "1.0.0"}


@app.get("/health")
def health():
    return {"ok": True}
