"""Job trigger endpoints for an external scheduler"""
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..services.pipeline import Pipeline, get_pipeline
from . import auth

router = APIRouter(
    prefix="/api/v1/jobs",
    tags=["jobs"],
    dependencies=[Depends(auth.verify_cron_token)]
)

PUBLIC_JOBS = (
    "auto-check",
    "notification-queue",
    "hot-alerts",
    "opportunity",
    "weekly-digest",
    "expiry-reminders",
    "inactivity",
)


class JobSummary(BaseModel):
    success: bool
    executionTime: int  # milliseconds
    result: dict[str, Any] | None = None
    error: str | None = None


@router.get("/")
def list_jobs():
    return {"jobs": list(PUBLIC_JOBS)}


@router.post("/{job}", response_model=JobSummary)
async def run_job(job: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Run one job and return its summary"""
    if job not in PUBLIC_JOBS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job: {job}")

    summary = JobSummary(**await pipeline.job(job)())
    code = status.HTTP_200_OK if summary.success else status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=code, content=summary.model_dump(exclude_none=True))
