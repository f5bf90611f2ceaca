"""
Admin Routes for Scheduled Jobs

Runs a cron job on demand (backfills, incident recovery).
Protected by the X-Admin-Token header.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from astropal.api.dependencies import get_job_scheduler, verify_admin_token
from astropal.domain.billing import JobResult
from astropal.infrastructure.services.scheduler import JobScheduler


logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_token)],  # Protect ALL admin routes
)


class JobRunResponse(BaseModel):
    """Response from a manual job run."""
    job: str
    results: List[JobResult]


@router.post("/jobs/{job_name}", response_model=JobRunResponse)
async def run_job(
    job_name: str,
    scheduler: JobScheduler = Depends(get_job_scheduler),
) -> JobRunResponse:
    """
    Run one scheduled job now.

    Unknown job names raise NotFoundError, which the app maps to 404.
    """
    logger.info(f"Manual run of job {job_name} requested")
    results = await scheduler.run_job(job_name)
    return JobRunResponse(job=job_name, results=results)
