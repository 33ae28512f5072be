"""Queue listing endpoints."""

from fastapi import APIRouter, HTTPException
import logging

from ..dependencies import GenerationServiceDep
from ..schemas import JobListResponse, QueuedJob

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=JobListResponse)
async def list_jobs(service: GenerationServiceDep) -> JobListResponse:
    """
    List queued jobs in order.

    Jobs being processed have rank 0; waiting jobs are ranked from 1.
    """
    try:
        jobs = await service.list_jobs()
        return JobListResponse(jobs=[QueuedJob(**job) for job in jobs], total=len(jobs))
    except Exception as e:
        logger.error(f"Error listing jobs: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to list jobs: {e}")


@router.get("/{job_id}", response_model=QueuedJob)
async def get_job(job_id: str, service: GenerationServiceDep) -> QueuedJob:
    """Get one queued job."""
    try:
        for job in await service.list_jobs():
            if job["id"] == job_id:
                return QueuedJob(**job)
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting job {job_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get job: {e}")
