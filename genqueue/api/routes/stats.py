"""Generation statistics endpoints."""

from datetime import date

from fastapi import APIRouter, HTTPException, Query
import logging

from ..dependencies import GenerationServiceDep
from ..schemas import DailyStatsResponse, GlobalStatsResponse, UserStatsResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/daily/{year}/{month}/{day}", response_model=DailyStatsResponse)
async def get_daily_stats(
    year: int, month: int, day: int, service: GenerationServiceDep
) -> DailyStatsResponse:
    """Statistics for one UTC day."""
    try:
        requested = date(year, month, day)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid date: {e}")

    try:
        stats = await service.daily_stats.get_daily_stats(year, month, day)
        return DailyStatsResponse(
            date=requested.isoformat(),
            user_count=len(stats.user_ids),
            image_count=stats.image_count,
            step_count=stats.step_count,
            pixel_count=stats.pixel_count,
            pixel_step_count=stats.pixel_step_count,
        )
    except Exception as e:
        logger.error(f"Error getting daily stats for {requested}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get daily stats: {e}")


@router.get("/users/{user_id}", response_model=UserStatsResponse)
async def get_user_stats(
    user_id: str,
    service: GenerationServiceDep,
    tags: int = Query(10, ge=0, le=100, description="Number of top tags to include"),
) -> UserStatsResponse:
    """Statistics for one submitter."""
    try:
        stats = await service.user_stats.get_user_stats(user_id)
        return UserStatsResponse(
            user_id=stats.user_id,
            image_count=stats.image_count,
            pixel_count=stats.pixel_count,
            top_tags=dict(stats.top_tags(tags)),
        )
    except Exception as e:
        logger.error(f"Error getting stats for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get user stats: {e}")


@router.get("/global", response_model=GlobalStatsResponse)
async def get_global_stats(service: GenerationServiceDep) -> GlobalStatsResponse:
    """All-time statistics."""
    try:
        stats = await service.get_global_stats()
        return GlobalStatsResponse(
            user_count=len(stats.user_ids),
            image_count=stats.image_count,
            step_count=stats.step_count,
            pixel_count=stats.pixel_count,
            pixel_step_count=stats.pixel_step_count,
        )
    except Exception as e:
        logger.error(f"Error getting global stats: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get global stats: {e}")
