"""Pydantic models for API responses."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BaseResponse(BaseModel):
    """Base response model."""
    success: bool = True
    timestamp: datetime = Field(default_factory=_now)


class ErrorResponse(BaseModel):
    """Error response model."""
    message: str
    detail: Optional[Union[str, List[Any]]] = None
    timestamp: datetime = Field(default_factory=_now)
    path: Optional[str] = None


class QueuedJob(BaseModel):
    """A job and its position in the queue."""
    id: str
    rank: int = Field(..., description="0 while processing, otherwise 1-based queue position")
    status: str
    progress: float


class JobListResponse(BaseResponse):
    jobs: List[QueuedJob]
    total: int


class BackendErrorModel(BaseModel):
    message: str
    time: datetime


class BackendModel(BaseModel):
    """Backend without credentials."""
    backend_id: str
    name: str
    endpoint: str
    max_resolution: int
    health: str
    active: bool = False
    last_seen: Optional[datetime] = None
    last_error: Optional[BackendErrorModel] = None


class BackendListResponse(BaseResponse):
    backends: List[BackendModel]
    online: int


class DailyStatsResponse(BaseResponse):
    date: str
    user_count: int
    image_count: int
    step_count: int
    pixel_count: int
    pixel_step_count: int


class UserStatsResponse(BaseResponse):
    user_id: str
    image_count: int
    pixel_count: int
    top_tags: Dict[str, int]


class GlobalStatsResponse(BaseResponse):
    user_count: int
    image_count: int
    step_count: int
    pixel_count: int
    pixel_step_count: int
