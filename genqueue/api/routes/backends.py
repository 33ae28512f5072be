"""Backend listing endpoints."""

from fastapi import APIRouter, HTTPException
import logging

from ..dependencies import GenerationServiceDep
from ..schemas import BackendListResponse, BackendModel

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=BackendListResponse)
async def list_backends(service: GenerationServiceDep) -> BackendListResponse:
    """List registered backends with their health and worker state."""
    try:
        backends = [BackendModel(**b) for b in await service.list_backends()]
        online = sum(1 for b in backends if b.health == "online")
        return BackendListResponse(backends=backends, online=online)
    except Exception as e:
        logger.error(f"Error listing backends: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to list backends: {e}")
