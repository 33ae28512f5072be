"""Dependency injection setup for FastAPI."""

from typing import Annotated
from fastapi import Depends, HTTPException, Request

from ..service import GenerationService


async def get_generation_service(request: Request) -> GenerationService:
    """Get generation service instance from app state."""
    if not hasattr(request.app.state, 'generation_service'):
        raise HTTPException(
            status_code=503,
            detail="Generation service not available"
        )
    return request.app.state.generation_service


# Type alias for cleaner dependency injection
GenerationServiceDep = Annotated[GenerationService, Depends(get_generation_service)]
