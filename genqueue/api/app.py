"""Read-only FastAPI application over the generation queue."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional
import logging
import traceback

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..core.config import QueueConfig
from ..service import GenerationService
from .routes import jobs, backends, stats
from .schemas import ErrorResponse

logger = logging.getLogger(__name__)


def _error_content(request: Request, message, detail=None) -> dict:
    return ErrorResponse(message=str(message), detail=detail, path=str(request.url)).model_dump(mode="json")


def create_app(
    service: Optional[GenerationService] = None, manage_service: bool = True
) -> FastAPI:
    """
    Build the API application.

    Args:
        service: Service to expose; built from the environment when omitted
        manage_service: Whether the app starts and stops the service's loops
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan management."""
        logger.info("Starting generation queue API...")
        generation_service = service or GenerationService(QueueConfig.from_env())
        app.state.generation_service = generation_service
        if manage_service:
            await generation_service.start()
        try:
            yield
        finally:
            logger.info("Shutting down generation queue API...")
            if manage_service:
                await generation_service.stop()

    app = FastAPI(
        title="Generation Queue API",
        description="Read-only view of the image generation queue, backends and statistics",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions."""
        logger.warning(f"HTTP error {exc.status_code}: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content=_error_content(request, exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors."""
        logger.warning(f"Validation error: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content=_error_content(request, "Validation error", [str(e) for e in exc.errors()]),
        )

    @app.exception_handler(StarletteHTTPException)
    async def starlette_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle Starlette HTTP exceptions."""
        logger.error(f"Starlette error {exc.status_code}: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content=_error_content(request, exc.detail))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions."""
        logger.error(f"Unexpected error: {exc}")
        logger.error(traceback.format_exc())
        return JSONResponse(
            status_code=500,
            content=_error_content(request, "Internal server error", str(exc)),
        )

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check including queue and backend state."""
        generation_service = getattr(request.app.state, "generation_service", None)
        health = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
        }
        if generation_service is None:
            health["status"] = "unavailable"
            return health

        details = await generation_service.health_check()
        if not details.get("healthy"):
            health["status"] = "degraded"
        health["service"] = details
        return health

    app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
    app.include_router(backends.router, prefix="/backends", tags=["Backends"])
    app.include_router(stats.router, prefix="/stats", tags=["Statistics"])

    return app
