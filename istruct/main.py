"""istruct host agent - HTTP surface over the resource engine.

Every route is a thin adapter: it decodes the request, awaits one
ResourceService call and encodes the result. All engine work happens on
the service's worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from istruct import __version__
from istruct.config import settings
from istruct.errors import Conflict, IstructError
from istruct.logging_config import setup_logging
from istruct.metrics import get_metrics
from istruct.routers import build_router
from istruct.schemas import HealthResponse
from istruct.service import ResourceService
from istruct.worker import WorkerClosed

logger = logging.getLogger(__name__)


def create_app(service: ResourceService | None = None) -> FastAPI:
    """Build the application.

    If no service is given one is built from settings at startup and closed
    at shutdown. A passed-in service is left for the caller to close.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - start the engine worker, drain it on shutdown."""
        owned = service is None
        app.state.service = service or ResourceService.from_settings(settings)
        logger.info(f"istruct agent {__version__} starting (libvirt: {settings.libvirt_uri})")
        yield
        if owned:
            await asyncio.to_thread(app.state.service.close)
        logger.info("istruct agent shut down")

    app = FastAPI(
        title="istruct Agent",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(IstructError)
    async def istruct_error_handler(request: Request, exc: IstructError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc}")
        content = {"detail": str(exc)}
        if isinstance(exc, Conflict):
            content["reason"] = exc.reason.value
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(WorkerClosed)
    async def worker_closed_handler(request: Request, exc: WorkerClosed) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    # --- Health Endpoints ---

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        """Basic health check."""
        return HealthResponse(
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/metrics")
    def metrics() -> Response:
        """Prometheus metrics endpoint."""
        payload, content_type = get_metrics()
        return Response(content=payload, media_type=content_type)

    build_router().mount(app)
    return app


setup_logging()

app = create_app()
