"""IDEHub control plane FastAPI application."""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from idehub import __version__
from idehub.api.v1 import dashboard_router, health_router, instances_router
from idehub.config import get_config
from idehub.core.errors import AuthenticationFailedError, IdeHubError, InternalError
from idehub.logging import setup_logging
from idehub.logging_schema import LogEvent
from idehub.metrics import get_metrics_response
from idehub.services import ControlPlane

# Configure logging using config
_config = get_config()
setup_logging(_config.logging)
logger = logging.getLogger(__name__)

_PUBLIC_PATHS = ("/health", "/metrics")
_CALLBACK_PATH_RE = re.compile(r"^/api/v1/instances/[^/]+/(activity|shutdown)$")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    config = get_config()
    logger.info(
        "Starting IDEHub control plane",
        extra={"event": LogEvent.APP_STARTED, "version": __version__},
    )

    plane = ControlPlane(config)
    await plane.open()
    app.state.control_plane = plane

    sweep_task: asyncio.Task | None = None
    if config.maintenance.enabled:
        sweep_task = asyncio.create_task(plane.sweeper.run())
    health_task: asyncio.Task | None = None
    if config.health.enabled:
        health_task = asyncio.create_task(plane.health.run())

    yield

    logger.info("Shutting down IDEHub control plane", extra={"event": LogEvent.APP_STOPPED})
    for task in (sweep_task, health_task):
        if task is None:
            continue
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await plane.close()


app = FastAPI(
    title="IDEHub",
    description="Control plane for IDE instances on Docker Swarm",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=_config.server.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handler for IdeHubError
@app.exception_handler(IdeHubError)
async def idehub_error_handler(request: Request, exc: IdeHubError) -> JSONResponse:
    """Handle IdeHubError exceptions."""
    logger.warning(
        "Control plane error",
        extra={
            "event": LogEvent.CONTROL_PLANE_ERROR,
            "error_code": exc.code.value,
            "error_message": exc.message,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
    )


# Error handler for unhandled exceptions
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with logging."""
    logger.exception(
        "Unhandled exception",
        extra={
            "event": LogEvent.UNHANDLED_EXCEPTION,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=500,
        content=InternalError().to_response().model_dump(),
    )


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip()
    return ""


# API key authentication middleware
@app.middleware("http")
async def api_key_middleware(
    request: Request, call_next: Callable[[Request], Response]
) -> Response:
    """Validate API key for non-public endpoints.

    Instance callbacks may authenticate with the internal service token
    instead of an API key.
    """
    config = get_config()
    path = request.url.path

    # Skip auth for health and metrics endpoints
    if path in _PUBLIC_PATHS or request.method == "OPTIONS":
        return await call_next(request)

    api_keys = config.server.api_key_set
    if not api_keys:
        return await call_next(request)

    token = _bearer_token(request)
    if token and token in api_keys:
        return await call_next(request)

    service_token = config.instance.service_token
    if service_token and token == service_token and _CALLBACK_PATH_RE.match(path):
        return await call_next(request)

    error = AuthenticationFailedError(
        "Missing or invalid API key" if token else "Missing Authorization header"
    )
    return JSONResponse(status_code=error.status_code, content=error.to_response().model_dump())


# Register routers
# /health endpoint without prefix (for health checks)
app.include_router(health_router)


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    return get_metrics_response()


# API v1 endpoints with /api/v1 prefix
app.include_router(instances_router, prefix="/api/v1")
app.include_router(dashboard_router, prefix="/api/v1")


def main() -> None:
    """Run the control plane server."""
    config = get_config()
    uvicorn.run(
        "idehub.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
