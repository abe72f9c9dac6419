"""Health check endpoint."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from idehub import __version__
from idehub.api.dependencies import Plane
from idehub.core.models import ResourceSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class DockerStatus(BaseModel):
    connected: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
    docker: DockerStatus
    resources: ResourceSnapshot | None = None


@router.get("/health", response_model=HealthResponse)
async def health_check(plane: Plane) -> JSONResponse:
    """Docker connectivity plus a host resource summary.

    Returns 503 when the Docker daemon is unreachable.
    """
    connected = await plane.system.ping()

    resources = None
    try:
        resources = await plane.resources.sample()
    except Exception as exc:
        logger.warning("Failed to sample resources for health check: %s", exc)

    body = HealthResponse(
        status="ok" if connected else "degraded",
        version=__version__,
        timestamp=datetime.now(UTC),
        docker=DockerStatus(connected=connected),
        resources=resources,
    )
    return JSONResponse(
        status_code=200 if connected else 503,
        content=body.model_dump(mode="json"),
    )
