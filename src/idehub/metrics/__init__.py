"""Prometheus metrics module."""

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from starlette.responses import Response

from idehub.metrics.collector import (
    ADMISSION_DECISIONS,
    HEALTH_CHECKS,
    INSTANCES,
    INSTANCES_PROVISIONED,
    INSTANCES_STOPPED,
    RECORDS_ARCHIVED,
    SCHEDULER_DURATION,
    SCHEDULER_ERRORS,
    WARM_POOL_CLAIMS,
    WARM_POOL_SIZE,
    error_type,
)


def get_metrics_response() -> Response:
    """Render the default registry in Prometheus text format."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "ADMISSION_DECISIONS",
    "HEALTH_CHECKS",
    "INSTANCES",
    "INSTANCES_PROVISIONED",
    "INSTANCES_STOPPED",
    "RECORDS_ARCHIVED",
    "SCHEDULER_DURATION",
    "SCHEDULER_ERRORS",
    "WARM_POOL_CLAIMS",
    "WARM_POOL_SIZE",
    "error_type",
    "get_metrics_response",
]
