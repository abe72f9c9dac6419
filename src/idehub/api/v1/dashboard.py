"""Dashboard API endpoints.

Read-only cluster views for the operator dashboard, runtime-adjustable
admission thresholds, warm pool occupancy, and a Server-Sent Events log
stream.

SSE events on /dashboard/logs:
- connected: stream opened
- log: one instance log line ({stream, message})
- system: resource snapshot, periodically, when no instance is selected
- error: the stream could not be opened or broke
- end: the instance log stream finished
"""

import asyncio
import json
import logging
from collections import Counter
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from idehub.api.dependencies import Plane, valid_instance_id
from idehub.core.errors import IdeHubError, InvalidParameterError, SchedulerError
from idehub.core.models import (
    AggregatedMetrics,
    InstanceInfo,
    InstanceStatus,
    LogOptions,
    NodeHealth,
    NodeHealthState,
    NodeRecord,
    PoolStats,
    ResourceSnapshot,
    ResourceThresholds,
)
from idehub.services import ControlPlane

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


# =============================================================================
# Schemas
# =============================================================================


class InstanceCounts(BaseModel):
    total: int
    running: int
    starting: int
    stopped: int
    failed: int
    average_uptime: int  # seconds, running instances only


class OverviewResponse(BaseModel):
    timestamp: datetime
    instances: InstanceCounts
    resources: ResourceSnapshot
    cluster: AggregatedMetrics


class NodeView(NodeRecord):
    """Node merged with its allocation metrics."""

    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    health: NodeHealthState = NodeHealthState.UNKNOWN


class NodesResponse(BaseModel):
    timestamp: datetime
    total_nodes: int
    nodes: list[NodeView]


class ThresholdsUpdate(BaseModel):
    """Partial threshold update; omitted values are kept."""

    memory_percent: float | None = Field(default=None, gt=0, le=100)
    cpu_percent: float | None = Field(default=None, gt=0, le=100)


# =============================================================================
# Overview / nodes
# =============================================================================


def summarize_instances(
    instances: list[InstanceInfo], now: datetime
) -> InstanceCounts:
    """Count instances by status and average uptime of running ones."""
    counts = Counter(i.status for i in instances)
    uptimes = [
        (now - i.created_at).total_seconds()
        for i in instances
        if i.status == InstanceStatus.RUNNING
    ]
    return InstanceCounts(
        total=len(instances),
        running=counts[InstanceStatus.RUNNING],
        starting=counts[InstanceStatus.STARTING],
        stopped=counts[InstanceStatus.STOPPED],
        failed=counts[InstanceStatus.FAILED],
        average_uptime=int(sum(uptimes) / len(uptimes)) if uptimes else 0,
    )


@router.get("/overview", response_model=OverviewResponse)
async def overview(plane: Plane) -> OverviewResponse:
    """Live instance counts, host resources and cluster totals."""
    now = datetime.now(UTC)
    try:
        instances = await plane.manager.list()
    except SchedulerError as exc:
        logger.warning("Overview without instance data: %s", exc)
        instances = []

    resources, cluster = await asyncio.gather(
        plane.resources.sample(), plane.nodes.aggregate()
    )
    return OverviewResponse(
        timestamp=now,
        instances=summarize_instances(instances, now),
        resources=resources,
        cluster=cluster,
    )


@router.get("/nodes", response_model=NodesResponse)
async def nodes(plane: Plane) -> NodesResponse:
    """Swarm nodes with allocation metrics and health."""
    node_list = await plane.nodes.list_nodes()
    metrics = {m.node_id: m for m in await plane.nodes.node_metrics()}

    views = []
    for node in node_list:
        view = NodeView(**node.model_dump())
        metric = metrics.get(node.id)
        if metric is not None:
            view.cpu_usage = metric.cpu_usage
            view.memory_usage = metric.memory_usage
            view.container_count = metric.container_count
            view.health = metric.health
        views.append(view)

    return NodesResponse(
        timestamp=datetime.now(UTC), total_nodes=len(node_list), nodes=views
    )


@router.get("/nodes/{node_id}/health", response_model=NodeHealth)
async def node_health(node_id: str, plane: Plane) -> NodeHealth:
    return await plane.nodes.node_health(node_id)


# =============================================================================
# Thresholds
# =============================================================================


@router.get("/thresholds", response_model=ResourceThresholds)
async def get_thresholds(plane: Plane) -> ResourceThresholds:
    return plane.resources.thresholds


@router.patch("/thresholds", response_model=ResourceThresholds)
async def update_thresholds(update: ThresholdsUpdate, plane: Plane) -> ResourceThresholds:
    if update.memory_percent is None and update.cpu_percent is None:
        raise InvalidParameterError("memory_percent or cpu_percent is required")
    return plane.resources.set_thresholds(
        memory_percent=update.memory_percent, cpu_percent=update.cpu_percent
    )


@router.get("/pool", response_model=PoolStats)
async def get_pool(plane: Plane) -> PoolStats:
    return plane.pool.stats()


# =============================================================================
# Log stream (SSE)
# =============================================================================


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def _instance_log_events(
    request: Request,
    plane: ControlPlane,
    instance_id: str,
    options: LogOptions,
) -> AsyncGenerator[str, None]:
    yield _sse("connected", {"instance_id": instance_id})
    try:
        lines = await plane.manager.get_logs(instance_id, options)
        async for line in lines:
            if await request.is_disconnected():
                return
            yield _sse("log", line.model_dump())
    except asyncio.CancelledError:
        return
    except IdeHubError as exc:
        yield _sse("error", {"code": exc.code.value, "message": exc.message})
        return
    except Exception as exc:
        logger.warning("Log stream for %s failed: %s", instance_id, exc)
        yield _sse("error", {"code": "LOG_STREAM_FAILED", "message": str(exc)})
        return
    yield _sse("end", {"instance_id": instance_id})


async def _system_events(
    request: Request, plane: ControlPlane, interval: float
) -> AsyncGenerator[str, None]:
    yield _sse("connected", {"instance_id": None})
    try:
        while not await request.is_disconnected():
            snapshot = await plane.resources.sample()
            yield _sse(
                "system",
                {
                    "timestamp": datetime.now(UTC).isoformat(),
                    "resources": snapshot.model_dump(mode="json"),
                },
            )
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        pass


@router.get("/logs")
async def stream_logs(
    request: Request,
    plane: Plane,
    instance_id: str | None = None,
    tail: Annotated[int, Query(ge=0, le=10000)] = 100,
    follow: bool = True,
    timestamps: bool = False,
) -> StreamingResponse:
    """Stream instance logs, or periodic system snapshots without an instance."""
    if instance_id:
        valid_instance_id(instance_id)
        generator = _instance_log_events(
            request,
            plane,
            instance_id,
            LogOptions(tail=tail, follow=follow, timestamps=timestamps),
        )
    else:
        generator = _system_events(
            request, plane, plane.config.server.sse_system_interval
        )

    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
