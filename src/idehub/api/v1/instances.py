"""Instance API endpoints.

Provisioning and management for callers holding an API key, plus the
activity and shutdown callbacks that instances report to with the
internal service token.
"""

import logging
from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Query
from pydantic import BaseModel

from idehub.api.dependencies import InstanceId, Plane
from idehub.core.errors import (
    InstanceNotFoundError,
    SchedulerError,
    StorageAssignmentError,
)
from idehub.core.models import (
    AlreadyAssigned,
    Assigned,
    AssignmentFailed,
    CreateInstanceRequest,
    InstanceFilter,
    InstanceInfo,
    InstanceRecord,
    InstanceStatus,
    InstanceUrls,
    ShutdownReason,
    StorageConfig,
)
from idehub.logging_schema import LogEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/instances", tags=["instances"])


# =============================================================================
# Schemas
# =============================================================================


class InstanceListResponse(BaseModel):
    """Instance list response."""

    instances: list[InstanceRecord]
    total: int
    limit: int
    offset: int


class InstanceDetail(BaseModel):
    """Scheduler view merged with stored history."""

    id: str
    service_name: str
    status: InstanceStatus
    urls: InstanceUrls
    storage_bucket: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_activity: datetime | None = None
    shutdown_reason: ShutdownReason | None = None
    live: bool


class OperationResponse(BaseModel):
    """Common operation response."""

    status: Literal["stopped", "recorded"]
    instance_id: str


class ShutdownRequest(BaseModel):
    """Shutdown report from an instance."""

    reason: ShutdownReason = ShutdownReason.INACTIVITY


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", status_code=201, response_model=InstanceInfo)
async def create_instance(request: CreateInstanceRequest, plane: Plane) -> InstanceInfo:
    """Admit and create a new instance."""
    return await plane.provision(request)


@router.get("", response_model=InstanceListResponse)
async def list_instances(
    plane: Plane,
    status: InstanceStatus | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> InstanceListResponse:
    """List stored instance records, newest first."""
    instances = await plane.store.list(
        InstanceFilter(status=status, limit=limit, offset=offset)
    )
    total = await plane.store.count(status)
    return InstanceListResponse(
        instances=instances, total=total, limit=limit, offset=offset
    )


@router.get("/{instance_id}", response_model=InstanceDetail)
async def get_instance(instance_id: InstanceId, plane: Plane) -> InstanceDetail:
    """Get an instance from the scheduler and the state store."""
    info: InstanceInfo | None = None
    try:
        info = await plane.manager.get(instance_id)
    except SchedulerError as exc:
        logger.warning("Scheduler lookup failed for %s: %s", instance_id, exc)

    record = await plane.store.get(instance_id)
    if record is None:
        record = await plane.store.get_archived(instance_id)

    if info is None and record is None:
        raise InstanceNotFoundError(instance_id)

    if info is None:
        return InstanceDetail(**record.model_dump(exclude={"resource_limits"}), live=False)

    detail = InstanceDetail(**info.model_dump(), live=True)
    if record is not None:
        detail.storage_bucket = info.storage_bucket or record.storage_bucket
        detail.started_at = record.started_at
        detail.stopped_at = record.stopped_at
        detail.last_activity = record.last_activity
        detail.shutdown_reason = record.shutdown_reason
    return detail


@router.delete("/{instance_id}", response_model=OperationResponse)
async def stop_instance(instance_id: InstanceId, plane: Plane) -> OperationResponse:
    """Stop and remove an instance."""
    await plane.manager.stop(instance_id, ShutdownReason.MANUAL)
    return OperationResponse(status="stopped", instance_id=instance_id)


@router.post(
    "/{instance_id}/assign-storage",
    response_model=Assigned | AlreadyAssigned,
)
async def assign_storage(
    instance_id: InstanceId, storage: StorageConfig, plane: Plane
) -> Assigned | AlreadyAssigned:
    """Hand a bucket to a warm instance."""
    result = await plane.manager.assign_storage(instance_id, storage)
    if isinstance(result, AssignmentFailed):
        raise StorageAssignmentError(result.error)
    return result


# =============================================================================
# Instance callbacks
# =============================================================================


@router.post("/{instance_id}/activity", response_model=OperationResponse)
async def report_activity(instance_id: InstanceId, plane: Plane) -> OperationResponse:
    """Activity heartbeat from an instance."""
    if not await plane.manager.record_activity(instance_id):
        raise InstanceNotFoundError(instance_id)
    return OperationResponse(status="recorded", instance_id=instance_id)


@router.post("/{instance_id}/shutdown", response_model=OperationResponse)
async def report_shutdown(
    instance_id: InstanceId,
    plane: Plane,
    request: ShutdownRequest | None = None,
) -> OperationResponse:
    """Shutdown request from an instance (inactivity timeout)."""
    reason = request.reason if request else ShutdownReason.INACTIVITY
    logger.info(
        "Instance %s requested shutdown (%s)",
        instance_id,
        reason.value,
        extra={"event": LogEvent.INSTANCE_STOPPED, "instance_id": instance_id},
    )
    await plane.manager.stop(instance_id, reason)
    return OperationResponse(status="stopped", instance_id=instance_id)
