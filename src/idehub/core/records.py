"""Normalized Swarm records.

The Docker Engine API returns deeply nested, loosely typed JSON. Everything
above the infra layer works with these records instead; the mapping
functions are the only place that knows the raw API shape.
"""

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from idehub.core.models import (
    InstanceStatus,
    NodeAvailability,
    NodeRecord,
    NodeResources,
    NodeRole,
    NodeStatus,
)

# Docker reports nanosecond precision; datetime keeps microseconds.
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")

_TASK_STATE_TO_STATUS = {
    "new": InstanceStatus.STARTING,
    "allocated": InstanceStatus.STARTING,
    "pending": InstanceStatus.STARTING,
    "assigned": InstanceStatus.STARTING,
    "accepted": InstanceStatus.STARTING,
    "preparing": InstanceStatus.STARTING,
    "ready": InstanceStatus.STARTING,
    "starting": InstanceStatus.STARTING,
    "running": InstanceStatus.RUNNING,
    "failed": InstanceStatus.FAILED,
    "rejected": InstanceStatus.FAILED,
    "complete": InstanceStatus.STOPPED,
    "shutdown": InstanceStatus.STOPPED,
    "orphaned": InstanceStatus.STOPPED,
    "remove": InstanceStatus.STOPPED,
}


class ServiceRecord(BaseModel):
    """Normalized Swarm service."""

    id: str
    name: str
    version: int
    labels: dict[str, str] = {}
    env: dict[str, str] = {}
    networks: list[str] = []
    created_at: datetime
    spec: dict[str, Any] = {}


class TaskRecord(BaseModel):
    """Normalized Swarm task."""

    id: str
    service_id: str
    node_id: str | None = None
    state: str
    desired_state: str
    message: str = ""
    error: str | None = None
    nano_cpus: int = 0
    memory_bytes: int = 0
    created_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.state == "running" and self.desired_state == "running"


def parse_docker_time(value: str | None) -> datetime | None:
    """Parse a Docker RFC 3339 timestamp into an aware datetime."""
    if not value:
        return None
    text = _FRACTION_RE.sub(r".\1", value.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _env_to_dict(env: list[str] | None) -> dict[str, str]:
    result: dict[str, str] = {}
    for entry in env or []:
        key, sep, value = entry.partition("=")
        if sep:
            result[key] = value
    return result


def service_from_api(data: dict[str, Any]) -> ServiceRecord:
    """Map a raw /services entry to a ServiceRecord."""
    spec = data.get("Spec") or {}
    template = spec.get("TaskTemplate") or {}
    container = template.get("ContainerSpec") or {}
    networks = [n.get("Target", "") for n in template.get("Networks") or []]
    return ServiceRecord(
        id=data.get("ID", ""),
        name=spec.get("Name", ""),
        version=(data.get("Version") or {}).get("Index", 0),
        labels=spec.get("Labels") or {},
        env=_env_to_dict(container.get("Env")),
        networks=[n for n in networks if n],
        created_at=parse_docker_time(data.get("CreatedAt"))
        or datetime.now(timezone.utc),
        spec=spec,
    )


def task_from_api(data: dict[str, Any]) -> TaskRecord:
    """Map a raw /tasks entry to a TaskRecord."""
    status = data.get("Status") or {}
    limits = ((data.get("Spec") or {}).get("Resources") or {}).get("Limits") or {}
    return TaskRecord(
        id=data.get("ID", ""),
        service_id=data.get("ServiceID", ""),
        node_id=data.get("NodeID") or None,
        state=status.get("State", "unknown"),
        desired_state=data.get("DesiredState", "unknown"),
        message=status.get("Message", ""),
        error=status.get("Err") or None,
        nano_cpus=limits.get("NanoCPUs", 0) or 0,
        memory_bytes=limits.get("MemoryBytes", 0) or 0,
        created_at=parse_docker_time(data.get("CreatedAt")),
    )


def _enum_or(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def node_from_api(data: dict[str, Any]) -> NodeRecord:
    """Map a raw /nodes entry to a NodeRecord."""
    spec = data.get("Spec") or {}
    description = data.get("Description") or {}
    resources = description.get("Resources") or {}
    state = (data.get("Status") or {}).get("State", "unknown")
    return NodeRecord(
        id=data.get("ID", ""),
        hostname=description.get("Hostname", ""),
        role=_enum_or(NodeRole, spec.get("Role"), NodeRole.WORKER),
        status=_enum_or(NodeStatus, state, NodeStatus.UNKNOWN),
        availability=_enum_or(
            NodeAvailability, spec.get("Availability"), NodeAvailability.ACTIVE
        ),
        resources=NodeResources(
            cpu_cores=(resources.get("NanoCPUs") or 0) / 1e9,
            memory_bytes=resources.get("MemoryBytes") or 0,
        ),
    )


def status_from_tasks(tasks: list[TaskRecord]) -> InstanceStatus:
    """Derive instance status from the service's newest task.

    A service with no tasks yet is still starting.
    """
    if not tasks:
        return InstanceStatus.STARTING
    newest = max(
        tasks,
        key=lambda t: t.created_at or datetime.min.replace(tzinfo=timezone.utc),
    )
    return _TASK_STATE_TO_STATUS.get(newest.state, InstanceStatus.STARTING)
