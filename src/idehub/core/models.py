"""Domain models for IDE instances, cluster nodes and host resources."""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field

# =============================================================================
# Instance
# =============================================================================


class InstanceStatus(StrEnum):
    """Instance lifecycle status.

    Transitions move forward along starting -> running -> stopping -> stopped.
    FAILED is reachable from any non-terminal status. STOPPED and FAILED are
    terminal.
    """

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.STOPPED, InstanceStatus.FAILED)

    def can_transition_to(self, target: "InstanceStatus") -> bool:
        """Check whether moving from this status to target is allowed."""
        if self.is_terminal or target == self:
            return False
        if target == InstanceStatus.FAILED:
            return True
        return _STATUS_ORDER[target] > _STATUS_ORDER[self]


_STATUS_ORDER = {
    InstanceStatus.STARTING: 0,
    InstanceStatus.RUNNING: 1,
    InstanceStatus.STOPPING: 2,
    InstanceStatus.STOPPED: 3,
}

ACTIVE_STATUSES = frozenset({
    InstanceStatus.STARTING,
    InstanceStatus.RUNNING,
    InstanceStatus.STOPPING,
})


class ShutdownReason(StrEnum):
    """Why an instance was stopped."""

    INACTIVITY = "inactivity"
    MANUAL = "manual"
    ERROR = "error"
    RESOURCE_LIMIT = "resource_limit"


class InstanceUrls(BaseModel):
    """Public URLs of an instance's three endpoints."""

    vnc: str
    code_server: str
    web_server: str


class ResourceLimits(BaseModel):
    """Per-instance resource limits."""

    cpu_limit: float  # cores
    memory_limit: int  # bytes


class InstanceRecord(BaseModel):
    """Persisted instance history."""

    id: str
    service_name: str
    status: InstanceStatus = InstanceStatus.STARTING
    storage_bucket: str | None = None
    storage_region: str | None = None
    urls: InstanceUrls
    resource_limits: ResourceLimits
    created_at: datetime
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_activity: datetime | None = None
    shutdown_reason: ShutdownReason | None = None


class InstanceInfo(BaseModel):
    """Scheduler-derived view of an instance."""

    id: str
    service_name: str
    status: InstanceStatus
    urls: InstanceUrls
    storage_bucket: str | None = None
    created_at: datetime


class InstanceFilter(BaseModel):
    """Status filter and pagination for instance listings."""

    status: InstanceStatus | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class StorageConfig(BaseModel):
    """Object-storage bucket handed to an instance."""

    bucket: str
    bucket_id: str | None = None
    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None


class CreateInstanceRequest(BaseModel):
    """Provisioning request.

    A warm instance is started without storage; credentials are pushed
    later through storage assignment.
    """

    storage: StorageConfig | None = None
    vnc_password: str | None = None
    is_warm: bool = False
    domain: str | None = None


class LogOptions(BaseModel):
    """Options for instance log retrieval."""

    tail: int = Field(default=100, ge=0)
    follow: bool = False
    timestamps: bool = False


class LogLine(BaseModel):
    """One demultiplexed log line."""

    stream: Literal["stdout", "stderr"]
    message: str


# =============================================================================
# Storage assignment result
# =============================================================================


class Assigned(BaseModel):
    """Instance accepted the bucket."""

    kind: Literal["success"] = "success"


class AlreadyAssigned(BaseModel):
    """Instance already holds a bucket."""

    kind: Literal["already_assigned"] = "already_assigned"


class AssignmentFailed(BaseModel):
    """Instance reported or caused an assignment error."""

    kind: Literal["error"] = "error"
    error: str


AssignmentResult = Annotated[
    Assigned | AlreadyAssigned | AssignmentFailed,
    Field(discriminator="kind"),
]


# =============================================================================
# Warm pool / endpoint health
# =============================================================================


class PoolStats(BaseModel):
    """Warm pool occupancy."""

    warm: int
    claimed: int
    target_size: int


class EndpointChecks(BaseModel):
    """Reachability of an instance's three endpoints."""

    code_server: bool
    vnc: bool
    web_server: bool

    @property
    def all_ok(self) -> bool:
        return self.code_server and self.vnc and self.web_server


# =============================================================================
# Nodes
# =============================================================================


class NodeRole(StrEnum):
    MANAGER = "manager"
    WORKER = "worker"


class NodeStatus(StrEnum):
    READY = "ready"
    DOWN = "down"
    UNKNOWN = "unknown"


class NodeAvailability(StrEnum):
    ACTIVE = "active"
    PAUSE = "pause"
    DRAIN = "drain"


class NodeHealthState(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class NodeResources(BaseModel):
    cpu_cores: float
    memory_bytes: int


class NodeRecord(BaseModel):
    """Normalized Swarm node."""

    id: str
    hostname: str
    role: NodeRole
    status: NodeStatus
    availability: NodeAvailability
    resources: NodeResources
    container_count: int = 0


class NodeMetrics(BaseModel):
    """Allocated (limit-based) usage of one node."""

    node_id: str
    hostname: str
    cpu_usage: float  # percent of node cores
    memory_usage: float  # percent of node memory
    container_count: int
    health: NodeHealthState


class AggregatedMetrics(BaseModel):
    """Cluster-wide totals."""

    total_nodes: int
    healthy_nodes: int
    total_cpu_cores: float
    total_memory_bytes: int
    total_containers: int
    nodes: list[NodeMetrics]


class NodeHealth(BaseModel):
    """Health verdict for one node."""

    healthy: bool
    status: str
    reason: str | None = None


# =============================================================================
# Host resources
# =============================================================================


class CpuSnapshot(BaseModel):
    usage_percent: float
    available_cores: int


class UsageSnapshot(BaseModel):
    """Byte totals for memory or disk."""

    total: int
    used: int
    available: int
    usage_percent: float


class ContainerCounts(BaseModel):
    running: int
    total: int


class ResourceSnapshot(BaseModel):
    """Point-in-time host resource usage."""

    cpu: CpuSnapshot
    memory: UsageSnapshot
    disk: UsageSnapshot
    containers: ContainerCounts


class ResourceThresholds(BaseModel):
    """Admission thresholds in percent."""

    memory_percent: float = Field(default=90.0, gt=0, le=100)
    cpu_percent: float = Field(default=90.0, gt=0, le=100)


class AdmissionDecision(BaseModel):
    """Whether a new instance may be admitted."""

    allowed: bool
    reason: str | None = None
