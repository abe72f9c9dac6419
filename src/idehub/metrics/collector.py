"""Prometheus metrics definitions for the IDEHub control plane.

Tracks scheduler (Swarm API) calls, admission decisions, instance
provisioning, warm pool usage, endpoint health checks and state store
archiving.
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets
# =============================================================================
# Swarm API calls are typically 10ms ~ 30s
_BUCKETS_SCHEDULER = (
    0.01, 0.025, 0.05, 0.1, 0.25,
    0.5, 1, 2.5, 5, 10,
    30,
)  # 11 buckets

# =============================================================================
# Scheduler Operation Metrics
# =============================================================================

SCHEDULER_DURATION = Histogram(
    "idehub_scheduler_duration_seconds",
    "Duration of scheduler operations",
    ["operation"],  # create, remove, inspect, list, update
    buckets=_BUCKETS_SCHEDULER,
)

SCHEDULER_ERRORS = Counter(
    "idehub_scheduler_errors_total",
    "Total scheduler operation errors",
    ["operation", "error_type"],  # error_type: api_error, timeout, connection
)

# =============================================================================
# Instance Metrics
# =============================================================================

ADMISSION_DECISIONS = Counter(
    "idehub_admission_decisions_total",
    "Admission control decisions",
    ["result"],  # allowed, refused
)

INSTANCES_PROVISIONED = Counter(
    "idehub_instances_provisioned_total",
    "Total instances created",
)

INSTANCES_STOPPED = Counter(
    "idehub_instances_stopped_total",
    "Total instances stopped",
    ["reason"],  # inactivity, manual, error, resource_limit
)

INSTANCES = Gauge(
    "idehub_instances",
    "Instances in the state store by status",
    ["status"],
)

RECORDS_ARCHIVED = Counter(
    "idehub_records_archived_total",
    "Stopped instance records moved to the archive",
)

# =============================================================================
# Warm Pool / Health Metrics
# =============================================================================

WARM_POOL_SIZE = Gauge(
    "idehub_warm_pool_size",
    "Warm instances tracked by the pool",
    ["state"],  # warm, claimed
)

WARM_POOL_CLAIMS = Counter(
    "idehub_warm_pool_claims_total",
    "Provisioning requests served from the warm pool",
    ["result"],  # assigned, failed, empty
)

HEALTH_CHECKS = Counter(
    "idehub_health_checks_total",
    "Instance endpoint health checks",
    ["result"],  # healthy, unhealthy
)


def error_type(exc: Exception) -> str:
    """Map an exception to the error_type label."""
    name = type(exc).__name__
    if "Timeout" in name:
        return "timeout"
    if "Connect" in name:
        return "connection"
    return "api_error"


# =============================================================================
# Metric Initialization
# =============================================================================

def _init_metrics() -> None:
    """Initialize labeled metrics with zero values."""
    for op in ["create", "remove", "inspect", "list", "update"]:
        SCHEDULER_DURATION.labels(operation=op)
        for kind in ["api_error", "timeout", "connection"]:
            SCHEDULER_ERRORS.labels(operation=op, error_type=kind)

    for result in ["allowed", "refused"]:
        ADMISSION_DECISIONS.labels(result=result)

    for reason in ["inactivity", "manual", "error", "resource_limit"]:
        INSTANCES_STOPPED.labels(reason=reason)

    for status in ["starting", "running", "stopping", "stopped", "failed"]:
        INSTANCES.labels(status=status)

    for state in ["warm", "claimed"]:
        WARM_POOL_SIZE.labels(state=state)

    for result in ["assigned", "failed", "empty"]:
        WARM_POOL_CLAIMS.labels(result=result)

    for result in ["healthy", "unhealthy"]:
        HEALTH_CHECKS.labels(result=result)


_init_metrics()
