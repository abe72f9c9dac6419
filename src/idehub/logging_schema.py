"""Log event types for structured logging."""

from enum import StrEnum


class LogEvent(StrEnum):
    """Log event types for the control plane.

    Used with logger.info/warning/error extra dict:
        logger.info("message", extra={"event": LogEvent.INSTANCE_CREATED, ...})
    """

    # Application lifecycle
    APP_STARTED = "app_started"
    APP_STOPPED = "app_stopped"

    # Instance lifecycle
    INSTANCE_CREATED = "instance_created"
    INSTANCE_CREATE_FAILED = "instance_create_failed"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_STOP_FAILED = "instance_stop_failed"
    INSTANCE_STATUS_CHANGED = "instance_status_changed"
    INSTANCE_STUCK = "instance_stuck"
    INSTANCE_ACTIVITY = "instance_activity"
    INSTANCE_REUSED = "instance_reused"
    INSTANCE_UNHEALTHY = "instance_unhealthy"
    INSTANCE_RECOVERED = "instance_recovered"

    # Warm pool
    POOL_SYNCED = "pool_synced"
    POOL_REFILLED = "pool_refilled"
    POOL_REFILL_SKIPPED = "pool_refill_skipped"
    POOL_CLAIMED = "pool_claimed"
    POOL_CLAIM_FAILED = "pool_claim_failed"

    # Network attachment
    NETWORK_ATTACHED = "network_attached"
    NETWORK_CORRECTED = "network_corrected"
    NETWORK_CORRECTION_FAILED = "network_correction_failed"

    # Storage assignment
    STORAGE_PROBE_FAILED = "storage_probe_failed"
    STORAGE_ASSIGNED = "storage_assigned"
    STORAGE_ALREADY_ASSIGNED = "storage_already_assigned"
    STORAGE_ASSIGN_FAILED = "storage_assign_failed"
    STORAGE_BUCKET_ID_MISSING = "storage_bucket_id_missing"

    # Identity
    IDS_RECONCILED = "ids_reconciled"
    IDS_RECONCILE_FAILED = "ids_reconcile_failed"

    # Admission control
    ADMISSION_REFUSED = "admission_refused"
    CPU_THRESHOLD_EXCEEDED = "cpu_threshold_exceeded"
    THRESHOLDS_UPDATED = "thresholds_updated"

    # Cluster monitoring
    NODE_LIST_FAILED = "node_list_failed"
    TASK_LIST_FAILED = "task_list_failed"
    INSTANCE_LIST_FAILED = "instance_list_failed"

    # State store
    DB_CONNECTED = "db_connected"
    DB_CLOSED = "db_closed"
    RECORDS_ARCHIVED = "records_archived"

    # Maintenance sweep
    SWEEP_COMPLETED = "sweep_completed"
    SWEEP_STEP_FAILED = "sweep_step_failed"

    # Retry policy
    RETRY_ATTEMPT = "retry_attempt"

    # Error events
    UNHANDLED_EXCEPTION = "unhandled_exception"
    CONTROL_PLANE_ERROR = "control_plane_error"
