"""IDE instance lifecycle on Docker Swarm.

Each instance is a single-replica Swarm service named ``<prefix><id>``,
attached to the shared overlay network and routed by Traefik labels. The
scheduler is the source of truth for what is running; the state store keeps
history the scheduler forgets.

Lifecycle:
    create -> starting -> running (observed) -> stop -> stopped
                      \\-> failed (observed)
"""

import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from idehub.config import DockerConfig, InstanceConfig
from idehub.core.errors import (
    InstanceNotFoundError,
    InstanceStartFailedError,
    InstanceStopFailedError,
    MissingConfigurationError,
    NoRunningTaskError,
    SchedulerError,
)
from idehub.core.models import (
    ACTIVE_STATUSES,
    Assigned,
    AssignmentResult,
    CreateInstanceRequest,
    InstanceFilter,
    InstanceInfo,
    InstanceRecord,
    InstanceStatus,
    LogLine,
    LogOptions,
    ResourceLimits,
    ShutdownReason,
    StorageConfig,
)
from idehub.core.records import (
    ServiceRecord,
    TaskRecord,
    service_from_api,
    status_from_tasks,
    task_from_api,
)
from idehub.core.retry import RetryPolicy, RetryResult, is_retryable, run_with_policy
from idehub.infra.docker import (
    NetworkAPI,
    NetworkAttachment,
    ServiceAPI,
    ServiceSpec,
    TaskAPI,
    demux_log_frames,
)
from idehub.logging_schema import LogEvent
from idehub.metrics import (
    INSTANCES_PROVISIONED,
    INSTANCES_STOPPED,
    SCHEDULER_DURATION,
    SCHEDULER_ERRORS,
    error_type,
)
from idehub.services.assignment import StorageAssigner
from idehub.services.identity import IdAllocationError, IdentityAllocator
from idehub.services.routing import RoutingConfigurator
from idehub.services.state import StateStore

logger = logging.getLogger(__name__)


class ServiceNotVisibleError(Exception):
    """Service was created but cannot be inspected yet."""


class InstanceManager:
    """Creates, observes and retires instance services.

    All collaborators are injected; the manager owns none of their
    resources.
    """

    def __init__(
        self,
        *,
        services: ServiceAPI,
        tasks: TaskAPI,
        networks: NetworkAPI,
        identity: IdentityAllocator,
        routing: RoutingConfigurator,
        store: StateStore,
        assigner: StorageAssigner,
        config: InstanceConfig,
        docker_config: DockerConfig,
    ) -> None:
        self._services = services
        self._tasks = tasks
        self._networks = networks
        self._identity = identity
        self._routing = routing
        self._store = store
        self._assigner = assigner
        self._config = config
        self._network = docker_config.network
        self._network_id: str | None = None
        self._network_policy = RetryPolicy(
            max_attempts=config.network_check_attempts,
            delay=config.network_check_delay,
            initial_delay=config.network_check_delay,
        )

    def service_name(self, instance_id: str) -> str:
        return f"{self._config.service_prefix}{instance_id}"

    def _instance_id(self, service: ServiceRecord) -> str:
        return self._routing.extract_id(service.labels) or service.name.removeprefix(
            self._config.service_prefix
        )

    # =========================================================================
    # Create
    # =========================================================================

    def _build_env(self, instance_id: str, request: CreateInstanceRequest) -> list[str]:
        cfg = self._config
        env = [
            f"CODE_BASE_PATH=/code/{instance_id}",
            f"VNC_BASE_PATH=/vnc/{instance_id}",
            f"INACTIVITY_TIMEOUT_SECONDS={cfg.inactivity_timeout_seconds}",
            f"MANAGEMENT_API_URL={cfg.callback_url}",
            f"CONTAINER_ID={instance_id}",
            f"BACKEND_API_URL={cfg.backend_api_url}",
            f"CONTAINER_SERVICE_TOKEN={cfg.service_token}",
        ]

        storage = request.storage
        # Warm instances get storage later through assign_storage
        if not request.is_warm:
            if storage is not None:
                env.append(f"S3_BUCKET={storage.bucket}")
                if storage.bucket_id:
                    env.append(f"S3_BUCKET_ID={storage.bucket_id}")
            region = storage.region if storage and storage.region else cfg.default_region
            env.append(f"S3_REGION={region}")
            if storage is not None and storage.access_key_id:
                env.append(f"AWS_ACCESS_KEY_ID={storage.access_key_id}")
            if storage is not None and storage.secret_access_key:
                env.append(f"AWS_SECRET_ACCESS_KEY={storage.secret_access_key}")

        if request.vnc_password:
            env.append(f"VNC_PASSWORD={request.vnc_password}")
        return env

    def build_spec(
        self, instance_id: str, request: CreateInstanceRequest, domain: str
    ) -> ServiceSpec:
        """Service spec for a new instance."""
        name = self.service_name(instance_id)
        return ServiceSpec(
            name=name,
            image=self._config.image,
            env=self._build_env(instance_id, request),
            labels=self._routing.labels_for(instance_id, domain),
            networks=[NetworkAttachment(target=self._network, aliases=[name])],
            nano_cpus=int(self._config.cpu_limit * 1_000_000_000),
            memory_bytes=self._config.memory_limit,
            restart_max_attempts=self._config.restart_max_attempts,
            log_options={
                "max-size": self._config.log_max_size,
                "max-file": self._config.log_max_file,
            },
        )

    async def create(self, request: CreateInstanceRequest) -> InstanceInfo:
        """Create an instance service and record it as starting.

        Raises:
            MissingConfigurationError: A non-warm request has no storage.
            InstanceStartFailedError: No id available or the scheduler
                rejected the service.
        """
        if not request.is_warm and request.storage is None:
            raise MissingConfigurationError(
                "storage is required unless the instance is warm"
            )

        try:
            instance_id = self._identity.generate_unique_id()
        except IdAllocationError as exc:
            raise InstanceStartFailedError(str(exc)) from exc

        domain = request.domain or self._routing.default_domain
        name = self.service_name(instance_id)

        try:
            spec = self.build_spec(instance_id, request, domain)
            with SCHEDULER_DURATION.labels(operation="create").time():
                await self._services.create(spec)
        except Exception as exc:
            self._identity.release_id(instance_id)
            SCHEDULER_ERRORS.labels(operation="create", error_type=error_type(exc)).inc()
            logger.error(
                "Failed to create service %s: %s",
                name,
                exc,
                extra={"event": LogEvent.INSTANCE_CREATE_FAILED, "instance_id": instance_id},
            )
            raise InstanceStartFailedError(str(exc)) from exc

        await self.ensure_network(name)

        now = datetime.now(UTC)
        urls = self._routing.urls_for(instance_id, domain)
        bucket = None
        if request.storage is not None and not request.is_warm:
            bucket = request.storage.bucket
        record = InstanceRecord(
            id=instance_id,
            service_name=name,
            status=InstanceStatus.STARTING,
            storage_bucket=bucket,
            storage_region=request.storage.region if bucket and request.storage else None,
            urls=urls,
            resource_limits=ResourceLimits(
                cpu_limit=self._config.cpu_limit,
                memory_limit=self._config.memory_limit,
            ),
            created_at=now,
        )
        await self._store.save(record)

        INSTANCES_PROVISIONED.inc()
        logger.info(
            "Instance %s created (service %s)",
            instance_id,
            name,
            extra={
                "event": LogEvent.INSTANCE_CREATED,
                "instance_id": instance_id,
                "warm": request.is_warm,
            },
        )
        return InstanceInfo(
            id=instance_id,
            service_name=name,
            status=InstanceStatus.STARTING,
            urls=urls,
            storage_bucket=bucket,
            created_at=now,
        )

    # =========================================================================
    # Network attachment
    # =========================================================================

    async def _network_targets(self) -> set[str]:
        """Names under which the overlay network may appear in a spec.

        The scheduler stores the network id in place of the name.
        """
        if self._network_id is None:
            try:
                network = await self._networks.inspect(self._network)
            except Exception as exc:
                logger.debug("Network lookup failed for %s: %s", self._network, exc)
                network = None
            if network:
                self._network_id = network.get("Id")
        return {self._network, self._network_id} - {None}

    async def _attach_network(self, service_name: str) -> bool:
        raw = await self._services.inspect(service_name)
        if raw is None:
            raise ServiceNotVisibleError(service_name)

        service = service_from_api(raw)
        if (await self._network_targets()) & set(service.networks):
            return False

        spec = dict(raw.get("Spec") or {})
        template = dict(spec.get("TaskTemplate") or {})
        template["Networks"] = [
            *(template.get("Networks") or []),
            NetworkAttachment(target=self._network, aliases=[service_name]).to_api(),
        ]
        spec["TaskTemplate"] = template
        with SCHEDULER_DURATION.labels(operation="update").time():
            await self._services.update(service.id, service.version, spec)
        return True

    async def ensure_network(self, service_name: str) -> RetryResult[bool]:
        """Make sure a service is attached to the overlay network.

        Re-inspects the service under the network retry policy and issues
        one versioned update if the attachment is missing. A service that is
        not visible yet and transient Docker API errors are retried; client
        errors such as a version conflict end the run. The outcome is logged
        and never raised.
        """
        result = await run_with_policy(
            self._network_policy,
            lambda: self._attach_network(service_name),
            retry_on=lambda exc: isinstance(exc, ServiceNotVisibleError)
            or is_retryable(exc),
            operation=f"network check for {service_name}",
        )

        if result.succeeded and result.value:
            logger.info(
                "Attached network %s to service %s",
                self._network,
                service_name,
                extra={"event": LogEvent.NETWORK_CORRECTED, "service": service_name},
            )
        elif result.succeeded:
            logger.debug(
                "Network already attached to service %s",
                service_name,
                extra={"event": LogEvent.NETWORK_ATTACHED, "service": service_name},
            )
        elif result.exhausted:
            logger.warning(
                "Service %s not visible after %d network checks",
                service_name,
                result.attempts,
                extra={
                    "event": LogEvent.NETWORK_CORRECTION_FAILED,
                    "service": service_name,
                    "outcome": result.outcome.value,
                },
            )
        else:
            SCHEDULER_ERRORS.labels(
                operation="update", error_type=error_type(result.error)
            ).inc()
            logger.error(
                "Network attachment failed for service %s: %s",
                service_name,
                result.error,
                extra={
                    "event": LogEvent.NETWORK_CORRECTION_FAILED,
                    "service": service_name,
                    "outcome": result.outcome.value,
                },
            )
        return result

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(
        self, instance_id: str, reason: ShutdownReason = ShutdownReason.MANUAL
    ) -> None:
        """Remove an instance service and mark its record stopped.

        A service that is already gone counts as removed.

        Raises:
            InstanceStopFailedError: The scheduler rejected the removal.
        """
        name = self.service_name(instance_id)
        try:
            with SCHEDULER_DURATION.labels(operation="remove").time():
                removed = await self._services.remove(name)
        except Exception as exc:
            SCHEDULER_ERRORS.labels(operation="remove", error_type=error_type(exc)).inc()
            logger.error(
                "Failed to remove service %s: %s",
                name,
                exc,
                extra={"event": LogEvent.INSTANCE_STOP_FAILED, "instance_id": instance_id},
            )
            raise InstanceStopFailedError(str(exc)) from exc

        self._identity.release_id(instance_id)

        record = await self._store.get(instance_id)
        if record is not None and not record.status.is_terminal:
            await self._store.update_lifecycle(
                instance_id,
                status=InstanceStatus.STOPPED,
                stopped_at=datetime.now(UTC),
                shutdown_reason=reason,
            )

        INSTANCES_STOPPED.labels(reason=reason.value).inc()
        logger.info(
            "Instance %s stopped (%s)",
            instance_id,
            reason.value,
            extra={
                "event": LogEvent.INSTANCE_STOPPED,
                "instance_id": instance_id,
                "reason": reason.value,
                "already_removed": not removed,
            },
        )

    # =========================================================================
    # Query
    # =========================================================================

    def _to_info(self, service: ServiceRecord, tasks: list[TaskRecord]) -> InstanceInfo:
        instance_id = self._instance_id(service)
        domain = self._routing.extract_domain(service.labels)
        return InstanceInfo(
            id=instance_id,
            service_name=service.name,
            status=status_from_tasks(tasks),
            urls=self._routing.urls_for(instance_id, domain),
            storage_bucket=service.env.get("S3_BUCKET") or None,
            created_at=service.created_at,
        )

    async def get(self, instance_id: str) -> InstanceInfo | None:
        """Scheduler view of an instance, or None if no service exists.

        Raises:
            SchedulerError: The scheduler could not be queried.
        """
        name = self.service_name(instance_id)
        try:
            with SCHEDULER_DURATION.labels(operation="inspect").time():
                raw = await self._services.inspect(name)
                if raw is None:
                    return None
                raw_tasks = await self._tasks.list({"service": [name]})
        except Exception as exc:
            SCHEDULER_ERRORS.labels(operation="inspect", error_type=error_type(exc)).inc()
            raise SchedulerError(str(exc)) from exc

        return self._to_info(service_from_api(raw), [task_from_api(t) for t in raw_tasks])

    async def list(self, instance_filter: InstanceFilter | None = None) -> list[InstanceInfo]:
        """Scheduler view of all instances, newest first.

        Raises:
            SchedulerError: The scheduler could not be queried.
        """
        instance_filter = instance_filter or InstanceFilter()
        prefix = self._config.service_prefix
        try:
            with SCHEDULER_DURATION.labels(operation="list").time():
                raw_services = await self._services.list({"name": [prefix]})
                services = [
                    s
                    for s in (service_from_api(item) for item in raw_services)
                    if s.name.startswith(prefix)
                ]
                raw_tasks = (
                    await self._tasks.list({"service": [s.name for s in services]})
                    if services
                    else []
                )
        except Exception as exc:
            SCHEDULER_ERRORS.labels(operation="list", error_type=error_type(exc)).inc()
            logger.error(
                "Failed to list instances: %s",
                exc,
                extra={"event": LogEvent.INSTANCE_LIST_FAILED},
            )
            raise SchedulerError(str(exc)) from exc

        tasks_by_service: dict[str, list[TaskRecord]] = defaultdict(list)
        for item in raw_tasks:
            task = task_from_api(item)
            tasks_by_service[task.service_id].append(task)

        instances = sorted(
            (self._to_info(s, tasks_by_service.get(s.id, [])) for s in services),
            key=lambda i: i.created_at,
            reverse=True,
        )
        if instance_filter.status is not None:
            instances = [i for i in instances if i.status == instance_filter.status]

        start = instance_filter.offset
        end = start + instance_filter.limit if instance_filter.limit else None
        return instances[start:end]

    # =========================================================================
    # Storage
    # =========================================================================

    async def assign_storage(
        self, instance_id: str, storage: StorageConfig
    ) -> AssignmentResult:
        """Hand a bucket to a running (warm) instance.

        Raises:
            InstanceNotFoundError: No service exists for the instance.
        """
        info = await self.get(instance_id)
        if info is None:
            raise InstanceNotFoundError(instance_id)

        result = await self._assigner.assign(instance_id, info.service_name, storage)
        if isinstance(result, Assigned):
            await self._store.update_lifecycle(
                instance_id,
                storage_bucket=storage.bucket,
                storage_region=storage.region or self._config.default_region,
            )
        return result

    # =========================================================================
    # Logs
    # =========================================================================

    async def get_logs(
        self, instance_id: str, options: LogOptions | None = None
    ) -> AsyncIterator[LogLine]:
        """Log lines of the instance's running task.

        Raises:
            SchedulerError: The scheduler could not be queried.
            NoRunningTaskError: No task is running for the instance.
        """
        options = options or LogOptions()
        name = self.service_name(instance_id)
        try:
            raw_tasks = await self._tasks.list({"service": [name]})
        except Exception as exc:
            raise SchedulerError(str(exc)) from exc

        running = [t for t in map(task_from_api, raw_tasks) if t.state == "running"]
        if not running:
            raise NoRunningTaskError(instance_id)
        task = max(
            running,
            key=lambda t: t.created_at or datetime.min.replace(tzinfo=UTC),
        )
        return self._log_lines(task.id, options)

    async def _log_lines(self, task_id: str, options: LogOptions) -> AsyncIterator[LogLine]:
        chunks = self._tasks.stream_logs(
            task_id,
            tail=options.tail,
            follow=options.follow,
            timestamps=options.timestamps,
        )
        async for stream, payload in demux_log_frames(chunks):
            for line in payload.decode("utf-8", errors="replace").splitlines():
                if line:
                    yield LogLine(stream=stream, message=line)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile_on_startup(self) -> int:
        """Seed the id pool from live services.

        Returns:
            Number of ids registered. Scheduler failures are logged and
            yield 0.
        """
        prefix = self._config.service_prefix
        try:
            raw_services = await self._services.list({"name": [prefix]})
        except Exception as exc:
            logger.error(
                "Failed to load existing instance ids: %s",
                exc,
                extra={"event": LogEvent.IDS_RECONCILE_FAILED},
            )
            return 0

        count = 0
        for item in raw_services:
            service = service_from_api(item)
            if not service.name.startswith(prefix):
                continue
            instance_id = self._instance_id(service)
            if instance_id:
                self._identity.mark_id_as_used(instance_id)
                count += 1

        logger.info(
            "Registered %d existing instance ids",
            count,
            extra={"event": LogEvent.IDS_RECONCILED, "count": count},
        )
        return count

    async def record_activity(self, instance_id: str) -> bool:
        """Record an activity report from an instance."""
        updated = await self._store.update_lifecycle(
            instance_id, last_activity=datetime.now(UTC)
        )
        logger.debug(
            "Activity from instance %s",
            instance_id,
            extra={"event": LogEvent.INSTANCE_ACTIVITY, "instance_id": instance_id},
        )
        return updated

    async def mark_running(self, instance_id: str) -> bool:
        """Move a starting record to running once its endpoints answer.

        Returns:
            True if the record changed.
        """
        record = await self._store.get(instance_id)
        if record is None or not record.status.can_transition_to(InstanceStatus.RUNNING):
            return False
        await self._store.update_lifecycle(
            instance_id,
            status=InstanceStatus.RUNNING,
            started_at=record.started_at or datetime.now(UTC),
        )
        self._log_transition(instance_id, record.status, InstanceStatus.RUNNING)
        return True

    async def sync_statuses(self) -> int:
        """Apply scheduler-observed status to active records.

        Records whose service no longer exists are marked stopped with
        reason ``error``. Records are read before the scheduler is listed:
        a service is created before its record is saved, so every record
        read here has its service in the listing unless it is really gone.

        Returns:
            Number of records changed.

        Raises:
            SchedulerError: The scheduler could not be queried.
        """
        records = [r for r in await self._store.list() if r.status in ACTIVE_STATUSES]
        live = {info.id: info for info in await self.list()}

        changed = 0
        now = datetime.now(UTC)
        for record in records:
            info = live.get(record.id)
            if info is None:
                await self._store.update_lifecycle(
                    record.id,
                    status=InstanceStatus.STOPPED,
                    stopped_at=now,
                    shutdown_reason=ShutdownReason.ERROR,
                )
                self._identity.release_id(record.id)
                self._log_transition(record.id, record.status, InstanceStatus.STOPPED)
                changed += 1
                continue

            if not record.status.can_transition_to(info.status):
                continue

            started_at = None
            if info.status == InstanceStatus.RUNNING and record.started_at is None:
                started_at = now
            stopped_at = now if info.status.is_terminal else None
            shutdown_reason = (
                ShutdownReason.ERROR if info.status == InstanceStatus.FAILED else None
            )
            await self._store.update_lifecycle(
                record.id,
                status=info.status,
                started_at=started_at,
                stopped_at=stopped_at,
                shutdown_reason=shutdown_reason,
            )
            self._log_transition(record.id, record.status, info.status)
            changed += 1

        return changed

    @staticmethod
    def _log_transition(
        instance_id: str, old: InstanceStatus, new: InstanceStatus
    ) -> None:
        logger.info(
            "Instance %s status %s -> %s",
            instance_id,
            old.value,
            new.value,
            extra={
                "event": LogEvent.INSTANCE_STATUS_CHANGED,
                "instance_id": instance_id,
                "from_status": old.value,
                "to_status": new.value,
            },
        )
