"""Control plane object graph.

Builds every component from configuration, owns the resources that need
explicit open/close (Docker client, HTTP client, state store) and exposes
the provisioning flow: bucket reuse, warm pool claim, then admission and
create.
"""

import logging

import httpx

from idehub.config import ControlPlaneConfig
from idehub.core.errors import (
    IdeHubError,
    InstanceNotFoundError,
    MissingConfigurationError,
    ResourceLimitExceededError,
)
from idehub.core.models import (
    AlreadyAssigned,
    Assigned,
    AssignmentFailed,
    CreateInstanceRequest,
    InstanceInfo,
    InstanceRecord,
    InstanceStatus,
    StorageConfig,
)
from idehub.infra.docker import (
    DockerClient,
    NetworkAPI,
    NodeAPI,
    ServiceAPI,
    SystemAPI,
    TaskAPI,
)
from idehub.logging_schema import LogEvent
from idehub.metrics import ADMISSION_DECISIONS, WARM_POOL_CLAIMS
from idehub.services.assignment import StorageAssigner
from idehub.services.health import InstanceHealthMonitor
from idehub.services.identity import IdentityAllocator
from idehub.services.lifecycle import InstanceManager
from idehub.services.maintenance import MaintenanceSweeper
from idehub.services.nodes import NodeMonitor
from idehub.services.pool import PoolMaintainer, WarmPool
from idehub.services.resources import ResourceMonitor
from idehub.services.routing import RoutingConfigurator
from idehub.services.state import StateStore

logger = logging.getLogger(__name__)


class ControlPlane:
    """All control plane components, wired together."""

    def __init__(self, config: ControlPlaneConfig) -> None:
        self.config = config

        self.docker = DockerClient(config.docker)
        self.http = httpx.AsyncClient(timeout=config.assignment.request_timeout)
        self.system = SystemAPI(self.docker)
        self.identity = IdentityAllocator()
        self.routing = RoutingConfigurator(config.routing)
        self.store = StateStore(config.state)

        tasks = TaskAPI(self.docker)
        self.manager = InstanceManager(
            services=ServiceAPI(self.docker),
            tasks=tasks,
            networks=NetworkAPI(self.docker),
            identity=self.identity,
            routing=self.routing,
            store=self.store,
            assigner=StorageAssigner(config.assignment, config.instance, self.http),
            config=config.instance,
            docker_config=config.docker,
        )
        self.resources = ResourceMonitor(
            config.admission, instance_lister=self.manager.list
        )
        self.nodes = NodeMonitor(NodeAPI(self.docker), tasks)
        self.pool = WarmPool(config.pool.target_size)
        self.pool_maintainer = PoolMaintainer(
            self.pool, self.manager, self.store, self.resources
        )
        self.health = InstanceHealthMonitor(
            config.health, self.manager, self.store, self.http
        )
        self.sweeper = MaintenanceSweeper(
            config.maintenance, self.manager, self.store, pool=self.pool_maintainer
        )

    async def open(self) -> None:
        """Open the state store and seed the id pool from live services."""
        await self.store.open()
        await self.manager.reconcile_on_startup()

    async def close(self) -> None:
        self.sweeper.stop()
        self.health.stop()
        await self.http.aclose()
        await self.docker.close()
        await self.store.close()

    async def provision(self, request: CreateInstanceRequest) -> InstanceInfo:
        """Serve a provisioning request.

        A bucket that an active instance already serves gets that instance
        back. Otherwise a warm instance from the pool is handed the bucket,
        and only when none can take it is a new instance admitted and
        created.

        Raises:
            MissingConfigurationError: A non-warm request has no storage.
            ResourceLimitExceededError: Admission control refused the request.
            InstanceStartFailedError: The scheduler rejected the service.
        """
        if not request.is_warm:
            if request.storage is None:
                raise MissingConfigurationError(
                    "storage is required unless the instance is warm"
                )
            reused = await self._reuse(request.storage.bucket)
            if reused is not None:
                return reused
            if request.domain is None:
                claimed = await self._claim_warm(request.storage)
                if claimed is not None:
                    return claimed

        decision = await self.resources.can_admit()
        if not decision.allowed:
            ADMISSION_DECISIONS.labels(result="refused").inc()
            logger.warning(
                "Provisioning refused: %s",
                decision.reason,
                extra={"event": LogEvent.ADMISSION_REFUSED},
            )
            raise ResourceLimitExceededError(decision.reason or "Resource limit exceeded")
        ADMISSION_DECISIONS.labels(result="allowed").inc()
        info = await self.manager.create(request)
        if request.is_warm:
            self.pool.add(info.id, info.service_name)
        return info

    async def _reuse(self, bucket: str) -> InstanceInfo | None:
        record = await self.store.find_active_by_bucket(bucket)
        if record is None:
            return None
        await self.manager.record_activity(record.id)
        logger.info(
            "Bucket %s already served by instance %s",
            bucket,
            record.id,
            extra={"event": LogEvent.INSTANCE_REUSED, "instance_id": record.id},
        )
        return info_from_record(record)

    async def _claim_warm(self, storage: StorageConfig) -> InstanceInfo | None:
        entry = self.pool.claim()
        if entry is None:
            WARM_POOL_CLAIMS.labels(result="empty").inc()
            return None

        instance_id = entry.instance_id
        try:
            result = await self.manager.assign_storage(instance_id, storage)
        except InstanceNotFoundError:
            result = AlreadyAssigned()
        except IdeHubError as exc:
            result = AssignmentFailed(error=exc.message)

        if not isinstance(result, Assigned):
            WARM_POOL_CLAIMS.labels(result="failed").inc()
            if isinstance(result, AlreadyAssigned):
                self.pool.remove(instance_id)
            else:
                self.pool.release(instance_id)
            logger.warning(
                "Warm instance %s could not take bucket %s: %s",
                instance_id,
                storage.bucket,
                result.kind,
                extra={"event": LogEvent.POOL_CLAIM_FAILED, "instance_id": instance_id},
            )
            return None

        self.pool.remove(instance_id)
        WARM_POOL_CLAIMS.labels(result="assigned").inc()
        logger.info(
            "Warm instance %s assigned bucket %s",
            instance_id,
            storage.bucket,
            extra={"event": LogEvent.POOL_CLAIMED, "instance_id": instance_id},
        )
        record = await self.store.get(instance_id)
        if record is None:
            return InstanceInfo(
                id=instance_id,
                service_name=entry.service_name,
                status=InstanceStatus.STARTING,
                urls=self.routing.urls_for(instance_id, self.routing.default_domain),
                storage_bucket=storage.bucket,
                created_at=entry.added_at,
            )
        return info_from_record(record)


def info_from_record(record: InstanceRecord) -> InstanceInfo:
    return InstanceInfo(
        id=record.id,
        service_name=record.service_name,
        status=record.status,
        urls=record.urls,
        storage_bucket=record.storage_bucket,
        created_at=record.created_at,
    )
