"""Host resource sampling and admission control.

New instances are refused while host memory usage is at or above the
threshold. High CPU is only reported: CPU load is bursty and a refused
instance would not make it drop.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from typing import NamedTuple

import psutil

from idehub.config import AdmissionConfig
from idehub.core.models import (
    AdmissionDecision,
    ContainerCounts,
    CpuSnapshot,
    InstanceInfo,
    InstanceStatus,
    ResourceSnapshot,
    ResourceThresholds,
    UsageSnapshot,
)
from idehub.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class MemoryUsage(NamedTuple):
    total: int
    available: int


class DiskUsage(NamedTuple):
    total: int
    used: int
    free: int


class HostProbe:
    """Reads raw host counters through psutil (blocking)."""

    def __init__(self, cpu_sample_interval: float = 0.1) -> None:
        self._interval = cpu_sample_interval

    def cpu_percent(self) -> float:
        return psutil.cpu_percent(interval=self._interval)

    def cpu_count(self) -> int:
        return psutil.cpu_count(logical=True) or 1

    def memory(self) -> MemoryUsage:
        vm = psutil.virtual_memory()
        return MemoryUsage(total=vm.total, available=vm.available)

    def disk(self) -> DiskUsage:
        path = "/"
        if not os.path.exists(path):
            partitions = psutil.disk_partitions(all=False)
            if not partitions:
                return DiskUsage(0, 0, 0)
            path = partitions[0].mountpoint
        usage = psutil.disk_usage(path)
        return DiskUsage(total=usage.total, used=usage.used, free=usage.free)


def _percent(part: int | float, total: int | float) -> float:
    return (part / total * 100) if total else 0.0


InstanceLister = Callable[[], Awaitable[list[InstanceInfo]]]


class ResourceMonitor:
    """Samples host resources and decides admission."""

    def __init__(
        self,
        config: AdmissionConfig,
        *,
        probe: HostProbe | None = None,
        instance_lister: InstanceLister | None = None,
    ) -> None:
        self._probe = probe or HostProbe(config.cpu_sample_interval)
        self._instance_lister = instance_lister
        self._thresholds = ResourceThresholds(
            memory_percent=config.max_memory_percent,
            cpu_percent=config.max_cpu_percent,
        )

    @property
    def thresholds(self) -> ResourceThresholds:
        return self._thresholds

    def set_thresholds(
        self,
        memory_percent: float | None = None,
        cpu_percent: float | None = None,
    ) -> ResourceThresholds:
        """Update thresholds; omitted values keep their current setting."""
        self._thresholds = ResourceThresholds(
            memory_percent=(
                memory_percent
                if memory_percent is not None
                else self._thresholds.memory_percent
            ),
            cpu_percent=(
                cpu_percent if cpu_percent is not None else self._thresholds.cpu_percent
            ),
        )
        logger.info(
            "Resource thresholds updated: memory=%.1f%% cpu=%.1f%%",
            self._thresholds.memory_percent,
            self._thresholds.cpu_percent,
            extra={"event": LogEvent.THRESHOLDS_UPDATED},
        )
        return self._thresholds

    async def _container_counts(self) -> ContainerCounts:
        if self._instance_lister is None:
            return ContainerCounts(running=0, total=0)
        try:
            instances = await self._instance_lister()
        except Exception as exc:
            logger.error(
                "Failed to list instances for resource snapshot: %s",
                exc,
                extra={"event": LogEvent.INSTANCE_LIST_FAILED},
            )
            return ContainerCounts(running=0, total=0)
        running = sum(1 for i in instances if i.status == InstanceStatus.RUNNING)
        return ContainerCounts(running=running, total=len(instances))

    async def sample(self) -> ResourceSnapshot:
        """Take a resource snapshot of the host."""
        cpu_percent, cpu_count, memory, disk = await asyncio.gather(
            asyncio.to_thread(self._probe.cpu_percent),
            asyncio.to_thread(self._probe.cpu_count),
            asyncio.to_thread(self._probe.memory),
            asyncio.to_thread(self._probe.disk),
        )
        memory_used = memory.total - memory.available
        return ResourceSnapshot(
            cpu=CpuSnapshot(usage_percent=cpu_percent, available_cores=cpu_count),
            memory=UsageSnapshot(
                total=memory.total,
                used=memory_used,
                available=memory.available,
                usage_percent=_percent(memory_used, memory.total),
            ),
            disk=UsageSnapshot(
                total=disk.total,
                used=disk.used,
                available=disk.free,
                usage_percent=_percent(disk.used, disk.total),
            ),
            containers=await self._container_counts(),
        )

    async def can_admit(self) -> AdmissionDecision:
        """Decide whether a new instance may start on this host."""
        snapshot = await self.sample()
        thresholds = self._thresholds

        memory_percent = snapshot.memory.usage_percent
        if memory_percent >= thresholds.memory_percent:
            reason = (
                f"Memory usage at {memory_percent:.1f}% exceeds threshold "
                f"of {thresholds.memory_percent:g}%"
            )
            logger.warning(
                reason,
                extra={
                    "event": LogEvent.ADMISSION_REFUSED,
                    "memory_percent": memory_percent,
                },
            )
            return AdmissionDecision(allowed=False, reason=reason)

        cpu_percent = snapshot.cpu.usage_percent
        if cpu_percent >= thresholds.cpu_percent:
            logger.warning(
                "CPU usage at %.1f%% exceeds threshold of %g%%, admitting anyway",
                cpu_percent,
                thresholds.cpu_percent,
                extra={"event": LogEvent.CPU_THRESHOLD_EXCEEDED},
            )

        return AdmissionDecision(allowed=True)
