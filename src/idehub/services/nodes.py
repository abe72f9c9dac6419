"""Swarm node monitoring.

Usage figures are allocation-based: the sum of CPU and memory *limits* of
tasks running on a node, against the node's capacity. They say how full a
node is from the scheduler's point of view, not how busy it is.
"""

import logging
from collections import defaultdict

from idehub.core.models import (
    AggregatedMetrics,
    NodeAvailability,
    NodeHealth,
    NodeHealthState,
    NodeMetrics,
    NodeRecord,
    NodeStatus,
)
from idehub.core.records import TaskRecord, node_from_api, task_from_api
from idehub.infra.docker import NodeAPI, TaskAPI
from idehub.logging_schema import LogEvent

logger = logging.getLogger(__name__)

UNHEALTHY_USAGE_PERCENT = 95.0


def _percent(part: float, total: float) -> float:
    return (part / total * 100) if total else 0.0


def classify_health(
    status: NodeStatus, cpu_usage: float, memory_usage: float
) -> NodeHealthState:
    if status == NodeStatus.DOWN:
        return NodeHealthState.UNHEALTHY
    if status == NodeStatus.UNKNOWN:
        return NodeHealthState.UNKNOWN
    if cpu_usage > UNHEALTHY_USAGE_PERCENT or memory_usage > UNHEALTHY_USAGE_PERCENT:
        return NodeHealthState.UNHEALTHY
    return NodeHealthState.HEALTHY


class NodeMonitor:
    """Reports Swarm node inventory, allocation and health."""

    def __init__(self, nodes: NodeAPI, tasks: TaskAPI) -> None:
        self._nodes = nodes
        self._tasks = tasks

    async def list_nodes(self) -> list[NodeRecord]:
        """List cluster nodes; an API failure yields an empty list."""
        try:
            raw = await self._nodes.list()
        except Exception as exc:
            logger.error(
                "Failed to list nodes: %s",
                exc,
                extra={"event": LogEvent.NODE_LIST_FAILED},
            )
            return []
        return [node_from_api(item) for item in raw]

    async def _running_tasks(self) -> list[TaskRecord]:
        try:
            raw = await self._tasks.list({"desired-state": ["running"]})
        except Exception as exc:
            logger.error(
                "Failed to list tasks: %s",
                exc,
                extra={"event": LogEvent.TASK_LIST_FAILED},
            )
            return []
        return [t for t in (task_from_api(item) for item in raw) if t.is_running]

    async def node_metrics(self) -> list[NodeMetrics]:
        """Per-node allocation and health."""
        return await self._metrics_for(await self.list_nodes())

    async def _metrics_for(self, nodes: list[NodeRecord]) -> list[NodeMetrics]:
        if not nodes:
            return []

        by_node: dict[str, list[TaskRecord]] = defaultdict(list)
        for task in await self._running_tasks():
            if task.node_id:
                by_node[task.node_id].append(task)

        metrics = []
        for node in nodes:
            tasks = by_node.get(node.id, [])
            cpu_cores = sum(t.nano_cpus for t in tasks) / 1e9
            memory_bytes = sum(t.memory_bytes for t in tasks)
            cpu_usage = _percent(cpu_cores, node.resources.cpu_cores)
            memory_usage = _percent(memory_bytes, node.resources.memory_bytes)
            metrics.append(
                NodeMetrics(
                    node_id=node.id,
                    hostname=node.hostname,
                    cpu_usage=cpu_usage,
                    memory_usage=memory_usage,
                    container_count=len(tasks),
                    health=classify_health(node.status, cpu_usage, memory_usage),
                )
            )
        return metrics

    async def aggregate(self) -> AggregatedMetrics:
        """Cluster-wide totals plus per-node metrics."""
        nodes = await self.list_nodes()
        metrics = await self._metrics_for(nodes)
        return AggregatedMetrics(
            total_nodes=len(nodes),
            healthy_nodes=sum(1 for m in metrics if m.health == NodeHealthState.HEALTHY),
            total_cpu_cores=sum(n.resources.cpu_cores for n in nodes),
            total_memory_bytes=sum(n.resources.memory_bytes for n in nodes),
            total_containers=sum(m.container_count for m in metrics),
            nodes=metrics,
        )

    async def node_health(self, node_id: str) -> NodeHealth:
        """Health verdict for a single node."""
        node = next((n for n in await self.list_nodes() if n.id == node_id), None)
        if node is None:
            return NodeHealth(healthy=False, status="unknown", reason="Node not found")
        if node.status != NodeStatus.READY:
            return NodeHealth(
                healthy=False,
                status=node.status.value,
                reason=f"Node status is {node.status.value}",
            )
        if node.availability != NodeAvailability.ACTIVE:
            return NodeHealth(
                healthy=False,
                status=node.availability.value,
                reason=f"Node availability is {node.availability.value}",
            )
        return NodeHealth(healthy=True, status=node.status.value)
