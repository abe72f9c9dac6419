"""Control plane services."""

from idehub.services.control_plane import ControlPlane
from idehub.services.health import InstanceHealthMonitor
from idehub.services.identity import IdAllocationError, IdentityAllocator
from idehub.services.lifecycle import InstanceManager
from idehub.services.maintenance import MaintenanceSweeper
from idehub.services.nodes import NodeMonitor
from idehub.services.pool import PoolMaintainer, WarmPool
from idehub.services.resources import ResourceMonitor
from idehub.services.routing import RoutingConfigurator
from idehub.services.state import StateStore

__all__ = [
    "ControlPlane",
    "IdAllocationError",
    "IdentityAllocator",
    "InstanceHealthMonitor",
    "InstanceManager",
    "MaintenanceSweeper",
    "NodeMonitor",
    "PoolMaintainer",
    "ResourceMonitor",
    "RoutingConfigurator",
    "StateStore",
    "WarmPool",
]
