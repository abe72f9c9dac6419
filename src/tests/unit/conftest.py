"""Fixtures for control plane unit tests."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from idehub.config import (
    AssignmentConfig,
    DockerConfig,
    InstanceConfig,
    RoutingConfig,
    StateConfig,
)
from idehub.infra.docker import NetworkAPI, NodeAPI, ServiceAPI, TaskAPI
from idehub.services.assignment import StorageAssigner
from idehub.services.identity import IdentityAllocator
from idehub.services.lifecycle import InstanceManager
from idehub.services.routing import RoutingConfigurator
from idehub.services.state import StateStore

GIB = 1024**3


# =============================================================================
# Raw Docker API payloads
# =============================================================================


def service_json(
    name: str,
    *,
    service_id: str | None = None,
    domain: str = "ide.example.com",
    networks: tuple[str, ...] = ("ide-network",),
    env: tuple[str, ...] = (),
    version: int = 10,
    created_at: str = "2024-05-01T10:00:00.123456789Z",
) -> dict:
    return {
        "ID": service_id or f"svc-{name}",
        "Version": {"Index": version},
        "CreatedAt": created_at,
        "Spec": {
            "Name": name,
            "Labels": {
                "idehub.domain": domain,
                "idehub.instance.id": name.removeprefix("ide-"),
            },
            "TaskTemplate": {
                "ContainerSpec": {"Image": "ide:latest", "Env": list(env)},
                "Networks": [{"Target": n} for n in networks],
            },
        },
    }


def task_json(
    service_id: str,
    *,
    task_id: str = "task-1",
    state: str = "running",
    desired_state: str = "running",
    node_id: str = "node-1",
    nano_cpus: int = 2_000_000_000,
    memory_bytes: int = 4 * GIB,
    created_at: str = "2024-05-01T10:00:01Z",
) -> dict:
    return {
        "ID": task_id,
        "ServiceID": service_id,
        "NodeID": node_id,
        "CreatedAt": created_at,
        "DesiredState": desired_state,
        "Status": {"State": state, "Message": state},
        "Spec": {
            "Resources": {
                "Limits": {"NanoCPUs": nano_cpus, "MemoryBytes": memory_bytes}
            }
        },
    }


def node_json(
    node_id: str,
    hostname: str,
    *,
    state: str = "ready",
    availability: str = "active",
    role: str = "worker",
    nano_cpus: int = 8_000_000_000,
    memory_bytes: int = 16 * GIB,
) -> dict:
    return {
        "ID": node_id,
        "Description": {
            "Hostname": hostname,
            "Resources": {"NanoCPUs": nano_cpus, "MemoryBytes": memory_bytes},
        },
        "Spec": {"Role": role, "Availability": availability},
        "Status": {"State": state},
    }


@pytest.fixture
def docker_json() -> SimpleNamespace:
    """Builders for raw Docker API payloads."""
    return SimpleNamespace(service=service_json, task=task_json, node=node_json)


# =============================================================================
# Config
# =============================================================================


@pytest.fixture
def docker_config() -> DockerConfig:
    return DockerConfig(network="ide-network")


@pytest.fixture
def routing_config() -> RoutingConfig:
    return RoutingConfig(domain="ide.example.com")


@pytest.fixture
def instance_config() -> InstanceConfig:
    return InstanceConfig(
        image="ide:latest",
        service_prefix="ide-",
        cpu_limit=2.0,
        memory_limit=4 * GIB,
        service_token="svc-token",
        callback_url="http://idehub:3001",
        network_check_delay=0.0,
        network_check_attempts=3,
    )


@pytest.fixture
def assignment_config() -> AssignmentConfig:
    return AssignmentConfig(
        initial_delay=0.0,
        probe_attempts=3,
        probe_delay=0.0,
        probe_timeout=0.5,
    )


# =============================================================================
# Docker API doubles
# =============================================================================


@pytest.fixture
def mock_service_api() -> AsyncMock:
    """Mock ServiceAPI for testing."""
    api = AsyncMock(spec=ServiceAPI)
    api.list = AsyncMock(return_value=[])
    api.inspect = AsyncMock(return_value=None)
    api.create = AsyncMock(return_value="svc-new")
    api.update = AsyncMock()
    api.remove = AsyncMock(return_value=True)
    return api


@pytest.fixture
def mock_task_api() -> AsyncMock:
    """Mock TaskAPI for testing."""
    api = AsyncMock(spec=TaskAPI)
    api.list = AsyncMock(return_value=[])
    return api


@pytest.fixture
def mock_network_api() -> AsyncMock:
    """Mock NetworkAPI for testing."""
    api = AsyncMock(spec=NetworkAPI)
    api.inspect = AsyncMock(return_value={"Id": "net-ide", "Name": "ide-network"})
    return api


@pytest.fixture
def mock_node_api() -> AsyncMock:
    """Mock NodeAPI for testing."""
    api = AsyncMock(spec=NodeAPI)
    api.list = AsyncMock(return_value=[])
    return api


@pytest.fixture
def mock_assigner() -> AsyncMock:
    return AsyncMock(spec=StorageAssigner)


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
async def store():
    """In-memory state store."""
    state_store = StateStore(StateConfig(url="sqlite+aiosqlite:///:memory:"))
    await state_store.open()
    yield state_store
    await state_store.close()


@pytest.fixture
def identity() -> IdentityAllocator:
    return IdentityAllocator()


@pytest.fixture
def routing(routing_config: RoutingConfig) -> RoutingConfigurator:
    return RoutingConfigurator(routing_config)


@pytest.fixture
def manager(
    mock_service_api: AsyncMock,
    mock_task_api: AsyncMock,
    mock_network_api: AsyncMock,
    identity: IdentityAllocator,
    routing: RoutingConfigurator,
    store: StateStore,
    mock_assigner: AsyncMock,
    instance_config: InstanceConfig,
    docker_config: DockerConfig,
) -> InstanceManager:
    return InstanceManager(
        services=mock_service_api,
        tasks=mock_task_api,
        networks=mock_network_api,
        identity=identity,
        routing=routing,
        store=store,
        assigner=mock_assigner,
        config=instance_config,
        docker_config=docker_config,
    )
