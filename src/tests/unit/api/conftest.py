"""Fixtures for HTTP API tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from idehub.api.dependencies import get_control_plane
from idehub.config import ControlPlaneConfig
from idehub.main import app


@pytest.fixture
def mock_plane() -> MagicMock:
    """Control plane double with async collaborators."""
    plane = MagicMock()
    plane.config = ControlPlaneConfig()
    plane.provision = AsyncMock()

    plane.system.ping = AsyncMock(return_value=True)

    plane.store.list = AsyncMock(return_value=[])
    plane.store.count = AsyncMock(return_value=0)
    plane.store.get = AsyncMock(return_value=None)
    plane.store.get_archived = AsyncMock(return_value=None)

    plane.manager.get = AsyncMock(return_value=None)
    plane.manager.list = AsyncMock(return_value=[])
    plane.manager.stop = AsyncMock()
    plane.manager.assign_storage = AsyncMock()
    plane.manager.record_activity = AsyncMock(return_value=True)
    plane.manager.get_logs = AsyncMock()

    plane.resources.sample = AsyncMock()
    plane.nodes.aggregate = AsyncMock()
    plane.nodes.list_nodes = AsyncMock(return_value=[])
    plane.nodes.node_metrics = AsyncMock(return_value=[])
    plane.nodes.node_health = AsyncMock()
    return plane


@pytest.fixture
def client(mock_plane: MagicMock):
    """Test client with the control plane dependency overridden."""
    app.dependency_overrides[get_control_plane] = lambda: mock_plane
    yield TestClient(app)
    app.dependency_overrides.clear()
