"""Tests for health and metrics endpoints."""

from idehub.core.models import (
    ContainerCounts,
    CpuSnapshot,
    ResourceSnapshot,
    UsageSnapshot,
)

SNAPSHOT = ResourceSnapshot(
    cpu=CpuSnapshot(usage_percent=5.0, available_cores=4),
    memory=UsageSnapshot(total=100, used=40, available=60, usage_percent=40.0),
    disk=UsageSnapshot(total=100, used=10, available=90, usage_percent=10.0),
    containers=ContainerCounts(running=0, total=0),
)


class TestHealth:
    """Tests for GET /health."""

    def test_ok(self, client, mock_plane) -> None:
        mock_plane.resources.sample.return_value = SNAPSHOT

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["docker"]["connected"] is True
        assert data["resources"]["memory"]["usage_percent"] == 40.0

    def test_docker_unreachable(self, client, mock_plane) -> None:
        mock_plane.system.ping.return_value = False
        mock_plane.resources.sample.return_value = SNAPSHOT

        response = client.get("/health")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["docker"]["connected"] is False

    def test_resource_sampling_failure_is_tolerated(self, client, mock_plane) -> None:
        mock_plane.resources.sample.side_effect = OSError("no /proc")

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["resources"] is None


class TestMetrics:
    def test_prometheus_format(self, client) -> None:
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "idehub_admission_decisions_total" in response.text
