"""Tests for API key authentication."""

from unittest.mock import patch

import pytest

from idehub.config import ControlPlaneConfig, InstanceConfig, ServerConfig


@pytest.fixture
def secured_config() -> ControlPlaneConfig:
    return ControlPlaneConfig(
        server=ServerConfig(api_keys="key-one, key-two"),
        instance=InstanceConfig(service_token="svc-token"),
    )


@pytest.fixture
def secured_client(client, secured_config):
    with patch("idehub.main.get_config", return_value=secured_config):
        yield client


class TestApiKeyMiddleware:
    """Tests for api_key_middleware."""

    def test_open_without_configured_keys(self, client) -> None:
        """No keys configured means no authentication."""
        response = client.get("/api/v1/instances")
        assert response.status_code == 200

    def test_missing_header(self, secured_client) -> None:
        response = secured_client.get("/api/v1/instances")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "AUTHENTICATION_FAILED"
        assert error["message"] == "Missing Authorization header"

    def test_invalid_key(self, secured_client) -> None:
        response = secured_client.get(
            "/api/v1/instances", headers={"Authorization": "Bearer wrong"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Missing or invalid API key"

    def test_valid_key(self, secured_client) -> None:
        response = secured_client.get(
            "/api/v1/instances", headers={"Authorization": "Bearer key-two"}
        )
        assert response.status_code == 200

    def test_public_paths(self, secured_client, mock_plane) -> None:
        mock_plane.resources.sample.side_effect = OSError("no /proc")

        assert secured_client.get("/metrics").status_code == 200
        assert secured_client.get("/health").status_code == 200

    def test_service_token_on_callback(self, secured_client) -> None:
        """Instances report activity with the internal service token."""
        response = secured_client.post(
            "/api/v1/instances/abc123/activity",
            headers={"Authorization": "Bearer svc-token"},
        )
        assert response.status_code == 200

    def test_service_token_rejected_elsewhere(self, secured_client) -> None:
        """The service token does not grant management access."""
        response = secured_client.delete(
            "/api/v1/instances/abc123",
            headers={"Authorization": "Bearer svc-token"},
        )
        assert response.status_code == 401
