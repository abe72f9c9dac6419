"""Tests for Docker API record mapping."""

from datetime import UTC, datetime

from idehub.core.models import (
    InstanceStatus,
    NodeAvailability,
    NodeRole,
    NodeStatus,
)
from idehub.core.records import (
    node_from_api,
    parse_docker_time,
    service_from_api,
    status_from_tasks,
    task_from_api,
)


class TestParseDockerTime:
    def test_nanosecond_precision(self) -> None:
        parsed = parse_docker_time("2024-05-01T10:00:00.123456789Z")
        assert parsed == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=UTC)

    def test_empty_and_invalid(self) -> None:
        assert parse_docker_time(None) is None
        assert parse_docker_time("") is None
        assert parse_docker_time("yesterday") is None


class TestServiceMapping:
    def test_service_from_api(self, docker_json) -> None:
        raw = docker_json.service(
            "ide-abc12345",
            env=("S3_BUCKET=bucket-1", "CONTAINER_ID=abc12345"),
            version=42,
        )

        service = service_from_api(raw)

        assert service.id == "svc-ide-abc12345"
        assert service.name == "ide-abc12345"
        assert service.version == 42
        assert service.env["S3_BUCKET"] == "bucket-1"
        assert service.networks == ["ide-network"]
        assert service.labels["idehub.instance.id"] == "abc12345"

    def test_missing_fields_do_not_raise(self) -> None:
        service = service_from_api({"ID": "x"})
        assert service.name == ""
        assert service.networks == []
        assert service.env == {}


class TestTaskMapping:
    def test_task_from_api(self, docker_json) -> None:
        task = task_from_api(docker_json.task("svc-1", node_id="node-7"))

        assert task.service_id == "svc-1"
        assert task.node_id == "node-7"
        assert task.nano_cpus == 2_000_000_000
        assert task.is_running

    def test_status_from_newest_task(self, docker_json) -> None:
        tasks = [
            task_from_api(
                docker_json.task(
                    "svc", task_id="old", state="failed", created_at="2024-05-01T09:00:00Z"
                )
            ),
            task_from_api(
                docker_json.task(
                    "svc", task_id="new", state="running", created_at="2024-05-01T10:00:00Z"
                )
            ),
        ]
        assert status_from_tasks(tasks) == InstanceStatus.RUNNING

    def test_no_tasks_is_starting(self) -> None:
        assert status_from_tasks([]) == InstanceStatus.STARTING

    def test_state_mapping(self, docker_json) -> None:
        for state, expected in [
            ("pending", InstanceStatus.STARTING),
            ("preparing", InstanceStatus.STARTING),
            ("rejected", InstanceStatus.FAILED),
            ("shutdown", InstanceStatus.STOPPED),
            ("complete", InstanceStatus.STOPPED),
        ]:
            task = task_from_api(docker_json.task("svc", state=state))
            assert status_from_tasks([task]) == expected, state


class TestNodeMapping:
    def test_node_from_api(self, docker_json) -> None:
        node = node_from_api(
            docker_json.node("n1", "worker-1", role="manager", availability="drain")
        )

        assert node.hostname == "worker-1"
        assert node.role == NodeRole.MANAGER
        assert node.status == NodeStatus.READY
        assert node.availability == NodeAvailability.DRAIN
        assert node.resources.cpu_cores == 8.0

    def test_unknown_state_maps_to_unknown(self, docker_json) -> None:
        node = node_from_api(docker_json.node("n1", "w", state="disconnected"))
        assert node.status == NodeStatus.UNKNOWN
