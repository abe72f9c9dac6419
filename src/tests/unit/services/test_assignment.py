"""Tests for storage assignment to warm instances."""

import json

import httpx
import pytest

from idehub.config import AssignmentConfig, InstanceConfig
from idehub.core.models import AlreadyAssigned, Assigned, AssignmentFailed, StorageConfig
from idehub.services.assignment import StorageAssigner

STORAGE = StorageConfig(
    bucket="user-bucket",
    bucket_id="b-1",
    access_key_id="AKIA",
    secret_access_key="secret",
)


def make_assigner(
    assignment_config: AssignmentConfig,
    instance_config: InstanceConfig,
    handler,
) -> StorageAssigner:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StorageAssigner(assignment_config, instance_config, client)


class TestAssign:
    @pytest.mark.asyncio
    async def test_success(self, assignment_config, instance_config) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == "/health":
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(200, json={"status": "success"})

        assigner = make_assigner(assignment_config, instance_config, handler)

        result = await assigner.assign("abc123", "ide-abc123", STORAGE)

        assert isinstance(result, Assigned)
        post = requests[-1]
        assert post.method == "POST"
        assert str(post.url) == "http://ide-abc123:3000/assign-s3-bucket"
        assert json.loads(post.content) == {
            "bucket": "user-bucket",
            "bucketId": "b-1",
            "region": "us-east-1",
            "accessKeyId": "AKIA",
            "secretAccessKey": "secret",
        }

    @pytest.mark.asyncio
    async def test_already_assigned(self, assignment_config, instance_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/health":
                return httpx.Response(200)
            return httpx.Response(200, json={"status": "already_assigned"})

        assigner = make_assigner(assignment_config, instance_config, handler)

        result = await assigner.assign("abc123", "ide-abc123", STORAGE)

        assert isinstance(result, AlreadyAssigned)

    @pytest.mark.asyncio
    async def test_instance_reports_error(self, assignment_config, instance_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/health":
                return httpx.Response(200)
            return httpx.Response(200, json={"status": "error", "error": "mount failed"})

        assigner = make_assigner(assignment_config, instance_config, handler)

        result = await assigner.assign("abc123", "ide-abc123", STORAGE)

        assert isinstance(result, AssignmentFailed)
        assert result.error == "mount failed"

    @pytest.mark.asyncio
    async def test_http_error_status(self, assignment_config, instance_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/health":
                return httpx.Response(200)
            return httpx.Response(500, text="boom")

        assigner = make_assigner(assignment_config, instance_config, handler)

        result = await assigner.assign("abc123", "ide-abc123", STORAGE)

        assert isinstance(result, AssignmentFailed)
        assert result.error == "500 boom"

    @pytest.mark.asyncio
    async def test_invalid_json(self, assignment_config, instance_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/health":
                return httpx.Response(200)
            return httpx.Response(200, text="not json")

        assigner = make_assigner(assignment_config, instance_config, handler)

        result = await assigner.assign("abc123", "ide-abc123", STORAGE)

        assert isinstance(result, AssignmentFailed)
        assert result.error == "Invalid JSON response"

    @pytest.mark.asyncio
    async def test_probe_exhaustion_still_posts(
        self, assignment_config, instance_config
    ) -> None:
        probes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal probes
            if request.url.path == "/health":
                probes += 1
                return httpx.Response(503)
            return httpx.Response(200, json={"status": "success"})

        assigner = make_assigner(assignment_config, instance_config, handler)

        result = await assigner.assign("abc123", "ide-abc123", STORAGE)

        assert probes == assignment_config.probe_attempts
        assert isinstance(result, Assigned)

    @pytest.mark.asyncio
    async def test_connection_error(self, assignment_config, instance_config) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        assigner = make_assigner(assignment_config, instance_config, handler)

        result = await assigner.assign("abc123", "ide-abc123", STORAGE)

        assert isinstance(result, AssignmentFailed)
        assert result.error.startswith("ConnectError")

    @pytest.mark.asyncio
    async def test_explicit_region(self, assignment_config, instance_config) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/health":
                return httpx.Response(200)
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"status": "success"})

        assigner = make_assigner(assignment_config, instance_config, handler)
        storage = STORAGE.model_copy(update={"region": "eu-central-1"})

        await assigner.assign("abc123", "ide-abc123", storage)

        assert bodies[0]["region"] == "eu-central-1"
