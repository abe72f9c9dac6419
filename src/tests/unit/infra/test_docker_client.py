"""Tests for the Docker Swarm API client."""

import json
import struct

import httpx
import pytest

from idehub.config import DockerConfig
from idehub.infra.docker import (
    DockerClient,
    NetworkAttachment,
    ServiceAPI,
    ServiceSpec,
    SystemAPI,
    demux_log_frames,
)


def frame(stream: int, payload: bytes) -> bytes:
    return struct.pack(">BxxxI", stream, len(payload)) + payload


async def chunked(*chunks: bytes):
    for chunk in chunks:
        yield chunk


def mock_docker(handler) -> DockerClient:
    docker = DockerClient(DockerConfig(host="http://docker:2375"))
    docker._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://docker:2375"
    )
    return docker


class TestServiceSpec:
    """Tests for ServiceSpec.to_api."""

    def test_to_api(self) -> None:
        spec = ServiceSpec(
            name="ide-abc123",
            image="ide:latest",
            env=["CONTAINER_ID=abc123"],
            labels={"traefik.enable": "true"},
            networks=[NetworkAttachment(target="ide-network", aliases=["ide-abc123"])],
            nano_cpus=2_000_000_000,
            memory_bytes=4 * 1024**3,
            restart_max_attempts=3,
            log_options={"max-size": "10m", "max-file": "5"},
        )

        api = spec.to_api()

        template = api["TaskTemplate"]
        assert api["Name"] == "ide-abc123"
        assert api["Mode"] == {"Replicated": {"Replicas": 1}}
        assert api["EndpointSpec"] == {"Mode": "vip", "Ports": []}
        assert template["ContainerSpec"] == {
            "Image": "ide:latest",
            "Env": ["CONTAINER_ID=abc123"],
        }
        assert template["Resources"]["Limits"] == {
            "NanoCPUs": 2_000_000_000,
            "MemoryBytes": 4 * 1024**3,
        }
        assert template["RestartPolicy"] == {"Condition": "on-failure", "MaxAttempts": 3}
        assert template["Networks"] == [
            {"Target": "ide-network", "Aliases": ["ide-abc123"]}
        ]
        assert template["LogDriver"]["Options"]["max-size"] == "10m"

    def test_no_limits(self) -> None:
        api = ServiceSpec(name="svc", image="img").to_api()
        assert api["TaskTemplate"]["Resources"] == {}
        assert "LogDriver" not in api["TaskTemplate"]


class TestServiceAPI:
    """Tests for ServiceAPI against a mock transport."""

    @pytest.mark.asyncio
    async def test_inspect_missing(self) -> None:
        docker = mock_docker(lambda request: httpx.Response(404))
        assert await ServiceAPI(docker).inspect("ide-missing") is None

    @pytest.mark.asyncio
    async def test_remove_missing(self) -> None:
        docker = mock_docker(lambda request: httpx.Response(404))
        assert await ServiceAPI(docker).remove("ide-missing") is False

    @pytest.mark.asyncio
    async def test_remove_error_raises(self) -> None:
        docker = mock_docker(lambda request: httpx.Response(500, json={"message": "boom"}))
        with pytest.raises(httpx.HTTPStatusError):
            await ServiceAPI(docker).remove("ide-abc123")

    @pytest.mark.asyncio
    async def test_create_returns_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"ID": "svc-1"})

        docker = mock_docker(handler)

        service_id = await ServiceAPI(docker).create(ServiceSpec(name="ide-a", image="img"))

        assert service_id == "svc-1"
        assert seen[0].url.path == "/services/create"
        assert json.loads(seen[0].content)["Name"] == "ide-a"

    @pytest.mark.asyncio
    async def test_update_sends_version(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        docker = mock_docker(handler)

        await ServiceAPI(docker).update("svc-1", 42, {"Name": "ide-a"})

        assert seen[0].url.path == "/services/svc-1/update"
        assert seen[0].url.params["version"] == "42"

    @pytest.mark.asyncio
    async def test_list_encodes_filters(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[])

        docker = mock_docker(handler)

        await ServiceAPI(docker).list({"name": ["ide-"]})

        assert json.loads(seen[0].url.params["filters"]) == {"name": ["ide-"]}


class TestSystemAPI:
    @pytest.mark.asyncio
    async def test_ping_ok(self) -> None:
        docker = mock_docker(lambda request: httpx.Response(200, text="OK"))
        assert await SystemAPI(docker).ping() is True

    @pytest.mark.asyncio
    async def test_ping_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no socket", request=request)

        docker = mock_docker(handler)
        assert await SystemAPI(docker).ping() is False


class TestDemuxLogFrames:
    """Tests for multiplexed log stream parsing."""

    @pytest.mark.asyncio
    async def test_frames_in_one_chunk(self) -> None:
        data = frame(1, b"out\n") + frame(2, b"err\n")

        frames = [f async for f in demux_log_frames(chunked(data))]

        assert frames == [("stdout", b"out\n"), ("stderr", b"err\n")]

    @pytest.mark.asyncio
    async def test_frame_split_across_chunks(self) -> None:
        data = frame(1, b"hello world\n")

        frames = [f async for f in demux_log_frames(chunked(data[:3], data[3:10], data[10:]))]

        assert frames == [("stdout", b"hello world\n")]

    @pytest.mark.asyncio
    async def test_trailing_partial_frame_dropped(self) -> None:
        data = frame(1, b"complete\n") + frame(2, b"partial")[:-3]

        frames = [f async for f in demux_log_frames(chunked(data))]

        assert frames == [("stdout", b"complete\n")]
