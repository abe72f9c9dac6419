"""Docker Engine (Swarm mode) API client.

Provides async access to services, tasks, nodes, networks and daemon health.
Supports both Unix socket and TCP connections.
"""

import json
import logging
import struct
from collections.abc import AsyncIterator

import httpx
from pydantic import BaseModel

from idehub.config import DockerConfig

logger = logging.getLogger(__name__)

# Multiplexed log frame header: stream type (1 byte), 3 padding, size (uint32 BE)
_FRAME_HEADER = struct.Struct(">BxxxI")
_STREAM_NAMES = {0: "stdout", 1: "stdout", 2: "stderr"}


# =============================================================================
# Pydantic Models
# =============================================================================


class NetworkAttachment(BaseModel):
    """Overlay network attachment for a service."""

    target: str
    aliases: list[str] = []

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API format."""
        result: dict = {"Target": self.target}
        if self.aliases:
            result["Aliases"] = self.aliases
        return result


class ServiceSpec(BaseModel):
    """Swarm service definition for creation.

    Replicated with one replica, VIP endpoint mode without published ports
    and an on-failure restart policy.
    """

    name: str
    image: str
    env: list[str] = []
    labels: dict[str, str] = {}
    networks: list[NetworkAttachment] = []
    nano_cpus: int = 0
    memory_bytes: int = 0
    restart_max_attempts: int = 3
    log_options: dict[str, str] = {}

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API JSON format."""
        resources: dict = {}
        if self.nano_cpus or self.memory_bytes:
            resources["Limits"] = {
                "NanoCPUs": self.nano_cpus,
                "MemoryBytes": self.memory_bytes,
            }
        task_template: dict = {
            "ContainerSpec": {"Image": self.image, "Env": self.env},
            "Resources": resources,
            "RestartPolicy": {
                "Condition": "on-failure",
                "MaxAttempts": self.restart_max_attempts,
            },
            "Networks": [n.to_api() for n in self.networks],
        }
        if self.log_options:
            task_template["LogDriver"] = {
                "Name": "json-file",
                "Options": self.log_options,
            }
        return {
            "Name": self.name,
            "Labels": self.labels,
            "TaskTemplate": task_template,
            "Mode": {"Replicated": {"Replicas": 1}},
            "EndpointSpec": {"Mode": "vip", "Ports": []},
        }


# =============================================================================
# Docker Client
# =============================================================================


class DockerClient:
    """Async Docker API client."""

    def __init__(self, config: DockerConfig) -> None:
        self._host = config.host
        self._timeout = config.api_timeout
        self._client: httpx.AsyncClient | None = None

    def _create_client(self) -> httpx.AsyncClient:
        """Create a new HTTP client."""
        if self._host.startswith("unix://"):
            socket_path = self._host.replace("unix://", "")
            transport = httpx.AsyncHTTPTransport(uds=socket_path)
            return httpx.AsyncClient(
                transport=transport,
                base_url="http://localhost",
                timeout=self._timeout,
            )
        else:
            base_url = self._host
            if base_url.startswith("tcp://"):
                base_url = base_url.replace("tcp://", "http://")
            return httpx.AsyncClient(base_url=base_url, timeout=self._timeout)

    async def get(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = self._create_client()
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Service API
# =============================================================================


class ServiceAPI:
    """Docker Swarm service operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def list(self, filters: dict | None = None) -> list[dict]:
        """List services."""
        client = await self._docker.get()
        params: dict = {}
        if filters:
            params["filters"] = json.dumps(filters)
        resp = await client.get("/services", params=params)
        resp.raise_for_status()
        return resp.json()

    async def inspect(self, name: str) -> dict | None:
        """Inspect a service by id or name."""
        client = await self._docker.get()
        resp = await client.get(f"/services/{name}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    async def create(self, spec: ServiceSpec) -> str:
        """Create a service and return its id."""
        client = await self._docker.get()
        resp = await client.post("/services/create", json=spec.to_api())
        resp.raise_for_status()
        service_id = resp.json().get("ID", "")
        logger.info("Created service: %s (%s)", spec.name, service_id)
        return service_id

    async def update(self, service_id: str, version: int, spec: dict) -> None:
        """Update a service; version must match the current Version.Index."""
        client = await self._docker.get()
        resp = await client.post(
            f"/services/{service_id}/update",
            params={"version": str(version)},
            json=spec,
        )
        resp.raise_for_status()
        logger.info("Updated service: %s", service_id)

    async def remove(self, name: str) -> bool:
        """Remove a service.

        Returns:
            False if the service did not exist.
        """
        client = await self._docker.get()
        resp = await client.delete(f"/services/{name}")
        if resp.status_code == 404:
            logger.debug("Service not found: %s", name)
            return False
        resp.raise_for_status()
        logger.info("Removed service: %s", name)
        return True


# =============================================================================
# Task API
# =============================================================================


class TaskAPI:
    """Docker Swarm task operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def list(self, filters: dict | None = None) -> list[dict]:
        """List tasks."""
        client = await self._docker.get()
        params: dict = {}
        if filters:
            params["filters"] = json.dumps(filters)
        resp = await client.get("/tasks", params=params)
        resp.raise_for_status()
        return resp.json()

    async def stream_logs(
        self,
        task_id: str,
        *,
        tail: int = 100,
        follow: bool = False,
        timestamps: bool = False,
    ) -> AsyncIterator[bytes]:
        """Stream raw (multiplexed) task log bytes."""
        client = await self._docker.get()
        params = {
            "stdout": "true",
            "stderr": "true",
            "tail": str(tail),
            "follow": "true" if follow else "false",
            "timestamps": "true" if timestamps else "false",
        }
        # Followed streams stay open indefinitely
        timeout = None if follow else httpx.USE_CLIENT_DEFAULT
        async with client.stream(
            "GET", f"/tasks/{task_id}/logs", params=params, timeout=timeout
        ) as resp:
            resp.raise_for_status()
            async for chunk in resp.aiter_bytes():
                yield chunk


# =============================================================================
# Node / System API
# =============================================================================


class NodeAPI:
    """Docker Swarm node operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def list(self) -> list[dict]:
        """List nodes."""
        client = await self._docker.get()
        resp = await client.get("/nodes")
        resp.raise_for_status()
        return resp.json()


class NetworkAPI:
    """Docker network operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def inspect(self, name: str) -> dict | None:
        """Inspect a network by id or name."""
        client = await self._docker.get()
        resp = await client.get(f"/networks/{name}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()


class SystemAPI:
    """Docker daemon operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def ping(self) -> bool:
        """Check whether the daemon answers."""
        client = await self._docker.get()
        try:
            resp = await client.get("/_ping")
        except httpx.HTTPError as exc:
            logger.warning("Docker ping failed: %s", exc)
            return False
        return resp.status_code == 200


# =============================================================================
# Log demultiplexing
# =============================================================================


async def demux_log_frames(
    chunks: AsyncIterator[bytes],
) -> AsyncIterator[tuple[str, bytes]]:
    """Split a multiplexed log stream into (stream, payload) frames.

    Frames may span chunk boundaries; incomplete data is buffered until
    the rest arrives. A trailing partial frame is dropped.
    """
    buffer = b""
    async for chunk in chunks:
        buffer += chunk
        while len(buffer) >= _FRAME_HEADER.size:
            stream_type, size = _FRAME_HEADER.unpack_from(buffer)
            end = _FRAME_HEADER.size + size
            if len(buffer) < end:
                break
            payload = buffer[_FRAME_HEADER.size : end]
            buffer = buffer[end:]
            yield _STREAM_NAMES.get(stream_type, "stdout"), payload
