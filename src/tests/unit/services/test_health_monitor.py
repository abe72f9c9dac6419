"""Tests for instance endpoint health monitoring."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from idehub.config import HealthCheckConfig
from idehub.core.models import (
    InstanceFilter,
    InstanceRecord,
    InstanceStatus,
    InstanceUrls,
    ResourceLimits,
    ShutdownReason,
)
from idehub.services.health import InstanceHealthMonitor
from idehub.services.lifecycle import InstanceManager
from idehub.services.state import StateStore

URLS = InstanceUrls(
    vnc="https://abc123-vnc.ide.example.com",
    code_server="https://abc123-code.ide.example.com",
    web_server="https://abc123-web.ide.example.com",
)


def make_record(status: InstanceStatus) -> InstanceRecord:
    return InstanceRecord(
        id="abc123",
        service_name="ide-abc123",
        status=status,
        urls=URLS,
        resource_limits=ResourceLimits(cpu_limit=2.0, memory_limit=1024),
        created_at=datetime.now(UTC),
    )


class Endpoints:
    """Fake instance endpoints with switchable status codes."""

    def __init__(self) -> None:
        self.code_server = 200
        self.vnc = 200
        self.web_server = 200
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        host = request.url.host
        if host.endswith("-code.ide.example.com"):
            status = self.code_server
        elif host.endswith("-vnc.ide.example.com"):
            status = self.vnc
        else:
            status = self.web_server
        if status == 0:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status)


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def endpoints() -> Endpoints:
    return Endpoints()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def mock_manager() -> AsyncMock:
    manager = AsyncMock(spec=InstanceManager)
    manager.mark_running = AsyncMock(return_value=True)
    manager.stop = AsyncMock()
    return manager


@pytest.fixture
def mock_store() -> AsyncMock:
    store = AsyncMock(spec=StateStore)
    store.list = AsyncMock(return_value=[])
    return store


@pytest.fixture
def monitor(endpoints, clock, mock_manager, mock_store) -> InstanceHealthMonitor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoints.handler))
    return InstanceHealthMonitor(
        HealthCheckConfig(interval=0.01, max_consecutive_failures=2, max_unhealthy_seconds=60),
        mock_manager,
        mock_store,
        client,
        clock=clock,
    )


class TestEndpointChecks:
    @pytest.mark.asyncio
    async def test_code_server_checked_on_healthz(self, monitor, endpoints) -> None:
        checks = await monitor.check_endpoints(URLS)

        assert checks.all_ok
        assert "https://abc123-code.ide.example.com/healthz" in endpoints.requests

    @pytest.mark.asyncio
    async def test_client_errors_count_as_reachable(self, monitor, endpoints) -> None:
        endpoints.vnc = 401
        endpoints.web_server = 404

        checks = await monitor.check_endpoints(URLS)

        assert checks.vnc
        assert checks.web_server

    @pytest.mark.asyncio
    async def test_code_server_needs_success(self, monitor, endpoints) -> None:
        endpoints.code_server = 302

        checks = await monitor.check_endpoints(URLS)

        assert not checks.code_server

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, monitor, endpoints) -> None:
        endpoints.web_server = 0
        endpoints.vnc = 502

        checks = await monitor.check_endpoints(URLS)

        assert checks.code_server
        assert not checks.vnc
        assert not checks.web_server
        assert not checks.all_ok


class TestTransitions:
    @pytest.mark.asyncio
    async def test_starting_becomes_running(self, monitor, endpoints, mock_manager) -> None:
        # Only code-server is needed to leave starting
        endpoints.web_server = 0

        await monitor.check(make_record(InstanceStatus.STARTING))

        mock_manager.mark_running.assert_awaited_once_with("abc123")

    @pytest.mark.asyncio
    async def test_starting_failures_not_counted(
        self, monitor, endpoints, mock_manager
    ) -> None:
        endpoints.code_server = 0
        record = make_record(InstanceStatus.STARTING)

        for _ in range(5):
            await monitor.check(record)

        mock_manager.mark_running.assert_not_awaited()
        mock_manager.stop.assert_not_awaited()
        assert monitor.state("abc123").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_unhealthy_then_stopped(
        self, monitor, endpoints, clock, mock_manager
    ) -> None:
        endpoints.vnc = 0
        record = make_record(InstanceStatus.RUNNING)

        await monitor.check(record)
        assert monitor.state("abc123").unhealthy_since is None

        await monitor.check(record)
        assert monitor.state("abc123").unhealthy_since == 1000.0
        mock_manager.stop.assert_not_awaited()

        clock.now += 30
        await monitor.check(record)
        mock_manager.stop.assert_not_awaited()

        clock.now += 30
        await monitor.check(record)
        mock_manager.stop.assert_awaited_once_with("abc123", ShutdownReason.ERROR)
        mock_manager.mark_running.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovery_resets_state(
        self, monitor, endpoints, clock, mock_manager
    ) -> None:
        endpoints.code_server = 503
        record = make_record(InstanceStatus.RUNNING)
        await monitor.check(record)
        await monitor.check(record)
        assert monitor.state("abc123").unhealthy_since is not None

        endpoints.code_server = 204
        await monitor.check(record)

        state = monitor.state("abc123")
        assert state.consecutive_failures == 0
        assert state.unhealthy_since is None
        clock.now += 120
        await monitor.check(record)
        mock_manager.stop.assert_not_awaited()


class TestRound:
    @pytest.mark.asyncio
    async def test_checks_starting_and_running(
        self, monitor, mock_store, mock_manager
    ) -> None:
        mock_store.list.side_effect = [[make_record(InstanceStatus.STARTING)], []]

        await monitor.check_round()

        statuses = [c.args[0] for c in mock_store.list.await_args_list]
        assert statuses == [
            InstanceFilter(status=InstanceStatus.STARTING),
            InstanceFilter(status=InstanceStatus.RUNNING),
        ]
        mock_manager.mark_running.assert_awaited_once_with("abc123")

    @pytest.mark.asyncio
    async def test_forgets_instances_no_longer_active(
        self, monitor, endpoints, mock_store
    ) -> None:
        endpoints.vnc = 0
        mock_store.list.side_effect = [[], [make_record(InstanceStatus.RUNNING)], [], []]

        await monitor.check_round()
        assert monitor.state("abc123") is not None

        await monitor.check_round()
        assert monitor.state("abc123") is None

    @pytest.mark.asyncio
    async def test_check_error_does_not_stop_round(
        self, monitor, mock_store, mock_manager
    ) -> None:
        mock_store.list.side_effect = [[make_record(InstanceStatus.STARTING)], []]
        mock_manager.mark_running.side_effect = RuntimeError("database locked")

        await monitor.check_round()

    @pytest.mark.asyncio
    async def test_stop_ends_loop(self, monitor, mock_store) -> None:
        task = asyncio.create_task(monitor.run())
        await asyncio.sleep(0.05)

        monitor.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert mock_store.list.await_count >= 2
