"""Instance endpoint health monitoring.

Each round checks the public endpoints of every starting and running
instance:

- code-server: ``<url>/healthz`` must answer 200 or 204
- vnc, web server: any status below 500

A starting instance becomes running as soon as code-server answers; its
other endpoints may come up later. A running instance needs all three. A
running instance that fails ``max_consecutive_failures`` rounds in a row is
reported unhealthy, and stopped once it has stayed unhealthy for
``max_unhealthy_seconds``. Starting instances that never answer are left to
the maintenance sweep's stuck report.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from idehub.config import HealthCheckConfig
from idehub.core.models import (
    EndpointChecks,
    InstanceFilter,
    InstanceRecord,
    InstanceStatus,
    InstanceUrls,
    ShutdownReason,
)
from idehub.logging_schema import LogEvent
from idehub.metrics import HEALTH_CHECKS
from idehub.services.lifecycle import InstanceManager
from idehub.services.state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class HealthState:
    consecutive_failures: int = 0
    unhealthy_since: float | None = None  # monotonic seconds


class InstanceHealthMonitor:
    """Checks instance endpoints and drives health-based transitions."""

    def __init__(
        self,
        config: HealthCheckConfig,
        manager: InstanceManager,
        store: StateStore,
        http: httpx.AsyncClient,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._manager = manager
        self._store = store
        self._http = http
        self._clock = clock
        self._states: dict[str, HealthState] = {}
        self._running = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def state(self, instance_id: str) -> HealthState | None:
        return self._states.get(instance_id)

    async def run(self) -> None:
        """Check loop; returns when stopped or cancelled."""
        self._running = True
        try:
            while self._running:
                await self.check_round()
                await asyncio.sleep(self._config.interval)
        except asyncio.CancelledError:
            pass

    def stop(self) -> None:
        self._running = False

    async def check_round(self) -> None:
        """Check every starting and running instance once."""
        records = [
            *await self._store.list(InstanceFilter(status=InstanceStatus.STARTING)),
            *await self._store.list(InstanceFilter(status=InstanceStatus.RUNNING)),
        ]
        current = {r.id for r in records}
        self._states = {k: v for k, v in self._states.items() if k in current}
        await asyncio.gather(*(self._check_logged(r) for r in records))

    async def _check_logged(self, record: InstanceRecord) -> None:
        try:
            await self.check(record)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "[%s] check of instance %s failed: %s",
                self.name,
                record.id,
                exc,
                extra={"event": LogEvent.INSTANCE_UNHEALTHY, "instance_id": record.id},
            )

    # =========================================================================
    # Endpoint checks
    # =========================================================================

    async def _reachable(self, url: str, *, strict: bool = False) -> bool:
        try:
            response = await self._http.get(
                url, timeout=self._config.request_timeout, follow_redirects=True
            )
        except httpx.HTTPError:
            return False
        if strict:
            return response.status_code in (200, 204)
        return response.status_code < 500

    async def check_endpoints(self, urls: InstanceUrls) -> EndpointChecks:
        code_server, vnc, web_server = await asyncio.gather(
            self._reachable(f"{urls.code_server.rstrip('/')}/healthz", strict=True),
            self._reachable(urls.vnc),
            self._reachable(urls.web_server),
        )
        return EndpointChecks(code_server=code_server, vnc=vnc, web_server=web_server)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def check(self, record: InstanceRecord) -> EndpointChecks:
        """Check one instance and apply the resulting transition."""
        starting = record.status == InstanceStatus.STARTING
        checks = await self.check_endpoints(record.urls)
        healthy = checks.code_server if starting else checks.all_ok
        HEALTH_CHECKS.labels(result="healthy" if healthy else "unhealthy").inc()

        state = self._states.setdefault(record.id, HealthState())
        if healthy:
            if starting:
                await self._manager.mark_running(record.id)
            if state.unhealthy_since is not None:
                logger.info(
                    "Instance %s healthy again",
                    record.id,
                    extra={"event": LogEvent.INSTANCE_RECOVERED, "instance_id": record.id},
                )
            state.consecutive_failures = 0
            state.unhealthy_since = None
            return checks

        if starting:
            return checks

        state.consecutive_failures += 1
        if state.consecutive_failures < self._config.max_consecutive_failures:
            return checks

        now = self._clock()
        if state.unhealthy_since is None:
            state.unhealthy_since = now
            logger.warning(
                "Instance %s unhealthy after %d failed checks",
                record.id,
                state.consecutive_failures,
                extra={
                    "event": LogEvent.INSTANCE_UNHEALTHY,
                    "instance_id": record.id,
                    "checks": checks.model_dump(),
                },
            )
        elif now - state.unhealthy_since >= self._config.max_unhealthy_seconds:
            logger.error(
                "Stopping instance %s: unhealthy for %.0fs",
                record.id,
                now - state.unhealthy_since,
                extra={"event": LogEvent.INSTANCE_UNHEALTHY, "instance_id": record.id},
            )
            self._states.pop(record.id, None)
            await self._manager.stop(record.id, ShutdownReason.ERROR)
        return checks
