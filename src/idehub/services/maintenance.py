"""Periodic maintenance sweep.

One tick runs, in order:
1. Archive stopped records past the retention window
2. Sync record status with the scheduler (marks vanished services stopped)
3. Re-check overlay network attachment of live services
4. Report instances stuck in ``starting``
5. Refresh the instance gauge
6. Sync and refill the warm pool, when one is configured

A failing step is logged and the remaining steps still run.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime, timedelta

from idehub.config import MaintenanceConfig
from idehub.core.models import InstanceFilter, InstanceStatus
from idehub.logging_schema import LogEvent
from idehub.metrics import INSTANCES, RECORDS_ARCHIVED
from idehub.services.lifecycle import InstanceManager
from idehub.services.pool import PoolMaintainer
from idehub.services.state import StateStore

logger = logging.getLogger(__name__)


class MaintenanceSweeper:
    """Runs the maintenance tick on a fixed interval."""

    def __init__(
        self,
        config: MaintenanceConfig,
        manager: InstanceManager,
        store: StateStore,
        pool: PoolMaintainer | None = None,
    ) -> None:
        self._config = config
        self._manager = manager
        self._store = store
        self._pool = pool
        self._running = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def run(self) -> None:
        """Main sweep loop; returns when stopped or cancelled."""
        self._running = True
        logger.info(
            "Starting maintenance sweep (interval %.0fs)",
            self._config.interval,
            extra={"event": LogEvent.APP_STARTED},
        )
        try:
            while self._running:
                await self.tick()
                await asyncio.sleep(self._config.interval)
        except asyncio.CancelledError:
            pass
        finally:
            logger.info("Maintenance sweep stopped", extra={"event": LogEvent.APP_STOPPED})

    def stop(self) -> None:
        self._running = False

    async def tick(self) -> None:
        """Execute one maintenance cycle."""
        started = time.monotonic()
        await self._step("archive", self._archive)
        await self._step("sync", self._sync)
        await self._step("network", self._recheck_networks)
        await self._step("stuck", self._report_stuck)
        await self._step("gauge", self._refresh_gauge)
        if self._pool is not None:
            await self._step("pool", self._pool.maintain)
        logger.debug(
            "Maintenance sweep completed in %.2fs",
            time.monotonic() - started,
            extra={"event": LogEvent.SWEEP_COMPLETED},
        )

    async def _step(self, step: str, func) -> None:
        try:
            await func()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "[%s] %s step failed: %s",
                self.name,
                step,
                exc,
                extra={"event": LogEvent.SWEEP_STEP_FAILED, "step": step},
            )

    async def _archive(self) -> None:
        archived = await self._store.archive_stale()
        if archived:
            RECORDS_ARCHIVED.inc(archived)

    async def _sync(self) -> None:
        await self._manager.sync_statuses()

    async def _recheck_networks(self) -> None:
        for info in await self._manager.list():
            if not info.status.is_terminal:
                await self._manager.ensure_network(info.service_name)

    async def _report_stuck(self) -> None:
        threshold = timedelta(seconds=self._config.stuck_starting_seconds)
        now = datetime.now(UTC)
        starting = await self._store.list(
            InstanceFilter(status=InstanceStatus.STARTING)
        )
        for record in starting:
            age = now - record.created_at
            if age > threshold:
                logger.warning(
                    "Instance %s has been starting for %.0fs",
                    record.id,
                    age.total_seconds(),
                    extra={
                        "event": LogEvent.INSTANCE_STUCK,
                        "instance_id": record.id,
                        "age_seconds": round(age.total_seconds()),
                    },
                )

    async def _refresh_gauge(self) -> None:
        for status in InstanceStatus:
            INSTANCES.labels(status=status.value).set(await self._store.count(status))
