"""Warm instance pool.

Warm instances run without storage. A provisioning request for a new
bucket is served by handing the bucket to one of them, which skips the
service start-up wait.

WarmPool only tracks ids. PoolMaintainer keeps it in line with the
scheduler and refills it up to the target size; it runs as a step of the
maintenance sweep.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from idehub.core.errors import IdeHubError
from idehub.core.models import ACTIVE_STATUSES, CreateInstanceRequest, PoolStats
from idehub.logging_schema import LogEvent
from idehub.metrics import WARM_POOL_SIZE
from idehub.services.lifecycle import InstanceManager
from idehub.services.resources import ResourceMonitor
from idehub.services.state import StateStore

logger = logging.getLogger(__name__)


class PoolEntryState(StrEnum):
    WARM = "warm"
    CLAIMED = "claimed"  # storage assignment in flight


@dataclass
class PoolEntry:
    instance_id: str
    service_name: str
    state: PoolEntryState = PoolEntryState.WARM
    added_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class WarmPool:
    """In-memory set of warm instances.

    ``claim()`` reserves an entry without awaiting, so concurrent
    provisioning requests never receive the same instance.
    """

    def __init__(self, target_size: int = 0) -> None:
        self._target_size = target_size
        self._entries: dict[str, PoolEntry] = {}

    def __contains__(self, instance_id: str) -> bool:
        return instance_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def target_size(self) -> int:
        return self._target_size

    def set_target_size(self, size: int) -> None:
        if size < 0:
            raise ValueError("target size must be non-negative")
        self._target_size = size

    @property
    def warm_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.state == PoolEntryState.WARM)

    def needed(self) -> int:
        """Warm instances missing to reach the target size."""
        return max(0, self._target_size - self.warm_count)

    def add(self, instance_id: str, service_name: str) -> None:
        self._entries.setdefault(instance_id, PoolEntry(instance_id, service_name))
        self._update_gauge()

    def claim(self) -> PoolEntry | None:
        """Reserve the oldest warm entry, or None if the pool is empty."""
        warm = [e for e in self._entries.values() if e.state == PoolEntryState.WARM]
        if not warm:
            return None
        entry = min(warm, key=lambda e: e.added_at)
        entry.state = PoolEntryState.CLAIMED
        self._update_gauge()
        return entry

    def release(self, instance_id: str) -> bool:
        """Put a claimed entry back so a later request can use it."""
        entry = self._entries.get(instance_id)
        if entry is None or entry.state != PoolEntryState.CLAIMED:
            return False
        entry.state = PoolEntryState.WARM
        self._update_gauge()
        return True

    def remove(self, instance_id: str) -> bool:
        removed = self._entries.pop(instance_id, None) is not None
        self._update_gauge()
        return removed

    def sync(self, live_ids: set[str], candidates: dict[str, str]) -> tuple[int, int]:
        """Drop entries whose service is gone and adopt untracked warm instances.

        Args:
            live_ids: Ids of every live instance service
            candidates: Live instances without storage, id -> service name

        Returns:
            (added, removed)
        """
        gone = [instance_id for instance_id in self._entries if instance_id not in live_ids]
        for instance_id in gone:
            del self._entries[instance_id]

        added = 0
        for instance_id, service_name in candidates.items():
            if instance_id not in self._entries:
                self._entries[instance_id] = PoolEntry(instance_id, service_name)
                added += 1

        self._update_gauge()
        return added, len(gone)

    def stats(self) -> PoolStats:
        warm = self.warm_count
        return PoolStats(
            warm=warm,
            claimed=len(self._entries) - warm,
            target_size=self._target_size,
        )

    def _update_gauge(self) -> None:
        stats = self.stats()
        WARM_POOL_SIZE.labels(state="warm").set(stats.warm)
        WARM_POOL_SIZE.labels(state="claimed").set(stats.claimed)


class PoolMaintainer:
    """Keeps the warm pool in line with the scheduler and at its target size."""

    def __init__(
        self,
        pool: WarmPool,
        manager: InstanceManager,
        store: StateStore,
        resources: ResourceMonitor,
    ) -> None:
        self._pool = pool
        self._manager = manager
        self._store = store
        self._resources = resources

    async def sync(self) -> None:
        """Reconcile pool entries with live services.

        A live instance counts as warm when neither its service environment
        nor its record carries a bucket.

        Raises:
            SchedulerError: The scheduler could not be queried.
        """
        live = [info for info in await self._manager.list() if not info.status.is_terminal]
        records = {
            r.id: r for r in await self._store.list() if r.status in ACTIVE_STATUSES
        }

        candidates: dict[str, str] = {}
        for info in live:
            record = records.get(info.id)
            bucket = info.storage_bucket or (record.storage_bucket if record else None)
            if not bucket:
                candidates[info.id] = info.service_name

        added, removed = self._pool.sync({info.id for info in live}, candidates)
        if added or removed:
            logger.info(
                "Warm pool synced: %d adopted, %d dropped",
                added,
                removed,
                extra={"event": LogEvent.POOL_SYNCED, "added": added, "removed": removed},
            )

    async def maintain(self) -> int:
        """Sync the pool, then create warm instances up to the target size.

        Returns:
            Number of warm instances created.
        """
        await self.sync()
        needed = self._pool.needed()
        if needed <= 0:
            return 0

        decision = await self._resources.can_admit()
        if not decision.allowed:
            logger.warning(
                "Warm pool refill skipped: %s",
                decision.reason,
                extra={"event": LogEvent.POOL_REFILL_SKIPPED, "needed": needed},
            )
            return 0

        created = 0
        for _ in range(needed):
            try:
                info = await self._manager.create(CreateInstanceRequest(is_warm=True))
            except IdeHubError as exc:
                logger.error(
                    "Failed to create warm instance: %s",
                    exc.message,
                    extra={"event": LogEvent.POOL_REFILL_SKIPPED},
                )
                continue
            self._pool.add(info.id, info.service_name)
            created += 1

        logger.info(
            "Warm pool refilled with %d of %d instances",
            created,
            needed,
            extra={"event": LogEvent.POOL_REFILLED, "created": created, "needed": needed},
        )
        return created
