"""Embedded instance state store.

Keeps the history of every instance in SQLite so that status queries can
report data the scheduler no longer has (stop time, shutdown reason,
storage bucket). Stopped records older than the retention window are moved
to ``instances_archive``.

Timestamps are stored as epoch milliseconds; SQLite has no timezone-aware
datetime type.
"""

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

from sqlalchemy import (
    BigInteger,
    delete,
    event,
    func,
    insert,
    literal,
    select,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, SQLModel

from idehub.config import StateConfig
from idehub.core.models import (
    InstanceFilter,
    InstanceRecord,
    InstanceStatus,
    InstanceUrls,
    ResourceLimits,
    ShutdownReason,
)
from idehub.logging_schema import LogEvent

logger = logging.getLogger(__name__)


# =============================================================================
# Tables
# =============================================================================


class InstanceRowBase(SQLModel):
    """Columns shared by live and archived instance rows."""

    id: str = Field(primary_key=True)
    service_name: str
    status: str = Field(index=True)
    storage_bucket: str | None = None
    storage_region: str | None = None
    vnc_url: str
    code_server_url: str
    web_server_url: str
    cpu_limit: float
    memory_limit: int = Field(sa_type=BigInteger)
    created_at: int = Field(sa_type=BigInteger, index=True)
    started_at: int | None = Field(default=None, sa_type=BigInteger)
    stopped_at: int | None = Field(default=None, sa_type=BigInteger)
    last_activity: int | None = Field(default=None, sa_type=BigInteger)
    shutdown_reason: str | None = None


class InstanceRow(InstanceRowBase, table=True):
    __tablename__ = "instances"


class ArchivedInstanceRow(InstanceRowBase, table=True):
    __tablename__ = "instances_archive"

    archived_at: int = Field(sa_type=BigInteger)


_COLUMNS = list(InstanceRowBase.model_fields)


# =============================================================================
# Mapping
# =============================================================================


def to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def record_to_row(record: InstanceRecord) -> InstanceRow:
    return InstanceRow(
        id=record.id,
        service_name=record.service_name,
        status=record.status.value,
        storage_bucket=record.storage_bucket,
        storage_region=record.storage_region,
        vnc_url=record.urls.vnc,
        code_server_url=record.urls.code_server,
        web_server_url=record.urls.web_server,
        cpu_limit=record.resource_limits.cpu_limit,
        memory_limit=record.resource_limits.memory_limit,
        created_at=to_ms(record.created_at),
        started_at=to_ms(record.started_at),
        stopped_at=to_ms(record.stopped_at),
        last_activity=to_ms(record.last_activity),
        shutdown_reason=record.shutdown_reason.value if record.shutdown_reason else None,
    )


def row_to_record(row: InstanceRowBase) -> InstanceRecord:
    return InstanceRecord(
        id=row.id,
        service_name=row.service_name,
        status=InstanceStatus(row.status),
        storage_bucket=row.storage_bucket,
        storage_region=row.storage_region,
        urls=InstanceUrls(
            vnc=row.vnc_url,
            code_server=row.code_server_url,
            web_server=row.web_server_url,
        ),
        resource_limits=ResourceLimits(
            cpu_limit=row.cpu_limit, memory_limit=row.memory_limit
        ),
        created_at=from_ms(row.created_at),
        started_at=from_ms(row.started_at),
        stopped_at=from_ms(row.stopped_at),
        last_activity=from_ms(row.last_activity),
        shutdown_reason=(
            ShutdownReason(row.shutdown_reason) if row.shutdown_reason else None
        ),
    )


# =============================================================================
# Store
# =============================================================================


class StateStore:
    """SQLite-backed instance history.

    Must be opened before use and closed on shutdown.
    """

    def __init__(self, config: StateConfig) -> None:
        self._config = config
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def open(self) -> None:
        """Create the engine, ensure the schema and enable WAL."""
        if self._engine is not None:
            return

        url = make_url(self._config.url)
        database = url.database or ""
        in_memory = database in ("", ":memory:")

        if in_memory:
            # A single shared connection keeps the in-memory database alive
            engine = create_async_engine(
                url,
                echo=self._config.echo,
                poolclass=StaticPool,
            )
        else:
            Path(database).parent.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(url, echo=self._config.echo)

            @event.listens_for(engine.sync_engine, "connect")
            def _set_pragmas(dbapi_conn, _record) -> None:
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.close()

        async with engine.begin() as conn:
            await conn.run_sync(
                SQLModel.metadata.create_all,
                tables=[InstanceRow.__table__, ArchivedInstanceRow.__table__],
            )

        self._engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine, class_=AsyncSession, expire_on_commit=False
        )
        logger.info(
            "State store opened",
            extra={"event": LogEvent.DB_CONNECTED, "in_memory": in_memory},
        )

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("State store closed", extra={"event": LogEvent.DB_CLOSED})

    def _session(self) -> AsyncSession:
        if self._session_factory is None:
            raise RuntimeError("State store not opened")
        return self._session_factory()

    # -------------------------------------------------------------------------
    # Live records
    # -------------------------------------------------------------------------

    async def save(self, record: InstanceRecord) -> None:
        """Insert or replace a record."""
        async with self._session() as session:
            await session.merge(record_to_row(record))
            await session.commit()

    async def get(self, instance_id: str) -> InstanceRecord | None:
        async with self._session() as session:
            row = await session.get(InstanceRow, instance_id)
            return row_to_record(row) if row else None

    async def update_status(self, instance_id: str, status: InstanceStatus) -> bool:
        """Set the status of a record. Returns False if it does not exist."""
        return await self._update(instance_id, {"status": status.value})

    async def update_lifecycle(
        self,
        instance_id: str,
        *,
        status: InstanceStatus | None = None,
        started_at: datetime | None = None,
        stopped_at: datetime | None = None,
        last_activity: datetime | None = None,
        shutdown_reason: ShutdownReason | None = None,
        storage_bucket: str | None = None,
        storage_region: str | None = None,
    ) -> bool:
        """Partially update a record; None leaves a column unchanged."""
        values: dict = {}
        if status is not None:
            values["status"] = status.value
        if started_at is not None:
            values["started_at"] = to_ms(started_at)
        if stopped_at is not None:
            values["stopped_at"] = to_ms(stopped_at)
        if last_activity is not None:
            values["last_activity"] = to_ms(last_activity)
        if shutdown_reason is not None:
            values["shutdown_reason"] = shutdown_reason.value
        if storage_bucket is not None:
            values["storage_bucket"] = storage_bucket
        if storage_region is not None:
            values["storage_region"] = storage_region
        if not values:
            return await self.get(instance_id) is not None
        return await self._update(instance_id, values)

    async def _update(self, instance_id: str, values: dict) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(InstanceRow).where(InstanceRow.id == instance_id).values(**values)
            )
            await session.commit()
            return result.rowcount > 0

    async def list(
        self, instance_filter: InstanceFilter | None = None
    ) -> list[InstanceRecord]:
        """List records, newest first."""
        instance_filter = instance_filter or InstanceFilter()
        stmt = select(InstanceRow).order_by(
            InstanceRow.created_at.desc(), InstanceRow.id
        )
        if instance_filter.status is not None:
            stmt = stmt.where(InstanceRow.status == instance_filter.status.value)
        if instance_filter.offset:
            stmt = stmt.offset(instance_filter.offset)
        if instance_filter.limit is not None:
            stmt = stmt.limit(instance_filter.limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [row_to_record(row) for row in result.scalars().all()]

    async def count(self, status: InstanceStatus | None = None) -> int:
        stmt = select(func.count()).select_from(InstanceRow)
        if status is not None:
            stmt = stmt.where(InstanceRow.status == status.value)
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def find_active_by_bucket(self, bucket: str) -> InstanceRecord | None:
        """Newest starting or running record serving the given bucket."""
        stmt = (
            select(InstanceRow)
            .where(
                InstanceRow.storage_bucket == bucket,
                InstanceRow.status.in_(
                    [InstanceStatus.STARTING.value, InstanceStatus.RUNNING.value]
                ),
            )
            .order_by(InstanceRow.created_at.desc())
            .limit(1)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            row = result.scalars().first()
            return row_to_record(row) if row else None

    # -------------------------------------------------------------------------
    # Archive
    # -------------------------------------------------------------------------

    async def archive_stale(self, now: datetime | None = None) -> int:
        """Move stopped records past the retention window to the archive.

        Returns:
            Number of records archived.
        """
        now = now or datetime.now(UTC)
        cutoff = to_ms(now - timedelta(hours=self._config.retention_hours))
        archived_at = to_ms(now)

        async with self._session() as session:
            result = await session.execute(
                select(InstanceRow.id).where(
                    InstanceRow.status == InstanceStatus.STOPPED.value,
                    InstanceRow.stopped_at.is_not(None),
                    InstanceRow.stopped_at < cutoff,
                )
            )
            ids = list(result.scalars().all())
            if not ids:
                return 0

            source_columns = [getattr(InstanceRow, name) for name in _COLUMNS]
            # An id can be reissued after its earlier record was archived
            await session.execute(
                insert(ArchivedInstanceRow)
                .prefix_with("OR REPLACE")
                .from_select(
                    [*_COLUMNS, "archived_at"],
                    select(*source_columns, literal(archived_at, BigInteger)).where(
                        InstanceRow.id.in_(ids)
                    ),
                )
            )
            await session.execute(delete(InstanceRow).where(InstanceRow.id.in_(ids)))
            await session.commit()

        logger.info(
            "Archived %d stopped instance records",
            len(ids),
            extra={"event": LogEvent.RECORDS_ARCHIVED, "count": len(ids)},
        )
        return len(ids)

    async def get_archived(self, instance_id: str) -> InstanceRecord | None:
        async with self._session() as session:
            row = await session.get(ArchivedInstanceRow, instance_id)
            return row_to_record(row) if row else None

    async def count_archived(self) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(ArchivedInstanceRow)
            )
            return result.scalar_one()
