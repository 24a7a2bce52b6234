"""Migration executor for applying catalog units to a store.

Provides:
- Idempotent creation of the tracking table
- Applied/pending status reporting
- Ordered, per-unit transactional apply with checksum drift detection
- Dry-run support
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    inspect,
    insert,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from ..connection import Database, execute_script
from .base import (
    DriftDetectedError,
    MigrationRecord,
    MigrationStatus,
    MigrationStatusReport,
    MigrationTransactionError,
    TrackingStoreError,
    MigrationUnit,
)
from .checksum import CHECKSUM_LENGTH, ChecksumComparison, ChecksumTracker
from .registry import MigrationCatalog

logger = logging.getLogger(__name__)

TRACKING_TABLE = "schema_migrations"

tracking_metadata = MetaData()

schema_migrations = Table(
    TRACKING_TABLE,
    tracking_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("version", String(50), nullable=False, unique=True),
    Column("description", Text, nullable=False, default=""),
    Column("applied_at", DateTime(timezone=True), nullable=False),
    Column("checksum", String(CHECKSUM_LENGTH), nullable=False),
    Column("environment", String(20), nullable=False),
    Index("idx_schema_migrations_version", "version"),
)


def _row_to_record(row) -> MigrationRecord:
    return MigrationRecord(
        version=row.version,
        description=row.description,
        checksum=row.checksum,
        applied_at=row.applied_at,
        environment=row.environment,
    )


class MigrationExecutor:
    """Applies pending catalog units and tracks them in ``schema_migrations``.

    Units run strictly in catalog order. Each unit's content and its tracking
    row are written in one transaction; the first failure stops the run.
    """

    def __init__(
        self,
        database: Database,
        catalog: MigrationCatalog,
        environment: str,
        checksums: Optional[ChecksumTracker] = None,
    ):
        """Initialize the executor.

        Args:
            database: Connected database handle (owned by the caller)
            catalog: Ordered migration catalog
            environment: Environment name stamped on every tracking row
            checksums: Checksum tracker
        """
        self.database = database
        self.catalog = catalog
        self.environment = environment
        self.checksums = checksums or ChecksumTracker()
        self.states: dict[str, MigrationStatus] = {}

    def _transition(self, unit: MigrationUnit, state: MigrationStatus) -> None:
        previous = self.states.get(unit.version, MigrationStatus.PENDING)
        self.states[unit.version] = state
        logger.debug(
            f"Migration {unit.version} [{self.environment}]: "
            f"{previous.value} -> {state.value}"
        )

    @asynccontextmanager
    async def _tracking_access(self, stage: str) -> AsyncGenerator[AsyncConnection, None]:
        """Transaction for tracking table access; driver errors become TrackingStoreError."""
        try:
            async with self.database.transaction() as conn:
                yield conn
        except SQLAlchemyError as e:
            logger.error(f"Tracking store {stage} failed in {self.environment}: {e}")
            raise TrackingStoreError(self.environment, stage, e) from e

    @staticmethod
    async def _tracking_table_exists(conn: AsyncConnection) -> bool:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(TRACKING_TABLE))

    async def ensure_tracking_store(self) -> None:
        """Create the tracking table and its index if they do not exist."""
        async with self._tracking_access("create") as conn:
            await conn.run_sync(tracking_metadata.create_all, checkfirst=True)
        logger.debug(f"Tracking table {TRACKING_TABLE} ready")

    async def _load_records(self, conn: AsyncConnection) -> dict[str, MigrationRecord]:
        if not await self._tracking_table_exists(conn):
            return {}
        result = await conn.execute(select(schema_migrations).order_by(schema_migrations.c.version))
        return {row.version: _row_to_record(row) for row in result}

    async def _find_record(self, conn: AsyncConnection, version: str) -> Optional[MigrationRecord]:
        result = await conn.execute(
            select(schema_migrations).where(schema_migrations.c.version == version)
        )
        row = result.first()
        return _row_to_record(row) if row is not None else None

    async def status(self) -> MigrationStatusReport:
        """Partition the catalog by presence in the tracking table.

        Reads the tracking table on every call. A missing tracking table
        means nothing has been applied.

        Returns:
            Report with applied records, pending units and orphaned records

        Raises:
            TrackingStoreError: If the tracking table cannot be read
        """
        async with self._tracking_access("status") as conn:
            records = await self._load_records(conn)

        report = MigrationStatusReport()
        for unit in self.catalog.get_all():
            record = records.get(unit.version)
            if record is None:
                report.pending.append(unit)
            else:
                report.applied.append(record)

        report.orphaned = [r for v, r in sorted(records.items()) if v not in self.catalog]
        if report.orphaned:
            logger.warning(
                f"{len(report.orphaned)} applied migration(s) missing from the catalog: "
                f"{', '.join(r.version for r in report.orphaned)}"
            )
        return report

    async def _check_applied(self, unit: MigrationUnit, record: MigrationRecord, digest: str) -> None:
        """Raise DriftDetectedError when an applied unit's content has changed."""
        if self.checksums.compare(record.checksum, digest) is ChecksumComparison.MATCH:
            return

        self._transition(unit, MigrationStatus.DRIFTED)
        logger.error(
            f"Drift detected for migration {unit.full_name} in {self.environment}: "
            f"recorded checksum {record.checksum}, current {digest}"
        )
        raise DriftDetectedError(unit.version, self.environment, record.checksum, digest)

    async def _apply(self, unit: MigrationUnit, digest: str) -> None:
        """Apply one unit and insert its tracking row in a single transaction."""
        self._transition(unit, MigrationStatus.APPLYING)
        logger.info(f"Applying migration {unit.full_name} to {self.environment}...")

        try:
            async with self.database.transaction() as conn:
                count = await execute_script(conn, unit.sql)
                await conn.execute(
                    insert(schema_migrations).values(
                        version=unit.version,
                        description=unit.description,
                        checksum=digest,
                        applied_at=datetime.now(timezone.utc),
                        environment=self.environment,
                    )
                )
        except Exception as e:
            self._transition(unit, MigrationStatus.FAILED)
            logger.error(
                f"Failed to apply migration {unit.full_name} in {self.environment}, "
                f"transaction rolled back: {e}"
            )
            raise MigrationTransactionError(unit.version, self.environment, e) from e

        self._transition(unit, MigrationStatus.APPLIED)
        logger.info(f"Applied {unit.full_name} ({count} statement(s))")

    async def migrate(self, dry_run: bool = False) -> int:
        """Apply pending units in catalog order.

        For each unit: compute its digest, look up its record, then apply it
        (no record), skip it (matching record) or fail (mismatching record).

        Args:
            dry_run: Report what would be applied without executing anything

        Returns:
            Number of units newly applied (or that would be applied in dry-run)

        Raises:
            DriftDetectedError: If an applied unit's content has changed
            MigrationTransactionError: If applying a unit fails; earlier units
                applied in this run stay committed
            TrackingStoreError: If the tracking table cannot be created or read
        """
        prefix = "[DRY-RUN] " if dry_run else ""

        if not dry_run:
            await self.ensure_tracking_store()

        applied_count = 0
        for unit in self.catalog.get_all():
            digest = self.checksums.digest(unit.content)

            async with self._tracking_access("lookup") as conn:
                if dry_run and not await self._tracking_table_exists(conn):
                    record = None
                else:
                    record = await self._find_record(conn, unit.version)

            if record is not None:
                self.states.setdefault(unit.version, MigrationStatus.APPLIED)
                await self._check_applied(unit, record, digest)
                logger.debug(f"Skipping {unit.full_name}: already applied")
                continue

            if dry_run:
                logger.info(f"{prefix}Would apply migration {unit.full_name} to {self.environment}")
                applied_count += 1
                continue

            await self._apply(unit, digest)
            applied_count += 1

        if applied_count == 0:
            logger.info(f"{prefix}Database is up to date ({self.environment})")
        else:
            logger.info(f"{prefix}{applied_count} migration(s) applied to {self.environment}")

        return applied_count
