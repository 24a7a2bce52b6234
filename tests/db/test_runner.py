"""Tests for the migration executor."""

import pytest
from sqlalchemy import select

from tachyon_ops.db.migrations.base import (
    DriftDetectedError,
    MigrationError,
    MigrationStatus,
    MigrationTransactionError,
    TrackingStoreError,
)
from tachyon_ops.db.migrations.checksum import ChecksumTracker
from tachyon_ops.db.migrations.registry import MigrationCatalog, load_catalog
from tachyon_ops.db.migrations.runner import TRACKING_TABLE, MigrationExecutor, schema_migrations


async def fetch_records(database):
    async with database.transaction() as conn:
        result = await conn.execute(select(schema_migrations).order_by(schema_migrations.c.version))
        return result.fetchall()


class TestTrackingStore:
    """Tests for tracking table creation."""

    @pytest.mark.asyncio
    async def test_ensure_tracking_store_is_idempotent(self, database, sample_catalog, table_names):
        executor = MigrationExecutor(database, sample_catalog, "local")

        await executor.ensure_tracking_store()
        await executor.ensure_tracking_store()

        assert TRACKING_TABLE in await table_names(database)

    @pytest.mark.asyncio
    async def test_status_without_tracking_table(self, database, sample_catalog, table_names):
        executor = MigrationExecutor(database, sample_catalog, "local")

        report = await executor.status()

        assert [u.version for u in report.pending] == ["001", "002"]
        assert report.applied == []
        assert not report.is_up_to_date
        # status is read-only
        assert TRACKING_TABLE not in await table_names(database)

    @pytest.mark.asyncio
    async def test_status_on_malformed_tracking_table(self, database, sample_catalog):
        await database.query(f"CREATE TABLE {TRACKING_TABLE} (foo integer)")
        executor = MigrationExecutor(database, sample_catalog, "staging")

        with pytest.raises(TrackingStoreError) as exc_info:
            await executor.status()

        assert isinstance(exc_info.value, MigrationError)
        assert exc_info.value.environment == "staging"
        assert exc_info.value.stage == "status"

    @pytest.mark.asyncio
    async def test_migrate_on_malformed_tracking_table(self, database, sample_catalog, table_names):
        await database.query(f"CREATE TABLE {TRACKING_TABLE} (foo integer)")
        executor = MigrationExecutor(database, sample_catalog, "local")

        with pytest.raises(TrackingStoreError) as exc_info:
            await executor.migrate()

        assert exc_info.value.stage == "lookup"
        assert "accounts" not in await table_names(database)


class TestMigrate:
    """Tests for MigrationExecutor.migrate()."""

    @pytest.mark.asyncio
    async def test_applies_pending_units_in_order(self, database, sample_catalog, table_names):
        executor = MigrationExecutor(database, sample_catalog, "staging")

        applied = await executor.migrate()

        assert applied == 2
        assert {"accounts", "orders"} <= await table_names(database)

        rows = await fetch_records(database)
        assert [row.version for row in rows] == ["001", "002"]
        assert rows[0].description == "create_accounts"
        assert rows[0].environment == "staging"
        assert rows[0].checksum == ChecksumTracker.digest(sample_catalog.get("001").content)
        assert rows[0].applied_at is not None
        assert executor.states == {"001": MigrationStatus.APPLIED, "002": MigrationStatus.APPLIED}

    @pytest.mark.asyncio
    async def test_second_run_applies_nothing(self, database, sample_catalog):
        first = await MigrationExecutor(database, sample_catalog, "local").migrate()
        before = await fetch_records(database)

        second = await MigrationExecutor(database, sample_catalog, "local").migrate()

        assert first == 2
        assert second == 0
        assert await fetch_records(database) == before

    @pytest.mark.asyncio
    async def test_applies_only_new_units(self, database, sample_catalog, make_unit):
        await MigrationExecutor(database, sample_catalog, "local").migrate()

        extended = MigrationCatalog(
            list(sample_catalog)
            + [make_unit("003", "add_index", "CREATE INDEX idx_orders_account ON orders (account_id);")]
        )
        applied = await MigrationExecutor(database, extended, "local").migrate()

        assert applied == 1
        assert [row.version for row in await fetch_records(database)] == ["001", "002", "003"]

    @pytest.mark.asyncio
    async def test_drift_detected_leaves_record_unchanged(self, database, sample_catalog, make_unit):
        await MigrationExecutor(database, sample_catalog, "production").migrate()
        original = await fetch_records(database)

        modified = MigrationCatalog(
            [
                make_unit("001", "create_accounts", "CREATE TABLE accounts (id integer);"),
                sample_catalog.get("002"),
            ]
        )
        executor = MigrationExecutor(database, modified, "production")

        with pytest.raises(DriftDetectedError) as exc_info:
            await executor.migrate()

        error = exc_info.value
        assert error.version == "001"
        assert error.environment == "production"
        assert error.expected == original[0].checksum
        assert error.actual == ChecksumTracker.digest(modified.get("001").content)
        assert executor.states["001"] is MigrationStatus.DRIFTED
        assert await fetch_records(database) == original

    @pytest.mark.asyncio
    async def test_drift_stops_before_later_units(self, database, sample_catalog, make_unit):
        await MigrationExecutor(database, MigrationCatalog([sample_catalog.get("001")]), "local").migrate()

        modified = MigrationCatalog(
            [
                make_unit("001", "create_accounts", "-- edited\nCREATE TABLE accounts (id integer);"),
                sample_catalog.get("002"),
            ]
        )

        with pytest.raises(DriftDetectedError):
            await MigrationExecutor(database, modified, "local").migrate()

        assert [row.version for row in await fetch_records(database)] == ["001"]

    @pytest.mark.asyncio
    async def test_failed_unit_rolls_back_and_halts(
        self, database, sample_catalog, make_unit, table_names
    ):
        catalog = MigrationCatalog(
            [
                sample_catalog.get("001"),
                make_unit(
                    "002",
                    "broken",
                    "CREATE TABLE partial (id integer); INSERT INTO missing_table VALUES (1);",
                ),
                make_unit("003", "never_reached", "CREATE TABLE later (id integer);"),
            ]
        )
        executor = MigrationExecutor(database, catalog, "local")

        with pytest.raises(MigrationTransactionError) as exc_info:
            await executor.migrate()

        assert exc_info.value.version == "002"
        assert exc_info.value.environment == "local"
        assert exc_info.value.__cause__ is not None

        tables = await table_names(database)
        assert "accounts" in tables
        assert "partial" not in tables
        assert "later" not in tables
        assert [row.version for row in await fetch_records(database)] == ["001"]
        assert executor.states == {
            "001": MigrationStatus.APPLIED,
            "002": MigrationStatus.FAILED,
        }

    @pytest.mark.asyncio
    async def test_rerun_after_fix_applies_remaining(self, database, sample_catalog, make_unit):
        broken = MigrationCatalog(
            [sample_catalog.get("001"), make_unit("002", "orders", "CREATE TABLE orders (;")]
        )
        with pytest.raises(MigrationTransactionError):
            await MigrationExecutor(database, broken, "local").migrate()

        fixed = MigrationCatalog(
            [sample_catalog.get("001"), make_unit("002", "orders", "CREATE TABLE orders (id integer);")]
        )
        assert await MigrationExecutor(database, fixed, "local").migrate() == 1

    @pytest.mark.asyncio
    async def test_dry_run_executes_nothing(self, database, sample_catalog, table_names):
        executor = MigrationExecutor(database, sample_catalog, "local")

        would_apply = await executor.migrate(dry_run=True)

        assert would_apply == 2
        tables = await table_names(database)
        assert TRACKING_TABLE not in tables
        assert "accounts" not in tables

    @pytest.mark.asyncio
    async def test_dry_run_after_partial_apply(self, database, sample_catalog):
        await MigrationExecutor(database, MigrationCatalog([sample_catalog.get("001")]), "local").migrate()

        would_apply = await MigrationExecutor(database, sample_catalog, "local").migrate(dry_run=True)

        assert would_apply == 1
        assert [row.version for row in await fetch_records(database)] == ["001"]

    @pytest.mark.asyncio
    async def test_dry_run_reports_drift(self, database, sample_catalog, make_unit):
        await MigrationExecutor(database, sample_catalog, "local").migrate()
        modified = MigrationCatalog(
            [make_unit("001", "create_accounts", "SELECT 1;"), sample_catalog.get("002")]
        )

        with pytest.raises(DriftDetectedError):
            await MigrationExecutor(database, modified, "local").migrate(dry_run=True)

    @pytest.mark.asyncio
    async def test_empty_catalog(self, database):
        assert await MigrationExecutor(database, MigrationCatalog(), "local").migrate() == 0


class TestStatus:
    """Tests for MigrationExecutor.status()."""

    @pytest.mark.asyncio
    async def test_partitions_applied_and_pending(self, database, sample_catalog):
        await MigrationExecutor(
            database, MigrationCatalog([sample_catalog.get("001")]), "local"
        ).migrate()

        report = await MigrationExecutor(database, sample_catalog, "local").status()

        assert [r.version for r in report.applied] == ["001"]
        assert [u.version for u in report.pending] == ["002"]
        assert report.orphaned == []

    @pytest.mark.asyncio
    async def test_reports_orphaned_records(self, database, sample_catalog):
        await MigrationExecutor(database, sample_catalog, "local").migrate()

        report = await MigrationExecutor(
            database, MigrationCatalog([sample_catalog.get("001")]), "local"
        ).status()

        assert [r.version for r in report.applied] == ["001"]
        assert [r.version for r in report.orphaned] == ["002"]
        assert report.is_up_to_date


class TestBuiltinCatalog:
    """The shipped migrations apply cleanly."""

    @pytest.mark.asyncio
    async def test_builtin_catalog_applies(self, database, table_names):
        catalog = load_catalog()

        applied = await MigrationExecutor(database, catalog, "local").migrate()

        assert applied == len(catalog)
        tables = await table_names(database)
        assert {"users", "privacy_policy_versions", "appi_audit_events"} <= tables
