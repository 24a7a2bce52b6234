"""Tests for APPI compliance data initialisation."""

import json

import pytest
import pytest_asyncio

from tachyon_ops.db.compliance import ComplianceInitError, ComplianceSeed, initialize_compliance_data
from tachyon_ops.db.migrations.registry import load_catalog
from tachyon_ops.db.migrations.runner import MigrationExecutor


@pytest_asyncio.fixture
async def migrated_database(database):
    """Database with the built-in catalog applied."""
    await MigrationExecutor(database, load_catalog(), "local").migrate()
    return database


class TestInitializeComplianceData:
    """Tests for initialize_compliance_data()."""

    @pytest.mark.asyncio
    async def test_seeds_policy_and_audit_row(self, migrated_database):
        inserted = await initialize_compliance_data(migrated_database, "local")

        assert inserted is True
        policies = await migrated_database.query("SELECT * FROM privacy_policy_versions")
        assert len(policies) == 1
        policy = policies[0]
        seed = ComplianceSeed()
        assert policy["version"] == "v1.0.0"
        assert policy["en_content_hash"] == seed.en_content_hash
        assert len(policy["jp_content_hash"]) == 64
        assert json.loads(policy["major_changes"]) == ["Initial APPI compliant privacy policy"]
        assert policy["environment"] == "local"

        events = await migrated_database.query("SELECT * FROM appi_audit_events")
        assert len(events) == 1
        assert events[0]["event_type"] == "data_access"
        assert events[0]["compliance_status"] == "compliant"
        details = json.loads(events[0]["event_details"])
        assert details["action"] == "database_initialization"
        assert details["compliance_level"] == "APPI_Article_24_compliant"

    @pytest.mark.asyncio
    async def test_rerun_keeps_one_policy_and_appends_audit(self, migrated_database, count_rows):
        first = await initialize_compliance_data(migrated_database, "local")
        second = await initialize_compliance_data(migrated_database, "local")

        assert first is True
        assert second is False
        assert await count_rows(migrated_database, "privacy_policy_versions") == 1
        assert await count_rows(migrated_database, "appi_audit_events") == 2

    @pytest.mark.asyncio
    async def test_custom_seed(self, migrated_database):
        seed = ComplianceSeed(policy_version="v2.0.0", major_changes=["Retention shortened"])

        await initialize_compliance_data(migrated_database, "staging", seed=seed)

        rows = await migrated_database.query("SELECT version, major_changes FROM privacy_policy_versions")
        assert rows == [{"version": "v2.0.0", "major_changes": '["Retention shortened"]'}]

    @pytest.mark.asyncio
    async def test_missing_tables_is_fatal(self, database):
        with pytest.raises(ComplianceInitError) as exc_info:
            await initialize_compliance_data(database, "staging")

        assert exc_info.value.environment == "staging"

    @pytest.mark.asyncio
    async def test_emits_external_event(self, migrated_database, audit_trail):
        await initialize_compliance_data(migrated_database, "local", sink=audit_trail, actor="ci")

        events = audit_trail.query(event_type="compliance.initialized")
        assert len(events) == 1
        assert events[0].actor == "ci"
        assert events[0].details["inserted"] is True

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_fail_seed(self, migrated_database, failing_sink, count_rows):
        inserted = await initialize_compliance_data(migrated_database, "local", sink=failing_sink)

        assert inserted is True
        assert failing_sink.attempts == 1
        assert await count_rows(migrated_database, "appi_audit_events") == 1
