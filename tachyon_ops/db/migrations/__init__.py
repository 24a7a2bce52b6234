"""Database migration system for the Tachyon relational store.

Provides ordered, checksum-tracked schema migrations with:
- Discovery of NNN_description.sql files
- Per-unit transactional apply
- Drift detection for already-applied migrations
- Dry-run mode
- Status reporting (applied, pending, orphaned)

Usage:
    from tachyon_ops.db.migrations import MigrationExecutor, load_catalog

    async with Database(config) as db:
        executor = MigrationExecutor(db, load_catalog(), environment="local")
        applied = await executor.migrate()

CLI Usage:
    tachyon-migrate --env local migrate
    tachyon-migrate --env staging status
    tachyon-migrate --env production --yes migrate
"""

from .base import (
    DriftDetectedError,
    DuplicateMigrationError,
    MigrationError,
    MigrationRecord,
    MigrationStatus,
    MigrationStatusReport,
    MigrationTransactionError,
    TrackingStoreError,
    MigrationUnit,
)
from .checksum import ChecksumComparison, ChecksumTracker
from .registry import MigrationCatalog, load_catalog
from .runner import MigrationExecutor

__all__ = [
    # Base types
    "MigrationUnit",
    "MigrationRecord",
    "MigrationStatus",
    "MigrationStatusReport",
    # Errors
    "MigrationError",
    "DuplicateMigrationError",
    "DriftDetectedError",
    "MigrationTransactionError",
    "TrackingStoreError",
    # Checksums
    "ChecksumTracker",
    "ChecksumComparison",
    # Catalog
    "MigrationCatalog",
    "load_catalog",
    # Executor
    "MigrationExecutor",
]
