"""Base types for the migration system.

Defines the core abstractions:
- MigrationUnit: An authored, immutable schema change
- MigrationRecord: Persisted record of an applied unit
- MigrationStatus: Per-unit lifecycle states
- MigrationStatusReport: Applied/pending partition of the catalog
- Migration errors
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class DuplicateMigrationError(MigrationError):
    """Raised when two catalog units share a version."""

    def __init__(self, version: str, first: str, second: str):
        self.version = version
        super().__init__(f"Duplicate migration version {version}: {first} and {second}")


class DriftDetectedError(MigrationError):
    """Raised when an applied unit's content no longer matches its recorded checksum.

    The tracking record is never touched on this path; resolving drift
    requires a human to restore the original file or repair the record.
    """

    def __init__(self, version: str, environment: str, expected: str, actual: str):
        self.version = version
        self.environment = environment
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for migration {version} in {environment}: "
            f"recorded {expected[:12]}..., current {actual[:12]}... "
            f"The migration file was modified after it was applied."
        )


class MigrationTransactionError(MigrationError):
    """Raised when applying a unit fails and its transaction is rolled back."""

    def __init__(self, version: str, environment: str, cause: BaseException):
        self.version = version
        self.environment = environment
        self.cause = cause
        super().__init__(f"Migration {version} failed in {environment} and was rolled back: {cause}")


class TrackingStoreError(MigrationError):
    """Raised when the tracking table cannot be created or read."""

    def __init__(self, environment: str, stage: str, cause: BaseException):
        self.environment = environment
        self.stage = stage
        self.cause = cause
        super().__init__(f"Migration tracking store error in {environment} during {stage}: {cause}")


class MigrationStatus(str, Enum):
    """Lifecycle state of a single unit within a run."""

    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    DRIFTED = "drifted"


@dataclass(frozen=True)
class MigrationUnit:
    """An authored schema change.

    Attributes:
        version: Zero-padded numeric version, unique within a catalog
        description: Human-readable description
        content: Raw migration content (SQL), read once at load time
        filename: Source file name, for diagnostics only
    """

    version: str
    description: str
    content: bytes
    filename: Optional[str] = None

    @property
    def full_name(self) -> str:
        """Get full migration name (version_description)."""
        return f"{self.version}_{self.description}"

    @property
    def sql(self) -> str:
        """Content decoded as UTF-8 text."""
        return self.content.decode("utf-8")

    def __repr__(self) -> str:
        return f"<MigrationUnit {self.full_name}>"


@dataclass
class MigrationRecord:
    """Row of the tracking table for one applied unit."""

    version: str
    description: str
    checksum: str
    applied_at: Optional[datetime] = None
    environment: str = ""


@dataclass
class MigrationStatusReport:
    """Partition of the catalog by presence in the tracking table.

    Attributes:
        applied: Records for catalog units that have been applied
        pending: Catalog units without a record, in catalog order
        orphaned: Records whose version is not in the catalog
    """

    applied: list[MigrationRecord] = field(default_factory=list)
    pending: list[MigrationUnit] = field(default_factory=list)
    orphaned: list[MigrationRecord] = field(default_factory=list)

    @property
    def is_up_to_date(self) -> bool:
        """Check if there is nothing left to apply."""
        return not self.pending

