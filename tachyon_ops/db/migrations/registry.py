"""Migration catalog for discovering and ordering migrations.

Provides:
- Discovery of NNN_description.sql files from a versions directory
- Version format, width and duplicate validation at load time
- Ordering by version (lexical compare on zero-padded numeric strings)
"""

import logging
import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Optional

from .base import DuplicateMigrationError, MigrationError, MigrationUnit

logger = logging.getLogger(__name__)

VERSIONS_DIR = Path(__file__).parent / "versions"

MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>[^_]+)_(?P<description>.+)\.sql$")
VERSION_PATTERN = re.compile(r"^\d+$")


class MigrationCatalog:
    """Ordered, duplicate-free collection of migration units."""

    def __init__(self, units: Optional[Iterable[MigrationUnit]] = None):
        """Initialize the catalog.

        Args:
            units: Optional units to register immediately

        Raises:
            DuplicateMigrationError: If two units share a version
            MigrationError: If a version is not numeric
        """
        self._units: dict[str, MigrationUnit] = {}
        self._sorted: Optional[list[MigrationUnit]] = None

        for unit in units or []:
            self.register(unit)

    def register(self, unit: MigrationUnit) -> None:
        """Register a unit.

        Versions are compared as strings, so every version in a catalog must
        have the same number of digits. A version that differs only in
        padding from a registered one ("1" vs "001") counts as a duplicate.

        Args:
            unit: Migration unit to add

        Raises:
            DuplicateMigrationError: If the version is already registered
            MigrationError: If the version is not a number of the catalog's width
        """
        if not VERSION_PATTERN.match(unit.version):
            raise MigrationError(
                f"Invalid migration version '{unit.version}' "
                f"({unit.filename or unit.description}): expected digits only"
            )

        for existing in self._units.values():
            if int(existing.version) == int(unit.version):
                raise DuplicateMigrationError(
                    unit.version,
                    existing.filename or existing.description,
                    unit.filename or unit.description,
                )

        if self._units:
            width = len(next(iter(self._units)))
            if len(unit.version) != width:
                raise MigrationError(
                    f"Invalid migration version '{unit.version}' "
                    f"({unit.filename or unit.description}): expected {width} zero-padded digits "
                    f"like the other migrations"
                )

        self._units[unit.version] = unit
        self._sorted = None

    def get(self, version: str) -> Optional[MigrationUnit]:
        """Get a unit by version."""
        return self._units.get(version)

    def get_all(self) -> list[MigrationUnit]:
        """Get all units in version order."""
        if self._sorted is None:
            self._sorted = sorted(self._units.values(), key=lambda u: u.version)
        return self._sorted.copy()

    def __contains__(self, version: object) -> bool:
        return version in self._units

    def __iter__(self) -> Iterator[MigrationUnit]:
        return iter(self.get_all())

    def __len__(self) -> int:
        return len(self._units)


def load_catalog(directory: Optional[Path] = None) -> MigrationCatalog:
    """Discover migration files in a directory.

    Files must be named ``NNN_description.sql``. Other files (``__init__.py``,
    READMEs) are ignored. Content is read as raw bytes, once.

    Args:
        directory: Directory to scan (defaults to the built-in versions directory)

    Returns:
        Catalog with the discovered units

    Raises:
        MigrationError: If the directory does not exist or a version is invalid
        DuplicateMigrationError: If two files share a version
    """
    directory = Path(directory) if directory is not None else VERSIONS_DIR

    if not directory.is_dir():
        raise MigrationError(f"Migrations directory not found: {directory}")

    catalog = MigrationCatalog()

    for path in sorted(directory.glob("*.sql")):
        match = MIGRATION_FILE_PATTERN.match(path.name)
        if not match:
            raise MigrationError(
                f"Invalid migration file name '{path.name}': expected NNN_description.sql"
            )

        unit = MigrationUnit(
            version=match.group("version"),
            description=match.group("description"),
            content=path.read_bytes(),
            filename=path.name,
        )
        catalog.register(unit)
        logger.debug(f"Discovered migration: {unit.full_name}")

    logger.debug(f"Loaded {len(catalog)} migration(s) from {directory}")
    return catalog
