"""Release manifest models and store.

A release manifest pins one built artifact per service under a semantic
version and records which environments received it. One JSON document is
kept per version under the releases directory:

    releases/
        0.1.0.json
        0.2.0.json

Service entries never change after creation. The ``environments`` block is
populated once by the staging promotion and once by the production
promotion, in that order.

Every mutation is a read-validate-write cycle under an exclusive file lock,
and each write bumps the document's ``revision`` so callers holding a stale
copy are detected.
"""

import json
import logging
import os
import re
import tempfile
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_serializer

logger = logging.getLogger(__name__)

SEMVER_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>[0-9A-Za-z.-]+))?(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)

DEFAULT_LOCK_TIMEOUT = 30.0


class ReleaseError(Exception):
    """Base exception for release manifest and promotion errors."""

    pass


class InvalidManifestError(ReleaseError):
    """Raised when a manifest or its version is malformed."""

    pass


class ManifestExistsError(ReleaseError):
    """Raised when creating a manifest for a version that already exists."""

    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Release manifest {version} already exists; versions are immutable")


class ManifestNotFoundError(ReleaseError):
    """Raised when a manifest version does not exist."""

    def __init__(self, version: Optional[str] = None):
        self.version = version
        if version:
            super().__init__(f"Release manifest {version} not found")
        else:
            super().__init__("No release manifests found")


class VersionMismatchError(ReleaseError):
    """Raised when the confirmed version is not the current manifest version."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version mismatch: confirmed {actual} but the current release is {expected}"
        )


class StagingNotDoneError(ReleaseError):
    """Raised when production is requested for a version never deployed to staging."""

    def __init__(self, version: str):
        self.version = version
        super().__init__(
            f"Release {version} has not been deployed to staging; "
            f"promote it to staging before production"
        )


class AlreadyDeployedError(ReleaseError):
    """Raised when an environment block of a manifest is already populated."""

    def __init__(self, version: str, environment: str):
        self.version = version
        self.environment = environment
        super().__init__(f"Release {version} is already recorded as deployed to {environment}")


class ConcurrentModificationError(ReleaseError):
    """Raised when a manifest changed between a caller's read and its write."""

    def __init__(self, version: str, expected: int, actual: int):
        self.version = version
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Release manifest {version} was modified concurrently "
            f"(expected revision {expected}, found {actual})"
        )


def validate_version(version: str) -> str:
    """Check that a version string is a semantic version.

    Raises:
        InvalidManifestError: If it is not
    """
    if not SEMVER_PATTERN.match(version or ""):
        raise InvalidManifestError(f"Invalid release version '{version}': expected MAJOR.MINOR.PATCH")
    return version


def version_sort_key(version: str) -> tuple:
    """Ordering key for semantic versions (pre-releases sort before releases)."""
    match = SEMVER_PATTERN.match(version)
    if not match:
        return (-1, -1, -1, 0, version)
    prerelease = match.group("prerelease")
    return (
        int(match.group("major")),
        int(match.group("minor")),
        int(match.group("patch")),
        0 if prerelease else 1,
        prerelease or "",
    )


class ServiceArtifact(BaseModel):
    """Pinned build reference for one service."""

    model_config = ConfigDict(frozen=True)

    sha: str
    image: str
    tag: str


class StagingDeployment(BaseModel):
    """Staging deployment metadata. Unset fields are stored as empty strings."""

    deployed_at: Optional[datetime] = None
    deployed_by: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return None if value == "" else value

    @model_serializer(mode="wrap")
    def _none_to_blank(self, handler) -> dict[str, Any]:
        data = handler(self)
        return {key: ("" if value is None else value) for key, value in data.items()}

    @property
    def is_done(self) -> bool:
        return self.deployed_at is not None


class ProductionDeployment(StagingDeployment):
    """Production deployment metadata."""

    approved_by: Optional[str] = None


class EnvironmentDeployments(BaseModel):
    staging: StagingDeployment = Field(default_factory=StagingDeployment)
    production: ProductionDeployment = Field(default_factory=ProductionDeployment)


class ReleaseManifest(BaseModel):
    """Versioned set of pinned service artifacts plus deployment metadata."""

    version: str
    created_at: datetime
    description: str = ""
    revision: int = 0
    services: dict[str, ServiceArtifact]
    environments: EnvironmentDeployments = Field(default_factory=EnvironmentDeployments)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not SEMVER_PATTERN.match(value):
            raise ValueError(f"'{value}' is not a semantic version")
        return value

    @field_validator("services")
    @classmethod
    def _check_services(cls, value: dict[str, ServiceArtifact]) -> dict[str, ServiceArtifact]:
        if not value:
            raise ValueError("a release must pin at least one service")
        return value

    @property
    def staging_done(self) -> bool:
        return self.environments.staging.is_done

    @property
    def production_done(self) -> bool:
        return self.environments.production.is_done

    def pinned_shas(self) -> dict[str, str]:
        """Service name to pinned SHA."""
        return {name: artifact.sha for name, artifact in self.services.items()}


class ManifestStore:
    """File-backed store of release manifests, one JSON document per version.

    Example:
        store = ManifestStore(Path("releases"))
        store.create("0.2.0", services)
        store.record_staging_deploy("0.2.0", actor="ci")
    """

    def __init__(
        self,
        releases_dir: Path | str,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize the store.

        Args:
            releases_dir: Directory holding the manifest documents
            lock_timeout: Seconds to wait for a manifest lock
            clock: Source of timestamps for records
        """
        self.releases_dir = Path(releases_dir)
        self.lock_timeout = lock_timeout
        self._clock = clock

    def _path(self, version: str) -> Path:
        return self.releases_dir / f"{version}.json"

    def _lock(self, version: str) -> FileLock:
        self.releases_dir.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.releases_dir / f".{version}.lock"), timeout=self.lock_timeout)

    def _load(self, path: Path) -> ReleaseManifest:
        try:
            return ReleaseManifest.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise InvalidManifestError(f"Malformed release manifest {path.name}: {e}") from e

    def _write(self, manifest: ReleaseManifest) -> None:
        """Write a manifest atomically (temp file in the same directory, then replace)."""
        self.releases_dir.mkdir(parents=True, exist_ok=True)
        target = self._path(manifest.version)
        data = manifest.model_dump(mode="json")

        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                dir=self.releases_dir,
                prefix=f".{manifest.version}_",
                suffix=".json",
                delete=False,
                encoding="utf-8",
            ) as tmp_file:
                tmp_path = tmp_file.name
                json.dump(data, tmp_file, indent=2)
                tmp_file.write("\n")
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            os.replace(tmp_path, target)
            tmp_path = None
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def exists(self, version: str) -> bool:
        return self._path(version).exists()

    def create(
        self,
        version: str,
        services: Mapping[str, ServiceArtifact],
        description: str = "",
        created_at: Optional[datetime] = None,
    ) -> ReleaseManifest:
        """Create a manifest for a new version.

        Args:
            version: Semantic version
            services: Pinned artifact per service
            description: Release description
            created_at: Creation time (defaults to now)

        Returns:
            The created manifest

        Raises:
            InvalidManifestError: If the version or services are invalid
            ManifestExistsError: If the version already exists
        """
        validate_version(version)

        try:
            manifest = ReleaseManifest(
                version=version,
                created_at=created_at or self._clock(),
                description=description,
                services=dict(services),
            )
        except ValidationError as e:
            raise InvalidManifestError(f"Invalid release manifest {version}: {e}") from e

        try:
            with self._lock(version):
                if self.exists(version):
                    raise ManifestExistsError(version)
                self._write(manifest)
        except FileLockTimeout as e:
            raise ReleaseError(f"Timed out waiting for the lock on release {version}") from e

        logger.info(f"Release manifest {version} created ({len(manifest.services)} service(s))")
        return manifest

    def read(self, version: str) -> ReleaseManifest:
        """Read a manifest.

        Raises:
            ManifestNotFoundError: If the version does not exist
        """
        path = self._path(version)
        if not path.exists():
            raise ManifestNotFoundError(version)
        return self._load(path)

    def list_versions(self) -> list[str]:
        """All stored versions, lowest first."""
        if not self.releases_dir.exists():
            return []
        versions = [
            path.stem
            for path in self.releases_dir.glob("*.json")
            if SEMVER_PATTERN.match(path.stem)
        ]
        return sorted(versions, key=version_sort_key)

    def current(self) -> ReleaseManifest:
        """The manifest with the highest version.

        Raises:
            ManifestNotFoundError: If no manifest exists
        """
        versions = self.list_versions()
        if not versions:
            raise ManifestNotFoundError()
        return self.read(versions[-1])

    def _update(
        self,
        version: str,
        mutate: Callable[[ReleaseManifest], ReleaseManifest],
        expected_revision: Optional[int],
    ) -> ReleaseManifest:
        """Apply ``mutate`` to a fresh read of the manifest under its lock."""
        try:
            with self._lock(version):
                current = self.read(version)
                if expected_revision is not None and current.revision != expected_revision:
                    raise ConcurrentModificationError(version, expected_revision, current.revision)

                updated = mutate(current)
                updated = updated.model_copy(update={"revision": current.revision + 1})
                self._write(updated)
                return updated
        except FileLockTimeout as e:
            raise ReleaseError(f"Timed out waiting for the lock on release {version}") from e

    def record_staging_deploy(
        self,
        version: str,
        actor: str,
        timestamp: Optional[datetime] = None,
        expected_revision: Optional[int] = None,
    ) -> ReleaseManifest:
        """Record that a version was deployed to staging.

        Args:
            version: Manifest version
            actor: Who performed the deployment
            timestamp: Deployment time (defaults to now)
            expected_revision: Revision the caller last read, if it must not have changed

        Returns:
            Updated manifest

        Raises:
            ManifestNotFoundError: If the version does not exist
            AlreadyDeployedError: If staging is already recorded
            ConcurrentModificationError: If the revision no longer matches
        """
        when = timestamp or self._clock()

        def _mutate(manifest: ReleaseManifest) -> ReleaseManifest:
            if manifest.staging_done:
                raise AlreadyDeployedError(version, "staging")
            staging = StagingDeployment(deployed_at=when, deployed_by=actor)
            environments = manifest.environments.model_copy(update={"staging": staging})
            return manifest.model_copy(update={"environments": environments})

        updated = self._update(version, _mutate, expected_revision)
        logger.info(f"Release {version} recorded as deployed to staging by {actor}")
        return updated

    def record_production_deploy(
        self,
        version: str,
        actor: str,
        approver: str,
        timestamp: Optional[datetime] = None,
        expected_revision: Optional[int] = None,
    ) -> ReleaseManifest:
        """Record that a version was deployed to production.

        Args:
            version: Manifest version
            actor: Who performed the deployment
            approver: Who approved the production release
            timestamp: Deployment time (defaults to now)
            expected_revision: Revision the caller last read, if it must not have changed

        Returns:
            Updated manifest

        Raises:
            ManifestNotFoundError: If the version does not exist
            StagingNotDoneError: If staging was never recorded for this version
            AlreadyDeployedError: If production is already recorded
            ConcurrentModificationError: If the revision no longer matches
        """
        when = timestamp or self._clock()

        def _mutate(manifest: ReleaseManifest) -> ReleaseManifest:
            if not manifest.staging_done:
                raise StagingNotDoneError(version)
            if manifest.production_done:
                raise AlreadyDeployedError(version, "production")
            production = ProductionDeployment(
                deployed_at=when, deployed_by=actor, approved_by=approver
            )
            environments = manifest.environments.model_copy(update={"production": production})
            return manifest.model_copy(update={"environments": environments})

        updated = self._update(version, _mutate, expected_revision)
        logger.info(f"Release {version} recorded as deployed to production by {actor} (approved by {approver})")
        return updated
