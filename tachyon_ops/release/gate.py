"""Release promotion gate.

Promotes a release manifest to staging, then to production:

- Staging deploys the effective SHA per service: an explicit override, else
  the SHA pinned in the manifest, else the floating ``latest`` tag.
- Production deploys exactly the SHAs pinned in the current manifest, only
  after the operator confirms that manifest's version and only if staging
  has been recorded for it. Both checks happen before anything is deployed.

After deploying, every service is health checked concurrently; the manifest
is updated only once all of them report healthy. Production refuses to start
while any pinned service lacks a health endpoint, unless health checks were
explicitly skipped by the operator.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..audit.trail import AuditSink, ComplianceEvent, emit_best_effort
from .deployer import Deployer, DeploymentResult
from .health import HealthChecker, HealthEndpointMissingError, HealthStatus
from .manifest import (
    AlreadyDeployedError,
    ManifestStore,
    ReleaseError,
    ReleaseManifest,
    ServiceArtifact,
    StagingNotDoneError,
    VersionMismatchError,
)

logger = logging.getLogger(__name__)

IMAGE_REGISTRY = "ghcr.io/tachyonapp"
KNOWN_SERVICES = ("tachyon-api", "tachyon-workers", "tachyon-db-migrate")
FLOATING_TAG = "latest"


class UnknownServiceError(ReleaseError):
    """Raised when an override names a service the release does not know."""

    def __init__(self, services: list[str]):
        self.services = services
        super().__init__(f"Unknown service(s) in overrides: {', '.join(services)}")


def service_artifact(service: str, sha: str, registry: str = IMAGE_REGISTRY) -> ServiceArtifact:
    """Artifact reference for a service built at ``sha``."""
    return ServiceArtifact(sha=sha, image=f"{registry}/{service}", tag=sha)


@dataclass
class PromotionResult:
    """Outcome of a successful promotion."""

    version: str
    environment: str
    artifacts: dict[str, ServiceArtifact]
    deployments: list[DeploymentResult] = field(default_factory=list)
    health: dict[str, HealthStatus] = field(default_factory=dict)
    manifest: Optional[ReleaseManifest] = None

    @property
    def shas(self) -> dict[str, str]:
        return {name: artifact.sha for name, artifact in self.artifacts.items()}


class ReleasePromotionGate:
    """Enforces staging-before-production ordering for release manifests."""

    def __init__(
        self,
        store: ManifestStore,
        deployer: Deployer,
        health_checker: HealthChecker,
        audit_sink: Optional[AuditSink] = None,
        known_services: tuple[str, ...] = KNOWN_SERVICES,
        registry: str = IMAGE_REGISTRY,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        skip_health_check: bool = False,
    ):
        """Initialize the gate.

        Args:
            store: Manifest store
            deployer: Deployment collaborator
            health_checker: Post-deployment health poller
            audit_sink: Optional audit sink (emission is best-effort)
            known_services: Services every release deploys
            registry: Image registry for override and floating artifacts
            clock: Source of deployment timestamps
            skip_health_check: Record promotions without polling health (explicit operator opt-out)
        """
        self.store = store
        self.deployer = deployer
        self.health_checker = health_checker
        self.audit_sink = audit_sink
        self.known_services = known_services
        self.registry = registry
        self._clock = clock
        self.skip_health_check = skip_health_check

    def resolve_staging_artifacts(
        self,
        manifest: ReleaseManifest,
        override_shas: Optional[Mapping[str, str]] = None,
    ) -> dict[str, ServiceArtifact]:
        """Effective artifact per service for a staging deployment.

        Args:
            manifest: Manifest being promoted
            override_shas: Service name to SHA overriding the pinned one

        Returns:
            Service name to artifact, covering every known and pinned service

        Raises:
            UnknownServiceError: If an override names an unknown service
        """
        overrides = dict(override_shas or {})
        services = list(self.known_services) + [
            name for name in manifest.services if name not in self.known_services
        ]

        unknown = sorted(set(overrides) - set(services))
        if unknown:
            raise UnknownServiceError(unknown)

        artifacts: dict[str, ServiceArtifact] = {}
        for name in services:
            if name in overrides:
                artifacts[name] = service_artifact(name, overrides[name], self.registry)
            elif name in manifest.services:
                artifacts[name] = manifest.services[name]
            else:
                logger.warning(f"{name} is not pinned in release {manifest.version}; using '{FLOATING_TAG}'")
                artifacts[name] = service_artifact(name, FLOATING_TAG, self.registry)
        return artifacts

    def _reject(self, environment: str, version: str, actor: str, error: ReleaseError) -> None:
        logger.error(f"Promotion of {version} to {environment} rejected: {error}")
        emit_best_effort(
            self.audit_sink,
            ComplianceEvent.create(
                "promotion.rejected",
                environment=environment,
                actor=actor,
                status="rejected",
                details={"version": version, "reason": type(error).__name__, "message": str(error)},
            ),
        )

    async def _deploy_and_verify(
        self,
        environment: str,
        version: str,
        actor: str,
        artifacts: dict[str, ServiceArtifact],
    ) -> tuple[list[DeploymentResult], dict[str, HealthStatus]]:
        deployments = []
        try:
            for name, artifact in artifacts.items():
                deployments.append(await self.deployer.deploy(environment, name, artifact))
            if self.skip_health_check:
                logger.warning(f"Health checks skipped for release {version} in {environment}")
                health: dict[str, HealthStatus] = {}
            else:
                health = await self.health_checker.wait_all(artifacts.keys(), environment)
        except ReleaseError as e:
            logger.error(f"Promotion of {version} to {environment} failed: {e}")
            emit_best_effort(
                self.audit_sink,
                ComplianceEvent.create(
                    "promotion.failed",
                    environment=environment,
                    actor=actor,
                    status="failed",
                    details={"version": version, "message": str(e)},
                ),
            )
            raise
        return deployments, health

    async def promote_to_staging(
        self,
        version: str,
        actor: str,
        override_shas: Optional[Mapping[str, str]] = None,
    ) -> PromotionResult:
        """Deploy a release to staging and record it.

        Args:
            version: Manifest version
            actor: Who is promoting
            override_shas: Optional service name to SHA overrides

        Returns:
            Promotion result

        Raises:
            ManifestNotFoundError: If the version does not exist
            AlreadyDeployedError: If staging is already recorded for the version
            UnknownServiceError: If an override names an unknown service
            DeploymentError: If the platform rejects a deployment
            HealthCheckTimeoutError: If a service never becomes healthy
            ConcurrentModificationError: If the manifest changed during promotion
        """
        manifest = self.store.read(version)

        try:
            if manifest.staging_done:
                raise AlreadyDeployedError(version, "staging")
            artifacts = self.resolve_staging_artifacts(manifest, override_shas)
        except ReleaseError as e:
            self._reject("staging", version, actor, e)
            raise

        logger.info(f"Promoting release {version} to staging ({len(artifacts)} service(s))")
        deployments, health = await self._deploy_and_verify("staging", version, actor, artifacts)

        updated = self.store.record_staging_deploy(
            version,
            actor,
            timestamp=self._clock(),
            expected_revision=manifest.revision,
        )

        emit_best_effort(
            self.audit_sink,
            ComplianceEvent.create(
                "promotion.staging",
                environment="staging",
                actor=actor,
                details={
                    "version": version,
                    "shas": {name: a.sha for name, a in artifacts.items()},
                    "overrides": sorted(override_shas or {}),
                    "health_checked": not self.skip_health_check,
                },
            ),
        )

        return PromotionResult(
            version=version,
            environment="staging",
            artifacts=artifacts,
            deployments=deployments,
            health=health,
            manifest=updated,
        )

    async def promote_to_production(
        self,
        confirm_version: str,
        actor: str,
        approver: str,
    ) -> PromotionResult:
        """Deploy the current release to production and record it.

        Args:
            confirm_version: Version the operator expects to ship
            actor: Who is promoting
            approver: Who approved the production release

        Returns:
            Promotion result

        Raises:
            ManifestNotFoundError: If no manifest exists
            VersionMismatchError: If confirm_version is not the current version
            StagingNotDoneError: If staging was never recorded for the version
            AlreadyDeployedError: If production is already recorded
            HealthEndpointMissingError: If a pinned service has no health endpoint
            DeploymentError: If the platform rejects a deployment
            HealthCheckTimeoutError: If a service never becomes healthy
            ConcurrentModificationError: If the manifest changed during promotion
        """
        manifest = self.store.current()

        try:
            if confirm_version != manifest.version:
                raise VersionMismatchError(manifest.version, confirm_version)
            if not manifest.staging_done:
                raise StagingNotDoneError(manifest.version)
            if manifest.production_done:
                raise AlreadyDeployedError(manifest.version, "production")
            if not self.skip_health_check:
                missing = self.health_checker.unconfigured(manifest.services)
                if missing:
                    raise HealthEndpointMissingError("production", missing)
        except ReleaseError as e:
            self._reject("production", confirm_version, actor, e)
            raise

        # Exactly what was pinned at creation; no overrides at this stage
        artifacts = dict(manifest.services)

        logger.info(
            f"Promoting release {manifest.version} to production "
            f"(approved by {approver}, {len(artifacts)} service(s))"
        )
        deployments, health = await self._deploy_and_verify(
            "production", manifest.version, actor, artifacts
        )

        updated = self.store.record_production_deploy(
            manifest.version,
            actor,
            approver,
            timestamp=self._clock(),
            expected_revision=manifest.revision,
        )

        emit_best_effort(
            self.audit_sink,
            ComplianceEvent.create(
                "promotion.production",
                environment="production",
                actor=actor,
                details={
                    "version": manifest.version,
                    "approved_by": approver,
                    "health_checked": not self.skip_health_check,
                    "shas": manifest.pinned_shas(),
                },
            ),
        )

        return PromotionResult(
            version=manifest.version,
            environment="production",
            artifacts=artifacts,
            deployments=deployments,
            health=health,
            manifest=updated,
        )
