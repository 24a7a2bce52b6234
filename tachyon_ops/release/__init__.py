"""Release manifests and promotion gating.

Usage:
    from tachyon_ops.release import ManifestStore, ReleasePromotionGate

    store = ManifestStore("releases")
    gate = ReleasePromotionGate(store, deployer, HealthChecker(endpoints))
    await gate.promote_to_staging("0.2.0", actor="ci")
    await gate.promote_to_production("0.2.0", actor="alice", approver="bob")
"""

from .deployer import CommandDeployer, Deployer, DeploymentError, DeploymentResult, RecordOnlyDeployer
from .gate import KNOWN_SERVICES, PromotionResult, ReleasePromotionGate, UnknownServiceError
from .health import (
    HealthCheckConfig,
    HealthChecker,
    HealthCheckTimeoutError,
    HealthEndpointMissingError,
    HealthStatus,
)
from .manifest import (
    AlreadyDeployedError,
    ConcurrentModificationError,
    ManifestExistsError,
    ManifestNotFoundError,
    ManifestStore,
    ReleaseError,
    ReleaseManifest,
    ServiceArtifact,
    StagingNotDoneError,
    VersionMismatchError,
)

__all__ = [
    # Manifest
    "ReleaseManifest",
    "ServiceArtifact",
    "ManifestStore",
    # Gate
    "ReleasePromotionGate",
    "PromotionResult",
    "KNOWN_SERVICES",
    # Collaborators
    "Deployer",
    "CommandDeployer",
    "RecordOnlyDeployer",
    "DeploymentResult",
    "HealthChecker",
    "HealthCheckConfig",
    "HealthStatus",
    # Errors
    "ReleaseError",
    "ManifestExistsError",
    "ManifestNotFoundError",
    "VersionMismatchError",
    "StagingNotDoneError",
    "AlreadyDeployedError",
    "ConcurrentModificationError",
    "UnknownServiceError",
    "DeploymentError",
    "HealthCheckTimeoutError",
    "HealthEndpointMissingError",
]
