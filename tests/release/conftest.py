"""Release-specific pytest fixtures."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from tachyon_ops.release.deployer import Deployer, DeploymentError, DeploymentResult
from tachyon_ops.release.gate import KNOWN_SERVICES, service_artifact
from tachyon_ops.release.health import HealthChecker, HealthStatus
from tachyon_ops.release.manifest import ManifestStore

FIXED_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeDeployer(Deployer):
    """Deployer that records calls and can be told to reject a service."""

    def __init__(self, fail_service=None):
        self.calls = []
        self.fail_service = fail_service

    async def deploy(self, environment, service, artifact):
        self.calls.append((environment, service, artifact.sha))
        if service == self.fail_service:
            raise DeploymentError(environment, service, "rejected by platform")
        return DeploymentResult(environment, service, artifact, detail="ok")


@pytest.fixture
def store(tmp_path):
    """Manifest store under a temporary releases directory."""
    return ManifestStore(tmp_path / "releases", lock_timeout=1, clock=lambda: FIXED_TIME)


@pytest.fixture
def pinned_services():
    """One pinned artifact per known service."""
    shas = dict(zip(KNOWN_SERVICES, ("api111", "wrk222", "mig333")))
    return {name: service_artifact(name, sha) for name, sha in shas.items()}


@pytest.fixture
def deployer():
    return FakeDeployer()


@pytest.fixture
def health_response():
    """Factory for fake requests responses."""

    def _make(status_code=200, body=None):
        response = MagicMock()
        response.status_code = status_code
        if body is None:
            response.json.side_effect = ValueError("no json")
        else:
            response.json.return_value = body
        return response

    return _make


@pytest.fixture
def fixed_time():
    """Clock value used by the store and gate fixtures."""
    return FIXED_TIME


@pytest.fixture
def failing_deployer():
    """Deployer whose platform rejects tachyon-workers."""
    return FakeDeployer(fail_service="tachyon-workers")


class StubHealthChecker(HealthChecker):
    """Health checker whose endpoints always answer healthy without HTTP."""

    def __init__(self, services=KNOWN_SERVICES, **kwargs):
        super().__init__({name: f"https://{name}.example/health" for name in services}, **kwargs)
        self.polled = []

    async def probe(self, service):
        self.polled.append(service)
        return HealthStatus(service=service, healthy=True, latency_ms=1.0, status_code=200)


@pytest.fixture
def healthy_checker(no_sleep):
    """Checker with an endpoint for every known service, all healthy."""
    return StubHealthChecker(sleep=no_sleep)
