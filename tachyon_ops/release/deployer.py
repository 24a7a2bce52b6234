"""Deployment collaborators.

The promotion gate never talks to the orchestration platform directly; it
hands each pinned artifact to a Deployer. The deployer reports whether the
platform accepted the deployment. Health is verified separately.
"""

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from .manifest import ReleaseError, ServiceArtifact

logger = logging.getLogger(__name__)

# Placeholders a deploy command template may reference
PLACEHOLDER = re.compile(r"\{(environment|service|image|tag|sha)\}")


class DeploymentError(ReleaseError):
    """Raised when the platform rejects a deployment."""

    def __init__(self, environment: str, service: str, detail: str):
        self.environment = environment
        self.service = service
        self.detail = detail
        super().__init__(f"Deployment of {service} to {environment} failed: {detail}")


@dataclass
class DeploymentResult:
    """Outcome of handing one artifact to the platform."""

    environment: str
    service: str
    artifact: ServiceArtifact
    detail: str = ""
    started_at: datetime = field(default_factory=datetime.now)
    duration_seconds: float = 0.0


class Deployer(ABC):
    """Deploys one service artifact to one environment."""

    @abstractmethod
    async def deploy(
        self,
        environment: str,
        service: str,
        artifact: ServiceArtifact,
    ) -> DeploymentResult:
        """Deploy an artifact.

        Args:
            environment: Target environment
            service: Service name
            artifact: Artifact to deploy

        Returns:
            Deployment result

        Raises:
            DeploymentError: If the platform rejects the deployment
        """
        pass


class RecordOnlyDeployer(Deployer):
    """Accepts every artifact without contacting a platform.

    Used when the deployment itself ran elsewhere (e.g. a CI workflow) and only
    health verification and the manifest record are wanted.
    """

    def __init__(self):
        self.deployments: list[DeploymentResult] = []

    async def deploy(
        self,
        environment: str,
        service: str,
        artifact: ServiceArtifact,
    ) -> DeploymentResult:
        logger.info(f"Not deploying {artifact.image}:{artifact.tag} as {service} to {environment} (record only)")
        result = DeploymentResult(environment, service, artifact, detail="record-only")
        self.deployments.append(result)
        return result


class CommandDeployer(Deployer):
    """Runs an external command per service.

    The command is given as an argument list whose items may reference
    ``{environment}``, ``{service}``, ``{image}``, ``{tag}`` and ``{sha}``:

        CommandDeployer(["./deploy.sh", "{environment}", "{service}", "{image}:{tag}"])
    """

    def __init__(self, command: Sequence[str], timeout: int = 600):
        """Initialize the deployer.

        Args:
            command: Argument template (executed without a shell)
            timeout: Timeout per deployment in seconds
        """
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.timeout = timeout

    def build_command(self, environment: str, service: str, artifact: ServiceArtifact) -> list[str]:
        """Fill the known placeholders; any other braces are passed through untouched."""
        values = {
            "environment": environment,
            "service": service,
            "image": artifact.image,
            "tag": artifact.tag,
            "sha": artifact.sha,
        }
        return [PLACEHOLDER.sub(lambda m: values[m.group(1)], part) for part in self.command]

    async def deploy(
        self,
        environment: str,
        service: str,
        artifact: ServiceArtifact,
    ) -> DeploymentResult:
        cmd = self.build_command(environment, service, artifact)
        started_at = datetime.now()
        logger.info(f"Deploying {artifact.image}:{artifact.tag} as {service} to {environment}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "DEPLOY_ENVIRONMENT": environment, "DEPLOY_SERVICE": service},
            )
        except OSError as e:
            raise DeploymentError(environment, service, f"cannot run {cmd[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise DeploymentError(environment, service, f"timed out after {self.timeout}s") from e

        duration = (datetime.now() - started_at).total_seconds()
        output_text = stdout.decode() if stdout else ""
        error_text = stderr.decode() if stderr else ""

        if process.returncode != 0:
            raise DeploymentError(
                environment,
                service,
                error_text.strip() or f"exit code {process.returncode}",
            )

        return DeploymentResult(
            environment=environment,
            service=service,
            artifact=artifact,
            detail=output_text.strip(),
            started_at=started_at,
            duration_seconds=duration,
        )
