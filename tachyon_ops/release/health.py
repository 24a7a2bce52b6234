"""Post-deployment health polling.

Each service exposes an HTTP health endpoint. A 2xx response means healthy,
unless the body is a JSON object whose ``healthy`` field is false. Latency
is measured client-side. Services are polled concurrently, each with
exponential backoff bounded by a retry budget and a wall-clock timeout.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Optional

import requests

from ..utils.resilience import RetryConfig, poll_until
from .manifest import ReleaseError

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckConfig:
    """Health polling configuration.

    Attributes:
        max_attempts: Maximum probes per service
        base_delay: Delay after the first failed probe in seconds
        max_delay: Cap on the delay between probes
        timeout_seconds: Wall-clock budget per service
        request_timeout: Timeout of a single HTTP request
    """

    max_attempts: int = 10
    base_delay: float = 2.0
    max_delay: float = 30.0
    timeout_seconds: float = 300.0
    request_timeout: float = 5.0

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )

    def validate(self) -> list[str]:
        errors = []
        if self.max_attempts < 1:
            errors.append("max_attempts must be at least 1")
        if self.timeout_seconds <= 0:
            errors.append("timeout_seconds must be positive")
        if self.request_timeout <= 0:
            errors.append("request_timeout must be positive")
        return errors


@dataclass
class HealthStatus:
    """Outcome of health checking one service."""

    service: str
    healthy: bool
    latency_ms: Optional[float] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0
    checked: bool = True


class HealthCheckTimeoutError(ReleaseError):
    """Raised when deployed services never report healthy within budget.

    The deployment itself is left in place.
    """

    def __init__(self, environment: str, failures: list[HealthStatus], timeout_seconds: float):
        self.environment = environment
        self.failures = failures
        self.timeout_seconds = timeout_seconds
        details = ", ".join(
            f"{s.service} ({s.error or f'HTTP {s.status_code}'} after {s.attempts} attempt(s))"
            for s in failures
        )
        super().__init__(
            f"Services not healthy in {environment} within {timeout_seconds:.0f}s: {details}"
        )


class HealthEndpointMissingError(ReleaseError):
    """Raised when a promotion that must be health checked has services without an endpoint."""

    def __init__(self, environment: str, services: list[str]):
        self.environment = environment
        self.services = services
        super().__init__(
            f"No health endpoint configured for {', '.join(services)} in {environment}; "
            f"every service must be health checked"
        )


class HealthChecker:
    """Polls service health endpoints.

    Example:
        checker = HealthChecker({"tachyon-api": "https://api.staging/health"})
        statuses = await checker.wait_all(["tachyon-api"], "staging")
    """

    def __init__(
        self,
        endpoints: Mapping[str, str],
        config: Optional[HealthCheckConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the checker.

        Args:
            endpoints: Service name to health URL
            config: Polling configuration
            sleep: Sleep coroutine (injectable for tests)
            clock: Monotonic clock (injectable for tests)
        """
        self.endpoints = dict(endpoints)
        self.config = config or HealthCheckConfig()
        self._sleep = sleep
        self._clock = clock

    def unconfigured(self, services: Iterable[str]) -> list[str]:
        """Services that have no health endpoint, in the given order."""
        return [name for name in services if name not in self.endpoints]

    async def probe(self, service: str) -> HealthStatus:
        """Issue one health request for a service."""
        url = self.endpoints[service]

        def _get() -> requests.Response:
            return requests.get(
                url,
                timeout=self.config.request_timeout,
                headers={"Accept": "application/json"},
            )

        start = time.perf_counter()
        try:
            response = await asyncio.to_thread(_get)
        except requests.RequestException as e:
            return HealthStatus(service=service, healthy=False, error=str(e))

        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        healthy = 200 <= response.status_code < 300
        error = None if healthy else f"HTTP {response.status_code}"

        if healthy:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and "healthy" in body and not body["healthy"]:
                healthy = False
                error = "endpoint reported unhealthy"

        return HealthStatus(
            service=service,
            healthy=healthy,
            latency_ms=latency_ms,
            status_code=response.status_code,
            error=error,
        )

    async def wait_healthy(self, service: str) -> HealthStatus:
        """Poll one service until healthy or out of budget."""
        if service not in self.endpoints:
            logger.info(f"No health endpoint configured for {service}; skipping health check")
            return HealthStatus(service=service, healthy=True, checked=False)

        last = HealthStatus(service=service, healthy=False)

        async def _check() -> bool:
            nonlocal last
            last = await self.probe(service)
            if not last.healthy:
                logger.debug(f"{service} not healthy yet: {last.error}")
            return last.healthy

        healthy, attempts = await poll_until(
            _check,
            self.config.retry_config(),
            self.config.timeout_seconds,
            description=f"{service} health",
            sleep=self._sleep,
            clock=self._clock,
        )
        last.attempts = attempts
        last.healthy = healthy

        if healthy:
            logger.info(f"{service} healthy ({last.latency_ms}ms, {attempts} attempt(s))")
        else:
            logger.error(f"{service} not healthy after {attempts} attempt(s): {last.error}")
        return last

    async def wait_all(self, services: Iterable[str], environment: str) -> dict[str, HealthStatus]:
        """Poll all services concurrently.

        Args:
            services: Services to check
            environment: Environment name used in errors and logs

        Returns:
            Service name to final status

        Raises:
            HealthCheckTimeoutError: If any service never became healthy
        """
        names = list(services)
        results = await asyncio.gather(*(self.wait_healthy(name) for name in names))
        statuses = dict(zip(names, results))

        failures = [status for status in results if not status.healthy]
        if failures:
            raise HealthCheckTimeoutError(environment, failures, self.config.timeout_seconds)

        return statuses
