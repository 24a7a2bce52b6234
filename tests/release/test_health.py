"""Tests for post-deployment health polling."""

from unittest.mock import patch

import pytest
import requests

from tachyon_ops.release.health import HealthCheckConfig, HealthChecker, HealthCheckTimeoutError

GET = "tachyon_ops.release.health.requests.get"
API_URL = "https://api.staging.example/health"


def make_checker(no_sleep, endpoints=None, **config):
    return HealthChecker(
        endpoints if endpoints is not None else {"tachyon-api": API_URL},
        HealthCheckConfig(**{"max_attempts": 3, **config}),
        sleep=no_sleep,
    )


class TestProbe:
    """Tests for a single health request."""

    @pytest.mark.asyncio
    async def test_2xx_is_healthy(self, no_sleep, health_response):
        checker = make_checker(no_sleep)

        with patch(GET, return_value=health_response(200, {"status": "ok"})) as mock_get:
            status = await checker.probe("tachyon-api")

        assert status.healthy
        assert status.status_code == 200
        assert status.latency_ms is not None
        assert mock_get.call_args.args[0] == API_URL
        assert mock_get.call_args.kwargs["timeout"] == 5.0

    @pytest.mark.asyncio
    async def test_non_json_body_is_fine(self, no_sleep, health_response):
        with patch(GET, return_value=health_response(204)):
            status = await make_checker(no_sleep).probe("tachyon-api")

        assert status.healthy

    @pytest.mark.asyncio
    async def test_body_can_report_unhealthy(self, no_sleep, health_response):
        with patch(GET, return_value=health_response(200, {"healthy": False})):
            status = await make_checker(no_sleep).probe("tachyon-api")

        assert not status.healthy
        assert status.error == "endpoint reported unhealthy"

    @pytest.mark.asyncio
    async def test_error_status(self, no_sleep, health_response):
        with patch(GET, return_value=health_response(503)):
            status = await make_checker(no_sleep).probe("tachyon-api")

        assert not status.healthy
        assert status.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_request_exception(self, no_sleep):
        with patch(GET, side_effect=requests.ConnectionError("refused")):
            status = await make_checker(no_sleep).probe("tachyon-api")

        assert not status.healthy
        assert "refused" in status.error


class TestWaitHealthy:
    """Tests for polling until healthy."""

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self, recording_sleep, health_response):
        checker = make_checker(recording_sleep, max_attempts=5, base_delay=1.0)
        responses = [health_response(503), health_response(503), health_response(200)]

        with patch(GET, side_effect=responses):
            status = await checker.wait_healthy("tachyon-api")

        assert status.healthy
        assert status.attempts == 3
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_budget(self, no_sleep, health_response):
        with patch(GET, return_value=health_response(500)) as mock_get:
            status = await make_checker(no_sleep).wait_healthy("tachyon-api")

        assert not status.healthy
        assert status.attempts == 3
        assert mock_get.call_count == 3

    @pytest.mark.asyncio
    async def test_stops_at_wall_clock_deadline(self, no_sleep, health_response):
        ticks = iter([0.0, 20.0])
        checker = HealthChecker(
            {"tachyon-api": API_URL},
            HealthCheckConfig(max_attempts=10, timeout_seconds=10),
            sleep=no_sleep,
            clock=lambda: next(ticks),
        )

        with patch(GET, return_value=health_response(503)) as mock_get:
            status = await checker.wait_healthy("tachyon-api")

        assert not status.healthy
        assert mock_get.call_count == 1

    @pytest.mark.asyncio
    async def test_service_without_endpoint_is_skipped(self, no_sleep):
        with patch(GET) as mock_get:
            status = await make_checker(no_sleep, endpoints={}).wait_healthy("tachyon-workers")

        assert status.healthy
        assert not status.checked
        mock_get.assert_not_called()


class TestWaitAll:
    """Tests for concurrent polling of several services."""

    @pytest.mark.asyncio
    async def test_all_healthy(self, no_sleep, health_response):
        checker = make_checker(
            no_sleep,
            endpoints={"tachyon-api": API_URL, "tachyon-workers": "https://workers/health"},
        )

        with patch(GET, return_value=health_response(200)):
            statuses = await checker.wait_all(["tachyon-api", "tachyon-workers", "tachyon-db-migrate"], "staging")

        assert set(statuses) == {"tachyon-api", "tachyon-workers", "tachyon-db-migrate"}
        assert all(s.healthy for s in statuses.values())
        assert not statuses["tachyon-db-migrate"].checked

    @pytest.mark.asyncio
    async def test_one_unhealthy_service_fails(self, no_sleep, health_response):
        checker = make_checker(
            no_sleep,
            endpoints={"tachyon-api": API_URL, "tachyon-workers": "https://workers/health"},
        )

        def fake_get(url, **kwargs):
            return health_response(503 if "workers" in url else 200)

        with patch(GET, side_effect=fake_get):
            with pytest.raises(HealthCheckTimeoutError) as exc_info:
                await checker.wait_all(["tachyon-api", "tachyon-workers"], "production")

        error = exc_info.value
        assert error.environment == "production"
        assert [s.service for s in error.failures] == ["tachyon-workers"]
        assert "tachyon-workers" in str(error)


class TestHealthCheckConfig:
    def test_validate(self):
        assert HealthCheckConfig().validate() == []
        assert len(HealthCheckConfig(max_attempts=0, timeout_seconds=0).validate()) == 2


class TestUnconfigured:
    def test_lists_services_without_endpoint_in_order(self, no_sleep):
        checker = make_checker(no_sleep)

        assert checker.unconfigured(["tachyon-workers", "tachyon-api", "tachyon-db-migrate"]) == [
            "tachyon-workers",
            "tachyon-db-migrate",
        ]
        assert checker.unconfigured(["tachyon-api"]) == []
