"""
Tests for the health probe.

Time is simulated with a fake clock so multi-minute waits run instantly.
"""

import httpx
import pytest


def _probe(runtime, clock, **kwargs):
    from updater.health import HealthProbe
    return HealthProbe(runtime, clock=clock, sleep=clock.sleep, **kwargs)


class TestComponentHealth:

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [
        ("healthy", "healthy"),
        ("no_healthcheck", "healthy"),
        ("starting", "starting"),
        ("unhealthy", "unhealthy"),
        ("not_running", "unhealthy"),
        ("missing", "unknown"),
        ("garbage", "unknown"),
    ])
    def test_runtime_status_mapping(self, fake_runtime, fake_clock, raw, expected):
        fake_runtime.health_map["n8n"] = raw
        probe = _probe(fake_runtime, fake_clock)

        assert probe.component_health("n8n").value == expected

    @pytest.mark.unit
    def test_runtime_error_is_unknown(self, fake_runtime, fake_clock):
        from common.exceptions import CommandError

        def broken(service):
            raise CommandError(["docker", "compose", "ps"], 1, "daemon down")

        fake_runtime.health_fn = broken
        probe = _probe(fake_runtime, fake_clock)

        assert probe.component_health("n8n").value == "unknown"

    @pytest.mark.unit
    def test_quick_check(self, fake_runtime, fake_clock):
        probe = _probe(fake_runtime, fake_clock)
        assert probe.quick_check(["n8n", "postgres", "redis"]) is True

        fake_runtime.health_map["redis"] = "starting"
        assert probe.quick_check(["n8n", "postgres", "redis"]) is False


class TestAwaitHealthy:

    @pytest.mark.unit
    def test_healthy_immediately(self, fake_runtime, fake_clock):
        probe = _probe(fake_runtime, fake_clock)

        report = probe.await_healthy(["n8n", "postgres", "redis"], timeout=300, poll_interval=10)

        assert report.healthy
        assert report.elapsed == 0
        assert fake_clock.sleeps == []

    @pytest.mark.unit
    def test_becomes_healthy_after_starting(self, fake_runtime, fake_clock):
        fake_runtime.health_fn = lambda s: "healthy" if fake_clock() >= 40 else "starting"
        probe = _probe(fake_runtime, fake_clock)

        report = probe.await_healthy(["n8n"], timeout=300, poll_interval=10)

        assert report.healthy
        assert report.elapsed == 40

    @pytest.mark.unit
    def test_unhealthy_fails_fast(self, fake_runtime, fake_clock):
        from updater.health import HealthOutcome

        def health(service):
            if service == "n8n" and fake_clock() >= 30:
                return "unhealthy"
            return "starting" if service == "n8n" else "healthy"

        fake_runtime.health_fn = health
        probe = _probe(fake_runtime, fake_clock)

        report = probe.await_healthy(["n8n", "postgres"], timeout=300, poll_interval=10)

        assert report.outcome is HealthOutcome.UNHEALTHY
        assert report.elapsed == 30
        assert report.failing() == {"n8n": "unhealthy"}
        error = report.to_error(300)
        assert error.code == "COMPONENTS_UNHEALTHY"
        assert error.details == {"components": {"n8n": "unhealthy"}, "elapsed": 30}
        assert "n8n=unhealthy" in error.message

    @pytest.mark.unit
    def test_times_out_at_deadline(self, fake_runtime, fake_clock):
        from updater.health import HealthOutcome

        fake_runtime.health_map["postgres"] = "starting"
        probe = _probe(fake_runtime, fake_clock)

        report = probe.await_healthy(["n8n", "postgres"], timeout=60, poll_interval=10)

        assert report.outcome is HealthOutcome.TIMED_OUT
        assert report.elapsed == 60
        assert report.failing() == {"postgres": "starting"}
        error = report.to_error(60)
        assert error.code == "HEALTH_TIMEOUT"
        assert error.details["components"] == {"postgres": "starting"}

    @pytest.mark.unit
    def test_cancellation(self, fake_runtime, fake_clock):
        from common.exceptions import OperationCancelled
        from utils.polling import CancellationToken

        fake_runtime.health_map["n8n"] = "starting"
        token = CancellationToken()

        def sleep(seconds):
            fake_clock.sleep(seconds)
            token.cancel()

        from updater.health import HealthProbe
        probe = HealthProbe(fake_runtime, clock=fake_clock, sleep=sleep)

        with pytest.raises(OperationCancelled):
            probe.await_healthy(["n8n"], timeout=300, poll_interval=10, cancel=token)

    @pytest.mark.unit
    def test_report_to_dict(self, fake_runtime, fake_clock):
        probe = _probe(fake_runtime, fake_clock)
        report = probe.await_healthy(["n8n"], timeout=10, poll_interval=1)

        assert report.to_dict() == {
            "outcome": "healthy",
            "statuses": {"n8n": "healthy"},
            "elapsed": 0,
        }
        assert report.describe() == "all components healthy"


class TestHttpHealthCheck:

    def _client(self, handler):
        return httpx.Client(transport=httpx.MockTransport(handler))

    @pytest.mark.unit
    def test_success_is_healthy(self):
        from updater.health import HttpHealthCheck, ComponentHealth

        check = HttpHealthCheck(
            "http://n8n:5678/healthz",
            client=self._client(lambda request: httpx.Response(200, json={"status": "ok"})),
        )
        assert check() is ComponentHealth.HEALTHY

    @pytest.mark.unit
    def test_error_status_is_starting(self):
        from updater.health import HttpHealthCheck, ComponentHealth

        check = HttpHealthCheck(
            "http://n8n:5678/healthz",
            client=self._client(lambda request: httpx.Response(503)),
        )
        assert check() is ComponentHealth.STARTING

    @pytest.mark.unit
    def test_connection_error_is_starting(self):
        from updater.health import HttpHealthCheck, ComponentHealth

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        check = HttpHealthCheck("http://n8n:5678/healthz", client=self._client(refuse))
        assert check() is ComponentHealth.STARTING

    @pytest.mark.unit
    def test_http_check_only_consulted_when_container_healthy(self, fake_runtime, fake_clock):
        from updater.health import ComponentHealth

        calls = []

        def check():
            calls.append(1)
            return ComponentHealth.STARTING

        probe = _probe(fake_runtime, fake_clock, http_checks={"n8n": check})
        assert probe.component_health("n8n") is ComponentHealth.STARTING

        fake_runtime.health_map["n8n"] = "unhealthy"
        assert probe.component_health("n8n") is ComponentHealth.UNHEALTHY
        assert len(calls) == 1
