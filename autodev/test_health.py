"""Tests for the health monitor and its HTTP endpoints."""

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from circuit_breaker import CircuitState
from gateway import HealthStatus, ServiceHealth
from health import FAIL, PASS, CheckResult, HealthMonitor, daemon_check, github_check, workspace_check


def make_health(status: HealthStatus, circuit: CircuitState = CircuitState.CLOSED) -> ServiceHealth:
    return ServiceHealth(status=status, circuit_state=circuit, consecutive_failures=0, rate_limit_remaining=100)


def make_client(monitor: HealthMonitor) -> TestClient:
    return TestClient(monitor.build_app())


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


def test_health_200_when_all_checks_pass() -> None:
    monitor = HealthMonitor()
    monitor.register_check("a", lambda: CheckResult("a", PASS, "ok"))
    resp = make_client(monitor).get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["healthy"] is True
    assert body["checks"] == [{"name": "a", "status": "pass", "message": "ok"}]


def test_health_503_when_a_check_fails() -> None:
    monitor = HealthMonitor()
    monitor.register_check("a", lambda: CheckResult("a", PASS))
    monitor.register_check("b", lambda: CheckResult("b", FAIL, "down"))
    resp = make_client(monitor).get("/health")
    assert resp.status_code == 503
    assert resp.json()["healthy"] is False


def test_raising_check_counts_as_failure() -> None:
    def broken() -> CheckResult:
        raise RuntimeError("kaput")

    monitor = HealthMonitor()
    monitor.register_check("broken", broken)
    [result] = monitor.run_checks()
    assert result.status == FAIL
    assert "kaput" in result.message


def test_status_endpoint_returns_provider_data() -> None:
    monitor = HealthMonitor(status_provider=lambda: {"phase": "running", "cycle_count": 3})
    resp = make_client(monitor).get("/status")
    assert resp.status_code == 200
    assert resp.json() == {"phase": "running", "cycle_count": 3}


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------


def test_github_check_passes_when_degraded() -> None:
    gateway = MagicMock()
    gateway.service_health.return_value = make_health(HealthStatus.DEGRADED, CircuitState.HALF_OPEN)
    result = github_check(gateway)()
    assert result.passed
    assert "circuit half_open" in result.message


def test_github_check_fails_when_unavailable() -> None:
    gateway = MagicMock()
    gateway.service_health.return_value = make_health(HealthStatus.UNAVAILABLE, CircuitState.OPEN)
    assert not github_check(gateway)().passed


def test_daemon_check_follows_phase() -> None:
    state = SimpleNamespace(phase=SimpleNamespace(value="running"))
    assert daemon_check(state)().passed
    state.phase = SimpleNamespace(value="stopped")
    assert not daemon_check(state)().passed


def test_workspace_check(tmp_path: Path) -> None:
    assert workspace_check(tmp_path)().passed
    assert not workspace_check(tmp_path / "missing")().passed
