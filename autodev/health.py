"""Health checks for the running daemon, served over HTTP with FastAPI.

``GET /health`` runs every registered check and answers 200 when all pass,
503 otherwise.  ``GET /status`` returns the daemon's last published state.
"""

import logging
import os
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

sys.path.insert(0, str(Path(__file__).resolve().parent))

from gateway import HealthStatus

logger = logging.getLogger(__name__)

PASS = "pass"
FAIL = "fail"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: str
    message: str = ""

    @property
    def passed(self) -> bool:
        return self.status == PASS

    def as_dict(self) -> dict:
        return {"name": self.name, "status": self.status, "message": self.message}


HealthCheck = Callable[[], CheckResult]


class HealthMonitor:
    def __init__(self, status_provider: Callable[[], dict] | None = None):
        self._checks: dict[str, HealthCheck] = {}
        self._status_provider = status_provider or dict

    def register_check(self, name: str, check: HealthCheck) -> None:
        self._checks[name] = check

    def run_checks(self) -> list[CheckResult]:
        results = []
        for name, check in self._checks.items():
            try:
                results.append(check())
            except Exception as exc:
                logger.warning("Health check %s raised: %s", name, exc)
                results.append(CheckResult(name, FAIL, f"check raised {type(exc).__name__}: {exc}"))
        return results

    def report(self) -> tuple[bool, dict]:
        results = self.run_checks()
        healthy = all(r.passed for r in results)
        return healthy, {
            "healthy": healthy,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": [r.as_dict() for r in results],
        }

    def build_app(self) -> FastAPI:
        app = FastAPI(title="autodev", docs_url=None, redoc_url=None)

        @app.get("/health")
        async def health():
            healthy, body = self.report()
            return JSONResponse(body, status_code=200 if healthy else 503)

        @app.get("/status")
        async def status():
            return self._status_provider()

        return app


class HealthServer:
    """Run the monitor's app under uvicorn on a background thread.

    Off the main thread uvicorn leaves signal handling to the daemon.
    """

    def __init__(self, monitor: HealthMonitor, host: str, port: int):
        config = uvicorn.Config(monitor.build_app(), host=host, port=port, log_level="warning")
        self.server = uvicorn.Server(config)
        self.host = host
        self.port = port
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self.server.run, name="autodev-health", daemon=True)
        self._thread.start()
        logger.info("Health endpoint listening on http://%s:%d/health", self.host, self.port)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self.server.should_exit = True
        self._thread.join(timeout)
        self._thread = None


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------

def github_check(gateway) -> HealthCheck:
    def check() -> CheckResult:
        health = gateway.service_health()
        status = FAIL if health.status is HealthStatus.UNAVAILABLE else PASS
        message = f"{health.status.value}, circuit {health.circuit_state.value}"
        if health.rate_limit_remaining is not None:
            message += f", rate limit remaining {health.rate_limit_remaining}"
        return CheckResult("github", status, message)

    return check


def daemon_check(state) -> HealthCheck:
    def check() -> CheckResult:
        phase = state.phase
        ok = phase.value in ("initializing", "running")
        return CheckResult("daemon", PASS if ok else FAIL, f"phase {phase.value}")

    return check


def workspace_check(work_dir: str | Path) -> HealthCheck:
    def check() -> CheckResult:
        path = Path(work_dir)
        if not path.is_dir():
            return CheckResult("workspace", FAIL, f"{path} does not exist")
        if not os.access(path, os.W_OK):
            return CheckResult("workspace", FAIL, f"{path} is not writable")
        return CheckResult("workspace", PASS, str(path))

    return check
