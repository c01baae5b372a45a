"""Health-tracked gateway in front of the GitHub client.

Each hosting operation comes in two flavours:

* a strict method that raises :class:`errors.UpstreamError`, and
* a ``*_with_fallback`` method that never raises and instead returns a
  :class:`GatewayResult` holding the caller's fallback value with
  ``degraded=True``.

Calls are routed through one :class:`CircuitBreaker` per endpoint group
(``issues``, ``pulls``, ``repo``).  While a breaker is open the client is not
touched at all.
"""

import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TypeVar

sys.path.insert(0, str(Path(__file__).resolve().parent))

from circuit_breaker import BreakerSnapshot, CircuitBreaker, CircuitState
from errors import UpstreamError
from github_client import GhClient, PullRequest, TrackedIssue

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENDPOINT_GROUPS = ("issues", "pulls", "repo")

# The API answered but rejected the request; the service itself is fine.
_REJECTION_STATUSES = frozenset({404, 405, 409, 422})


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    value: T
    degraded: bool = False
    error: str | None = None


@dataclass(frozen=True)
class ServiceHealth:
    status: HealthStatus
    circuit_state: CircuitState
    consecutive_failures: int
    rate_limit_remaining: int | None = None
    breakers: tuple[BreakerSnapshot, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict:
        return {
            "status": self.status.value,
            "circuit_state": self.circuit_state.value,
            "consecutive_failures": self.consecutive_failures,
            "rate_limit_remaining": self.rate_limit_remaining,
            "breakers": [b.as_dict() for b in self.breakers],
        }


_STATE_RANK = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class HostingGateway:
    def __init__(
        self,
        client: GhClient,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.breakers = {
            group: CircuitBreaker(group, failure_threshold, reset_timeout, clock=clock)
            for group in ENDPOINT_GROUPS
        }
        self.rate_limit_remaining: int | None = None

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    def _call(self, group: str, name: str, fn: Callable[..., T], *args: Any) -> T:
        breaker = self.breakers[group]
        if not breaker.allow_request():
            raise UpstreamError(
                f"{name} skipped: {group} circuit is open",
                endpoint=name,
                circuit_open=True,
            )
        try:
            value = fn(*args)
        except UpstreamError as exc:
            if exc.status in _REJECTION_STATUSES:
                breaker.record_success()
            else:
                breaker.record_failure()
            raise
        except Exception as exc:
            breaker.record_failure()
            raise UpstreamError(f"{name} failed: {exc}", endpoint=name) from exc
        breaker.record_success()
        remaining = getattr(self.client, "rate_limit_remaining", None)
        if isinstance(remaining, int):
            self.rate_limit_remaining = remaining
        return value

    def _with_fallback(
        self, group: str, name: str, fallback: T, fn: Callable[..., T], *args: Any
    ) -> GatewayResult[T]:
        try:
            return GatewayResult(self._call(group, name, fn, *args))
        except UpstreamError as exc:
            logger.warning("%s degraded, using fallback: %s", name, exc)
            return GatewayResult(fallback, degraded=True, error=str(exc))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def is_available(self, group: str) -> bool:
        return not self.breakers[group].is_rejecting()

    def service_health(self) -> ServiceHealth:
        snapshots = tuple(self.breakers[g].snapshot() for g in ENDPOINT_GROUPS)
        worst = max((s.state for s in snapshots), key=_STATE_RANK.__getitem__)
        failures = max(s.consecutive_failures for s in snapshots)
        if worst is CircuitState.OPEN:
            status = HealthStatus.UNAVAILABLE
        elif (
            worst is CircuitState.HALF_OPEN
            or failures > 0
            or self.rate_limit_remaining == 0
        ):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return ServiceHealth(
            status=status,
            circuit_state=worst,
            consecutive_failures=failures,
            rate_limit_remaining=self.rate_limit_remaining,
            breakers=snapshots,
        )

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def list_open_issues(self, label: str) -> list[TrackedIssue]:
        return self._call("issues", "list_open_issues", self.client.list_issues, label)

    def list_open_issues_with_fallback(
        self, label: str, fallback: list[TrackedIssue]
    ) -> GatewayResult[list[TrackedIssue]]:
        return self._with_fallback(
            "issues", "list_open_issues", fallback, self.client.list_issues, label
        )

    def create_issue(self, title: str, body: str, labels: list[str]) -> TrackedIssue:
        return self._call("issues", "create_issue", self.client.create_issue, title, body, labels)

    def create_issue_with_fallback(
        self, title: str, body: str, labels: list[str]
    ) -> GatewayResult[TrackedIssue | None]:
        return self._with_fallback(
            "issues", "create_issue", None, self.client.create_issue, title, body, labels
        )

    def add_labels(self, issue_id: int, labels: list[str]) -> None:
        self._call("issues", "add_labels", self.client.add_labels, issue_id, labels)

    def add_labels_with_fallback(self, issue_id: int, labels: list[str]) -> GatewayResult[None]:
        return self._with_fallback(
            "issues", "add_labels", None, self.client.add_labels, issue_id, labels
        )

    def remove_label(self, issue_id: int, label: str) -> None:
        self._call("issues", "remove_label", self.client.remove_label, issue_id, label)

    def remove_label_with_fallback(self, issue_id: int, label: str) -> GatewayResult[None]:
        return self._with_fallback(
            "issues", "remove_label", None, self.client.remove_label, issue_id, label
        )

    def add_comment(self, issue_id: int, text: str) -> None:
        self._call("issues", "add_comment", self.client.add_comment, issue_id, text)

    def add_comment_with_fallback(self, issue_id: int, text: str) -> GatewayResult[None]:
        return self._with_fallback(
            "issues", "add_comment", None, self.client.add_comment, issue_id, text
        )

    def _comment_and_close(self, issue_id: int, text: str) -> None:
        if text:
            self.client.add_comment(issue_id, text)
        self.client.close_issue(issue_id)

    def close_issue(self, issue_id: int, text: str = "") -> None:
        self._call("issues", "close_issue", self._comment_and_close, issue_id, text)

    def close_issue_with_fallback(self, issue_id: int, text: str = "") -> GatewayResult[None]:
        return self._with_fallback(
            "issues", "close_issue", None, self._comment_and_close, issue_id, text
        )

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    def create_pr(self, title: str, body: str, head: str, base: str) -> PullRequest:
        return self._call("pulls", "create_pr", self.client.create_pull, title, body, head, base)

    def create_pr_with_fallback(
        self, title: str, body: str, head: str, base: str
    ) -> GatewayResult[PullRequest | None]:
        return self._with_fallback(
            "pulls", "create_pr", None, self.client.create_pull, title, body, head, base
        )

    def find_pull_for_branch(self, branch: str) -> PullRequest | None:
        return self._call("pulls", "find_pull_for_branch", self.client.find_pull_for_branch, branch)

    def get_pull(self, number: int) -> PullRequest:
        return self._call("pulls", "get_pull", self.client.get_pull, number)

    def merge_pull(self, number: int, method: str, commit_title: str | None = None) -> str:
        return self._call("pulls", "merge_pull", self.client.merge_pull, number, method, commit_title)

    def update_pull_branch(self, number: int) -> None:
        self._call("pulls", "update_pull_branch", self.client.update_pull_branch, number)

    def delete_branch_with_fallback(self, branch: str) -> GatewayResult[None]:
        return self._with_fallback("repo", "delete_branch", None, self.client.delete_branch, branch)

    # ------------------------------------------------------------------
    # Repository / auth
    # ------------------------------------------------------------------

    def verify_auth(self) -> str:
        """Return the authenticated login after confirming repo access."""
        login = self._call("repo", "verify_auth", self.client.get_authenticated_user)
        self._call("repo", "get_repo", self.client.get_repo)
        return login
