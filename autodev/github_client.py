"""Thin GitHub REST client built on ``gh api``.

Every request runs ``gh api --include`` so the response headers (status line,
``X-RateLimit-Remaining``) come back together with the JSON body.  Failures are
raised as :class:`errors.UpstreamError` carrying the HTTP status when known.
"""

import json
import logging
import os
import re
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote

sys.path.insert(0, str(Path(__file__).resolve().parent))

from errors import UpstreamError

logger = logging.getLogger(__name__)

_STATUS_LINE = re.compile(r"^HTTP/[\d.]+\s+(\d{3})")


@dataclass(frozen=True)
class TrackedIssue:
    id: int
    title: str
    body: str = ""
    labels: frozenset[str] = field(default_factory=frozenset)
    url: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "TrackedIssue":
        labels = frozenset(
            (lbl["name"] if isinstance(lbl, dict) else str(lbl))
            for lbl in data.get("labels") or []
        )
        return cls(
            id=int(data["number"]),
            title=data.get("title") or "",
            body=data.get("body") or "",
            labels=labels,
            url=data.get("html_url") or "",
        )


@dataclass(frozen=True)
class PullRequest:
    number: int
    url: str
    head: str
    base: str
    title: str = ""
    state: str = "open"
    mergeable: bool | None = None
    mergeable_state: str = "unknown"
    merged: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "PullRequest":
        return cls(
            number=int(data["number"]),
            url=data.get("html_url") or "",
            head=(data.get("head") or {}).get("ref", ""),
            base=(data.get("base") or {}).get("ref", ""),
            title=data.get("title") or "",
            state=data.get("state") or "open",
            mergeable=data.get("mergeable"),
            mergeable_state=data.get("mergeable_state") or "unknown",
            merged=bool(data.get("merged")),
        )


@dataclass
class GhResponse:
    status: int
    headers: dict[str, str]
    data: object

    @property
    def rate_limit_remaining(self) -> int | None:
        raw = self.headers.get("x-ratelimit-remaining")
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            return None


def parse_include_output(output: str) -> GhResponse:
    """Split ``gh api --include`` output into status, headers and JSON body."""
    text = output.replace("\r\n", "\n")
    head, _, body = text.partition("\n\n")
    lines = head.splitlines()
    status = 0
    if lines:
        m = _STATUS_LINE.match(lines[0])
        if m:
            status = int(m.group(1))
    headers: dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    body = body.strip()
    data: object = None
    if body:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            data = body
    return GhResponse(status=status, headers=headers, data=data)


class TransientUpstreamError(UpstreamError):
    """A failure worth retrying: 5xx, rate limiting, timeouts or network errors."""

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


def _is_rate_limited(response: GhResponse, message: str) -> bool:
    if response.status == 429:
        return True
    return response.status == 403 and (
        response.rate_limit_remaining == 0 or "rate limit" in message.lower()
    )


def _retry_after(response: GhResponse) -> float | None:
    """Seconds the server asked us to wait, from Retry-After or the rate-limit reset."""
    raw = response.headers.get("retry-after")
    if raw is not None:
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
    reset = response.headers.get("x-ratelimit-reset")
    if reset is not None and response.rate_limit_remaining == 0:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            pass
    return None


class GhClient:
    # delays before the 2nd, 3rd and 4th attempt of a transient failure
    RETRY_DELAYS = (1, 4, 10)
    MAX_RETRY_WAIT = 60  # seconds

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str | None = None,
        timeout: int = 60,
        retry_delays: tuple[float, ...] = RETRY_DELAYS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.owner = owner
        self.repo = repo
        self.token = token
        self.timeout = timeout
        self.retry_delays = retry_delays
        self._sleep = sleep
        self._lock = threading.Lock()
        self.rate_limit_remaining: int | None = None

    @property
    def repo_path(self) -> str:
        return f"repos/{self.owner}/{self.repo}"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def request(self, method: str, path: str, body: dict | None = None) -> GhResponse:
        """Run one API call, retrying transient failures with backoff."""
        endpoint = f"{method} {path}"
        attempts = len(self.retry_delays) + 1
        for attempt, delay in enumerate(self.retry_delays, start=1):
            try:
                return self._request_once(method, path, body, endpoint)
            except TransientUpstreamError as exc:
                if exc.retry_after is not None:
                    delay = min(max(delay, exc.retry_after), self.MAX_RETRY_WAIT)
                logger.warning(
                    "gh api %s failed (attempt %d/%d), retrying in %ss: %s",
                    endpoint,
                    attempt,
                    attempts,
                    delay,
                    exc,
                )
                self._sleep(delay)
        return self._request_once(method, path, body, endpoint)

    def _request_once(self, method: str, path: str, body: dict | None, endpoint: str) -> GhResponse:
        cmd = ["gh", "api", "-X", method, path, "--include"]
        if body is not None:
            cmd += ["--input", "-"]
        env = dict(os.environ)
        if self.token:
            env["GH_TOKEN"] = self.token
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
                input=json.dumps(body) if body is not None else None,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransientUpstreamError(
                f"gh api {endpoint} timed out after {self.timeout}s", endpoint=endpoint
            ) from exc
        except FileNotFoundError as exc:
            raise UpstreamError("gh CLI not found on PATH", endpoint=endpoint) from exc

        response = parse_include_output(proc.stdout)
        if response.rate_limit_remaining is not None:
            with self._lock:
                self.rate_limit_remaining = response.rate_limit_remaining

        if proc.returncode != 0 or response.status >= 400:
            message = ""
            if isinstance(response.data, dict):
                message = str(response.data.get("message", ""))
            message = message or proc.stderr.strip()[:300]
            text = f"gh api {endpoint} failed (HTTP {response.status or '?'}): {message}"
            status = response.status or None
            # no status line means the request never got an answer
            if status is None or status >= 500 or _is_rate_limited(response, message):
                raise TransientUpstreamError(
                    text, endpoint=endpoint, status=status, retry_after=_retry_after(response)
                )
            raise UpstreamError(text, endpoint=endpoint, status=status)
        logger.debug("gh api %s -> %d", endpoint, response.status)
        return response

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def list_issues(self, label: str | None = None, state: str = "open") -> list[TrackedIssue]:
        query = f"state={state}&per_page=100"
        if label:
            query += f"&labels={quote(label)}"
        response = self.request("GET", f"{self.repo_path}/issues?{query}")
        # the issues endpoint also returns pull requests
        return [
            TrackedIssue.from_api(item)
            for item in response.data or []
            if "pull_request" not in item
        ]

    def create_issue(self, title: str, body: str, labels: list[str]) -> TrackedIssue:
        response = self.request(
            "POST",
            f"{self.repo_path}/issues",
            {"title": title, "body": body, "labels": labels},
        )
        return TrackedIssue.from_api(response.data)

    def add_labels(self, number: int, labels: list[str]) -> None:
        self.request("POST", f"{self.repo_path}/issues/{number}/labels", {"labels": labels})

    def remove_label(self, number: int, label: str) -> None:
        try:
            self.request(
                "DELETE", f"{self.repo_path}/issues/{number}/labels/{quote(label, safe='')}"
            )
        except UpstreamError as exc:
            # label already absent
            if exc.status != 404:
                raise

    def add_comment(self, number: int, text: str) -> None:
        self.request("POST", f"{self.repo_path}/issues/{number}/comments", {"body": text})

    def close_issue(self, number: int) -> None:
        self.request("PATCH", f"{self.repo_path}/issues/{number}", {"state": "closed"})

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    def create_pull(self, title: str, body: str, head: str, base: str) -> PullRequest:
        try:
            response = self.request(
                "POST",
                f"{self.repo_path}/pulls",
                {"title": title, "body": body, "head": head, "base": base},
            )
        except UpstreamError as exc:
            # 422 when a PR for this head already exists; reuse it
            if exc.status == 422:
                existing = self.find_pull_for_branch(head)
                if existing is not None:
                    logger.info("PR for %s already exists: #%d", head, existing.number)
                    return existing
            raise
        return PullRequest.from_api(response.data)

    def find_pull_for_branch(self, branch: str) -> PullRequest | None:
        head = quote(f"{self.owner}:{branch}", safe="")
        response = self.request("GET", f"{self.repo_path}/pulls?state=open&head={head}")
        pulls = response.data or []
        return PullRequest.from_api(pulls[0]) if pulls else None

    def get_pull(self, number: int) -> PullRequest:
        response = self.request("GET", f"{self.repo_path}/pulls/{number}")
        return PullRequest.from_api(response.data)

    def merge_pull(self, number: int, method: str, commit_title: str | None = None) -> str:
        body: dict = {"merge_method": method}
        if commit_title:
            body["commit_title"] = commit_title
        response = self.request("PUT", f"{self.repo_path}/pulls/{number}/merge", body)
        data = response.data if isinstance(response.data, dict) else {}
        return data.get("sha", "")

    def update_pull_branch(self, number: int) -> None:
        self.request("PUT", f"{self.repo_path}/pulls/{number}/update-branch", {})

    def delete_branch(self, branch: str) -> None:
        try:
            self.request("DELETE", f"{self.repo_path}/git/refs/heads/{quote(branch, safe='/')}")
        except UpstreamError as exc:
            # already deleted, e.g. by the repository's auto-delete setting
            if exc.status not in (404, 422):
                raise

    # ------------------------------------------------------------------
    # Repository / auth
    # ------------------------------------------------------------------

    def get_authenticated_user(self) -> str:
        response = self.request("GET", "user")
        data = response.data if isinstance(response.data, dict) else {}
        return data.get("login", "")

    def get_repo(self) -> dict:
        response = self.request("GET", self.repo_path)
        return response.data if isinstance(response.data, dict) else {}
