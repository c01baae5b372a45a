"""Tests for the daemon lifecycle and the five-step cycle."""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from config import config_from_dict
from daemon import (
    IN_PROGRESS_LABEL,
    NEEDS_REVIEW_LABEL,
    PR_PENDING_LABEL,
    CycleContext,
    CycleResult,
    Daemon,
    DaemonPhase,
    agent_env_for,
    build_summary_table,
)
from discovery import Task
from errors import ConfigError, UpstreamError
from gateway import HealthStatus, HostingGateway
from github_client import PullRequest, TrackedIssue
from merge_resolver import MergeResolver
from worker import WorkerResult


class FakeGitHub:
    """In-memory stand-in for GhClient; ``broken`` makes every call fail with a 502."""

    def __init__(self, issues=()):
        self.issues = {i.id: i for i in issues}
        self.closed: set[int] = set()
        self.comments: dict[int, list[str]] = defaultdict(list)
        self.pulls: dict[int, PullRequest] = {}
        self.merged: list[int] = []
        self.unmergeable: set[str] = set()
        self.broken = False
        self.calls: list[str] = []
        self.rate_limit_remaining = 5000
        self._next_number = 100

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.broken:
            raise UpstreamError(f"{name} failed (HTTP 502)", endpoint=name, status=502)

    def _number(self) -> int:
        self._next_number += 1
        return self._next_number

    def list_issues(self, label=None, state="open"):
        self._enter("list_issues")
        return [
            i for i in self.issues.values()
            if i.id not in self.closed and (label is None or label in i.labels)
        ]

    def create_issue(self, title, body, labels):
        self._enter("create_issue")
        issue = TrackedIssue(id=self._number(), title=title, body=body, labels=frozenset(labels))
        self.issues[issue.id] = issue
        return issue

    def add_labels(self, number, labels):
        self._enter("add_labels")
        issue = self.issues[number]
        self.issues[number] = replace(issue, labels=issue.labels | set(labels))

    def remove_label(self, number, label):
        self._enter("remove_label")
        issue = self.issues[number]
        self.issues[number] = replace(issue, labels=issue.labels - {label})

    def add_comment(self, number, text):
        self._enter("add_comment")
        self.comments[number].append(text)

    def close_issue(self, number):
        self._enter("close_issue")
        self.closed.add(number)

    def create_pull(self, title, body, head, base):
        self._enter("create_pull")
        pr = PullRequest(self._number(), "https://example/pr", head, base, title, mergeable=True)
        self.pulls[pr.number] = pr
        return pr

    def find_pull_for_branch(self, branch):
        self._enter("find_pull_for_branch")
        return next((p for p in self.pulls.values() if p.head == branch), None)

    def get_pull(self, number):
        self._enter("get_pull")
        return self.pulls[number]

    def merge_pull(self, number, method, commit_title=None):
        self._enter("merge_pull")
        if self.pulls[number].head in self.unmergeable:
            raise UpstreamError("Pull Request is not mergeable", status=405)
        self.merged.append(number)
        return f"sha-{number}"

    def update_pull_branch(self, number):
        self._enter("update_pull_branch")

    def delete_branch(self, branch):
        self._enter("delete_branch")

    def get_authenticated_user(self):
        self._enter("get_authenticated_user")
        return "autodev-bot"

    def get_repo(self):
        self._enter("get_repo")
        return {"full_name": "acme/widgets"}


class FakePool:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.batches: list[list] = []

    async def execute_tasks(self, tasks, ctx=None):
        self.batches.append(list(tasks))
        return [
            WorkerResult(
                issue=t.issue,
                branch_name=t.branch_name,
                success=t.issue.id not in self.failing,
                error="timeout" if t.issue.id in self.failing else None,
                files_changed=["src/app.py"],
            )
            for t in tasks
        ]


def make_issue(issue_id: int, title: str, labels=("autodev",)) -> TrackedIssue:
    return TrackedIssue(id=issue_id, title=title, labels=frozenset(labels))


def make_config(tmp_path: Path, **sections):
    data = {
        "repo": {"owner": "acme", "name": "widgets"},
        "execution": {"parallel_workers": 4, "work_dir": str(tmp_path / "ws"), "log_dir": str(tmp_path / "logs")},
        "discovery": {"max_open_issues": 10, "tasks_per_cycle": 5},
        "merge": {"auto_merge": True, "max_retries": 2},
        "credentials": {"hosting_token": "ghp_test", "agent_auth": "sk-ant-api-test"},
        "daemon": {"pause_between_cycles": False, "status_file": str(tmp_path / "status.json")},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return config_from_dict(data, env={})


def make_daemon(
    tmp_path: Path,
    client: FakeGitHub,
    tasks=(),
    pool: FakePool | None = None,
    threshold: int = 5,
    dry_run: bool = False,
    single_cycle: bool = True,
    **sections,
) -> tuple[Daemon, MagicMock, FakePool]:
    config = make_config(tmp_path, **sections)
    gateway = HostingGateway(client, failure_threshold=threshold, reset_timeout=3600)
    discoverer = MagicMock()
    discoverer.discover_tasks.return_value = list(tasks)
    pool = pool or FakePool()
    daemon = Daemon(
        config,
        dry_run=dry_run,
        single_cycle=single_cycle,
        gateway=gateway,
        discoverer=discoverer,
        pool_factory=lambda: pool,
        resolver_factory=lambda: MergeResolver(
            gateway, max_retries=config.merge.max_retries, sleep=lambda _: None
        ),
        analysis_path=lambda: tmp_path,
    )
    return daemon, discoverer, pool


def run_single_cycle(daemon: Daemon) -> CycleResult:
    asyncio.run(daemon.start())
    return daemon.state.last_result


# ---------------------------------------------------------------------------
# Full cycle
# ---------------------------------------------------------------------------


def test_full_cycle_creates_implements_and_merges(tmp_path: Path) -> None:
    client = FakeGitHub([
        make_issue(1, "Add retry logic to the http client"),
        make_issue(2, "Fix flaky network test"),
    ])
    tasks = [
        Task("Add retry logic to the http client", "Add retry logic to the http client"),
        Task("Document configuration options", "Explain every config key in the README"),
        Task("Speed up cold start", "Lazy import heavy modules"),
    ]
    daemon, discoverer, pool = make_daemon(tmp_path, client, tasks)
    result = run_single_cycle(daemon)

    assert result.tasks_discovered == 3
    assert client.calls.count("create_issue") == 2
    assert [t.issue.id for t in pool.batches[0]] == [1, 2, 101, 102]
    assert result.tasks_completed == 4
    assert result.tasks_failed == 0
    assert result.prs_merged == 4
    assert result.errors == ()
    assert not result.degraded
    assert client.closed == {1, 2, 101, 102}
    assert any(c.startswith("✅ Automatically implemented and merged via PR #") for c in client.comments[1])
    assert IN_PROGRESS_LABEL in client.issues[1].labels

    assert daemon.state.phase is DaemonPhase.STOPPED
    status = json.loads((tmp_path / "status.json").read_text())
    assert status["phase"] == "stopped"
    assert status["cycle_count"] == 1
    assert status["last_result"]["prs_merged"] == 4


def test_discovery_bounded_by_available_slots(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(n, f"Existing issue number {n}") for n in range(1, 9)])
    daemon, discoverer, _ = make_daemon(tmp_path, client, discovery={"max_open_issues": 10, "tasks_per_cycle": 5})
    run_single_cycle(daemon)
    args = discoverer.discover_tasks.call_args.args
    assert args[2] == 2
    assert len(args[3]) == 8


def test_no_available_slots_skips_discovery(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "First"), make_issue(2, "Second")])
    daemon, discoverer, _ = make_daemon(tmp_path, client, discovery={"max_open_issues": 2})
    result = run_single_cycle(daemon)
    discoverer.discover_tasks.assert_not_called()
    assert result.tasks_discovered == 0
    assert result.errors == ()
    assert "create_issue" not in client.calls


def test_queue_skips_in_progress_and_truncates(tmp_path: Path) -> None:
    client = FakeGitHub([
        make_issue(1, "One", labels=("autodev", IN_PROGRESS_LABEL)),
        make_issue(2, "Two"),
        make_issue(3, "Three"),
        make_issue(4, "Four"),
    ])
    daemon, _, pool = make_daemon(
        tmp_path, client, execution={"parallel_workers": 2}, discovery={"max_open_issues": 4}
    )
    run_single_cycle(daemon)
    assert [t.issue.id for t in pool.batches[0]] == [2, 3]
    assert [t.branch_name for t in pool.batches[0]] == ["auto/2-two", "auto/3-three"]


def test_discovery_error_recorded_and_cycle_continues(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    daemon, discoverer, pool = make_daemon(tmp_path, client)
    discoverer.discover_tasks.side_effect = RuntimeError("model overloaded")
    result = run_single_cycle(daemon)
    assert any("model overloaded" in e for e in result.errors)
    assert [t.issue.id for t in pool.batches[0]] == [1]
    assert result.prs_merged == 1


# ---------------------------------------------------------------------------
# Worker and merge failures
# ---------------------------------------------------------------------------


def test_worker_failure_flags_issue_for_review(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One"), make_issue(2, "Two")])
    daemon, _, _ = make_daemon(tmp_path, client, pool=FakePool(failing={2}), discovery={"max_open_issues": 2})
    result = run_single_cycle(daemon)

    assert result.tasks_completed == 1
    assert result.tasks_failed == 1
    assert result.prs_merged == 1
    labels = client.issues[2].labels
    assert IN_PROGRESS_LABEL not in labels
    assert NEEDS_REVIEW_LABEL in labels
    assert client.comments[2][0].startswith("⚠️ Autonomous implementation failed")
    assert 2 not in client.closed
    assert len(client.pulls) == 1
    assert any("issue #2: timeout" in e for e in result.errors)


def test_failed_merge_does_not_block_later_merges(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One"), make_issue(2, "Two"), make_issue(3, "Three")])
    client.unmergeable.add("auto/2-two")
    daemon, _, _ = make_daemon(tmp_path, client, discovery={"max_open_issues": 3})
    result = run_single_cycle(daemon)

    assert result.prs_merged == 2
    assert client.closed == {1, 3}
    assert NEEDS_REVIEW_LABEL in client.issues[2].labels
    assert len(result.errors) == 1
    assert "auto/2-two" in result.errors[0]
    assert not result.degraded


def test_auto_merge_disabled_leaves_prs_open(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    daemon, _, _ = make_daemon(tmp_path, client, merge={"auto_merge": False}, discovery={"max_open_issues": 1})
    result = run_single_cycle(daemon)
    assert result.prs_merged == 0
    assert len(client.pulls) == 1
    assert "merge_pull" not in client.calls
    assert client.closed == set()


def test_uncaught_exception_becomes_failed_degraded_result(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    daemon, _, _ = make_daemon(tmp_path, client, discovery={"max_open_issues": 1})

    def broken_pool():
        raise RuntimeError("pool exploded")

    daemon._pool_factory = broken_pool
    result = run_single_cycle(daemon)
    assert result.degraded
    assert not result.success
    assert result.errors == ("Unexpected RuntimeError: pool exploded",)
    assert daemon.state.phase is DaemonPhase.STOPPED


# ---------------------------------------------------------------------------
# Degraded hosting API
# ---------------------------------------------------------------------------


def test_gateway_unavailable_mid_cycle_degrades_without_raising(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    tasks = [Task("Add caching layer", "Cache lookups"), Task("Write user guide", "Docs")]
    daemon, discoverer, _ = make_daemon(tmp_path, client, threshold=1)

    def discover_and_break(*args, **kwargs):
        client.broken = True
        return tasks

    discoverer.discover_tasks.side_effect = discover_and_break
    result = run_single_cycle(daemon)

    assert result.degraded
    assert result.tasks_discovered == 2
    # the first failure opens the circuit, the second create is short-circuited
    assert client.calls.count("create_issue") == 1
    assert result.tasks_completed == 1
    assert result.prs_merged == 0
    assert result.service_health.status is HealthStatus.UNAVAILABLE
    assert any("could not open PR for #1" in e for e in result.errors)
    assert daemon.state.phase is DaemonPhase.STOPPED


def test_issue_creation_skipped_while_issues_circuit_open(tmp_path: Path) -> None:
    client = FakeGitHub()
    client.broken = True
    tasks = [Task("Add caching layer", "Cache lookups")]
    daemon, discoverer, pool = make_daemon(tmp_path, client, tasks, threshold=1)
    result = asyncio.run(daemon.run_cycle(CycleContext.new(1)))

    assert result.degraded
    discoverer.discover_tasks.assert_called_once()
    assert "create_issue" not in client.calls
    assert any("issues API unavailable" in e for e in result.errors)
    assert pool.batches == []


def test_degraded_fetch_reuses_cached_issues(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One"), make_issue(2, "Two")])
    daemon, _, _ = make_daemon(tmp_path, client, dry_run=True)
    daemon.initialize()

    first = asyncio.run(daemon.run_cycle(CycleContext.new(1)))
    assert not first.degraded
    assert [i.id for i in daemon.state.cached_issues] == [1, 2]

    client.broken = True
    second = asyncio.run(daemon.run_cycle(CycleContext.new(2)))
    assert second.degraded
    assert any("reusing 2 cached" in e for e in second.errors)
    assert [i.id for i in daemon.state.cached_issues] == [1, 2]


def test_pr_creation_degraded_labels_pr_pending(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    daemon, _, _ = make_daemon(tmp_path, client, discovery={"max_open_issues": 1})

    def failing_create_pull(*args):
        client.calls.append("create_pull")
        raise UpstreamError("create_pull failed (HTTP 502)", status=502)

    client.create_pull = failing_create_pull
    result = run_single_cycle(daemon)

    assert result.degraded
    assert PR_PENDING_LABEL in client.issues[1].labels
    assert result.prs_merged == 0
    assert 1 not in client.closed
    # the successful branch still gets its merge attempt
    assert client.calls.count("find_pull_for_branch") == 1
    assert any("No PR found" in e for e in result.errors)
    assert NEEDS_REVIEW_LABEL in client.issues[1].labels


def test_pr_created_despite_error_is_still_merged(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    daemon, _, _ = make_daemon(tmp_path, client, discovery={"max_open_issues": 1})
    create_pull = client.create_pull

    def create_then_time_out(*args):
        create_pull(*args)
        raise UpstreamError("create_pull timed out")

    client.create_pull = create_then_time_out
    result = run_single_cycle(daemon)

    assert result.degraded
    assert PR_PENDING_LABEL in client.issues[1].labels
    assert result.prs_merged == 1
    assert client.closed == {1}


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_dry_run_skips_discovery_and_workers(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    daemon, discoverer, pool = make_daemon(tmp_path, client, dry_run=True)
    result = run_single_cycle(daemon)
    discoverer.discover_tasks.assert_not_called()
    assert pool.batches == []
    assert result.tasks_discovered == 0
    assert "add_labels" not in client.calls


def test_missing_token_is_fatal(tmp_path: Path) -> None:
    client = FakeGitHub()
    daemon, _, _ = make_daemon(tmp_path, client)
    daemon.config.credentials.hosting_token = None
    with pytest.raises(ConfigError, match="GitHub token missing"):
        asyncio.run(daemon.start())
    assert daemon.state.phase is DaemonPhase.STOPPED
    assert daemon.state.cycle_count == 0


def test_failed_auth_is_fatal(tmp_path: Path) -> None:
    client = FakeGitHub()
    client.broken = True
    daemon, _, _ = make_daemon(tmp_path, client)
    with pytest.raises(ConfigError, match="authentication failed"):
        asyncio.run(daemon.start())
    assert daemon.state.phase is DaemonPhase.STOPPED


def test_stop_wakes_sleep_between_cycles(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    daemon, _, _ = make_daemon(
        tmp_path,
        client,
        dry_run=True,
        single_cycle=False,
        daemon={"pause_between_cycles": True, "loop_interval_ms": 600_000},
    )

    async def scenario() -> None:
        task = asyncio.create_task(daemon.start())
        while daemon.state.cycle_count < 1:
            await asyncio.sleep(0.01)
        daemon.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())
    assert daemon.state.cycle_count == 1
    assert daemon.state.phase is DaemonPhase.STOPPED


def test_stop_before_start_runs_no_cycles(tmp_path: Path) -> None:
    client = FakeGitHub([make_issue(1, "One")])
    daemon, _, _ = make_daemon(tmp_path, client, dry_run=True, single_cycle=False)
    daemon.stop()
    asyncio.run(daemon.start())
    assert daemon.state.cycle_count == 0
    assert daemon.state.phase is DaemonPhase.STOPPED


def test_sleep_requires_running_daemon(tmp_path: Path) -> None:
    daemon, _, _ = make_daemon(tmp_path, FakeGitHub())
    with pytest.raises(RuntimeError, match="not running"):
        asyncio.run(daemon._sleep(0))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_cycle_context_logger_prefixes_cycle_id(caplog) -> None:
    ctx = CycleContext.new(3)
    assert ctx.cycle_id.startswith("cycle-3-")
    with caplog.at_level(logging.INFO, logger="daemon"):
        ctx.logger("daemon").info("hello")
    assert f"[{ctx.cycle_id}] hello" in caplog.text


def test_agent_env_for_tokens() -> None:
    assert agent_env_for("sk-ant-oat01-abc") == {"CLAUDE_CODE_OAUTH_TOKEN": "sk-ant-oat01-abc"}
    assert agent_env_for("sk-ant-api03-abc") == {"ANTHROPIC_API_KEY": "sk-ant-api03-abc"}
    assert agent_env_for(None) == {}


def test_summary_table_lists_errors() -> None:
    result = CycleResult(cycle_id="cycle-1-abc", tasks_failed=1, errors=("Worker error: boom",))
    table = build_summary_table(result)
    assert table.row_count == 6
    assert "Worker error: boom" in table.caption
