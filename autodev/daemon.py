"""Daemon: discover, implement and merge repository improvements in a loop.

Each cycle runs five steps, every one of them tolerant of partial failure:

1. fetch the open tracked issues (falling back to the last good list),
2. discover new tasks, deduplicate them and open one issue per survivor,
3. run the worker pool over the issues that are not already in progress,
4. open PRs for successful workers and flag failed ones for review,
5. merge the PRs one by one and close their issues.
"""

import argparse
import asyncio
import functools
import json
import logging
import signal
import sys
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

import anthropic
from rich.console import Console
from rich.table import Table

sys.path.insert(0, str(Path(__file__).resolve().parent))

from config import DaemonConfig, load_config
from conflict_resolver import ConflictResolver
from deduplicator import TaskDeduplicator
from discovery import TaskDiscoverer, clone_for_analysis
from errors import AutodevError, ConfigError, MergeError, UpstreamError, WorkerError, describe_error
from gateway import HostingGateway, ServiceHealth
from github_client import GhClient, TrackedIssue
from health import HealthMonitor, HealthServer, daemon_check, github_check, workspace_check
from merge_resolver import MergeCandidate, MergeResolver
from worker import WorkerOptions, WorkerResult, WorkerTask
from worker_pool import WorkerPool

log = logging.getLogger("daemon")
console = Console()

IN_PROGRESS_LABEL = "in-progress"
NEEDS_REVIEW_LABEL = "needs-review"
PR_PENDING_LABEL = "pr-pending"


# ---------------------------------------------------------------------------
# Cycle context and results
# ---------------------------------------------------------------------------

class _CycleLogAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['cycle_id']}] {msg}", kwargs


@dataclass(frozen=True)
class CycleContext:
    """Correlation data passed explicitly to every component of one cycle."""

    cycle_id: str
    number: int
    started_at: datetime

    @classmethod
    def new(cls, number: int) -> "CycleContext":
        return cls(
            cycle_id=f"cycle-{number}-{uuid.uuid4().hex[:8]}",
            number=number,
            started_at=datetime.now(timezone.utc),
        )

    def logger(self, name: str) -> logging.LoggerAdapter:
        return _CycleLogAdapter(logging.getLogger(name), {"cycle_id": self.cycle_id})


@dataclass(frozen=True)
class CycleResult:
    cycle_id: str
    tasks_discovered: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    prs_merged: int = 0
    duration: float = 0.0
    errors: tuple[str, ...] = ()
    degraded: bool = False
    service_health: ServiceHealth | None = None

    @property
    def success(self) -> bool:
        return not self.errors and self.tasks_failed == 0

    def as_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "tasks_discovered": self.tasks_discovered,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "prs_merged": self.prs_merged,
            "duration": round(self.duration, 2),
            "errors": list(self.errors),
            "degraded": self.degraded,
            "service_health": self.service_health.as_dict() if self.service_health else None,
        }


@dataclass
class CycleProgress:
    """Mutable accumulator turned into a frozen :class:`CycleResult`."""

    tasks_discovered: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    prs_merged: int = 0
    errors: list[str] = field(default_factory=list)
    degraded: bool = False

    def record_error(self, error: BaseException | str) -> None:
        self.errors.append(error if isinstance(error, str) else describe_error(error))

    def mark_degraded(self, reason: str) -> None:
        self.degraded = True
        self.record_error(UpstreamError(reason))

    def freeze(self, ctx: CycleContext, duration: float, health: ServiceHealth | None) -> CycleResult:
        return CycleResult(
            cycle_id=ctx.cycle_id,
            tasks_discovered=self.tasks_discovered,
            tasks_completed=self.tasks_completed,
            tasks_failed=self.tasks_failed,
            prs_merged=self.prs_merged,
            duration=duration,
            errors=tuple(self.errors),
            degraded=self.degraded,
            service_health=health,
        )


# ---------------------------------------------------------------------------
# Daemon state
# ---------------------------------------------------------------------------

class DaemonPhase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class DaemonState:
    phase: DaemonPhase = DaemonPhase.IDLE
    cycle_count: int = 0
    cached_issues: list[TrackedIssue] = field(default_factory=list)
    last_result: CycleResult | None = None
    last_health: ServiceHealth | None = None
    started_at: datetime | None = None

    def record(self, result: CycleResult) -> None:
        self.cycle_count += 1
        self.last_result = result
        self.last_health = result.service_health

    def as_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "cycle_count": self.cycle_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "cached_issues": len(self.cached_issues),
            "last_result": self.last_result.as_dict() if self.last_result else None,
            "service_health": self.last_health.as_dict() if self.last_health else None,
        }


def _format_duration(seconds: float) -> str:
    """Format elapsed seconds as 'Xm YYs' or 'Xs'."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}m {secs:02d}s"


def build_summary_table(result: CycleResult) -> Table:
    table = Table(title=f"Cycle {result.cycle_id}", expand=True)
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")
    table.add_row("Tasks discovered", str(result.tasks_discovered))
    table.add_row("Tasks completed", f"[green]{result.tasks_completed}[/green]")
    table.add_row("Tasks failed", f"[red]{result.tasks_failed}[/red]" if result.tasks_failed else "0")
    table.add_row("PRs merged", str(result.prs_merged))
    table.add_row("Duration", _format_duration(result.duration))
    if result.service_health is not None:
        table.add_row("GitHub", result.service_health.status.value)
    table.add_row("Degraded", "[yellow]yes[/yellow]" if result.degraded else "no")
    if result.errors:
        table.caption = "\n".join(result.errors)
    return table


def agent_env_for(agent_auth: str | None) -> dict[str, str]:
    """Environment for the claude CLI given an API key or OAuth token."""
    if not agent_auth:
        return {}
    if agent_auth.startswith("sk-ant-oat"):
        return {"CLAUDE_CODE_OAUTH_TOKEN": agent_auth}
    return {"ANTHROPIC_API_KEY": agent_auth}


def _anthropic_client(agent_auth: str | None) -> anthropic.Anthropic:
    if agent_auth and agent_auth.startswith("sk-ant-oat"):
        return anthropic.Anthropic(auth_token=agent_auth)
    if agent_auth:
        return anthropic.Anthropic(api_key=agent_auth)
    return anthropic.Anthropic()


def _failure_comment(result: WorkerResult) -> str:
    return (
        "⚠️ Autonomous implementation failed\n\n"
        f"**Branch:** `{result.branch_name}`\n"
        f"**Error:** {result.error or 'unknown'}\n\n"
        f"This issue has been labelled `{NEEDS_REVIEW_LABEL}` for a human to take a look."
    )


def _pr_body(result: WorkerResult) -> str:
    files = "\n".join(f"- `{f}`" for f in result.files_changed) or "- None detected"
    return (
        f"Implements #{result.issue.id}\n\n"
        f"## Files Changed\n\n{files}\n\n"
        f"---\n*Automated PR created by autodev*"
    )


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------

class Daemon:
    def __init__(
        self,
        config: DaemonConfig,
        *,
        dry_run: bool = False,
        single_cycle: bool = False,
        gateway: HostingGateway | None = None,
        discoverer: TaskDiscoverer | None = None,
        deduplicator: TaskDeduplicator | None = None,
        pool_factory: Callable[[], WorkerPool] | None = None,
        resolver_factory: Callable[[], MergeResolver] | None = None,
        analysis_path: Callable[[], Path] | None = None,
    ):
        self.config = config
        self.dry_run = dry_run
        self.single_cycle = single_cycle
        self.gateway = gateway
        self.discoverer = discoverer
        self.deduplicator = deduplicator or TaskDeduplicator(config.discovery.similarity_threshold)
        self._pool_factory = pool_factory
        self._resolver_factory = resolver_factory
        self._analysis_path = analysis_path
        self.state = DaemonState()
        self._stop_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_requested = False
        self._health_server: HealthServer | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Initialize, then run cycles until stopped (or after one cycle)."""
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()
        self.state.phase = DaemonPhase.INITIALIZING
        self.state.started_at = datetime.now(timezone.utc)
        try:
            self.initialize()
            self._start_health_server()
            self.state.phase = DaemonPhase.RUNNING
            console.rule(f"[bold cyan]autodev: {self.config.repo.full_name}")
            while not self._stop_event.is_set():
                ctx = CycleContext.new(self.state.cycle_count + 1)
                result = await self.run_cycle(ctx)
                self.state.record(result)
                self._print_summary(result)
                self._write_status()
                if self.single_cycle or self._stop_event.is_set():
                    break
                if self.config.daemon.pause_between_cycles:
                    await self._sleep(self.config.daemon.loop_interval_ms / 1000)
        finally:
            self.state.phase = DaemonPhase.STOPPING
            log.info("Stopping daemon after %d cycles", self.state.cycle_count)
            if self._health_server is not None:
                self._health_server.stop()
                self._health_server = None
            self.state.phase = DaemonPhase.STOPPED
            self._write_status()

    def stop(self) -> None:
        """Request a stop; safe to call from any thread or a signal handler."""
        self._stop_requested = True
        if self._stop_event is None or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._stop_event.set()
        else:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    async def _sleep(self, seconds: float) -> None:
        """Sleep between cycles, waking immediately when stop() is called."""
        if self._stop_event is None:
            raise RuntimeError("Daemon is not running; call start() first")
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def initialize(self) -> None:
        """Validate credentials, verify GitHub access and prepare the work dir."""
        creds = self.config.credentials
        if not creds.hosting_token:
            raise ConfigError("GitHub token missing: set credentials.hosting_token, GITHUB_TOKEN or GH_TOKEN")
        if not creds.agent_auth:
            raise ConfigError(
                "Claude credentials missing: set credentials.agent_auth, ANTHROPIC_API_KEY "
                "or CLAUDE_CODE_OAUTH_TOKEN"
            )

        if self.gateway is None:
            client = GhClient(self.config.repo.owner, self.config.repo.name, token=creds.hosting_token)
            self.gateway = HostingGateway(
                client,
                failure_threshold=self.config.circuit_breaker.failure_threshold,
                reset_timeout=self.config.circuit_breaker.reset_timeout_seconds,
            )
        try:
            login = self.gateway.verify_auth()
        except UpstreamError as exc:
            raise ConfigError(f"GitHub authentication failed: {exc}") from exc
        log.info("Authenticated to GitHub as %s", login or "(unknown)")

        try:
            self.config.execution.work_dir.mkdir(parents=True, exist_ok=True)
            self.config.execution.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"Cannot create work directory: {exc}") from exc

        if self.discoverer is None:
            self.discoverer = TaskDiscoverer(
                model=self.config.discovery.model,
                client=_anthropic_client(creds.agent_auth),
            )
        if self._pool_factory is None:
            self._pool_factory = self._default_pool
        if self._resolver_factory is None:
            self._resolver_factory = self._default_resolver
        if self._analysis_path is None:
            self._analysis_path = functools.partial(
                clone_for_analysis,
                self.config.repo.url,
                creds.hosting_token,
                self.config.execution.work_dir,
                self.config.repo.base_branch,
            )

    def _worker_options(self) -> WorkerOptions:
        ex = self.config.execution
        return WorkerOptions(
            repo_url=self.config.repo.url,
            base_branch=self.config.repo.base_branch,
            work_dir=ex.work_dir,
            log_dir=ex.log_dir,
            timeout_seconds=ex.timeout_minutes * 60,
            model=ex.model,
            max_turns=ex.max_turns,
            hosting_token=self.config.credentials.hosting_token,
            agent_env=agent_env_for(self.config.credentials.agent_auth),
        )

    def _default_pool(self) -> WorkerPool:
        return WorkerPool(self.config.execution.parallel_workers, self._worker_options(), gateway=self.gateway)

    def _default_resolver(self) -> MergeResolver:
        updater = ConflictResolver(
            repo_url=self.config.repo.url,
            base_branch=self.config.repo.base_branch,
            work_dir=self.config.execution.work_dir,
            hosting_token=self.config.credentials.hosting_token,
            model=self.config.execution.model,
            agent_env=agent_env_for(self.config.credentials.agent_auth),
        )
        return MergeResolver(
            self.gateway,
            merge_method=self.config.merge.merge_method,
            conflict_strategy=self.config.merge.conflict_strategy,
            max_retries=self.config.merge.max_retries,
            branch_updater=updater,
        )

    def _start_health_server(self) -> None:
        port = self.config.health.port
        if not port:
            return
        monitor = HealthMonitor(status_provider=self.state.as_dict)
        monitor.register_check("github", github_check(self.gateway))
        monitor.register_check("daemon", daemon_check(self.state))
        monitor.register_check("workspace", workspace_check(self.config.execution.work_dir))
        self._health_server = HealthServer(monitor, self.config.health.host, port)
        self._health_server.start()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, ctx: CycleContext) -> CycleResult:
        """Run one cycle; never raises, failures end up in the result."""
        clog = ctx.logger("daemon")
        clog.info("Starting cycle %d", ctx.number)
        progress = CycleProgress()
        start = time.monotonic()
        self.state.last_health = self.gateway.service_health()
        try:
            await self._run_steps(ctx, progress)
        except Exception as exc:
            clog.exception("Cycle failed")
            progress.record_error(exc)
            progress.degraded = True
        health = self.gateway.service_health()
        return progress.freeze(ctx, time.monotonic() - start, health)

    async def _run_steps(self, ctx: CycleContext, progress: CycleProgress) -> None:
        loop = asyncio.get_running_loop()

        existing = await loop.run_in_executor(None, self._fetch_issues, ctx, progress)
        created = await loop.run_in_executor(None, self._discover_and_create, ctx, progress, existing)

        queue = self._build_queue(existing + created)
        clog = ctx.logger("daemon")
        if self.dry_run:
            self._print_queue(queue)
            clog.info("Dry run: %d issues would be worked on", len(queue))
            return
        if not queue:
            clog.info("No issues to work on this cycle")
            return

        await loop.run_in_executor(None, self._mark_in_progress, queue, progress)
        pool = self._pool_factory()
        results = await pool.execute_tasks([WorkerTask.for_issue(i) for i in queue], ctx)
        progress.tasks_completed = sum(1 for r in results if r.success)
        progress.tasks_failed = len(results) - progress.tasks_completed

        candidates = await loop.run_in_executor(None, self._handle_results, ctx, progress, results)
        if self.config.merge.auto_merge and candidates:
            resolver = self._resolver_factory()
            merges = await loop.run_in_executor(None, resolver.merge_sequentially, candidates, ctx)
            await loop.run_in_executor(None, self._finish_merges, ctx, progress, candidates, merges)

    # Step 1
    def _fetch_issues(self, ctx: CycleContext, progress: CycleProgress) -> list[TrackedIssue]:
        label = self.config.discovery.issue_label
        outcome = self.gateway.list_open_issues_with_fallback(label, list(self.state.cached_issues))
        if outcome.degraded:
            progress.mark_degraded(
                f"could not list issues, reusing {len(outcome.value)} cached ({outcome.error})"
            )
        else:
            self.state.cached_issues = list(outcome.value)
        ctx.logger("daemon").info("%d open issues labelled %s", len(outcome.value), label)
        return list(outcome.value)

    # Step 2
    def _discover_and_create(
        self, ctx: CycleContext, progress: CycleProgress, existing: list[TrackedIssue]
    ) -> list[TrackedIssue]:
        clog = ctx.logger("daemon")
        disc = self.config.discovery
        available_slots = disc.max_open_issues - len(existing)
        if self.dry_run:
            clog.info("Dry run: skipping discovery")
            return []
        if available_slots <= 0:
            clog.info("%d open issues, no slots for new tasks", len(existing))
            return []

        try:
            repo_path = self._analysis_path()
            tasks = self.discoverer.discover_tasks(
                repo_path,
                disc.exclude_paths,
                min(disc.tasks_per_cycle, available_slots),
                existing,
                disc.repo_context,
            )
        except Exception as exc:
            clog.error("Task discovery failed: %s", exc)
            progress.record_error(exc)
            return []
        progress.tasks_discovered = len(tasks)

        ordered = self.deduplicator.process(tasks, existing, ctx)
        if not ordered:
            return []
        if not self.gateway.is_available("issues"):
            progress.mark_degraded(f"issues API unavailable, skipped creating {len(ordered)} issues")
            return []

        created: list[TrackedIssue] = []
        for item in ordered:
            task = item.task
            outcome = self.gateway.create_issue_with_fallback(
                task.title, task.issue_body(), task.issue_labels(disc.issue_label)
            )
            if outcome.degraded or outcome.value is None:
                progress.mark_degraded(f"could not create issue {task.title!r} ({outcome.error})")
                continue
            clog.info("Created issue #%d: %s", outcome.value.id, task.title)
            created.append(outcome.value)
        return created

    # Step 3
    def _build_queue(self, issues: list[TrackedIssue]) -> list[TrackedIssue]:
        seen: set[int] = set()
        queue: list[TrackedIssue] = []
        for issue in issues:
            if IN_PROGRESS_LABEL in issue.labels or issue.id in seen:
                continue
            seen.add(issue.id)
            queue.append(issue)
        return queue[: self.config.execution.parallel_workers]

    def _mark_in_progress(self, queue: list[TrackedIssue], progress: CycleProgress) -> None:
        for issue in queue:
            outcome = self.gateway.add_labels_with_fallback(issue.id, [IN_PROGRESS_LABEL])
            if outcome.degraded:
                progress.mark_degraded(f"could not label #{issue.id} {IN_PROGRESS_LABEL} ({outcome.error})")

    # Step 4
    def _handle_results(
        self, ctx: CycleContext, progress: CycleProgress, results: list[WorkerResult]
    ) -> list[MergeCandidate]:
        clog = ctx.logger("daemon")
        candidates: list[MergeCandidate] = []
        for result in results:
            issue = result.issue
            if not result.success:
                progress.record_error(WorkerError(f"issue #{issue.id}: {result.error}"))
                for outcome in (
                    self.gateway.remove_label_with_fallback(issue.id, IN_PROGRESS_LABEL),
                    self.gateway.add_labels_with_fallback(issue.id, [NEEDS_REVIEW_LABEL]),
                    self.gateway.add_comment_with_fallback(issue.id, _failure_comment(result)),
                ):
                    if outcome.degraded:
                        progress.degraded = True
                continue

            outcome = self.gateway.create_pr_with_fallback(
                f"autodev: {issue.title}",
                _pr_body(result),
                result.branch_name,
                self.config.repo.base_branch,
            )
            if outcome.degraded or outcome.value is None:
                self.gateway.add_labels_with_fallback(issue.id, [PR_PENDING_LABEL])
                progress.mark_degraded(f"could not open PR for #{issue.id} ({outcome.error})")
                # The PR may still exist; the resolver looks it up by branch
                candidates.append(MergeCandidate(result.branch_name, issue.id))
                continue
            clog.info("Opened PR #%d for issue #%d", outcome.value.number, issue.id)
            candidates.append(MergeCandidate(result.branch_name, issue.id, outcome.value.number))
        return candidates

    # Step 5
    def _finish_merges(self, ctx, progress, candidates, merges) -> None:
        for candidate, merge in zip(candidates, merges):
            if not merge.merged:
                progress.record_error(
                    MergeError(f"PR for #{candidate.issue_id} ({candidate.branch_name}): {merge.error}")
                )
                outcome = self.gateway.add_labels_with_fallback(candidate.issue_id, [NEEDS_REVIEW_LABEL])
                if outcome.degraded:
                    progress.degraded = True
                continue
            progress.prs_merged += 1
            outcome = self.gateway.close_issue_with_fallback(
                candidate.issue_id,
                f"✅ Automatically implemented and merged via PR #{merge.pr.number}",
            )
            if outcome.degraded:
                progress.mark_degraded(f"could not close #{candidate.issue_id} ({outcome.error})")

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _print_queue(self, queue: list[TrackedIssue]) -> None:
        console.rule("[bold cyan]Dry Run: Work Queue")
        table = Table(expand=True)
        table.add_column("Issue", style="cyan", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Branch", style="dim")
        for issue in queue:
            table.add_row(f"#{issue.id}", issue.title, WorkerTask.for_issue(issue).branch_name)
        console.print(table)

    def _print_summary(self, result: CycleResult) -> None:
        console.print(build_summary_table(result))

    def _write_status(self) -> None:
        path = self.config.daemon.status_file
        try:
            path.write_text(json.dumps(self.state.as_dict(), indent=2) + "\n")
        except OSError as exc:
            log.warning("Could not write %s: %s", path, exc)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

async def _run(daemon: Daemon) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, daemon.stop)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform; KeyboardInterrupt still applies
            pass
    await daemon.start()


def main() -> None:
    parser = argparse.ArgumentParser(description="autodev: autonomous development daemon")
    parser.add_argument(
        "--config", default="autodev.yaml", help="Path to the YAML config (default: autodev.yaml)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Show the work queue without discovering, implementing or merging (default: False)",
    )
    parser.add_argument(
        "--single-cycle",
        action="store_true",
        default=False,
        help="Run one cycle and exit (default: False)",
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Serve /health and /status on this port (overrides health.port)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = load_config(args.config)
        if args.health_port is not None:
            config.health.port = args.health_port
        daemon = Daemon(config, dry_run=args.dry_run, single_cycle=args.single_cycle)
        asyncio.run(_run(daemon))
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        log.error("%s (%s)", exc, exc.recovery_hint)
        sys.exit(1)
    except AutodevError as exc:
        console.print(f"[bold red]{describe_error(exc)}[/bold red]")
        sys.exit(1 if exc.is_fatal else 2)
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red] Shutting down…")
        log.warning("KeyboardInterrupt, shutting down")
        sys.exit(130)


if __name__ == "__main__":
    main()
