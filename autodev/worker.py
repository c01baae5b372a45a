"""Worker that implements one tracked issue with Claude Code headless mode in an
isolated clone, then pushes the result branch."""

import json
import logging
import os
import re
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from errors import WorkerError
from github_client import TrackedIssue

logger = logging.getLogger(__name__)

_LARGE_PROMPT_THRESHOLD = 100 * 1024  # 100 KB
_BRANCH_SLUG_MAX = 40

TIMEOUT_ERROR = "timeout"
CANCELLED_ERROR = "cancelled"


class AgentTimeout(WorkerError):
    """The coding agent exceeded its time budget and was killed."""


def branch_name_for(issue: TrackedIssue) -> str:
    """Deterministic branch name: ``auto/{id}-{slug}``."""
    slug = re.sub(r"[^a-z0-9]+", "-", issue.title.lower()).strip("-")
    return f"auto/{issue.id}-{slug[:_BRANCH_SLUG_MAX]}"


@dataclass(frozen=True)
class WorkerTask:
    issue: TrackedIssue
    branch_name: str

    @classmethod
    def for_issue(cls, issue: TrackedIssue) -> "WorkerTask":
        return cls(issue=issue, branch_name=branch_name_for(issue))


@dataclass
class WorkerResult:
    issue: TrackedIssue
    branch_name: str
    success: bool
    error: str | None = None
    files_changed: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cost_usd: float | None = None
    num_turns: int | None = None

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0


@dataclass
class WorkerOptions:
    repo_url: str
    base_branch: str = "main"
    work_dir: Path = Path("/tmp/autodev-workspace")
    log_dir: Path = Path("./logs")
    timeout_seconds: int = 30 * 60
    model: str = "sonnet"
    max_turns: int = 50
    hosting_token: str | None = None
    agent_env: dict[str, str] = field(default_factory=dict)


class Worker:
    PUSH_RETRY_DELAYS = (5, 15, 45)

    def __init__(
        self,
        task: WorkerTask,
        options: WorkerOptions,
        gateway=None,
        worker_id: str = "worker-1",
    ):
        self.task = task
        self.options = options
        self.gateway = gateway
        self.worker_id = worker_id
        self.workspace = Path(options.work_dir) / task.branch_name
        self._cancelled = threading.Event()
        self._proc: subprocess.Popen | None = None
        self._proc_lock = threading.Lock()
        self._log_lines: list[str] = []

    @property
    def issue(self) -> TrackedIssue:
        return self.task.issue

    def cancel(self) -> None:
        """Kill the running agent or git process and stop before the next step."""
        self._cancelled.set()
        with self._proc_lock:
            if self._proc is not None and self._proc.poll() is None:
                logger.warning("Killing %s for issue #%d", self._proc.args[0], self.issue.id)
                self._proc.kill()

    def _spawn(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        """Start *cmd* as the worker's current process so cancel() can kill it."""
        with self._proc_lock:
            if self._cancelled.is_set():
                raise WorkerError(CANCELLED_ERROR)
            self._proc = subprocess.Popen(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, **kwargs
            )
            return self._proc

    def run(self, ctx=None) -> WorkerResult:
        log = ctx.logger(__name__) if ctx else logger
        result = WorkerResult(
            issue=self.issue,
            branch_name=self.task.branch_name,
            success=False,
            started_at=datetime.now(timezone.utc),
        )
        self._announce()
        try:
            self._setup_workspace()
            parsed = self._run_claude()
            if parsed is not None:
                raw_cost = parsed.get("total_cost_usd", parsed.get("cost_usd"))
                raw_turns = parsed.get("num_turns")
                result.cost_usd = float(raw_cost) if raw_cost is not None else None
                result.num_turns = int(raw_turns) if raw_turns is not None else None
            result.files_changed = self._verify_changes()
            if self._cancelled.is_set():
                raise WorkerError(CANCELLED_ERROR)
            self._push()
            result.success = True
            log.info("Issue #%d completed on %s", self.issue.id, self.task.branch_name)
        except AgentTimeout:
            result.error = TIMEOUT_ERROR
            log.error("Issue #%d timed out after %ds", self.issue.id, self.options.timeout_seconds)
        except WorkerError as e:
            result.error = str(e)
            log.error("Issue #%d failed: %s", self.issue.id, e)
        except OSError as e:
            result.error = f"{type(e).__name__}: {e}"
            log.error("Issue #%d failed: %s", self.issue.id, e)
        finally:
            result.finished_at = datetime.now(timezone.utc)
            self._cleanup()
            self._save_log(result)
        return result

    def _announce(self) -> None:
        if self.gateway is None:
            return
        outcome = self.gateway.add_comment_with_fallback(
            self.issue.id,
            f"🤖 autodev picked up this issue on branch `{self.task.branch_name}`.",
        )
        if outcome.degraded:
            self._log(f"pick-up comment skipped: {outcome.error}")

    def _setup_workspace(self) -> None:
        logger.info("Cloning into %s for issue #%d", self.workspace, self.issue.id)
        if self.workspace.exists():
            logger.warning("Removing stale workspace at %s", self.workspace)
            shutil.rmtree(self.workspace, ignore_errors=True)
        self.workspace.parent.mkdir(parents=True, exist_ok=True)

        self._run_git(
            [
                "clone",
                "--branch",
                self.options.base_branch,
                self._authenticated_url(),
                str(self.workspace),
            ],
            cwd=self.workspace.parent,
            timeout=300,
        )
        self._run_git(["checkout", "-b", self.task.branch_name])
        self._log(f"Created branch {self.task.branch_name} from {self.options.base_branch}")

    def _authenticated_url(self) -> str:
        url = self.options.repo_url
        token = self.options.hosting_token
        if token and url.startswith("https://"):
            url = url.replace("https://", f"https://x-access-token:{token}@", 1)
        return url if url.endswith(".git") else url + ".git"

    def _run_claude(self) -> dict | None:
        prompt = self._build_prompt()
        use_stdin = len(prompt.encode("utf-8")) > _LARGE_PROMPT_THRESHOLD

        cmd = [
            "claude",
            "--output-format",
            "json",
            "--model",
            self.options.model,
            "--max-turns",
            str(self.options.max_turns),
            "--dangerously-skip-permissions",
        ]
        if not use_stdin:
            cmd += ["-p", prompt]

        timeout = self.options.timeout_seconds
        logger.info("Running claude for issue #%d (timeout=%ds)", self.issue.id, timeout)
        self._log(f"$ {' '.join(cmd[:8])} ...")

        env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
        env.update(self.options.agent_env)
        proc = self._spawn(
            cmd,
            cwd=self.workspace,
            stdin=subprocess.PIPE if use_stdin else subprocess.DEVNULL,
            env=env,
        )
        try:
            stdout, stderr = proc.communicate(input=prompt if use_stdin else None, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            proc.kill()
            proc.communicate()
            raise AgentTimeout(f"Claude timed out after {timeout}s") from e
        finally:
            returncode = proc.returncode

        if self._cancelled.is_set():
            raise WorkerError(CANCELLED_ERROR)
        if returncode != 0:
            logger.error("Claude stderr for issue #%d: %s", self.issue.id, (stderr or "")[:500])
            raise WorkerError(f"Claude exited with code {returncode}")

        self._log(f"claude output length: {len(stdout)} chars")
        try:
            parsed = json.loads(stdout)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Could not parse claude JSON output for issue #%d", self.issue.id)
            return None
        if not isinstance(parsed, dict):
            return None
        if parsed.get("is_error"):
            raise WorkerError(f"Claude reported an error: {str(parsed.get('result', ''))[:300]}")
        return parsed

    def _verify_changes(self) -> list[str]:
        status = self._run_git(["status", "--porcelain"])
        if status.strip():
            logger.warning("Found uncommitted changes, auto-committing for issue #%d", self.issue.id)
            self._run_git(["add", "-A"])
            self._run_git(
                ["commit", "-m", f"autodev: {self.issue.title} (#{self.issue.id})"]
            )

        base = f"origin/{self.options.base_branch}"
        ahead = self._run_git(["log", f"{base}..HEAD", "--oneline"])
        if not ahead.strip():
            raise WorkerError(f"No commits ahead of {self.options.base_branch}; nothing to push")
        self._log(f"Commits ahead of {base}:\n{ahead.strip()}")

        diff = self._run_git(["diff", "--name-only", f"{base}..HEAD"])
        files_changed = [f for f in diff.strip().splitlines() if f]
        logger.info("Issue #%d changed %d files", self.issue.id, len(files_changed))
        return files_changed

    def _push(self) -> None:
        logger.info("Pushing branch %s to origin", self.task.branch_name)
        delays = self.PUSH_RETRY_DELAYS
        last_error = ""
        for attempt, delay in enumerate(delays, start=1):
            if self._cancelled.is_set():
                raise WorkerError(CANCELLED_ERROR)
            try:
                self._run_git(["push", "-u", "origin", self.task.branch_name, "--force"])
                self._log(f"Pushed branch {self.task.branch_name}")
                return
            except WorkerError as e:
                last_error = str(e)
            if attempt < len(delays):
                logger.warning(
                    "git push failed (attempt %d/%d), retrying in %ds: %s",
                    attempt,
                    len(delays),
                    delay,
                    last_error,
                )
                self._cancelled.wait(delay)
        raise WorkerError(f"push failed after {len(delays)} attempts: {last_error}")

    def _cleanup(self) -> None:
        if self.workspace.exists():
            logger.info("Cleaning up workspace at %s", self.workspace)
            shutil.rmtree(self.workspace, ignore_errors=True)

    def _build_prompt(self) -> str:
        body = self.issue.body or "(no description provided)"
        task_body = (
            f"Implement GitHub issue #{self.issue.id}: {self.issue.title}\n\n"
            f"{body}\n\n"
            f"After making your changes:\n"
            f"1. Run the project's tests and make sure they pass\n"
            f"2. Stage all changes with git add -A\n"
            f"3. Commit with message: autodev: {self.issue.title} (#{self.issue.id})\n"
            f"4. Do NOT push\n"
            f"5. Do NOT modify files in .github/"
        )

        claude_md_path = self.workspace / "CLAUDE.md"
        if claude_md_path.exists():
            try:
                context = claude_md_path.read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning("Could not read CLAUDE.md: %s", exc)
            else:
                return (
                    f"The following is the project context from CLAUDE.md:\n{context}"
                    f"\n\n---\n\nYour task:\n{task_body}"
                )
        return task_body

    def _save_log(self, result: WorkerResult) -> None:
        log_dir = Path(self.options.log_dir)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / f"{self.worker_id}-issue-{self.issue.id}.log"
            content = (
                f"issue: #{self.issue.id} {self.issue.title}\n"
                f"worker_id: {self.worker_id}\n"
                f"branch: {self.task.branch_name}\n"
                f"success: {result.success}\n"
                f"elapsed: {result.elapsed_seconds:.1f}s\n"
                f"error: {result.error}\n"
                f"files_changed: {result.files_changed}\n"
                f"---\n" + "\n".join(self._log_lines)
            )
            log_path.write_text(content)
        except OSError as exc:
            logger.warning("Could not write worker log: %s", exc)
            return
        logger.debug("Log saved to %s", log_path)

    def _log(self, message: str) -> None:
        self._log_lines.append(f"[{datetime.now(timezone.utc).isoformat()}] {message}")

    def _run_git(self, args: list[str], cwd: Path | None = None, timeout: int = 120) -> str:
        proc = self._spawn(["git"] + args, cwd=cwd or self.workspace, stdin=subprocess.DEVNULL)
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            proc.kill()
            proc.communicate()
            raise WorkerError(f"git {args[0]} timed out after {timeout}s") from e
        if self._cancelled.is_set():
            raise WorkerError(CANCELLED_ERROR)
        if proc.returncode != 0:
            # never echo the clone URL, it carries the token
            raise WorkerError(f"git {args[0]} failed: {(stderr or '').strip()[:300]}")
        return stdout
