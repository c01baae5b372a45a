"""Bring a PR branch up to date with its base, resolving conflicts with Claude."""

import json
import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from errors import MergeError

logger = logging.getLogger(__name__)

_LARGE_PROMPT_THRESHOLD = 100 * 1024  # 100 KB
_CONFLICT_MARKER = re.compile(r"^(<{7}|={7}|>{7})(\s|$)", re.MULTILINE)


def _build_resolve_prompt(
    pr_description: str, base_changes: str, file_path: str, conflicted_content: str
) -> str:
    """Build the conflict-resolution prompt without using str.format().

    File content may contain bare ``{placeholder}`` patterns (format strings,
    templates) that would break ``str.format``.
    """
    return (
        "You are an expert software engineer resolving a merge conflict.\n\n"
        "## Pull request (what this branch is trying to do)\n\n"
        + pr_description
        + "\n\n## Changes merged into the base branch since this branch was created\n\n"
        + base_changes
        + "\n\n## Conflicted file: "
        + file_path
        + "\n\nThe file below contains conflict markers (<<<<<<<, =======, >>>>>>>).\n"
        "Resolve the conflicts by keeping BOTH sets of changes where possible.\n\n"
        + conflicted_content
        + "\n\nOutput ONLY the fully resolved file content with no conflict markers remaining.\n"
        "Do not include any explanation, markdown fences, or commentary.\n"
    )


@dataclass
class ConflictResult:
    success: bool
    branch: str
    method: str = ""
    resolved_files: list[str] = field(default_factory=list)
    error: str = ""


class ConflictResolver:
    """Update ``branch`` against ``origin/<base_branch>`` and push it back.

    ``strategy="rebase"`` tries a rebase first and falls back to a merge;
    ``strategy="merge"`` merges directly.  Files left conflicted by the merge
    are handed to Claude one at a time.
    """

    def __init__(
        self,
        repo_url: str,
        base_branch: str,
        work_dir: str | Path,
        hosting_token: str | None = None,
        model: str = "sonnet",
        timeout: int = 300,
        agent_env: dict[str, str] | None = None,
    ):
        self.repo_url = repo_url
        self.base_branch = base_branch
        self.work_dir = Path(work_dir)
        self.hosting_token = hosting_token
        self.model = model
        self.timeout = timeout
        self.agent_env = agent_env or {}
        self._checkout: Path | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update_branch(self, branch: str, strategy: str = "rebase", pr_description: str = "") -> ConflictResult:
        if strategy not in ("rebase", "merge"):
            raise ValueError(f"unsupported update strategy: {strategy!r}")
        slug = re.sub(r"[^a-zA-Z0-9]+", "-", branch).strip("-")
        self._checkout = self.work_dir / f"conflict-{slug}"
        logger.info("Updating %s against %s (%s)", branch, self.base_branch, strategy)
        try:
            self._clone(branch)
            if strategy == "rebase" and self._try_rebase():
                self._push(branch, force=True)
                return ConflictResult(success=True, branch=branch, method="rebase")

            conflicted = self._merge_base_into_branch()
            if not conflicted:
                self._push(branch)
                return ConflictResult(success=True, branch=branch, method="merge")

            logger.info("Conflicted files on %s: %s", branch, conflicted)
            base_changes = self._base_changes_summary()
            for file_path in conflicted:
                self._resolve_file(file_path, pr_description or branch, base_changes)
            self._commit_resolution(conflicted)
            self._push(branch)
            return ConflictResult(
                success=True, branch=branch, method="claude", resolved_files=conflicted
            )
        except MergeError as exc:
            logger.error("Branch update failed for %s: %s", branch, exc)
            return ConflictResult(success=False, branch=branch, error=str(exc))
        finally:
            self._cleanup()

    # ------------------------------------------------------------------
    # Step implementations
    # ------------------------------------------------------------------

    def _require_checkout(self) -> Path:
        if self._checkout is None:
            raise MergeError("No checkout prepared; call update_branch()")
        return self._checkout

    def _clone(self, branch: str) -> None:
        checkout = self._require_checkout()
        if checkout.exists():
            shutil.rmtree(checkout, ignore_errors=True)
        checkout.parent.mkdir(parents=True, exist_ok=True)
        url = self.repo_url
        if self.hosting_token and url.startswith("https://"):
            url = url.replace("https://", f"https://x-access-token:{self.hosting_token}@", 1)
        if not url.endswith(".git"):
            url += ".git"
        self._git(["clone", "--branch", branch, url, str(checkout)], cwd=checkout.parent)
        self._git(["fetch", "origin", self.base_branch])
        for key, value in (("user.name", "autodev"), ("user.email", "autodev@users.noreply.github.com")):
            self._git(["config", key, value])

    def _try_rebase(self) -> bool:
        proc = self._git_raw(["rebase", f"origin/{self.base_branch}"])
        if proc.returncode == 0:
            logger.info("Rebase onto origin/%s succeeded cleanly", self.base_branch)
            return True
        logger.warning("Rebase had conflicts, aborting and trying merge")
        self._git_raw(["rebase", "--abort"])
        return False

    def _merge_base_into_branch(self) -> list[str]:
        """Merge the base into the branch; return the files left conflicted."""
        proc = self._git_raw(["merge", "--no-edit", f"origin/{self.base_branch}"])
        if proc.returncode == 0:
            return []
        files = self._git(["diff", "--name-only", "--diff-filter=U"])
        conflicted = [f.strip() for f in files.splitlines() if f.strip()]
        if not conflicted:
            raise MergeError(f"git merge failed without conflicted files: {proc.stderr[:300]}")
        return conflicted

    def _base_changes_summary(self) -> str:
        merge_base = self._git_raw(["merge-base", "HEAD", f"origin/{self.base_branch}"])
        if merge_base.returncode != 0:
            return "Unable to determine base branch changes."
        base = merge_base.stdout.strip()
        log = self._git_raw(["log", "--oneline", f"{base}..origin/{self.base_branch}"])
        stat = self._git_raw(["diff", "--stat", base, f"origin/{self.base_branch}"])
        return (
            f"Commits merged into {self.base_branch}:\n{log.stdout.strip()}\n\n"
            f"Files changed:\n{stat.stdout.strip()}"
        )

    def _resolve_file(self, file_path: str, pr_description: str, base_changes: str) -> None:
        checkout = self._require_checkout()
        full_path = (checkout / file_path).resolve()
        if not full_path.is_relative_to(checkout.resolve()):
            raise MergeError(f"Path traversal detected in file path: {file_path!r}")
        if not full_path.exists():
            raise MergeError(f"Conflicted file not found: {file_path}")

        prompt = _build_resolve_prompt(
            pr_description=pr_description,
            base_changes=base_changes,
            file_path=file_path,
            conflicted_content=full_path.read_text(),
        )
        resolved = self._strip_fences(self._run_claude(prompt))
        if not resolved.strip():
            raise MergeError(f"Claude returned empty content for {file_path}")
        if _CONFLICT_MARKER.search(resolved):
            raise MergeError(f"Unresolved conflict markers remain in {file_path}")
        full_path.write_text(resolved if resolved.endswith("\n") else resolved + "\n")
        logger.info("Resolved %s (%d chars)", file_path, len(resolved))

    @staticmethod
    def _strip_fences(text: str) -> str:
        text = text.strip()
        text = re.sub(r"^```[a-zA-Z]*\n", "", text)
        text = re.sub(r"\n```\s*$", "", text)
        return text

    def _run_claude(self, prompt: str) -> str:
        use_stdin = len(prompt.encode("utf-8")) > _LARGE_PROMPT_THRESHOLD
        cmd = ["claude", "--dangerously-skip-permissions", "--output-format", "json", "--model", self.model]
        if not use_stdin:
            cmd = [cmd[0], "-p", prompt] + cmd[1:]

        env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
        env.update(self.agent_env)
        try:
            proc = subprocess.run(
                cmd,
                cwd=self._checkout,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
                input=prompt if use_stdin else None,
            )
        except subprocess.TimeoutExpired as exc:
            raise MergeError(f"Claude timed out after {self.timeout}s") from exc
        if proc.returncode != 0:
            raise MergeError(f"Claude exited with code {proc.returncode}: {proc.stderr[:300]}")

        try:
            envelope = json.loads(proc.stdout)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Could not parse claude envelope JSON; using raw output")
            return proc.stdout
        if not isinstance(envelope, dict):
            return proc.stdout
        return str(envelope.get("result", proc.stdout))

    def _commit_resolution(self, files: list[str]) -> None:
        self._git(["add", "--"] + files)
        self._git(["commit", "--no-edit"])
        logger.info("Committed conflict resolution for %d files", len(files))

    def _push(self, branch: str, force: bool = False) -> None:
        args = ["push", "origin", f"HEAD:{branch}"]
        if force:
            args.append("--force-with-lease")
        self._git(args)
        logger.info("Pushed updated %s", branch)

    def _cleanup(self) -> None:
        if self._checkout is not None and self._checkout.exists():
            shutil.rmtree(self._checkout, ignore_errors=True)

    def _git_raw(self, args: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git"] + args,
                cwd=cwd or self._checkout,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise MergeError(f"git {args[0]} timed out after {self.timeout}s") from exc

    def _git(self, args: list[str], cwd: Path | None = None) -> str:
        proc = self._git_raw(args, cwd)
        if proc.returncode != 0:
            raise MergeError(f"git {args[0]} failed (code {proc.returncode}): {proc.stderr.strip()[:300]}")
        return proc.stdout
