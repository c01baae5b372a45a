"""Merge successful branches one at a time, updating them against the base when
they conflict."""

import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from conflict_resolver import ConflictResolver
from errors import UpstreamError
from github_client import PullRequest

logger = logging.getLogger(__name__)

# Mergeability is computed asynchronously by GitHub after every push
MERGEABILITY_MAX_POLLS = 5
MERGEABILITY_POLL_INTERVAL = 3  # seconds

# GitHub answers these when the PR cannot be merged as-is
_NOT_MERGEABLE_STATUSES = frozenset({405, 409})

NO_PR_ERROR = "No PR found"
MANUAL_ERROR = "Conflicts require manual resolution"


@dataclass(frozen=True)
class MergeCandidate:
    branch_name: str
    issue_id: int | None = None
    pr_number: int | None = None


@dataclass(frozen=True)
class MergeResult:
    branch_name: str
    merged: bool
    pr: PullRequest | None = None
    error: str | None = None
    attempts: int = 0
    sha: str = ""


class MergeResolver:
    def __init__(
        self,
        gateway,
        merge_method: str = "squash",
        conflict_strategy: str = "rebase",
        max_retries: int = 3,
        branch_updater: ConflictResolver | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.merge_method = merge_method
        self.conflict_strategy = conflict_strategy
        self.max_attempts = max(1, max_retries)
        self.branch_updater = branch_updater
        self._sleep = sleep

    def merge_sequentially(self, candidates: list[MergeCandidate], ctx=None) -> list[MergeResult]:
        """Merge *candidates* strictly in order; one result per candidate."""
        log = ctx.logger(__name__) if ctx else logger
        results: list[MergeResult] = []
        for candidate in candidates:
            try:
                result = self.merge_one(candidate, ctx)
            except Exception as exc:
                log.exception("Unexpected error merging %s", candidate.branch_name)
                result = MergeResult(
                    branch_name=candidate.branch_name,
                    merged=False,
                    error=f"{type(exc).__name__}: {exc}",
                )
            if result.merged:
                log.info("Merged %s (PR #%d)", candidate.branch_name, result.pr.number)
            else:
                log.warning("Could not merge %s: %s", candidate.branch_name, result.error)
            results.append(result)
        return results

    def merge_one(self, candidate: MergeCandidate, ctx=None) -> MergeResult:
        log = ctx.logger(__name__) if ctx else logger
        branch = candidate.branch_name
        try:
            if candidate.pr_number is not None:
                pr = self.gateway.get_pull(candidate.pr_number)
            else:
                pr = self.gateway.find_pull_for_branch(branch)
        except UpstreamError as exc:
            return MergeResult(branch_name=branch, merged=False, error=str(exc))
        if pr is None:
            return MergeResult(branch_name=branch, merged=False, error=NO_PR_ERROR)

        last_error = ""
        attempts = 0
        while attempts < self.max_attempts:
            attempts += 1
            try:
                mergeable = self._wait_for_mergeable(pr)
                if mergeable is False:
                    if self.conflict_strategy == "manual":
                        return MergeResult(branch, False, pr, MANUAL_ERROR, attempts)
                    last_error = f"PR #{pr.number} has conflicts"
                    if not self._update_from_base(pr, branch, log):
                        return MergeResult(branch, False, pr, f"Branch update failed: {last_error}", attempts)
                    continue
                sha = self.gateway.merge_pull(pr.number, self.merge_method, f"{pr.title} (#{pr.number})")
            except UpstreamError as exc:
                if exc.circuit_open or exc.status not in _NOT_MERGEABLE_STATUSES:
                    return MergeResult(branch, False, pr, str(exc), attempts)
                last_error = str(exc)
                log.warning("Merge attempt %d/%d for %s rejected: %s", attempts, self.max_attempts, branch, exc)
                continue
            self.gateway.delete_branch_with_fallback(branch)
            return MergeResult(branch, True, pr, None, attempts, sha)

        return MergeResult(
            branch, False, pr, f"Gave up after {attempts} attempts: {last_error}", attempts
        )

    def _wait_for_mergeable(self, pr: PullRequest) -> bool | None:
        """Poll until GitHub has computed mergeability; None if it never does."""
        for poll in range(MERGEABILITY_MAX_POLLS):
            current = self.gateway.get_pull(pr.number)
            if current.mergeable is not None:
                return current.mergeable
            if poll < MERGEABILITY_MAX_POLLS - 1:
                self._sleep(MERGEABILITY_POLL_INTERVAL)
        logger.info("PR #%d mergeability still unknown, attempting merge anyway", pr.number)
        return None

    def _update_from_base(self, pr: PullRequest, branch: str, log) -> bool:
        """Bring the PR branch up to date with its base; True on success."""
        try:
            self.gateway.update_pull_branch(pr.number)
            log.info("Updated PR #%d from base via the API", pr.number)
            return True
        except UpstreamError as exc:
            if exc.circuit_open or self.branch_updater is None:
                log.warning("Could not update PR #%d: %s", pr.number, exc)
                return False
            log.info("API branch update refused for PR #%d (%s), updating locally", pr.number, exc)

        outcome = self.branch_updater.update_branch(
            pr.head or branch, strategy=self.conflict_strategy, pr_description=pr.title or branch
        )
        if not outcome.success:
            log.warning("Local update of %s failed: %s", branch, outcome.error)
        return outcome.success
