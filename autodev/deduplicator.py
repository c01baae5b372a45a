"""Drop discovered tasks that duplicate existing work and order the rest so that
tasks touching overlapping paths run last.
"""

import logging
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from discovery import Task
from github_client import TrackedIssue

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.7

# Shared build/config files; reported on the prediction so reviewers can see them
CRITICAL_FILES = frozenset({
    "pyproject.toml",
    "setup.py",
    "setup.cfg",
    "requirements.txt",
    "package.json",
    "tsconfig.json",
    "Dockerfile",
    "docker-compose.yml",
    "docker-compose.yaml",
    ".env.example",
})

_TOKEN_RE = re.compile(r"[a-z0-9]+")

Similarity = Callable[[str, str], float]


def tokenize(text: str) -> frozenset[str]:
    return frozenset(_TOKEN_RE.findall(text.lower()))


def jaccard_similarity(a: str, b: str) -> float:
    """Token-set Jaccard index of two strings, in [0, 1]."""
    ta, tb = tokenize(a), tokenize(b)
    if not ta and not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


@dataclass(frozen=True)
class ConflictPrediction:
    has_high_conflict_risk: bool = False
    overlapping_paths: frozenset[str] = field(default_factory=frozenset)
    critical_files_modified: frozenset[str] = field(default_factory=frozenset)


@dataclass
class DeduplicatedTask:
    task: Task
    is_potential_duplicate: bool = False
    conflict_prediction: ConflictPrediction = field(default_factory=ConflictPrediction)
    max_similarity: float = 0.0
    duplicate_of: str | None = None

    @property
    def title(self) -> str:
        return self.task.title


def _critical_files(paths: frozenset[str]) -> frozenset[str]:
    return frozenset(p for p in paths if Path(p).name in CRITICAL_FILES)


class TaskDeduplicator:
    def __init__(
        self,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        similarity: Similarity = jaccard_similarity,
    ):
        self.similarity_threshold = similarity_threshold
        self.similarity = similarity

    def deduplicate(
        self, tasks: list[Task], existing_issues: list[TrackedIssue], ctx=None
    ) -> list[DeduplicatedTask]:
        """Score every task for duplication and predict path conflicts.

        A task is compared against every existing issue and against the tasks of
        this batch that were already accepted.  Conflict prediction only looks at
        pairs of surviving (non-duplicate) tasks.
        """
        log = ctx.logger(__name__) if ctx else logger
        issue_texts = [(f"#{i.id}", f"{i.title} {i.body}") for i in existing_issues]
        accepted: list[tuple[str, str]] = []
        results: list[DeduplicatedTask] = []

        for task in tasks:
            text = f"{task.title} {task.description}"
            best_score, best_ref = 0.0, None
            for ref, other in issue_texts + accepted:
                score = self.similarity(text, other)
                if score > best_score:
                    best_score, best_ref = score, ref
            duplicate = best_score >= self.similarity_threshold
            results.append(
                DeduplicatedTask(
                    task=task,
                    is_potential_duplicate=duplicate,
                    max_similarity=best_score,
                    duplicate_of=best_ref if duplicate else None,
                )
            )
            if not duplicate:
                accepted.append((f"task '{task.title}'", text))
            log.debug("Task %r max similarity %.2f (%s)", task.title, best_score, best_ref)

        survivors = [r for r in results if not r.is_potential_duplicate]
        overlaps: dict[int, set[str]] = {id(r): set() for r in survivors}
        for i, first in enumerate(survivors):
            for second in survivors[i + 1:]:
                common = first.task.affected_paths & second.task.affected_paths
                if common:
                    overlaps[id(first)] |= common
                    overlaps[id(second)] |= common
        for r in survivors:
            common = frozenset(overlaps[id(r)])
            r.conflict_prediction = ConflictPrediction(
                has_high_conflict_risk=bool(common),
                overlapping_paths=common,
                critical_files_modified=_critical_files(r.task.affected_paths),
            )
        return results

    def filter_duplicates(self, tasks: list[DeduplicatedTask], ctx=None) -> list[DeduplicatedTask]:
        log = ctx.logger(__name__) if ctx else logger
        kept = []
        for t in tasks:
            if t.is_potential_duplicate:
                log.info(
                    "Dropping duplicate task %r (similarity %.2f with %s)",
                    t.title,
                    t.max_similarity,
                    t.duplicate_of,
                )
                continue
            kept.append(t)
        return kept

    @staticmethod
    def get_conflict_safe_order(tasks: list[DeduplicatedTask]) -> list[DeduplicatedTask]:
        """Low-risk tasks first, then high-risk; input order kept within each group."""
        low = [t for t in tasks if not t.conflict_prediction.has_high_conflict_risk]
        high = [t for t in tasks if t.conflict_prediction.has_high_conflict_risk]
        return low + high

    def process(
        self, tasks: list[Task], existing_issues: list[TrackedIssue], ctx=None
    ) -> list[DeduplicatedTask]:
        """Deduplicate, drop duplicates and return the conflict-safe order."""
        if not tasks:
            return []
        scored = self.deduplicate(tasks, existing_issues, ctx)
        kept = self.filter_duplicates(scored, ctx)
        ordered = self.get_conflict_safe_order(kept)
        log = ctx.logger(__name__) if ctx else logger
        log.info(
            "Deduplication: %d discovered, %d duplicates dropped, %d high conflict risk",
            len(tasks),
            len(scored) - len(kept),
            sum(1 for t in kept if t.conflict_prediction.has_high_conflict_risk),
        )
        return ordered
