"""Discovery agent that asks Claude for improvement tasks in a repository."""

import json
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

import anthropic

sys.path.insert(0, str(Path(__file__).resolve().parent))

from errors import AgentError
from github_client import TrackedIssue

log = logging.getLogger("discovery")

CATEGORIES = ("feature", "bugfix", "refactor", "docs", "test", "security", "performance", "chore")
PRIORITIES = ("critical", "high", "medium", "low")
COMPLEXITIES = ("simple", "moderate", "complex")

_MAX_TREE_ENTRIES = 400
_README_EXCERPT_CHARS = 4000

_SYSTEM_PROMPT = """\
You are a senior engineer looking for concrete, self-contained improvements to
a code repository.  Each task you propose will be executed by an autonomous
coding agent in its own branch and merged without human help.

Rules:
- Propose small, independently mergeable changes; avoid overlapping files.
- Never propose work that duplicates one of the existing open issues.
- affected_paths must list the files or directories the change will touch.
- category is one of: feature, bugfix, refactor, docs, test, security,
  performance, chore.
- priority is one of: critical, high, medium, low.
- estimated_complexity is one of: simple, moderate, complex.

Respond with a single JSON object (no markdown fences) with this schema:
{
  "tasks": [
    {
      "title": "<action-oriented title>",
      "description": "<what to change and how to verify it>",
      "category": "<category>",
      "priority": "<priority>",
      "estimated_complexity": "<complexity>",
      "affected_paths": ["<path>", ...],
      "related_issue_ids": [<issue number>, ...]
    }
  ]
}
"""

_USER_TEMPLATE = """\
Propose at most {max_tasks} improvement tasks for this repository.

## Repository files
{tree}

## README
{readme}
{context}
## Existing open issues
{issues}
"""


@dataclass(frozen=True)
class Task:
    title: str
    description: str
    category: str = "chore"
    priority: str = "medium"
    estimated_complexity: str = "moderate"
    affected_paths: frozenset[str] = field(default_factory=frozenset)
    related_issue_ids: tuple[int, ...] = ()

    def issue_labels(self, issue_label: str) -> list[str]:
        return [
            issue_label,
            f"priority:{self.priority}",
            f"type:{self.category}",
            f"complexity:{self.estimated_complexity}",
        ]

    def issue_body(self) -> str:
        parts = ["## Description", "", self.description, ""]
        if self.affected_paths:
            parts += ["## Affected Paths", ""]
            parts += [f"- `{p}`" for p in sorted(self.affected_paths)]
            parts.append("")
        if self.related_issue_ids:
            refs = ", ".join(f"#{n}" for n in self.related_issue_ids)
            parts += ["## Related Issues", "", refs, ""]
        parts += ["---", "*Discovered automatically by autodev*"]
        return "\n".join(parts)


def parse_tasks(raw: str) -> list[Task]:
    """Parse Claude's JSON reply into :class:`Task` objects."""
    raw = raw.strip()
    # Strip markdown fences if Claude wraps despite instructions
    if raw.startswith("```"):
        raw = raw.split("\n", 1)[-1].rsplit("```", 1)[0].strip()

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AgentError(f"Claude returned invalid JSON: {exc}") from exc

    tasks_data = data.get("tasks") if isinstance(data, dict) else None
    if not isinstance(tasks_data, list):
        raise AgentError(f"Expected 'tasks' list in Claude response; got: {type(tasks_data)}")

    tasks: list[Task] = []
    for i, t in enumerate(tasks_data):
        try:
            title = t["title"].strip()
            description = t["description"].strip()
        except (KeyError, AttributeError, TypeError) as exc:
            log.warning("Skipping discovered task %d: missing title/description (%s)", i, exc)
            continue
        category = t.get("category", "chore")
        priority = t.get("priority", "medium")
        complexity = t.get("estimated_complexity", "moderate")
        tasks.append(
            Task(
                title=title,
                description=description,
                category=category if category in CATEGORIES else "chore",
                priority=priority if priority in PRIORITIES else "medium",
                estimated_complexity=complexity if complexity in COMPLEXITIES else "moderate",
                affected_paths=frozenset(str(p).strip() for p in t.get("affected_paths") or [] if str(p).strip()),
                related_issue_ids=tuple(int(n) for n in t.get("related_issue_ids") or [] if str(n).isdigit()),
            )
        )
    return tasks


def list_repo_files(repo_path: Path, exclude_paths: list[str], limit: int = _MAX_TREE_ENTRIES) -> list[str]:
    excluded = set(exclude_paths) | {".git"}
    files: list[str] = []
    for root, dirs, names in os.walk(repo_path):
        rel_root = Path(root).relative_to(repo_path)
        dirs[:] = sorted(
            d for d in dirs
            if d not in excluded and str(rel_root / d) not in excluded
        )
        for name in sorted(names):
            rel = str(rel_root / name) if str(rel_root) != "." else name
            if rel in excluded:
                continue
            files.append(rel)
            if len(files) >= limit:
                return files
    return files


class TaskDiscoverer:
    """Ask Claude for new tasks, given a checkout and the open issues."""

    def __init__(self, model: str = "claude-opus-4-6", client: anthropic.Anthropic | None = None):
        self.model = model
        self._client = client

    @property
    def client(self) -> anthropic.Anthropic:
        if self._client is None:
            self._client = anthropic.Anthropic()
        return self._client

    def discover_tasks(
        self,
        repo_path: str | Path,
        exclude_paths: list[str],
        tasks_per_cycle: int,
        existing_issues: list[TrackedIssue],
        repo_context: str = "",
    ) -> list[Task]:
        if tasks_per_cycle <= 0:
            return []
        repo_path = Path(repo_path)
        tree = list_repo_files(repo_path, exclude_paths)
        readme = ""
        for name in ("README.md", "README.rst", "README"):
            candidate = repo_path / name
            if candidate.exists():
                try:
                    readme = candidate.read_text(encoding="utf-8")[:_README_EXCERPT_CHARS]
                except OSError as exc:
                    log.warning("Could not read %s: %s", candidate, exc)
                break

        issues = "\n".join(f"- #{i.id}: {i.title}" for i in existing_issues) or "(none)"
        user_msg = _USER_TEMPLATE.format(
            max_tasks=tasks_per_cycle,
            tree="\n".join(tree) or "(empty)",
            readme=readme or "(no README)",
            context=f"\n## Additional context\n{repo_context}\n" if repo_context else "",
            issues=issues,
        )

        log.info("Asking %s for up to %d tasks (%d files listed)", self.model, tasks_per_cycle, len(tree))
        try:
            with self.client.messages.stream(
                model=self.model,
                max_tokens=8192,
                system=_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": user_msg}],
            ) as stream:
                response = stream.get_final_message()
        except anthropic.APIError as exc:
            raise AgentError(f"Discovery request failed: {exc}") from exc

        text_block = next((b for b in response.content if b.type == "text"), None)
        if text_block is None:
            raise AgentError("Claude response contained no text block")

        tasks = parse_tasks(text_block.text)[:tasks_per_cycle]
        log.info("Discovered %d tasks", len(tasks))
        return tasks


def clone_for_analysis(repo_url: str, token: str | None, work_dir: Path, base_branch: str = "main") -> Path:
    """Shallow-clone the repository for discovery; fall back to the cwd on failure."""
    target = work_dir / "analysis"
    if target.exists():
        shutil.rmtree(target, ignore_errors=True)
    url = repo_url
    if token and url.startswith("https://"):
        url = url.replace("https://", f"https://x-access-token:{token}@", 1)
    try:
        proc = subprocess.run(
            ["git", "clone", "--depth", "1", "--branch", base_branch, url + ".git", str(target)],
            capture_output=True,
            text=True,
            timeout=300,
        )
    except subprocess.TimeoutExpired:
        log.warning("Analysis clone timed out, analysing the current directory instead")
        return Path.cwd()
    if proc.returncode != 0:
        log.warning("Analysis clone failed, analysing the current directory instead: %s", proc.stderr[:300])
        return Path.cwd()
    return target
