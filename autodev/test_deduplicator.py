"""Tests for task deduplication and conflict-safe ordering."""

from deduplicator import TaskDeduplicator, jaccard_similarity
from discovery import Task
from github_client import TrackedIssue


def make_task(title: str, description: str = "", paths=()) -> Task:
    return Task(title=title, description=description or title, affected_paths=frozenset(paths))


def make_issue(issue_id: int, title: str, body: str = "") -> TrackedIssue:
    return TrackedIssue(id=issue_id, title=title, body=body)


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def test_jaccard_identical_and_disjoint() -> None:
    assert jaccard_similarity("Add retry logic", "add RETRY logic!") == 1.0
    assert jaccard_similarity("alpha beta", "gamma delta") == 0.0
    assert jaccard_similarity("", "") == 0.0


def test_jaccard_partial_overlap() -> None:
    assert jaccard_similarity("a b c d", "a b e f") == 2 / 6


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


def test_duplicate_of_existing_issue_is_flagged() -> None:
    dedup = TaskDeduplicator(similarity_threshold=0.7)
    tasks = [make_task("Add retry logic to the http client")]
    issues = [make_issue(4, "Add retry logic to the http client")]
    [result] = dedup.deduplicate(tasks, issues)
    assert result.is_potential_duplicate
    assert result.duplicate_of == "#4"
    assert result.max_similarity == 1.0


def test_duplicates_within_batch_keep_first() -> None:
    dedup = TaskDeduplicator()
    tasks = [
        make_task("Document the config loader"),
        make_task("Document the config loader"),
        make_task("Speed up startup"),
    ]
    kept = dedup.process(tasks, [])
    assert [t.title for t in kept] == ["Document the config loader", "Speed up startup"]


def test_threshold_is_inclusive() -> None:
    dedup = TaskDeduplicator(similarity_threshold=0.5, similarity=lambda a, b: 0.5)
    [result] = dedup.deduplicate([make_task("x")], [make_issue(1, "y")])
    assert result.is_potential_duplicate


def test_unrelated_tasks_survive() -> None:
    dedup = TaskDeduplicator()
    tasks = [make_task("Add type hints to parser"), make_task("Fix flaky network test")]
    kept = dedup.process(tasks, [make_issue(1, "Improve README wording")])
    assert len(kept) == 2


def test_process_empty_batch() -> None:
    assert TaskDeduplicator().process([], [make_issue(1, "x")]) == []


# ---------------------------------------------------------------------------
# Conflict prediction and ordering
# ---------------------------------------------------------------------------


def test_overlapping_paths_mark_both_tasks_high_risk() -> None:
    dedup = TaskDeduplicator()
    tasks = [
        make_task("Refactor parser", paths={"src/parser.py", "src/util.py"}),
        make_task("Add tests for lexer", paths={"tests/test_lexer.py"}),
        make_task("Tighten util helpers", paths={"src/util.py"}),
    ]
    results = dedup.deduplicate(tasks, [])
    risky = {r.title for r in results if r.conflict_prediction.has_high_conflict_risk}
    assert risky == {"Refactor parser", "Tighten util helpers"}
    assert results[0].conflict_prediction.overlapping_paths == frozenset({"src/util.py"})


def test_duplicates_excluded_from_conflict_prediction() -> None:
    dedup = TaskDeduplicator()
    tasks = [
        make_task("Rewrite the cache layer", paths={"cache.py"}),
        make_task("Rewrite the cache layer", paths={"cache.py"}),
    ]
    results = dedup.deduplicate(tasks, [])
    assert not results[0].conflict_prediction.has_high_conflict_risk


def test_critical_files_reported() -> None:
    dedup = TaskDeduplicator()
    [result] = dedup.deduplicate([make_task("Bump deps", paths={"pyproject.toml", "src/a.py"})], [])
    assert result.conflict_prediction.critical_files_modified == frozenset({"pyproject.toml"})
    assert not result.conflict_prediction.has_high_conflict_risk


def test_conflict_safe_order_is_stable_partition() -> None:
    dedup = TaskDeduplicator()
    tasks = [
        make_task("Alpha change", paths={"shared.py"}),
        make_task("Bravo docs", paths={"docs/b.md"}),
        make_task("Charlie change", paths={"shared.py"}),
        make_task("Delta docs", paths={"docs/d.md"}),
    ]
    ordered = dedup.process(tasks, [])
    assert [t.title for t in ordered] == ["Bravo docs", "Delta docs", "Alpha change", "Charlie change"]


def test_filter_duplicates_is_idempotent() -> None:
    dedup = TaskDeduplicator()
    tasks = [make_task("Cache results"), make_task("Cache results"), make_task("Add logging")]
    once = dedup.filter_duplicates(dedup.deduplicate(tasks, []))
    twice = dedup.filter_duplicates(once)
    assert twice == once
    assert [t.title for t in once] == ["Cache results", "Add logging"]
