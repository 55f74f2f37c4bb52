"""Backlog refinement quality and its history."""

import logging
from datetime import date

from gitlab_pm.dates import round_half_up
from gitlab_pm.labels import interpret_issue
from gitlab_pm.models import BacklogHealth, BacklogHistoryEntry, Issue, RefinementItem
from gitlab_pm.store import KeyValueStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "backlog_health_history"
HISTORY_LIMIT = 30
TREND_WINDOW = 3
TREND_THRESHOLD = 3

# Missing-field weights for ordering the refinement list.
_NEEDS_WORK_WEIGHTS = {
    "story points": 3,
    "description": 2,
    "assignee": 1,
    "sprint": 1,
}


def _missing_fields(issue: Issue) -> list[str]:
    facets = interpret_issue(issue)
    missing = []
    if facets.story_points is None:
        missing.append("story points")
    if not (issue.description or "").strip():
        missing.append("description")
    if not issue.assignees:
        missing.append("assignee")
    if facets.sprint is None:
        missing.append("sprint")
    return missing


def backlog_status(score: int) -> str:
    if score >= 75:
        return "healthy"
    if score >= 60:
        return "needs-attention"
    return "critical"


def calculate_backlog_health(issues: list[Issue]) -> BacklogHealth:
    """Score refinement quality over open issues.

    An empty backlog scores 100.
    """
    backlog = [i for i in issues if i.is_open]
    if not backlog:
        return BacklogHealth(
            score=100, status="healthy", open_issues=0,
            refined=1.0, described=1.0, sprint_ready=1.0,
        )

    refined = described = ready = 0
    for issue in backlog:
        missing = _missing_fields(issue)
        if "story points" not in missing:
            refined += 1
        if "description" not in missing:
            described += 1
        if not missing:
            ready += 1

    count = len(backlog)
    refined_ratio = refined / count
    described_ratio = described / count
    ready_ratio = ready / count
    score = round_half_up((refined_ratio + described_ratio + ready_ratio) / 3 * 100)

    return BacklogHealth(
        score=score,
        status=backlog_status(score),
        open_issues=count,
        refined=refined_ratio,
        described=described_ratio,
        sprint_ready=ready_ratio,
    )


def issues_needing_refinement(issues: list[Issue], limit: int = 10) -> list[RefinementItem]:
    """Open issues that are not sprint-ready, most work first, oldest first."""
    items = []
    for issue in issues:
        if not issue.is_open:
            continue
        missing = _missing_fields(issue)
        if missing:
            needs_work = sum(_NEEDS_WORK_WEIGHTS[name] for name in missing)
            items.append(RefinementItem(issue=issue, missing_fields=missing, needs_work=needs_work))

    def _sort_key(item: RefinementItem):
        created = item.issue.created_at.timestamp() if item.issue.created_at else float("inf")
        return (-item.needs_work, created)

    items.sort(key=_sort_key)
    return items[:limit]


class BacklogHealthHistory:
    """Ring of the most recent backlog-health measurements, one per day."""

    def __init__(self, store: KeyValueStore, key: str = HISTORY_KEY) -> None:
        self.store = store
        self.key = key

    def entries(self) -> list[BacklogHistoryEntry]:
        entries = []
        for raw in self.store.get(self.key, []):
            try:
                entries.append(BacklogHistoryEntry(day=date.fromisoformat(raw["date"]), score=int(raw["score"])))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed backlog history entry: %r", raw)
        return entries

    def record(self, score: int, day: date) -> list[BacklogHistoryEntry]:
        """Append a measurement; a second one on the same day replaces the first."""
        entries = [e for e in self.entries() if e.day != day]
        entries.append(BacklogHistoryEntry(day=day, score=score))
        entries.sort(key=lambda e: e.day)
        entries = entries[-HISTORY_LIMIT:]
        self.store.set(self.key, [{"date": e.day.isoformat(), "score": e.score} for e in entries])
        return entries

    def trend(self) -> str | None:
        """Compare the last three measurements with the three before them."""
        return backlog_trend([e.score for e in self.entries()])


def backlog_trend(scores: list[int]) -> str | None:
    """``improving``, ``declining`` or ``stable``; None with fewer than two scores."""
    if len(scores) < 2:
        return None
    if len(scores) > TREND_WINDOW:
        recent = scores[-TREND_WINDOW:]
        previous = scores[-2 * TREND_WINDOW:-TREND_WINDOW]
    else:
        recent, previous = scores[-1:], scores[:-1]
    difference = sum(recent) / len(recent) - sum(previous) / len(previous)
    if difference > TREND_THRESHOLD:
        return "improving"
    if difference < -TREND_THRESHOLD:
        return "declining"
    return "stable"
