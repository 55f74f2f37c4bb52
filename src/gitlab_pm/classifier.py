"""Per-issue progress and classification."""

from datetime import datetime

from gitlab_pm.dates import days_until
from gitlab_pm.labels import interpret_issue
from gitlab_pm.models import Issue
from gitlab_pm.settings import CapacitySettings

AT_RISK_WINDOW_DAYS = 7

# First match wins.
_PROGRESS_MARKERS = (
    (75, ("review", "testing")),
    (50, ("progress", "wip")),
    (25, ("started",)),
)


def progress(issue: Issue) -> int:
    """Progress percent inferred from state and workflow labels."""
    if issue.is_closed:
        return 100
    lowered = [label.lower() for label in issue.labels]
    for percent, markers in _PROGRESS_MARKERS:
        if any(marker in low for low in lowered for marker in markers):
            return percent
    return 0


def is_blocker(issue: Issue) -> bool:
    return interpret_issue(issue).blocker


def is_high_priority(issue: Issue) -> bool:
    return interpret_issue(issue).priority == "high"


def story_points(issue: Issue) -> int | None:
    return interpret_issue(issue).story_points


def is_overdue(issue: Issue, now: datetime) -> bool:
    """Open with a due date before the snapshot day."""
    return issue.is_open and issue.due_date is not None and days_until(issue.due_date, now) < 0


def is_at_risk(issue: Issue, now: datetime) -> bool:
    """Open and due within the next seven days (today included)."""
    if not issue.is_open or issue.due_date is None:
        return False
    return 0 <= days_until(issue.due_date, now) <= AT_RISK_WINDOW_DAYS


def estimated_hours(issue: Issue, capacity: CapacitySettings) -> float:
    """Hours estimate from story points, or the per-issue default."""
    points = story_points(issue)
    if points is not None:
        return points * capacity.hours_per_point
    return capacity.hours_per_issue
