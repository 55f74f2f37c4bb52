"""Upcoming milestones and their delivery status."""

from datetime import datetime

from gitlab_pm.dates import days_until, round_half_up, utcnow
from gitlab_pm.models import Issue, Milestone, UpcomingMilestone

ON_TRACK_PROGRESS = 80
COMFORT_DAYS = 7


def milestone_progress(milestone: Milestone, issues: list[Issue] | None = None) -> int:
    """Percent of closed issues, from reported stats or the snapshot issues."""
    if milestone.stats is not None and milestone.stats.total_issues > 0:
        return round_half_up(milestone.stats.closed_issues / milestone.stats.total_issues * 100)
    if issues:
        scoped = [i for i in issues if i.milestone is not None and i.milestone.id == milestone.id]
        if scoped:
            return round_half_up(sum(1 for i in scoped if i.is_closed) / len(scoped) * 100)
    return 0


def milestone_status(milestone: Milestone, days: int, progress: int) -> str:
    if days < 0 and milestone.state != "closed":
        return "overdue"
    if progress >= ON_TRACK_PROGRESS or days > COMFORT_DAYS:
        return "on-track"
    return "at-risk"


def upcoming(
    milestones: list[Milestone],
    window_days: int = 30,
    now: datetime | None = None,
    issues: list[Issue] | None = None,
    include_overdue: bool = True,
) -> list[UpcomingMilestone]:
    """Milestones due within the next ``window_days`` days, soonest first.

    Open milestones whose due date has already passed are kept (status
    ``overdue``) unless ``include_overdue`` is False.
    """
    now = now or utcnow()
    result = []
    for milestone in milestones:
        if milestone.due_date is None:
            continue
        days = days_until(milestone.due_date, now)
        overdue = days < 0 and milestone.state != "closed"
        if not (0 <= days <= window_days or (include_overdue and overdue)):
            continue
        progress = milestone_progress(milestone, issues)
        result.append(UpcomingMilestone(
            milestone=milestone,
            days_until=days,
            progress=progress,
            status=milestone_status(milestone, days, progress),
        ))
    result.sort(key=lambda m: m.days_until)
    return result
