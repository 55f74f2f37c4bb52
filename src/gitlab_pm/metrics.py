"""Issue statistics and the composite project health score."""

import logging
from datetime import datetime, timedelta

from gitlab_pm.classifier import is_at_risk, is_blocker, is_overdue
from gitlab_pm.dates import as_utc, round_half_up, utcnow
from gitlab_pm.labels import interpret_issue, sprint_name
from gitlab_pm.models import HealthBreakdown, HealthScore, Issue, IssueStats, Iteration
from gitlab_pm.settings import HealthConfig, HealthTimeframe

logger = logging.getLogger(__name__)


def calculate_stats(issues: list[Issue], now: datetime | None = None) -> IssueStats:
    """Summarize a set of issues."""
    now = now or utcnow()
    total = len(issues)
    closed = sum(1 for i in issues if i.is_closed)
    return IssueStats(
        total=total,
        open=total - closed,
        closed=closed,
        blockers=sum(1 for i in issues if is_blocker(i)),
        overdue=sum(1 for i in issues if is_overdue(i, now)),
        at_risk=sum(1 for i in issues if is_at_risk(i, now)),
        completion_rate=round_half_up(closed / total * 100) if total else 0,
    )


def current_iteration(
    issues: list[Issue],
    now: datetime,
    iterations: list[Iteration] | None = None,
) -> str | None:
    """Name of the iteration whose window contains the snapshot day.

    The iteration calendar is consulted first, then the iterations referenced
    by issues. Returns None when no window contains today.
    """
    today = now.date()
    for iteration in iterations or []:
        if iteration.start_date and iteration.due_date:
            if iteration.start_date <= today <= iteration.due_date:
                return iteration.title
    for issue in issues:
        ref = issue.iteration
        if ref and ref.start_date and ref.due_date and ref.start_date <= today <= ref.due_date:
            return sprint_name(ref)
    return None


def filter_by_timeframe(
    issues: list[Issue],
    timeframe: HealthTimeframe,
    now: datetime,
    iteration_name: str | None = None,
) -> list[Issue]:
    """Restrict the issue set that feeds the health score.

    This is the only place the health timeframe is applied.

    Args:
        issues: Candidate issues
        timeframe: ``all``, ``iteration`` or ``days``
        now: Snapshot time
        iteration_name: Current iteration; when None under ``iteration``
            mode, every issue is kept

    Returns:
        The filtered issues, in input order
    """
    if timeframe.mode == "iteration":
        if iteration_name is None:
            logger.debug("No current iteration; health uses all issues")
            return list(issues)
        return [i for i in issues if interpret_issue(i).sprint == iteration_name]

    if timeframe.mode == "days":
        now = as_utc(now)
        cutoff = now - timedelta(days=timeframe.window_days)
        selected = []
        for issue in issues:
            if issue.is_open:
                selected.append(issue)
                continue
            closed_at = issue.closed_at or now
            recent = closed_at >= cutoff or (
                issue.updated_at is not None and issue.updated_at >= cutoff
            ) or (
                issue.due_date is not None and cutoff.date() <= issue.due_date <= now.date()
            )
            if recent:
                selected.append(issue)
        return selected

    return list(issues)


def calculate_health_score(stats: IssueStats, config: HealthConfig) -> HealthScore:
    """Composite health from stats and weights, amplifiers and thresholds."""
    amplifiers = config.amplifiers
    weights = config.weights
    total = stats.total

    def _penalized(count: int, amplifier: int) -> float:
        if total == 0:
            return 100.0
        return max(0.0, 100 - count / total * amplifier)

    breakdown = HealthBreakdown(
        completion_score=float(stats.completion_rate),
        schedule_score=_penalized(stats.overdue, amplifiers.schedule),
        blocker_score=_penalized(stats.blockers, amplifiers.blockers),
        risk_score=_penalized(stats.at_risk, amplifiers.risk),
    )

    overall = round_half_up(
        breakdown.completion_score * weights.completion
        + breakdown.schedule_score * weights.schedule
        + breakdown.blocker_score * weights.blockers
        + breakdown.risk_score * weights.risk
    )
    overall = min(100, max(0, overall))

    return HealthScore(
        score=overall,
        status=health_status(overall, config),
        breakdown=breakdown,
        stats=stats,
    )


def health_status(score: int, config: HealthConfig) -> str:
    if score >= config.thresholds.good:
        return "green"
    if score >= config.thresholds.warning:
        return "amber"
    return "red"


def assess_health(
    issues: list[Issue],
    config: HealthConfig,
    now: datetime | None = None,
    iterations: list[Iteration] | None = None,
) -> HealthScore:
    """Filter by the configured timeframe, aggregate, and score."""
    now = now or utcnow()
    iteration_name = None
    if config.timeframe.mode == "iteration":
        iteration_name = current_iteration(issues, now, iterations)
    selected = filter_by_timeframe(issues, config.timeframe, now, iteration_name)
    return calculate_health_score(calculate_stats(selected, now), config)
