"""Per-epic RAG analysis: root causes, recommended actions and a projection."""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from gitlab_pm.classifier import is_blocker
from gitlab_pm.dates import days_until, round_half_up, utcnow
from gitlab_pm.labels import sprint_name
from gitlab_pm.models import (
    Epic,
    Iteration,
    RagAction,
    RagAnalysis,
    RagFactor,
    RagMetrics,
    RagProjection,
)
from gitlab_pm.velocity import sprint_velocity

DEFAULT_ITERATION_WEEKS = 2
DEFAULT_LOOKBACK = 3
VELOCITY_GAP_FACTOR = 1.5
NEAR_DUE_DAYS = 14

SEVERITY_RANK = {"green": 0, "amber": 1, "red": 2}
_FACTOR_SEVERITY = {"red": "critical", "amber": "warning"}


@dataclass
class _Finding:
    """A triggered status rule."""

    status: str
    category: str
    title: str
    reason: str
    impact: str


def _iteration_calendar(epic: Epic, iterations: list[Iteration] | None) -> list[Iteration]:
    """Known iterations from the calendar plus those referenced by the epic's issues."""
    calendar: dict[tuple, Iteration] = {}
    for iteration in iterations or []:
        calendar[(iteration.title, iteration.start_date)] = iteration
    for issue in epic.issues:
        ref = issue.iteration
        if ref is not None and ref.start_date is not None:
            name = sprint_name(ref)
            calendar.setdefault((name, ref.start_date), Iteration(
                id=ref.id, title=name, start_date=ref.start_date, due_date=ref.due_date,
            ))
    return list(calendar.values())


def remaining_iterations(
    epic: Epic,
    now: datetime,
    iterations: list[Iteration] | None = None,
) -> int | None:
    """Future iterations starting before the epic's due date.

    Falls back to two-week iterations when the calendar has nothing ahead of
    today. None when the epic has no due date.
    """
    if epic.due_date is None:
        return None
    today = now.date()
    future = [
        it for it in _iteration_calendar(epic, iterations)
        if it.start_date is not None and today < it.start_date <= epic.due_date
    ]
    if future:
        return len(future)
    return max(0, (epic.due_date - today).days // (DEFAULT_ITERATION_WEEKS * 7))


def iteration_weeks(epic: Epic, iterations: list[Iteration] | None = None) -> int:
    """Typical iteration length in weeks, two when unknown."""
    lengths = [
        (it.due_date - it.start_date).days + 1
        for it in _iteration_calendar(epic, iterations)
        if it.start_date is not None and it.due_date is not None and it.due_date >= it.start_date
    ]
    if not lengths:
        return DEFAULT_ITERATION_WEEKS
    return max(1, round_half_up(sum(lengths) / len(lengths) / 7))


def _findings(metrics: RagMetrics) -> list[_Finding]:
    """Evaluate every status rule in order."""
    findings = []
    days = metrics.days_to_due
    progress = metrics.progress_percent
    has_deadline = metrics.remaining_iterations is not None

    if days is not None and days < 0 and metrics.remaining_issues > 0:
        findings.append(_Finding(
            "red", "schedule", "Epic overdue",
            f"Epic is {-days} days overdue with {metrics.remaining_issues} open issues",
            "Delivery date has already passed",
        ))

    if has_deadline and metrics.required_velocity > metrics.current_velocity * VELOCITY_GAP_FACTOR:
        findings.append(_Finding(
            "red", "velocity", "Velocity far below requirement",
            f"Requires {metrics.required_velocity:.1f} issues per iteration; "
            f"current velocity is {metrics.current_velocity:.1f}",
            "Remaining scope cannot be finished at the current pace",
        ))

    if days is not None and progress < 30 and days < NEAR_DUE_DAYS:
        findings.append(_Finding(
            "red", "progress", "Low progress near due date",
            f"Only {progress:.0f}% complete with {days} days to due date",
            "Most of the scope is still open close to the deadline",
        ))

    if metrics.blocker_count > 0:
        findings.append(_Finding(
            "amber", "blockers", "Blocked issues",
            f"{metrics.blocker_count} open issue(s) carry a blocker label",
            f"{metrics.blocker_count} issue(s) cannot progress",
        ))

    if days is not None and 30 <= progress < 80 and days <= NEAR_DUE_DAYS:
        findings.append(_Finding(
            "amber", "progress", "Behind schedule near due date",
            f"{progress:.0f}% complete with {days} days to due date",
            "Remaining work is tight for the time left",
        ))

    if has_deadline and metrics.required_velocity > metrics.current_velocity:
        findings.append(_Finding(
            "amber", "velocity", "Velocity below requirement",
            f"Requires {metrics.required_velocity:.1f} issues per iteration; "
            f"current velocity is {metrics.current_velocity:.1f}",
            "Completion is at risk without a pace increase",
        ))

    return findings


def _actions(findings: list[_Finding], metrics: RagMetrics) -> list[RagAction]:
    actions = []
    categories = {(f.category, f.status) for f in findings}
    if ("blockers", "amber") in categories:
        actions.append(RagAction(
            priority="high",
            title="Resolve blocking dependencies",
            description="Escalate and clear the blockers on this epic's issues",
            estimated_effort="medium",
            impact=f"Unblocks {metrics.blocker_count} issue(s)",
        ))
    if ("velocity", "red") in categories:
        actions.append(RagAction(
            priority="critical",
            title="Reduce scope or add capacity",
            description=(
                f"Close the gap between required ({metrics.required_velocity:.1f}) and "
                f"current ({metrics.current_velocity:.1f}) velocity"
            ),
            estimated_effort="large",
            impact="Brings the delivery date back within reach",
        ))
    if ("schedule", "red") in categories:
        actions.append(RagAction(
            priority="critical",
            title="Replan due date",
            description="Agree a realistic due date with stakeholders",
            estimated_effort="small",
            impact="Restores a credible plan",
        ))
    return actions


def analyze_epic(
    epic: Epic,
    now: datetime | None = None,
    iterations: list[Iteration] | None = None,
    lookback: int = DEFAULT_LOOKBACK,
) -> RagAnalysis:
    """Classify an epic red, amber or green and explain why.

    Every rule is evaluated; the status is the most severe result, the reason
    is that of the first rule that fired, and each fired rule becomes a
    factor.

    Args:
        epic: Epic with its attached issues
        now: Snapshot time
        iterations: Iteration calendar used for remaining iterations
        lookback: Sprints averaged for current velocity

    Returns:
        RagAnalysis; a projection is included when current velocity is positive
    """
    now = now or utcnow()
    total = len(epic.issues)
    closed = sum(1 for i in epic.issues if i.is_closed)
    remaining = total - closed
    days = days_until(epic.due_date, now) if epic.due_date else None

    if total == 0:
        metrics = RagMetrics(
            total_issues=0, closed_issues=0, progress_percent=0.0,
            current_velocity=0.0, remaining_issues=0,
            remaining_iterations=remaining_iterations(epic, now, iterations),
            required_velocity=0.0, days_to_due=days, blocker_count=0,
        )
        return RagAnalysis(
            epic_id=epic.id,
            epic_title=epic.title,
            status="green",
            reason="No issues in epic",
            metrics=metrics,
            factors=[RagFactor(
                severity="info",
                category="data",
                title="No issues attached",
                description="The epic has no issues; completion is reported as 0%",
                impact="Status cannot reflect delivery risk",
            )],
        )

    current = sprint_velocity(epic.issues, lookback).avg_by_issues
    left = remaining_iterations(epic, now, iterations)
    metrics = RagMetrics(
        total_issues=total,
        closed_issues=closed,
        progress_percent=round_half_up(closed / total * 100, 1),
        current_velocity=current,
        remaining_issues=remaining,
        remaining_iterations=left,
        required_velocity=round_half_up(remaining / max(1, left or 0), 2),
        days_to_due=days,
        blocker_count=sum(1 for i in epic.issues if i.is_open and is_blocker(i)),
    )

    findings = _findings(metrics)
    if findings:
        status = max((f.status for f in findings), key=SEVERITY_RANK.__getitem__)
        reason = findings[0].reason
    else:
        status = "green"
        reason = "On track"

    factors = [
        RagFactor(
            severity=_FACTOR_SEVERITY[f.status],
            category=f.category,
            title=f.title,
            description=f.reason,
            impact=f.impact,
        )
        for f in findings
    ]

    projection = None
    if current > 0:
        needed = math.ceil(remaining / current)
        weeks = needed * iteration_weeks(epic, iterations)
        projected = now.date() + timedelta(days=weeks * 7)
        projection = RagProjection(
            date=projected,
            iterations_needed=needed,
            weeks_needed=weeks,
            on_time=projected <= epic.due_date if epic.due_date else None,
            days_variance=(projected - epic.due_date).days if epic.due_date else None,
        )

    return RagAnalysis(
        epic_id=epic.id,
        epic_title=epic.title,
        status=status,
        reason=reason,
        metrics=metrics,
        factors=factors,
        actions=_actions(findings, metrics),
        projection=projection,
    )


def rag_analysis_to_dict(analysis: RagAnalysis) -> dict:
    """Convert a RagAnalysis to a JSON-serializable dict."""
    projection = analysis.projection
    m = analysis.metrics
    return {
        "epic_id": analysis.epic_id,
        "epic_title": analysis.epic_title,
        "status": analysis.status,
        "reason": analysis.reason,
        "metrics": {
            "total_issues": m.total_issues,
            "closed_issues": m.closed_issues,
            "progress_percent": m.progress_percent,
            "current_velocity": m.current_velocity,
            "remaining_issues": m.remaining_issues,
            "remaining_iterations": m.remaining_iterations,
            "required_velocity": m.required_velocity,
            "days_to_due": m.days_to_due,
            "blocker_count": m.blocker_count,
        },
        "factors": [
            {
                "severity": f.severity,
                "category": f.category,
                "title": f.title,
                "description": f.description,
                "impact": f.impact,
            }
            for f in analysis.factors
        ],
        "actions": [
            {
                "priority": a.priority,
                "title": a.title,
                "description": a.description,
                "estimated_effort": a.estimated_effort,
                "impact": a.impact,
            }
            for a in analysis.actions
        ],
        "projection": {
            "date": projection.date.isoformat(),
            "iterations_needed": projection.iterations_needed,
            "weeks_needed": projection.weeks_needed,
            "on_time": projection.on_time,
            "days_variance": projection.days_variance,
        } if projection else None,
    }
