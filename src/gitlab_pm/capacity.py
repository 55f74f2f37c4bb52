"""Sprint capacity, allocation and utilization per team member."""

from gitlab_pm.absences import Absence, capacity_with_absences
from gitlab_pm.classifier import estimated_hours
from gitlab_pm.dates import round_half_up
from gitlab_pm.labels import sprint_name
from gitlab_pm.models import Issue, Iteration, MemberCapacity, SprintCapacity
from gitlab_pm.settings import CapacitySettings
from gitlab_pm.team import CapacityOverride, TeamMember, roles_compatible

OVERLOADED = 100.0
AT_CAPACITY = 80.0
UNDER_UTILIZED = 50.0


def utilization_status(utilization: float) -> str:
    if utilization >= OVERLOADED:
        return "overloaded"
    if utilization >= AT_CAPACITY:
        return "at-capacity"
    return "healthy"


def team_status(utilization: float) -> str:
    status = utilization_status(utilization)
    if status == "healthy" and utilization < UNDER_UTILIZED:
        return "under-utilized"
    return status


def in_sprint(issue: Issue, sprint: Iteration) -> bool:
    """Whether an issue is scheduled in ``sprint`` (by id, else by name)."""
    ref = issue.iteration
    if ref is None:
        return False
    if ref.id is not None and sprint.id is not None:
        return str(ref.id) == str(sprint.id)
    return sprint_name(ref) == sprint.title


def member_available_hours(
    member: TeamMember,
    sprint: Iteration,
    absences: list[Absence] | None = None,
    working_days_per_week: int = 5,
) -> float:
    """Default capacity scaled to the sprint window, net of absences.

    Undated sprints use the member's default capacity unchanged.
    """
    if sprint.start_date is None or sprint.due_date is None:
        return float(member.default_capacity)
    impact = capacity_with_absences(
        absences or [], member.username, sprint.start_date, sprint.due_date,
        member.default_capacity, working_days_per_week,
    )
    return impact.adjusted_hours


def plan_sprint_capacity(
    issues: list[Issue],
    sprint: Iteration,
    members: list[TeamMember],
    capacity: CapacitySettings,
    overrides: dict[str, CapacityOverride] | None = None,
    absences: list[Absence] | None = None,
) -> SprintCapacity:
    """Available, allocated and remaining hours for each member of a sprint.

    Args:
        issues: Snapshot issues
        sprint: The selected sprint
        members: Configured team
        capacity: Hours-per-point and hours-per-issue conversions
        overrides: Hand-entered hours keyed by username
        absences: Absences applied when no override exists

    Returns:
        SprintCapacity with per-member rows and team totals
    """
    overrides = overrides or {}
    sprint_issues = [i for i in issues if i.is_open and in_sprint(i, sprint)]

    rows: list[MemberCapacity] = []
    for member in members:
        override = overrides.get(member.username)
        if override is not None:
            available = float(override.available_hours)
            reason = override.reason
        else:
            available = member_available_hours(member, sprint, absences, capacity.working_days_per_week)
            reason = ""

        assigned = [i for i in sprint_issues if any(a.username == member.username for a in i.assignees)]
        allocated = sum(estimated_hours(i, capacity) for i in assigned)
        utilization = allocated / available * 100 if available > 0 else 0.0
        utilization = round_half_up(utilization, 1)

        rows.append(MemberCapacity(
            username=member.username,
            name=member.name or member.username,
            role=member.role,
            available_hours=round_half_up(available, 1),
            allocated_hours=round_half_up(allocated, 1),
            remaining_hours=round_half_up(available - allocated, 1),
            utilization=utilization,
            status=utilization_status(utilization),
            issue_count=len(assigned),
            reason=reason,
        ))

    total_available = round_half_up(sum(r.available_hours for r in rows), 1)
    total_allocated = round_half_up(sum(r.allocated_hours for r in rows), 1)
    total_utilization = (
        round_half_up(total_allocated / total_available * 100, 1) if total_available > 0 else 0.0
    )

    result = SprintCapacity(
        sprint_id=sprint.id,
        sprint_name=sprint.title,
        members=rows,
        total_available=total_available,
        total_allocated=total_allocated,
        total_remaining=round_half_up(total_available - total_allocated, 1),
        utilization=total_utilization,
        status=team_status(total_utilization),
    )
    result.recommendations = capacity_recommendations(result)
    return result


def capacity_recommendations(plan: SprintCapacity) -> list[str]:
    """Rebalancing hints between members of compatible roles."""
    recommendations = []
    spare = sorted(
        (m for m in plan.members if m.status == "healthy" and m.remaining_hours > 0),
        key=lambda m: m.remaining_hours,
        reverse=True,
    )
    for member in plan.members:
        if member.status != "overloaded":
            continue
        excess = round_half_up(member.allocated_hours - member.available_hours, 1)
        helper = next((m for m in spare if roles_compatible(member.role, m.role)), None)
        if helper is not None:
            hours = min(excess, helper.remaining_hours)
            recommendations.append(
                f"Move about {hours:g}h of work from {member.name} to {helper.name}"
            )
        else:
            recommendations.append(
                f"{member.name} is over capacity by {excess:g}h; reduce sprint scope"
            )

    if plan.status == "under-utilized" and plan.members:
        recommendations.append(
            f"Team has {plan.total_remaining:g}h unallocated; pull in refined backlog work"
        )
    return recommendations
