"""Sprint, member and team velocity with a short-lived result cache."""

import hashlib
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import asdict
from datetime import date
from typing import Callable

from gitlab_pm.absences import Absence, absence_hours
from gitlab_pm.dates import round_half_up, working_days
from gitlab_pm.labels import interpret_issue, sprint_name
from gitlab_pm.models import (
    InsufficientVelocity,
    IterationVelocity,
    Issue,
    MemberVelocity,
    SprintVelocity,
    SprintVelocityRow,
    TeamVelocity,
    VelocityFallback,
    VelocityTrend,
)
from gitlab_pm.settings import VelocityConfig

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300
CACHE_MAX_ENTRIES = 256
TREND_THRESHOLD_PERCENT = 10.0

_TRAILING_NUMBER = re.compile(r"(\d+)\s*$")


def _sprint_number(name: str) -> int:
    match = _TRAILING_NUMBER.search(name)
    return int(match.group(1)) if match else -1


def _row_sort_key(row: SprintVelocityRow):
    end = row.end_date or row.start_date
    return (end is not None, end or date.min, _sprint_number(row.sprint))


def sprint_rows(issues: list[Issue]) -> list[SprintVelocityRow]:
    """Per-sprint totals for sprints with completed work, most recent first."""
    groups: dict[str, list[Issue]] = {}
    dates: dict[str, tuple[date | None, date | None]] = {}
    for issue in issues:
        name = interpret_issue(issue).sprint
        if name is None:
            continue
        groups.setdefault(name, []).append(issue)
        ref = issue.iteration
        if ref is not None and (ref.start_date or ref.due_date):
            dates.setdefault(name, (ref.start_date, ref.due_date))

    rows = []
    for name, members in groups.items():
        completed = [i for i in members if i.is_closed]
        if not completed:
            continue
        points = [interpret_issue(i).story_points or 0 for i in members]
        completed_points = sum(interpret_issue(i).story_points or 0 for i in completed)
        start, end = dates.get(name, (None, None))
        rows.append(SprintVelocityRow(
            sprint=name,
            start_date=start,
            end_date=end,
            total_issues=len(members),
            completed_issues=len(completed),
            total_points=sum(points),
            completed_points=completed_points,
            completion_rate=round_half_up(len(completed) / len(members) * 100),
        ))

    rows.sort(key=_row_sort_key, reverse=True)
    return rows


def velocity_trend(rows: list[SprintVelocityRow]) -> VelocityTrend:
    """Compare the recent half of the sprints with the older half.

    ``rows`` are most recent first, as returned by sprint_rows.
    """
    if len(rows) < 2:
        return VelocityTrend(direction="insufficient")
    half = len(rows) // 2
    recent = [r.completed_issues for r in rows[:half]]
    older = [r.completed_issues for r in rows[-half:]]
    recent_mean = sum(recent) / len(recent)
    older_mean = sum(older) / len(older)
    if older_mean == 0:
        change = 100.0 if recent_mean > 0 else 0.0
    else:
        change = round_half_up((recent_mean - older_mean) / older_mean * 100, 1)
    if change > TREND_THRESHOLD_PERCENT:
        direction = "improving"
    elif change < -TREND_THRESHOLD_PERCENT:
        direction = "declining"
    else:
        direction = "stable"
    return VelocityTrend(direction=direction, change_percent=change)


def sprint_velocity(issues: list[Issue], lookback: int = 3) -> SprintVelocity:
    """Average completed issues and points over the last ``lookback`` sprints."""
    rows = sprint_rows(issues)
    if not rows:
        return SprintVelocity(
            sprints=[], avg_by_issues=0.0, avg_by_points=0.0,
            sprints_analyzed=0, data_quality="no-data",
            trend=VelocityTrend(direction="insufficient"),
        )

    window = rows[:lookback]
    analyzed = len(window)
    if analyzed >= lookback:
        quality = "excellent"
    elif analyzed == 2:
        quality = "moderate"
    else:
        quality = "low"

    return SprintVelocity(
        sprints=rows,
        avg_by_issues=round_half_up(sum(r.completed_issues for r in window) / analyzed, 1),
        avg_by_points=round_half_up(sum(r.completed_points for r in window) / analyzed, 1),
        sprints_analyzed=analyzed,
        data_quality=quality,
        trend=velocity_trend(rows),
    )


def member_velocity(
    issues: list[Issue],
    username: str,
    config: VelocityConfig,
    weekly_capacity: float,
    absences: list[Absence] | None = None,
    working_days_per_week: int = 5,
) -> MemberVelocity | InsufficientVelocity:
    """Hours per point (or per issue) for one member from completed iterations.

    Args:
        issues: Snapshot issues
        username: Member to measure
        config: Metric, lookback and minimum-iteration settings
        weekly_capacity: Member's weekly hours
        absences: Absences subtracted from each iteration window
        working_days_per_week: Divisor turning weekly hours into daily hours

    Returns:
        MemberVelocity, or InsufficientVelocity with its data-quality band
    """
    if not issues:
        return InsufficientVelocity(data_quality="no-data", username=username, reason="No issues in snapshot")

    completed = [
        i for i in issues
        if i.is_closed
        and any(a.username == username for a in i.assignees)
        and i.iteration is not None
        and i.iteration.start_date is not None
        and i.iteration.due_date is not None
    ]
    if not completed:
        return InsufficientVelocity(
            data_quality="no-history", username=username,
            reason="No closed issues in dated iterations",
        )

    if config.metric == "points":
        completed = [i for i in completed if (interpret_issue(i).story_points or 0) > 0]
        if not completed:
            return InsufficientVelocity(
                data_quality="no-completed-work", username=username,
                reason="No estimated work completed",
            )

    groups: dict[str, list[Issue]] = {}
    for issue in completed:
        groups.setdefault(sprint_name(issue.iteration), []).append(issue)

    ordered = sorted(groups.items(), key=lambda item: item[1][0].iteration.due_date, reverse=True)
    ordered = ordered[:config.lookback]

    daily_hours = weekly_capacity / working_days_per_week
    iterations: list[IterationVelocity] = []
    for name, group in ordered:
        ref = group[0].iteration
        if config.metric == "points":
            done = float(sum(interpret_issue(i).story_points or 0 for i in group))
        else:
            done = float(len(group))
        days = working_days(ref.start_date, ref.due_date)
        lost = absence_hours(
            absences or [], username, ref.start_date, ref.due_date,
            weekly_capacity, working_days_per_week,
        )
        available = max(0.0, days * daily_hours - lost)
        iterations.append(IterationVelocity(
            iteration=name,
            start_date=ref.start_date,
            due_date=ref.due_date,
            completed=done,
            work_days=days,
            absence_hours=lost,
            available_hours=round_half_up(available, 1),
        ))

    analyzed = len(iterations)
    if analyzed < config.min_iterations:
        return InsufficientVelocity(
            data_quality="low",
            iterations_analyzed=analyzed,
            username=username,
            reason=f"{analyzed} iteration(s) of completed work; {config.min_iterations} required",
        )

    total_metric = sum(it.completed for it in iterations)
    total_hours = sum(it.available_hours for it in iterations)
    if analyzed >= 3:
        quality = "excellent"
    elif analyzed == 2:
        quality = "moderate"
    else:
        quality = "low"

    return MemberVelocity(
        username=username,
        metric=config.metric,
        hours_per_unit=round_half_up(total_hours / total_metric, 1),
        total_metric=total_metric,
        total_hours=round_half_up(total_hours, 1),
        iterations_analyzed=analyzed,
        data_quality=quality,
        iterations=iterations,
    )


def team_velocity(
    issues: list[Issue],
    capacities: dict[str, float],
    config: VelocityConfig,
    absences: list[Absence] | None = None,
    working_days_per_week: int = 5,
) -> TeamVelocity | InsufficientVelocity:
    """Average hours per unit over members with enough history.

    Args:
        capacities: Weekly hours keyed by username; defines the team
    """
    values: dict[str, float] = {}
    for username, weekly in capacities.items():
        result = member_velocity(issues, username, config, weekly, absences, working_days_per_week)
        if isinstance(result, MemberVelocity):
            values[username] = result.hours_per_unit

    if not values:
        return InsufficientVelocity(
            data_quality="insufficient",
            reason="No team member has enough completed iterations",
        )

    return TeamVelocity(
        metric=config.metric,
        hours_per_unit=round_half_up(sum(values.values()) / len(values), 1),
        members_analyzed=len(values),
        member_values=values,
        data_quality="good" if len(values) >= 3 else "moderate",
    )


def static_velocity(config: VelocityConfig) -> VelocityFallback:
    unit = "story point" if config.metric == "points" else "issue"
    return VelocityFallback(
        hours=config.static_hours,
        source="static",
        quality="configured",
        metric=config.metric,
        details=f"Configured {config.static_hours} hours per {unit}",
    )


def velocity_with_fallback(
    issues: list[Issue],
    username: str,
    capacities: dict[str, float],
    config: VelocityConfig,
    absences: list[Absence] | None = None,
    working_days_per_week: int = 5,
) -> VelocityFallback:
    """Individual velocity, else team average, else the static setting."""
    if config.mode == "static":
        return static_velocity(config)

    weekly = capacities.get(username)
    if weekly is not None:
        individual = member_velocity(issues, username, config, weekly, absences, working_days_per_week)
        if isinstance(individual, MemberVelocity):
            return VelocityFallback(
                hours=individual.hours_per_unit,
                source="individual",
                quality=individual.data_quality,
                metric=config.metric,
                details=f"Based on {individual.iterations_analyzed} iterations",
            )

    team = team_velocity(issues, capacities, config, absences, working_days_per_week)
    if isinstance(team, TeamVelocity):
        return VelocityFallback(
            hours=team.hours_per_unit,
            source="team-average",
            quality=team.data_quality,
            metric=config.metric,
            details=f"Average of {team.members_analyzed} team members",
        )

    return static_velocity(config)


class VelocityCache:
    """Bounded map of velocity results that expire after a fixed age.

    Last writer wins per key. ``invalidate`` drops everything and is called on
    configuration changes and snapshot reloads.
    """

    def __init__(
        self,
        ttl: float = CACHE_TTL_SECONDS,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, object]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def make_key(kind: str, params: dict) -> str:
        serialized = json.dumps(params, sort_keys=True, default=str)
        digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()
        return f"{kind}:{digest}"

    def get(self, key: str):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get_or_compute(self, kind: str, params: dict, compute: Callable[[], object]):
        key = self.make_key(kind, params)
        cached = self.get(key)
        if cached is not None:
            logger.debug("Velocity cache hit for %s", kind)
            return cached
        value = compute()
        self.put(key, value)
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug("Velocity cache invalidated")

    def __len__(self) -> int:
        return len(self._entries)


class VelocityService:
    """Velocity queries over one snapshot, memoized in a VelocityCache."""

    def __init__(
        self,
        issues: list[Issue],
        config: VelocityConfig,
        capacities: dict[str, float],
        absences: list[Absence] | None = None,
        working_days_per_week: int = 5,
        cache: VelocityCache | None = None,
    ) -> None:
        self.issues = issues
        self.config = config
        self.capacities = capacities
        self.absences = absences or []
        self.working_days_per_week = working_days_per_week
        self.cache = cache if cache is not None else VelocityCache()

    def _params(self, **extra) -> dict:
        return {
            "config": asdict(self.config),
            "capacities": self.capacities,
            "absences": [a.id for a in self.absences],
            "working_days_per_week": self.working_days_per_week,
            **extra,
        }

    def sprint(self) -> SprintVelocity:
        return self.cache.get_or_compute(
            "sprint",
            self._params(),
            lambda: sprint_velocity(self.issues, self.config.lookback),
        )

    def member(self, username: str) -> MemberVelocity | InsufficientVelocity:
        weekly = self.capacities.get(username, 0.0)
        return self.cache.get_or_compute(
            "member",
            self._params(username=username),
            lambda: member_velocity(
                self.issues, username, self.config, weekly,
                self.absences, self.working_days_per_week,
            ),
        )

    def team(self) -> TeamVelocity | InsufficientVelocity:
        return self.cache.get_or_compute(
            "team",
            self._params(),
            lambda: team_velocity(
                self.issues, self.capacities, self.config,
                self.absences, self.working_days_per_week,
            ),
        )

    def with_fallback(self, username: str) -> VelocityFallback:
        return self.cache.get_or_compute(
            "fallback",
            self._params(username=username),
            lambda: velocity_with_fallback(
                self.issues, username, self.capacities, self.config,
                self.absences, self.working_days_per_week,
            ),
        )
