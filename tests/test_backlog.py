"""Tests for backlog health, refinement list and history trend."""

from datetime import date, datetime, timedelta, timezone

from gitlab_pm.backlog import (
    HISTORY_LIMIT,
    BacklogHealthHistory,
    backlog_trend,
    calculate_backlog_health,
    issues_needing_refinement,
)
from gitlab_pm.models import Issue, Person
from gitlab_pm.store import KeyValueStore


def _make_issue(iid, state="opened", labels=None, description="", assignee=None, created_day=1):
    return Issue(
        id=1000 + iid,
        iid=iid,
        title=f"Issue {iid}",
        state=state,
        labels=labels or [],
        description=description,
        assignees=[Person(username=assignee)] if assignee else [],
        created_at=datetime(2026, 1, created_day, tzinfo=timezone.utc),
    )


class TestBacklogHealth:
    """Tests for calculate_backlog_health."""

    def test_empty_backlog_is_healthy(self):
        health = calculate_backlog_health([_make_issue(1, state="closed")])
        assert health.score == 100
        assert health.status == "healthy"
        assert health.open_issues == 0

    def test_fully_refined_backlog(self):
        issues = [_make_issue(1, labels=["sp::3", "sprint 2"], description="Details", assignee="ana")]
        health = calculate_backlog_health(issues)
        assert health.score == 100

    def test_partially_refined_backlog(self):
        issues = [
            _make_issue(1, labels=["sp::3", "sprint 2"], description="Details", assignee="ana"),
            _make_issue(2, labels=["sp::2"]),
            _make_issue(3, description="Only a description"),
            _make_issue(4),
        ]
        health = calculate_backlog_health(issues)
        # refined 2/4, described 2/4, ready 1/4 -> 41.67
        assert health.refined == 0.5
        assert health.described == 0.5
        assert health.sprint_ready == 0.25
        assert health.score == 42
        assert health.status == "critical"


class TestRefinementList:
    """Tests for issues_needing_refinement."""

    def test_orders_by_missing_work_then_age(self):
        issues = [
            _make_issue(1, labels=["sp::1"], description="d", created_day=1),
            _make_issue(2, created_day=5),
            _make_issue(3, created_day=2),
            _make_issue(4, labels=["sp::1", "sprint 1"], description="d", assignee="ana"),
            _make_issue(5, state="closed"),
        ]
        items = issues_needing_refinement(issues)
        assert [item.issue.iid for item in items] == [3, 2, 1]
        assert items[0].missing_fields == ["story points", "description", "assignee", "sprint"]
        assert items[0].needs_work == 7

    def test_respects_limit(self):
        issues = [_make_issue(i) for i in range(1, 15)]
        assert len(issues_needing_refinement(issues, limit=10)) == 10


class TestBacklogTrend:
    """Tests for backlog history and trend."""

    def test_needs_two_scores(self):
        assert backlog_trend([]) is None
        assert backlog_trend([70]) is None

    def test_short_history_compares_last_with_earlier(self):
        assert backlog_trend([60, 70]) == "improving"
        assert backlog_trend([70, 60]) == "declining"
        assert backlog_trend([70, 71, 72]) == "stable"

    def test_long_history_compares_windows(self):
        assert backlog_trend([50, 50, 50, 60, 60, 60]) == "improving"
        assert backlog_trend([60, 60, 60, 61, 59, 60]) == "stable"

    def test_history_replaces_same_day_and_caps(self):
        history = BacklogHealthHistory(KeyValueStore())
        history.record(50, date(2026, 1, 1))
        history.record(55, date(2026, 1, 1))
        assert [e.score for e in history.entries()] == [55]

        for offset in range(1, 40):
            history.record(60, date(2026, 1, 1) + timedelta(days=offset))
        entries = history.entries()
        assert len(entries) == HISTORY_LIMIT
        assert entries[-1].day == date(2026, 2, 9)

    def test_history_trend(self):
        history = BacklogHealthHistory(KeyValueStore())
        history.record(40, date(2026, 1, 1))
        history.record(80, date(2026, 1, 2))
        assert history.trend() == "improving"
