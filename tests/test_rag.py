"""Tests for per-epic RAG analysis."""

from datetime import date, datetime, timedelta, timezone

from gitlab_pm.models import Epic, Issue, Iteration, IterationRef
from gitlab_pm.rag import analyze_epic, rag_analysis_to_dict, remaining_iterations

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()

PAST_SPRINTS = [
    IterationRef(
        title=f"Sprint {n}",
        id=n,
        start_date=date(2025, 12, 22) + timedelta(days=14 * (n - 1)),
        due_date=date(2025, 12, 22) + timedelta(days=14 * (n - 1) + 13),
    )
    for n in range(1, 6)
]

FUTURE_ITERATIONS = [
    Iteration(
        id=5 + n,
        title=f"Sprint {5 + n}",
        start_date=TODAY + timedelta(days=offset),
        due_date=TODAY + timedelta(days=offset + 13),
    )
    for n, offset in enumerate((1, 15, 29), start=1)
]


def _make_issue(iid, state="opened", iteration=None, labels=None):
    return Issue(
        id=9000 + iid,
        iid=iid,
        title=f"Issue {iid}",
        state=state,
        labels=labels or [],
        iteration=iteration,
    )


def _make_epic(closed_per_sprint, open_count, due_in=42, blocked=0):
    issues = []
    iid = 1
    for sprint in PAST_SPRINTS:
        for _ in range(closed_per_sprint):
            issues.append(_make_issue(iid, state="closed", iteration=sprint))
            iid += 1
    for n in range(open_count):
        labels = ["blocked"] if n < blocked else []
        issues.append(_make_issue(iid, labels=labels))
        iid += 1
    due = TODAY + timedelta(days=due_in) if due_in is not None else None
    return Epic(id=101, iid=1, title="Checkout", due_date=due, issues=issues)


class TestAnalyzeEpic:
    """Tests for analyze_epic."""

    def test_velocity_gap_is_red(self):
        analysis = analyze_epic(_make_epic(2, 10), NOW, FUTURE_ITERATIONS)
        metrics = analysis.metrics
        assert metrics.current_velocity == 2.0
        assert metrics.remaining_iterations == 3
        assert metrics.required_velocity == 3.33
        assert metrics.progress_percent == 50.0
        assert analysis.status == "red"
        assert analysis.reason.startswith("Requires 3.3 issues per iteration")
        assert [f.severity for f in analysis.factors] == ["critical", "warning"]
        assert [a.title for a in analysis.actions] == ["Reduce scope or add capacity"]

    def test_projection(self):
        projection = analyze_epic(_make_epic(2, 10), NOW, FUTURE_ITERATIONS).projection
        assert projection.iterations_needed == 5
        assert projection.weeks_needed == 10
        assert projection.date == TODAY + timedelta(days=70)
        assert projection.on_time is False
        assert projection.days_variance == 28

    def test_velocity_below_requirement_is_amber(self):
        analysis = analyze_epic(_make_epic(3, 10), NOW, FUTURE_ITERATIONS)
        assert analysis.status == "amber"
        assert [f.category for f in analysis.factors] == ["velocity"]
        assert analysis.projection.iterations_needed == 4
        assert analysis.projection.days_variance == 14

    def test_on_track_is_green(self):
        analysis = analyze_epic(_make_epic(3, 6), NOW, FUTURE_ITERATIONS)
        assert analysis.status == "green"
        assert analysis.reason == "On track"
        assert analysis.factors == []
        assert analysis.projection.on_time is True
        assert analysis.projection.days_variance == -14

    def test_blockers_are_amber(self):
        analysis = analyze_epic(_make_epic(3, 6, blocked=1), NOW, FUTURE_ITERATIONS)
        assert analysis.status == "amber"
        assert analysis.metrics.blocker_count == 1
        assert analysis.actions[0].title == "Resolve blocking dependencies"

    def test_overdue_is_red(self):
        analysis = analyze_epic(_make_epic(3, 6, due_in=-5), NOW, FUTURE_ITERATIONS)
        assert analysis.status == "red"
        assert analysis.reason == "Epic is 5 days overdue with 6 open issues"
        assert "Replan due date" in [a.title for a in analysis.actions]

    def test_low_progress_near_due_is_red(self):
        analysis = analyze_epic(_make_epic(1, 20, due_in=10), NOW)
        assert analysis.status == "red"
        assert "progress" in [f.category for f in analysis.factors]

    def test_no_deadline_skips_velocity_rules(self):
        analysis = analyze_epic(_make_epic(2, 10, due_in=None), NOW)
        assert analysis.metrics.remaining_iterations is None
        assert analysis.status == "green"
        assert analysis.projection.on_time is None
        assert analysis.projection.days_variance is None

    def test_no_velocity_has_no_projection(self):
        analysis = analyze_epic(_make_epic(0, 4), NOW, FUTURE_ITERATIONS)
        assert analysis.metrics.current_velocity == 0.0
        assert analysis.projection is None
        assert analysis.status == "red"

    def test_epic_without_issues_is_green(self):
        epic = Epic(id=5, iid=5, title="Empty", due_date=TODAY + timedelta(days=3))
        analysis = analyze_epic(epic, NOW)
        assert analysis.status == "green"
        assert analysis.metrics.progress_percent == 0.0
        assert analysis.factors[0].severity == "info"
        assert analysis.projection is None

    def test_to_dict(self):
        data = rag_analysis_to_dict(analyze_epic(_make_epic(2, 10), NOW, FUTURE_ITERATIONS))
        assert data["status"] == "red"
        assert data["projection"]["date"] == "2026-05-11"
        assert data["metrics"]["required_velocity"] == 3.33


class TestRemainingIterations:
    """Tests for remaining_iterations."""

    def test_counts_future_calendar_iterations(self):
        assert remaining_iterations(_make_epic(1, 1), NOW, FUTURE_ITERATIONS) == 3

    def test_iteration_after_due_date_not_counted(self):
        assert remaining_iterations(_make_epic(1, 1, due_in=20), NOW, FUTURE_ITERATIONS) == 2

    def test_falls_back_to_two_week_blocks(self):
        assert remaining_iterations(_make_epic(1, 1, due_in=42), NOW) == 3
        assert remaining_iterations(_make_epic(1, 1, due_in=10), NOW) == 0

    def test_none_without_due_date(self):
        assert remaining_iterations(_make_epic(1, 1, due_in=None), NOW) is None
