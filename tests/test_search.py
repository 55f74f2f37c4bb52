"""Tests for search, filters and the risk register."""

from datetime import date, datetime, timezone
from itertools import permutations

import pytest

from gitlab_pm.models import Epic, EntityRef, Issue, Milestone, Person
from gitlab_pm.risks import Risk, RiskRegister, risk_from_dict
from gitlab_pm.search import (
    IssueFilter,
    filter_issues,
    filter_options,
    search_epics,
    search_issues,
    search_milestones,
)
from gitlab_pm.store import KeyValueStore

NOW = datetime(2026, 3, 2, tzinfo=timezone.utc)

CHECKOUT = EntityRef(id=101, title="Checkout")
BETA = EntityRef(id=201, title="Beta")


def _issues():
    return [
        Issue(
            id=1, iid=11, title="Fix payment timeout", state="opened",
            labels=["bug", "priority::high"], description="Gateway times out",
            assignees=[Person(username="ana", name="Ana Silva")],
            epic=CHECKOUT, milestone=BETA, due_date=date(2026, 2, 20), reference="#11",
        ),
        Issue(
            id=2, iid=12, title="Add coupon field", state="opened",
            labels=["feature"], epic=CHECKOUT,
        ),
        Issue(
            id=3, iid=13, title="Refactor cart", state="closed",
            labels=["Tech-Debt"], assignees=[Person(username="raj", name="Raj")],
            milestone=BETA, description="Cleanup",
        ),
        Issue(id=4, iid=14, title="Spike search", state="opened"),
    ]


class TestSearch:
    """Tests for text search."""

    def test_blank_query_returns_input(self):
        issues = _issues()
        assert search_issues(issues, "") is issues
        assert search_issues(issues, "   ") is issues
        assert search_issues(issues, None) is issues

    def test_matches_title_description_and_people(self):
        assert [i.iid for i in search_issues(_issues(), "PAYMENT")] == [11]
        assert [i.iid for i in search_issues(_issues(), "gateway")] == [11]
        assert [i.iid for i in search_issues(_issues(), "silva")] == [11]
        assert [i.iid for i in search_issues(_issues(), "checkout")] == [11, 12]

    def test_matches_reference(self):
        assert [i.iid for i in search_issues(_issues(), "#13")] == [13]

    def test_epics_and_milestones(self):
        epics = [Epic(id=101, iid=3, title="Checkout"), Epic(id=102, iid=4, title="Search")]
        milestones = [Milestone(id=201, iid=1, title="Beta"), Milestone(id=202, iid=2, title="GA")]
        assert [e.id for e in search_epics(epics, "&4")] == [102]
        assert [m.id for m in search_milestones(milestones, "beta")] == [201]
        assert search_epics(epics, "") is epics


class TestFilters:
    """Tests for IssueFilter and filter_issues."""

    def test_empty_filter_keeps_everything(self):
        issues = _issues()
        assert filter_issues(issues, IssueFilter(), NOW) == issues

    def test_state(self):
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(state="closed"), NOW)] == [13]
        assert len(filter_issues(_issues(), IssueFilter(state="all"), NOW)) == 4

    def test_open_state_matches_opened_issues(self):
        expected = [11, 12, 14]
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(state="open"), NOW)] == expected
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(state="opened"), NOW)] == expected

    def test_labels_any_of_case_insensitive(self):
        criteria = IssueFilter(labels=["tech-debt", "feature"])
        assert [i.iid for i in filter_issues(_issues(), criteria, NOW)] == [12, 13]

    def test_unassigned(self):
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(assignee="unassigned"), NOW)] == [12, 14]

    def test_epic_milestone_priority_overdue(self):
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(epic_id=101), NOW)] == [11, 12]
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(milestone_id=201), NOW)] == [11, 13]
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(priority="high"), NOW)] == [11]
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(overdue=True), NOW)] == [11]

    def test_missing_fields(self):
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(missing_description=True), NOW)] == [12, 14]
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(missing_labels=True), NOW)] == [14]
        assert [i.iid for i in filter_issues(_issues(), IssueFilter(missing_due_date=True), NOW)] == [12, 13, 14]

    def test_combined_filters_intersect_in_any_order(self):
        single = [
            IssueFilter(state="opened"),
            IssueFilter(epic_id=101),
            IssueFilter(missing_assignee=True),
        ]
        combined = IssueFilter(state="opened", epic_id=101, missing_assignee=True)
        expected = filter_issues(_issues(), combined, NOW)
        assert [i.iid for i in expected] == [12]
        for order in permutations(single):
            issues = _issues()
            for criteria in order:
                issues = filter_issues(issues, criteria, NOW)
            assert [i.iid for i in issues] == [i.iid for i in expected]

    def test_filter_options(self):
        options = filter_options(_issues())
        assert options["labels"] == ["bug", "feature", "priority::high", "Tech-Debt"]
        assert options["assignees"] == [
            {"username": "ana", "name": "Ana Silva"},
            {"username": "raj", "name": "Raj"},
        ]
        assert options["epics"] == [{"id": 101, "title": "Checkout"}]
        assert options["milestones"] == [{"id": 201, "title": "Beta"}]


class TestRiskRegister:
    """Tests for Risk scoring and RiskRegister."""

    def test_score_and_level(self):
        assert Risk(id="r1", title="x", probability="high", impact="high").score == 9
        assert Risk(id="r1", title="x", probability="high", impact="medium").level == "high"
        assert Risk(id="r1", title="x", probability="low", impact="high").level == "medium"
        assert Risk(id="r1", title="x", probability="low", impact="low").level == "low"

    def test_mitigated_is_not_open(self):
        assert Risk(id="r1", title="x", status="mitigated").is_open is False

    def test_from_dict_validates(self):
        with pytest.raises(ValueError):
            risk_from_dict({"id": "r1"})
        with pytest.raises(ValueError):
            risk_from_dict({"id": "r1", "title": "x", "impact": "huge"})

    def test_save_replace_remove(self):
        register = RiskRegister(KeyValueStore(), project_id="42")
        register.save(Risk(id="r1", title="Vendor delay"))
        register.save(Risk(id="r1", title="Vendor delay", impact="high"))
        assert [r.impact for r in register.all()] == ["high"]
        assert register.remove("r1") is True
        assert register.remove("r1") is False
