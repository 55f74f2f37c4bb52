"""Tests for CSV export and the summary document."""

from datetime import date, datetime, timezone

from gitlab_pm.export import (
    EPIC_HEADERS,
    ISSUE_HEADERS,
    build_summary_document,
    epics_to_csv,
    format_value,
    issues_to_csv,
    milestones_to_csv,
    parse_csv,
    summary_document_to_csv,
    summary_document_to_dict,
    to_csv,
)
from gitlab_pm.metrics import assess_health
from gitlab_pm.models import Epic, EntityRef, Issue, Milestone, MilestoneStats, Person
from gitlab_pm.risks import Risk
from gitlab_pm.settings import HealthConfig

NOW = datetime(2026, 3, 2, tzinfo=timezone.utc)


def _make_issue(iid, state="opened", title=None, labels=None, **kwargs):
    return Issue(
        id=100 + iid,
        iid=iid,
        title=title or f"Issue {iid}",
        state=state,
        labels=labels or [],
        **kwargs,
    )


class TestCsv:
    """Tests for to_csv and parse_csv."""

    def test_quotes_special_characters(self):
        text = to_csv(["a", "b"], [['comma, here', 'say "hi"'], ["line\nbreak", None]])
        assert text == 'a,b\r\n"comma, here","say ""hi"""\r\n"line\nbreak",\r\n'

    def test_parse_restores_fields(self):
        rows = [['comma, here', 'say "hi"', "line\nbreak"]]
        assert parse_csv(to_csv(["x", "y", "z"], rows))[1] == rows[0]

    def test_format_value(self):
        assert format_value(None) == ""
        assert format_value(True) == "true"
        assert format_value(date(2026, 1, 2)) == "2026-01-02"
        assert format_value(3) == "3"

    def test_issues_csv(self):
        issue = _make_issue(
            7,
            title="Fix, then ship",
            labels=["bug", "priority::high"],
            assignees=[Person(username="ana", name="Ana")],
            epic=EntityRef(id=1, title="Checkout"),
            description="x" * 600,
            due_date=date(2026, 3, 10),
        )
        rows = parse_csv(issues_to_csv([issue]))
        assert rows[0] == ISSUE_HEADERS
        record = dict(zip(rows[0], rows[1]))
        assert record["Title"] == "Fix, then ship"
        assert record["Labels"] == "bug; priority::high"
        assert record["Assignees"] == "Ana"
        assert record["Epic"] == "Checkout"
        assert record["Priority"] == "high"
        assert record["Due Date"] == "2026-03-10"
        assert len(record["Description"]) == 500

    def test_epics_csv(self):
        epic = Epic(id=1, iid=3, title="Checkout", issues=[_make_issue(1, "closed"), _make_issue(2)])
        rows = parse_csv(epics_to_csv([epic], now=NOW))
        record = dict(zip(EPIC_HEADERS, rows[1]))
        assert record["Total Issues"] == "2"
        assert record["Completion %"] == "50"

    def test_milestones_csv_uses_stats_without_issues(self):
        milestone = Milestone(id=1, iid=1, title="Beta", stats=MilestoneStats(total_issues=4, closed_issues=1))
        rows = parse_csv(milestones_to_csv([milestone]))
        assert rows[1][6:10] == ["4", "3", "1", "25"]


class TestSummaryDocument:
    """Tests for build_summary_document."""

    def setup_method(self):
        beta = EntityRef(id=201, title="Beta")
        self.issues = [
            _make_issue(1, "closed", milestone=beta),
            _make_issue(2, milestone=beta),
            _make_issue(3, labels=["blocked"], title="B" * 60, reference="#3"),
            _make_issue(4, labels=["blocker"], assignees=[Person(username="raj")]),
            _make_issue(5, "closed", labels=["blocked"]),
        ]
        self.milestones = [Milestone(id=201, iid=1, title="Beta", due_date=date(2026, 3, 20))]
        self.risks = [
            Risk(id=f"r{n}", title=f"Risk {n}", probability="high", impact=impact)
            for n, impact in enumerate(["low", "high", "medium", "low", "high", "medium"])
        ] + [Risk(id="closed", title="Done", probability="high", impact="high", status="closed")]
        config = HealthConfig()
        self.document = build_summary_document(
            "42", NOW.date(), assess_health(self.issues, config, NOW), config,
            self.milestones, self.issues, self.risks,
        )

    def test_executive(self):
        executive = self.document.executive
        assert executive["project_id"] == "42"
        assert executive["snapshot_date"] == "2026-03-02"
        assert executive["total"] == 5
        assert [d["name"] for d in executive["dimensions"]] == ["completion", "schedule", "blockers", "risk"]

    def test_milestone_rows(self):
        assert self.document.milestones == [{
            "title": "Beta", "progress": 50, "closed": 1, "total": 2,
            "due_date": "2026-03-20", "state": "active",
        }]

    def test_open_blockers_only(self):
        blockers = self.document.blockers
        assert [b["id"] for b in blockers] == ["#3", "#4"]
        assert blockers[0]["title"] == "B" * 47 + "..."
        assert blockers[0]["assignee"] == "Unassigned"
        assert blockers[1]["assignee"] == "raj"

    def test_top_open_risks(self):
        risks = self.document.risks
        assert len(risks) == 5
        assert [r["score"] for r in risks] == [9, 9, 6, 6, 3]
        assert "Done" not in [r["title"] for r in risks]

    def test_csv_and_dict(self):
        rows = parse_csv(summary_document_to_csv(self.document))
        assert rows[0] == ["Section", "Value", "Weight"]
        assert ["Milestone", "Progress %", "Closed", "Total", "Due Date", "State"] in rows
        data = summary_document_to_dict(self.document)
        assert set(data) == {"executive", "milestones", "blockers", "risks"}
