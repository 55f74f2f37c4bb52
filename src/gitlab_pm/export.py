"""CSV tables and the three-part summary document."""

import csv
import io
from dataclasses import dataclass, field
from datetime import date, datetime

from gitlab_pm.dates import round_half_up
from gitlab_pm.labels import interpret_issue
from gitlab_pm.metrics import calculate_health_score, calculate_stats
from gitlab_pm.models import (
    Epic,
    HealthScore,
    Initiative,
    Issue,
    Milestone,
    SprintVelocity,
)
from gitlab_pm.settings import HealthConfig

DESCRIPTION_LIMIT = 500
TITLE_LIMIT = 50
SUMMARY_ROWS = 5

ISSUE_HEADERS = [
    "Issue ID", "Title", "URL", "State", "Labels", "Assignees", "Epic", "Milestone",
    "Due Date", "Created", "Updated", "Author", "Priority", "Weight",
    "Time Estimate", "Time Spent", "Description",
]
EPIC_HEADERS = [
    "Epic ID", "Title", "URL", "State", "Labels", "Start Date", "Due Date",
    "Total Issues", "Open Issues", "Closed Issues", "Completion %", "Health Score",
    "Author", "Description",
]
MILESTONE_HEADERS = [
    "Milestone ID", "Title", "URL", "State", "Start Date", "Due Date",
    "Total Issues", "Open Issues", "Closed Issues", "Completion %", "Description",
]
VELOCITY_HEADERS = [
    "Sprint", "Start Date", "End Date", "Total Issues", "Completed Issues",
    "Total Points", "Completed Points", "Completion %",
]
RISK_HEADERS = [
    "Risk Title", "Description", "Impact", "Probability", "Risk Score",
    "Mitigation Strategy", "Owner", "Status", "Created Date",
]
INITIATIVE_HEADERS = [
    "Initiative", "Status", "Progress %", "Epics", "Total Issues", "Closed Issues",
    "Start Date", "Due Date",
]


def format_value(value) -> str:
    """Render a cell: ISO dates, lowercase booleans, blank for None."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def to_csv(headers: list[str], rows: list[list]) -> str:
    """Serialize a header row and data rows with CRLF row endings.

    Fields containing a comma, quote or line break are quoted and embedded
    quotes doubled.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow([format_value(h) for h in headers])
    for row in rows:
        writer.writerow([format_value(cell) for cell in row])
    return buffer.getvalue()


def parse_csv(text: str) -> list[list[str]]:
    """Parse CSV text produced by to_csv (or a spreadsheet) into rows."""
    return [row for row in csv.reader(io.StringIO(text, newline=""))]


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."


def _counts(issues: list[Issue]) -> tuple[int, int, int, int]:
    total = len(issues)
    closed = sum(1 for i in issues if i.is_closed)
    completion = round_half_up(closed / total * 100) if total else 0
    return total, total - closed, closed, completion


def issues_to_csv(issues: list[Issue]) -> str:
    rows = []
    for issue in issues:
        rows.append([
            issue.iid,
            issue.title,
            issue.web_url,
            issue.state,
            "; ".join(issue.labels),
            "; ".join(a.name or a.username for a in issue.assignees),
            issue.epic.title if issue.epic else "",
            issue.milestone.title if issue.milestone else "",
            issue.due_date,
            issue.created_at,
            issue.updated_at,
            (issue.author.name or issue.author.username) if issue.author else "",
            interpret_issue(issue).priority,
            issue.weight,
            issue.time_estimate,
            issue.time_spent,
            (issue.description or "")[:DESCRIPTION_LIMIT],
        ])
    return to_csv(ISSUE_HEADERS, rows)


def epics_to_csv(epics: list[Epic], health: HealthConfig | None = None, now: datetime | None = None) -> str:
    health = health or HealthConfig()
    rows = []
    for epic in epics:
        total, open_count, closed, completion = _counts(epic.issues)
        score = calculate_health_score(calculate_stats(epic.issues, now), health).score
        rows.append([
            epic.iid,
            epic.title,
            epic.web_url,
            epic.state,
            "; ".join(epic.labels),
            epic.start_date,
            epic.due_date,
            total,
            open_count,
            closed,
            completion,
            score,
            (epic.author.name or epic.author.username) if epic.author else "",
            (epic.description or "")[:DESCRIPTION_LIMIT],
        ])
    return to_csv(EPIC_HEADERS, rows)


def milestones_to_csv(milestones: list[Milestone], issues: list[Issue] | None = None) -> str:
    rows = []
    for milestone in milestones:
        scoped = [i for i in issues or [] if i.milestone is not None and i.milestone.id == milestone.id]
        if scoped:
            total, open_count, closed, completion = _counts(scoped)
        elif milestone.stats is not None:
            total = milestone.stats.total_issues
            closed = milestone.stats.closed_issues
            open_count = total - closed
            completion = round_half_up(closed / total * 100) if total else 0
        else:
            total = open_count = closed = completion = 0
        rows.append([
            milestone.iid,
            milestone.title,
            milestone.web_url,
            milestone.state,
            milestone.start_date,
            milestone.due_date,
            total,
            open_count,
            closed,
            completion,
            (milestone.description or "")[:DESCRIPTION_LIMIT],
        ])
    return to_csv(MILESTONE_HEADERS, rows)


def velocity_to_csv(velocity: SprintVelocity) -> str:
    rows = [
        [
            r.sprint, r.start_date, r.end_date, r.total_issues, r.completed_issues,
            r.total_points, r.completed_points, r.completion_rate,
        ]
        for r in velocity.sprints
    ]
    return to_csv(VELOCITY_HEADERS, rows)


def risks_to_csv(risks: list) -> str:
    rows = [
        [
            r.title, r.description, r.impact, r.probability, r.score,
            r.mitigation, r.owner, r.status, r.created_at,
        ]
        for r in risks
    ]
    return to_csv(RISK_HEADERS, rows)


def initiatives_to_csv(initiatives: list[Initiative]) -> str:
    rows = [
        [
            i.name, i.status, i.progress, len(i.epics), i.total_issues, i.closed_issues,
            i.start_date, i.due_date,
        ]
        for i in initiatives
    ]
    return to_csv(INITIATIVE_HEADERS, rows)


@dataclass
class SummaryDocument:
    """Executive summary, milestone table and risk/blocker table."""

    executive: dict
    milestones: list[dict] = field(default_factory=list)
    blockers: list[dict] = field(default_factory=list)
    risks: list[dict] = field(default_factory=list)


def build_summary_document(
    project_id: str | None,
    snapshot_date: date,
    health: HealthScore,
    config: HealthConfig,
    milestones: list[Milestone],
    issues: list[Issue],
    risks: list | None = None,
) -> SummaryDocument:
    """Assemble the summary document from health, milestone and risk data.

    Args:
        project_id: Project the snapshot belongs to
        snapshot_date: Date the snapshot was taken
        health: Project health, including the stats it was computed from
        config: Health settings whose weights are reported beside each sub-score
        milestones: Milestones for the milestone table
        issues: Snapshot issues, used for milestone progress and blockers
        risks: Register entries; the five highest-scoring open risks are listed

    Returns:
        SummaryDocument
    """
    stats = health.stats
    breakdown = health.breakdown
    weights = config.weights
    executive = {
        "project_id": project_id,
        "snapshot_date": snapshot_date.isoformat(),
        "health_score": health.score,
        "status": health.status,
        "total": stats.total,
        "open": stats.open,
        "closed": stats.closed,
        "completion_rate": stats.completion_rate,
        "blockers": stats.blockers,
        "overdue": stats.overdue,
        "at_risk": stats.at_risk,
        "dimensions": [
            {"name": "completion", "score": round_half_up(breakdown.completion_score), "weight": weights.completion},
            {"name": "schedule", "score": round_half_up(breakdown.schedule_score), "weight": weights.schedule},
            {"name": "blockers", "score": round_half_up(breakdown.blocker_score), "weight": weights.blockers},
            {"name": "risk", "score": round_half_up(breakdown.risk_score), "weight": weights.risk},
        ],
    }

    milestone_rows = []
    for milestone in milestones:
        scoped = [i for i in issues if i.milestone is not None and i.milestone.id == milestone.id]
        if scoped:
            total, _, closed, progress = _counts(scoped)
        elif milestone.stats is not None:
            total, closed = milestone.stats.total_issues, milestone.stats.closed_issues
            progress = round_half_up(closed / total * 100) if total else 0
        else:
            total = closed = progress = 0
        milestone_rows.append({
            "title": milestone.title,
            "progress": progress,
            "closed": closed,
            "total": total,
            "due_date": milestone.due_date.isoformat() if milestone.due_date else None,
            "state": milestone.state,
        })

    blocker_rows = []
    for issue in issues:
        if len(blocker_rows) == SUMMARY_ROWS:
            break
        if issue.is_open and interpret_issue(issue).blocker:
            blocker_rows.append({
                "id": issue.reference or f"#{issue.iid}",
                "title": _truncate(issue.title, TITLE_LIMIT),
                "assignee": (issue.assignees[0].name or issue.assignees[0].username)
                if issue.assignees else "Unassigned",
            })

    open_risks = sorted((r for r in risks or [] if r.is_open), key=lambda r: r.score, reverse=True)
    risk_rows = [
        {"title": _truncate(r.title, TITLE_LIMIT), "score": r.score, "owner": r.owner or "Unassigned"}
        for r in open_risks[:SUMMARY_ROWS]
    ]

    return SummaryDocument(
        executive=executive,
        milestones=milestone_rows,
        blockers=blocker_rows,
        risks=risk_rows,
    )


def summary_document_to_dict(document: SummaryDocument) -> dict:
    return {
        "executive": document.executive,
        "milestones": document.milestones,
        "blockers": document.blockers,
        "risks": document.risks,
    }


def summary_document_to_csv(document: SummaryDocument) -> str:
    """Render the summary as CSV sections separated by blank rows."""
    e = document.executive
    rows: list[list] = [
        ["Project", e["project_id"]],
        ["Snapshot Date", e["snapshot_date"]],
        ["Health Score", e["health_score"]],
        ["Status", e["status"]],
        ["Total Issues", e["total"]],
        ["Open Issues", e["open"]],
        ["Closed Issues", e["closed"]],
        ["Completion Rate %", e["completion_rate"]],
        ["Blockers", e["blockers"]],
        ["Overdue", e["overdue"]],
        ["At Risk", e["at_risk"]],
    ]
    for dimension in e["dimensions"]:
        rows.append([f"{dimension['name'].capitalize()} Score", dimension["score"], dimension["weight"]])

    rows.append([])
    rows.append(["Milestone", "Progress %", "Closed", "Total", "Due Date", "State"])
    for m in document.milestones:
        rows.append([m["title"], m["progress"], m["closed"], m["total"], m["due_date"], m["state"]])

    rows.append([])
    rows.append(["Blocker", "Title", "Assignee"])
    for b in document.blockers:
        rows.append([b["id"], b["title"], b["assignee"]])

    rows.append([])
    rows.append(["Risk", "Score", "Owner"])
    for r in document.risks:
        rows.append([r["title"], r["score"], r["owner"]])

    return to_csv(["Section", "Value", "Weight"], rows)
