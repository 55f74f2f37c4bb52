"""Text search and compound filters over issues, epics and milestones."""

from dataclasses import dataclass, field
from datetime import datetime

from gitlab_pm.classifier import is_overdue
from gitlab_pm.dates import utcnow
from gitlab_pm.labels import interpret_issue
from gitlab_pm.models import Epic, Issue, Milestone


def _matches(fields: list, query: str) -> bool:
    return any(query in str(value).lower() for value in fields if value)


def _issue_fields(issue: Issue) -> list:
    fields = [issue.title, issue.description, issue.reference, issue.id, issue.iid, f"#{issue.iid}"]
    fields.extend(issue.labels)
    for person in issue.assignees:
        fields.extend([person.name, person.username])
    if issue.author:
        fields.extend([issue.author.name, issue.author.username])
    if issue.epic:
        fields.append(issue.epic.title)
    if issue.milestone:
        fields.append(issue.milestone.title)
    return fields


def _epic_fields(epic: Epic) -> list:
    fields = [epic.title, epic.description, epic.id, epic.iid, f"&{epic.iid}"]
    fields.extend(epic.labels)
    if epic.author:
        fields.extend([epic.author.name, epic.author.username])
    return fields


def _milestone_fields(milestone: Milestone) -> list:
    return [milestone.title, milestone.description, milestone.id, milestone.iid, f"%{milestone.iid}"]


def search_issues(issues: list[Issue], query: str | None) -> list[Issue]:
    """Case-insensitive substring search; a blank query returns the input."""
    if not query or not query.strip():
        return issues
    needle = query.strip().lower()
    return [i for i in issues if _matches(_issue_fields(i), needle)]


def search_epics(epics: list[Epic], query: str | None) -> list[Epic]:
    if not query or not query.strip():
        return epics
    needle = query.strip().lower()
    return [e for e in epics if _matches(_epic_fields(e), needle)]


def search_milestones(milestones: list[Milestone], query: str | None) -> list[Milestone]:
    if not query or not query.strip():
        return milestones
    needle = query.strip().lower()
    return [m for m in milestones if _matches(_milestone_fields(m), needle)]


@dataclass
class IssueFilter:
    """Filter criteria; unset criteria match everything."""

    state: str | None = None  # "open" | "opened" | "closed" | "all"
    labels: list[str] = field(default_factory=list)  # any-of
    assignee: str | None = None  # username, or "unassigned"
    epic_id: int | None = None
    milestone_id: int | None = None
    priority: str | None = None
    overdue: bool = False
    missing_description: bool = False
    missing_assignee: bool = False
    missing_labels: bool = False
    missing_due_date: bool = False

    def matches(self, issue: Issue, now: datetime) -> bool:
        if self.state in ("open", "opened") and not issue.is_open:
            return False
        if self.state == "closed" and not issue.is_closed:
            return False
        if self.labels:
            wanted = {label.lower() for label in self.labels}
            if not any(label.lower() in wanted for label in issue.labels):
                return False
        if self.assignee:
            if self.assignee == "unassigned":
                if issue.assignees:
                    return False
            elif not any(a.username == self.assignee for a in issue.assignees):
                return False
        if self.epic_id is not None and (issue.epic is None or issue.epic.id != self.epic_id):
            return False
        if self.milestone_id is not None and (
            issue.milestone is None or issue.milestone.id != self.milestone_id
        ):
            return False
        if self.priority and interpret_issue(issue).priority != self.priority:
            return False
        if self.overdue and not is_overdue(issue, now):
            return False
        if self.missing_description and (issue.description or "").strip():
            return False
        if self.missing_assignee and issue.assignees:
            return False
        if self.missing_labels and issue.labels:
            return False
        if self.missing_due_date and issue.due_date is not None:
            return False
        return True


def filter_issues(issues: list[Issue], criteria: IssueFilter, now: datetime | None = None) -> list[Issue]:
    """Issues matching every set criterion, in input order."""
    now = now or utcnow()
    return [i for i in issues if criteria.matches(i, now)]


def filter_options(issues: list[Issue]) -> dict:
    """Distinct labels, assignees, epics and milestones present in ``issues``."""
    labels: set[str] = set()
    assignees: dict[str, str] = {}
    epics: dict[int, str] = {}
    milestones: dict[int, str] = {}
    for issue in issues:
        labels.update(issue.labels)
        for person in issue.assignees:
            assignees[person.username] = person.name or person.username
        if issue.epic:
            epics[issue.epic.id] = issue.epic.title
        if issue.milestone:
            milestones[issue.milestone.id] = issue.milestone.title

    return {
        "labels": sorted(labels, key=str.lower),
        "assignees": [
            {"username": u, "name": n} for u, n in sorted(assignees.items(), key=lambda item: item[1].lower())
        ],
        "epics": [{"id": i, "title": t} for i, t in sorted(epics.items(), key=lambda item: item[1].lower())],
        "milestones": [
            {"id": i, "title": t} for i, t in sorted(milestones.items(), key=lambda item: item[1].lower())
        ],
    }
