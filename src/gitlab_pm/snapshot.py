"""Normalize GitLab REST JSON into an immutable analysis snapshot."""

import json
import logging
from datetime import date, datetime
from pathlib import Path

from gitlab_pm.dates import parse_date, parse_timestamp, utcnow
from gitlab_pm.exceptions import SnapshotError
from gitlab_pm.models import (
    EntityRef,
    Epic,
    Issue,
    Iteration,
    IterationRef,
    Milestone,
    MilestoneStats,
    Person,
    Snapshot,
)

logger = logging.getLogger(__name__)

_UNRESOLVED_EPIC = -1


def _person(raw) -> Person | None:
    if not isinstance(raw, dict) or not raw.get("username"):
        return None
    return Person(username=raw["username"], name=raw.get("name") or "", avatar_url=raw.get("avatar_url"))


def _labels(raw) -> list[str]:
    labels = []
    for label in raw or []:
        if isinstance(label, dict):
            label = label.get("name")
        if label:
            labels.append(str(label))
    return labels


def _iteration_ref(raw) -> IterationRef | None:
    if not raw:
        return None
    if isinstance(raw, str):
        return IterationRef(title=raw)
    if not isinstance(raw, dict):
        return None
    title = raw.get("title")
    if not title and raw.get("sequence") is not None:
        title = f"Sprint {raw['sequence']}"
    if not title:
        return None
    return IterationRef(
        title=title,
        id=raw.get("id"),
        start_date=parse_date(raw.get("start_date")),
        due_date=parse_date(raw.get("due_date")),
    )


def _entity_ref(raw) -> EntityRef | None:
    if not isinstance(raw, dict) or raw.get("id") is None:
        return None
    return EntityRef(id=raw["id"], title=raw.get("title") or "", iid=raw.get("iid"))


def _missing_identity(kind: str, raw) -> bool:
    if not isinstance(raw, dict) or raw.get("id") is None or not raw.get("title"):
        logger.warning("Skipping %s without id or title: %r", kind, raw)
        return True
    return False


def build_issue(raw: dict) -> Issue:
    time_stats = raw.get("time_stats") or {}
    references = raw.get("references") or {}
    epic = _entity_ref(raw.get("epic"))
    if epic is None and raw.get("epic_iid") is not None:
        epic = EntityRef(id=_UNRESOLVED_EPIC, iid=raw["epic_iid"])
    return Issue(
        id=raw["id"],
        iid=raw.get("iid", raw["id"]),
        title=raw["title"],
        state="closed" if raw.get("state") == "closed" else "opened",
        description=raw.get("description") or "",
        labels=_labels(raw.get("labels")),
        assignees=[p for p in (_person(a) for a in raw.get("assignees") or []) if p],
        author=_person(raw.get("author")),
        iteration=_iteration_ref(raw.get("iteration")),
        milestone=_entity_ref(raw.get("milestone")),
        epic=epic,
        weight=raw.get("weight"),
        due_date=parse_date(raw.get("due_date")),
        created_at=parse_timestamp(raw.get("created_at")),
        updated_at=parse_timestamp(raw.get("updated_at")),
        closed_at=parse_timestamp(raw.get("closed_at")),
        web_url=raw.get("web_url") or "",
        reference=references.get("short") or raw.get("reference") or f"#{raw.get('iid', raw['id'])}",
        time_estimate=int(time_stats.get("time_estimate") or 0),
        time_spent=int(time_stats.get("total_time_spent") or 0),
    )


def build_epic(raw: dict) -> Epic:
    end_date = parse_date(raw.get("end_date"))
    return Epic(
        id=raw["id"],
        iid=raw.get("iid", raw["id"]),
        title=raw["title"],
        state=raw.get("state") or "opened",
        description=raw.get("description") or "",
        labels=_labels(raw.get("labels")),
        start_date=parse_date(raw.get("start_date")),
        due_date=parse_date(raw.get("due_date")) or end_date,
        end_date=end_date,
        web_url=raw.get("web_url") or "",
        author=_person(raw.get("author")),
    )


def build_milestone(raw: dict) -> Milestone:
    stats = raw.get("stats")
    return Milestone(
        id=raw["id"],
        iid=raw.get("iid", raw["id"]),
        title=raw["title"],
        state=raw.get("state") or "active",
        description=raw.get("description") or "",
        start_date=parse_date(raw.get("start_date")),
        due_date=parse_date(raw.get("due_date")),
        web_url=raw.get("web_url") or "",
        stats=MilestoneStats(
            total_issues=int(stats.get("total_issues") or 0),
            closed_issues=int(stats.get("closed_issues") or 0),
        ) if isinstance(stats, dict) else None,
    )


def _attach_issues(epics: list[Epic], issues: list[Issue]) -> None:
    by_id = {e.id: e for e in epics}
    by_iid = {e.iid: e for e in epics}
    for issue in issues:
        if issue.epic is None:
            continue
        epic = by_id.get(issue.epic.id)
        if epic is None and issue.epic.iid is not None:
            epic = by_iid.get(issue.epic.iid)
        if epic is None:
            if issue.epic.id == _UNRESOLVED_EPIC:
                issue.epic = None
            continue
        issue.epic = EntityRef(id=epic.id, title=epic.title, iid=epic.iid)
        epic.issues.append(issue)


def build_snapshot(
    raw: dict,
    taken_at: datetime | None = None,
    project_id: str | None = None,
) -> Snapshot:
    """Build a Snapshot from GitLab REST JSON.

    Args:
        raw: Dict with ``issues``, ``epics``, ``milestones`` and ``iterations`` lists
        taken_at: Snapshot time; defaults to ``raw["taken_at"]`` or now
        project_id: Project id; defaults to ``raw["project_id"]``

    Returns:
        Snapshot with each epic's issues attached
    """
    issues = [build_issue(r) for r in raw.get("issues") or [] if not _missing_identity("issue", r)]
    epics = [build_epic(r) for r in raw.get("epics") or [] if not _missing_identity("epic", r)]
    milestones = [
        build_milestone(r) for r in raw.get("milestones") or [] if not _missing_identity("milestone", r)
    ]

    iterations = []
    for r in raw.get("iterations") or []:
        ref = _iteration_ref(r)
        if ref is None:
            logger.warning("Skipping iteration without title: %r", r)
            continue
        iterations.append(Iteration(id=ref.id, title=ref.title, start_date=ref.start_date, due_date=ref.due_date))

    _attach_issues(epics, issues)

    project = project_id or raw.get("project_id")
    return Snapshot(
        issues=issues,
        epics=epics,
        milestones=milestones,
        iterations=iterations,
        taken_at=parse_timestamp(taken_at or raw.get("taken_at")) or utcnow(),
        project_id=str(project) if project is not None else None,
    )


def load_snapshot_file(path: Path) -> Snapshot:
    """Read a snapshot from a JSON file.

    Raises:
        SnapshotError: If the file is missing, not JSON, or not an object
    """
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except OSError as e:
        raise SnapshotError(f"Cannot read snapshot {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Snapshot {path} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise SnapshotError(f"Snapshot {path} must contain a JSON object")
    return build_snapshot(raw)


def issue_to_dict(issue: Issue) -> dict:
    """Convert an Issue to a JSON-serializable dict."""

    def _date_str(d: date | datetime | None) -> str | None:
        return d.isoformat() if d else None

    return {
        "id": issue.id,
        "iid": issue.iid,
        "reference": issue.reference,
        "title": issue.title,
        "state": issue.state,
        "labels": issue.labels,
        "assignees": [a.username for a in issue.assignees],
        "iteration": issue.iteration.title if issue.iteration else None,
        "milestone": issue.milestone.title if issue.milestone else None,
        "epic": issue.epic.title if issue.epic else None,
        "weight": issue.weight,
        "due_date": _date_str(issue.due_date),
        "created_at": _date_str(issue.created_at),
        "closed_at": _date_str(issue.closed_at),
        "url": issue.web_url,
    }
