"""Quarterly roadmap and initiative grouping."""

import logging
from datetime import date, datetime

from gitlab_pm.classifier import is_blocker
from gitlab_pm.dates import days_until, round_half_up, utcnow
from gitlab_pm.labels import interpret
from gitlab_pm.models import Epic, Initiative, Quarter, QuarterEpic
from gitlab_pm.rag import SEVERITY_RANK

logger = logging.getLogger(__name__)

NEAR_DUE_DAYS = 14
AT_RISK_GAP = 20


def quarter_of(day: date) -> tuple[int, int]:
    """(year, quarter) for a date."""
    return day.year, (day.month - 1) // 3 + 1


def quarter_label(year: int, quarter: int) -> str:
    return f"Q{quarter} {year}"


def epic_anchor_date(epic: Epic) -> date | None:
    """First present of start, due and end date."""
    return epic.start_date or epic.due_date or epic.end_date


def epic_completion(epic: Epic) -> int:
    if not epic.issues:
        return 0
    return round_half_up(sum(1 for i in epic.issues if i.is_closed) / len(epic.issues) * 100)


def quarter_rag(epic: Epic, now: datetime) -> str:
    """Simplified RAG used on the quarter view."""
    completion = epic_completion(epic)
    is_open = epic.state != "closed" and completion < 100
    if epic.due_date is not None:
        days = days_until(epic.due_date, now)
        if days < 0 and is_open:
            return "red"
        if 0 <= days <= NEAR_DUE_DAYS and completion < 80:
            return "amber"
    if any(i.is_open and is_blocker(i) for i in epic.issues):
        return "amber"
    if completion < 30 and is_open:
        return "amber"
    return "green"


def assign_quarters(epics: list[Epic], now: datetime | None = None) -> list[Quarter]:
    """Bucket epics into calendar quarters, chronologically.

    The current quarter is always present. Within a quarter epics are ordered
    red, amber, green, then by ascending completion. Epics with no dates are
    left out.
    """
    now = now or utcnow()
    current = quarter_of(now.date())
    buckets: dict[tuple[int, int], list[QuarterEpic]] = {current: []}

    for epic in epics:
        anchor = epic_anchor_date(epic)
        if anchor is None:
            logger.debug("Epic %s has no dates; not placed on the roadmap", epic.id)
            continue
        buckets.setdefault(quarter_of(anchor), []).append(QuarterEpic(
            epic=epic,
            rag_status=quarter_rag(epic, now),
            completion_rate=epic_completion(epic),
        ))

    quarters = []
    for (year, quarter), entries in sorted(buckets.items()):
        entries.sort(key=lambda e: (-SEVERITY_RANK[e.rag_status], e.completion_rate))
        quarters.append(Quarter(
            label=quarter_label(year, quarter),
            year=year,
            quarter=quarter,
            epics=entries,
            is_current=(year, quarter) == current,
        ))
    return quarters


def _initiative_name(key: str) -> str:
    words = key.replace("_", " ").replace("-", " ").split()
    return " ".join(word.capitalize() for word in words)


def _initiative_status(progress: int, start: date | None, due: date | None, now: datetime) -> str:
    if progress >= 100:
        return "completed"
    today = now.date()
    if due is not None and today > due:
        return "delayed"
    if start is not None and due is not None and due > start and today > start:
        elapsed = min(100.0, (today - start).days / (due - start).days * 100)
        if elapsed - progress > AT_RISK_GAP:
            return "at-risk"
    return "on-track"


def group_initiatives(epics: list[Epic], now: datetime | None = None) -> list[Initiative]:
    """Group epics by their ``initiative::`` label, ordered by name."""
    now = now or utcnow()
    groups: dict[str, list[Epic]] = {}
    for epic in epics:
        initiative = interpret(epic.labels).initiative
        if initiative:
            groups.setdefault(initiative.lower(), []).append(epic)

    initiatives = []
    for key, members in groups.items():
        issues = [i for e in members for i in e.issues]
        closed = sum(1 for i in issues if i.is_closed)
        progress = round_half_up(closed / len(issues) * 100) if issues else 0
        starts = [e.start_date for e in members if e.start_date]
        dues = [e.due_date for e in members if e.due_date]
        start = min(starts) if starts else None
        due = max(dues) if dues else None
        initiatives.append(Initiative(
            key=key,
            name=_initiative_name(key),
            epics=members,
            total_issues=len(issues),
            closed_issues=closed,
            progress=progress,
            start_date=start,
            due_date=due,
            status=_initiative_status(progress, start, due, now),
        ))
    initiatives.sort(key=lambda i: i.name)
    return initiatives


def roadmap_to_dict(quarters: list[Quarter], initiatives: list[Initiative]) -> dict:
    """Convert the roadmap views to a JSON-serializable dict."""

    def _date_str(d: date | None) -> str | None:
        return d.isoformat() if d else None

    def _epic_dict(entry: QuarterEpic) -> dict:
        epic = entry.epic
        return {
            "id": epic.id,
            "iid": epic.iid,
            "title": epic.title,
            "state": epic.state,
            "start_date": _date_str(epic.start_date),
            "due_date": _date_str(epic.due_date),
            "url": epic.web_url,
            "rag_status": entry.rag_status,
            "completion_rate": entry.completion_rate,
            "total_issues": len(epic.issues),
        }

    return {
        "quarters": [
            {
                "label": q.label,
                "year": q.year,
                "quarter": q.quarter,
                "is_current": q.is_current,
                "epics": [_epic_dict(e) for e in q.epics],
            }
            for q in quarters
        ],
        "initiatives": [
            {
                "key": i.key,
                "name": i.name,
                "status": i.status,
                "progress": i.progress,
                "total_issues": i.total_issues,
                "closed_issues": i.closed_issues,
                "start_date": _date_str(i.start_date),
                "due_date": _date_str(i.due_date),
                "epics": [{"id": e.id, "title": e.title, "url": e.web_url} for e in i.epics],
            }
            for i in initiatives
        ],
    }
