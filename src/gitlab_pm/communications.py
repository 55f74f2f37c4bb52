"""Stakeholders, communication records and their timeline."""

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from gitlab_pm.dates import parse_timestamp
from gitlab_pm.store import KeyValueStore, scoped_key

logger = logging.getLogger(__name__)

STAKEHOLDERS_KEY = "stakeholders"
COMMUNICATIONS_KEY = "communications"
DECISIONS_KEY = "decisions"
DOCUMENTS_KEY = "documents"

ORIGINS = ("composed", "imported")


@dataclass
class Stakeholder:
    id: str
    name: str
    email: str = ""
    role: str = ""
    organization: str = ""


@dataclass
class CommunicationRecord:
    """A sent or imported message linked to stakeholders and tracker items."""

    id: str
    origin: str  # "composed" | "imported"
    subject: str
    body: str
    sent_at: datetime
    stakeholder_ids: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    references: list[dict] = field(default_factory=list)  # [{"type": "issue", "id": 12}]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["sent_at"] = self.sent_at.isoformat()
        return data


def record_from_dict(data: dict) -> CommunicationRecord:
    sent_at = parse_timestamp(data.get("sent_at"))
    if sent_at is None or not data.get("id"):
        raise ValueError("communication record requires id and sent_at")
    origin = data.get("origin", "composed")
    if origin not in ORIGINS:
        raise ValueError(f"unknown origin '{origin}'")
    return CommunicationRecord(
        id=str(data["id"]),
        origin=origin,
        subject=data.get("subject", ""),
        body=data.get("body", ""),
        sent_at=sent_at,
        stakeholder_ids=list(data.get("stakeholder_ids", [])),
        tags=list(data.get("tags", [])),
        references=list(data.get("references", [])),
    )


def resolve_stakeholders(addresses: list[str], stakeholders: list[Stakeholder]) -> list[str]:
    """Stakeholder ids for email addresses, in address order, without repeats."""
    by_email = {s.email.lower(): s.id for s in stakeholders if s.email}
    resolved = []
    for address in addresses:
        stakeholder_id = by_email.get(address.strip().lower())
        if stakeholder_id and stakeholder_id not in resolved:
            resolved.append(stakeholder_id)
    return resolved


def communication_timeline(
    records: list[CommunicationRecord],
    now: datetime,
    days: int = 30,
) -> dict:
    """Per-day and per-tag counts of records sent in the last ``days`` days."""
    start = (now - timedelta(days=days - 1)).date()
    end = now.date()
    in_window = [r for r in records if start <= r.sent_at.date() <= end]

    per_day = Counter(r.sent_at.date() for r in in_window)
    tags = Counter(tag for r in in_window for tag in r.tags)
    origins = Counter(r.origin for r in in_window)

    timeline = []
    day = start
    while day <= end:
        timeline.append({"date": day.isoformat(), "count": per_day.get(day, 0)})
        day += timedelta(days=1)

    return {
        "total": len(in_window),
        "days": timeline,
        "tags": dict(sorted(tags.items())),
        "origins": dict(sorted(origins.items())),
    }


class CommunicationLog:
    """Stakeholders, records, decisions and documents stored per project."""

    def __init__(self, store: KeyValueStore, project_id: str | None = None) -> None:
        self.store = store
        self.project_id = project_id

    def _key(self, base: str) -> str:
        return scoped_key(base, project_id=self.project_id)

    def stakeholders(self) -> list[Stakeholder]:
        result = []
        for raw in self.store.get(self._key(STAKEHOLDERS_KEY), []):
            try:
                result.append(Stakeholder(**raw))
            except TypeError:
                logger.warning("Skipping malformed stakeholder %r", raw)
        return result

    def save_stakeholder(self, stakeholder: Stakeholder) -> None:
        items = [s for s in self.stakeholders() if s.id != stakeholder.id]
        items.append(stakeholder)
        self.store.set(self._key(STAKEHOLDERS_KEY), [asdict(s) for s in items])

    def records(self) -> list[CommunicationRecord]:
        result = []
        for raw in self.store.get(self._key(COMMUNICATIONS_KEY), []):
            try:
                result.append(record_from_dict(raw))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning("Skipping communication record %r: %s", raw, e)
        result.sort(key=lambda r: r.sent_at)
        return result

    def add_record(self, record: CommunicationRecord) -> None:
        items = [r for r in self.records() if r.id != record.id]
        items.append(record)
        self.store.set(self._key(COMMUNICATIONS_KEY), [r.to_dict() for r in items])

    def artifacts(self, base: str) -> list:
        """Opaque decisions or documents."""
        return list(self.store.get(self._key(base), []))

    def add_artifact(self, base: str, artifact: dict) -> None:
        if base not in (DECISIONS_KEY, DOCUMENTS_KEY):
            raise ValueError(f"unknown artifact category '{base}'")
        self.store.set(self._key(base), self.artifacts(base) + [artifact])
