"""Team absences and their effect on available hours."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from gitlab_pm.dates import round_half_up, working_days
from gitlab_pm.export import parse_csv, to_csv
from gitlab_pm.store import KeyValueStore, scoped_key

logger = logging.getLogger(__name__)

ABSENCES_KEY = "absences"
ABSENCE_TYPES = ("vacation", "sick", "conference", "training", "other")
CSV_HEADERS = ["username", "startDate", "endDate", "reason", "type"]


@dataclass
class Absence:
    """A period during which a team member is unavailable."""

    username: str
    start_date: date
    end_date: date
    reason: str = ""
    type: str = "vacation"

    @property
    def id(self) -> str:
        return f"{self.username}-{self.start_date.isoformat()}-{self.end_date.isoformat()}"

    def overlap_days(self, start: date, end: date) -> int:
        """Working days shared with [start, end]."""
        return working_days(max(start, self.start_date), min(end, self.end_date))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "reason": self.reason,
            "type": self.type,
        }


@dataclass
class AbsenceImpact:
    """Capacity for a window before and after absences."""

    base_hours: float
    hours_lost: float
    adjusted_hours: float
    absence_days: int


def absence_from_dict(data: dict) -> Absence:
    """Build an Absence from its stored form.

    Raises:
        ValueError: If dates are missing, unparseable or reversed, or the type is unknown
    """
    username = str(data.get("username", "")).strip()
    if not username:
        raise ValueError("username is required")
    try:
        start = date.fromisoformat(str(data.get("startDate", "")).strip())
        end = date.fromisoformat(str(data.get("endDate", "")).strip())
    except ValueError as e:
        raise ValueError("dates must be YYYY-MM-DD") from e
    if end < start:
        raise ValueError("end date is before start date")
    kind = str(data.get("type") or "vacation").strip().lower()
    if kind not in ABSENCE_TYPES:
        raise ValueError(f"unknown absence type '{kind}'")
    return Absence(
        username=username,
        start_date=start,
        end_date=end,
        reason=str(data.get("reason") or ""),
        type=kind,
    )


def absence_hours(
    absences: list[Absence],
    username: str,
    start: date,
    end: date,
    weekly_capacity: float,
    working_days_per_week: int = 5,
) -> float:
    """Hours lost by ``username`` to absences inside [start, end]."""
    days = sum(a.overlap_days(start, end) for a in absences if a.username == username)
    return round_half_up(days * weekly_capacity / working_days_per_week, 1)


def capacity_with_absences(
    absences: list[Absence],
    username: str,
    start: date,
    end: date,
    weekly_capacity: float,
    working_days_per_week: int = 5,
) -> AbsenceImpact:
    """Available hours for a window, net of absences."""
    days = working_days(start, end)
    base = round_half_up(days * weekly_capacity / working_days_per_week, 1)
    absence_days = sum(a.overlap_days(start, end) for a in absences if a.username == username)
    lost = round_half_up(absence_days * weekly_capacity / working_days_per_week, 1)
    return AbsenceImpact(
        base_hours=base,
        hours_lost=lost,
        adjusted_hours=max(0.0, round_half_up(base - lost, 1)),
        absence_days=absence_days,
    )


def absences_to_csv(absences: list[Absence]) -> str:
    rows = [[a.username, a.start_date.isoformat(), a.end_date.isoformat(), a.reason, a.type] for a in absences]
    return to_csv(CSV_HEADERS, rows)


def parse_absence_csv(text: str) -> tuple[list[Absence], list[str]]:
    """Parse absences from CSV text.

    Returns:
        Tuple of (absences, errors); each error names the offending line
    """
    rows = parse_csv(text)
    if not rows:
        return [], ["CSV is empty"]
    header = [h.strip() for h in rows[0]]
    missing = [h for h in ("username", "startDate", "endDate") if h not in header]
    if missing:
        return [], [f"Missing required columns: {', '.join(missing)}"]

    absences: list[Absence] = []
    errors: list[str] = []
    for line_number, row in enumerate(rows[1:], start=2):
        if not any(cell.strip() for cell in row):
            continue
        record = dict(zip(header, row))
        try:
            absences.append(absence_from_dict(record))
        except ValueError as e:
            errors.append(f"Line {line_number}: {e}")
    return absences, errors


class AbsenceCalendar:
    """Absences stored per project."""

    def __init__(self, store: KeyValueStore, project_id: str | None = None) -> None:
        self.store = store
        self.key = scoped_key(ABSENCES_KEY, project_id=project_id)

    def all(self) -> list[Absence]:
        absences = []
        for raw in self.store.get(self.key, []):
            try:
                absences.append(absence_from_dict(raw))
            except (ValueError, AttributeError) as e:
                logger.warning("Skipping stored absence %r: %s", raw, e)
        return absences

    def _save(self, absences: list[Absence]) -> None:
        absences = sorted(absences, key=lambda a: (a.start_date, a.username))
        self.store.set(self.key, [a.to_dict() for a in absences])

    def add(self, absence: Absence) -> None:
        """Add an absence, replacing one with the same id."""
        if absence.end_date < absence.start_date:
            raise ValueError("end date is before start date")
        absences = [a for a in self.all() if a.id != absence.id]
        absences.append(absence)
        self._save(absences)

    def remove(self, absence_id: str) -> bool:
        absences = self.all()
        remaining = [a for a in absences if a.id != absence_id]
        if len(remaining) == len(absences):
            return False
        self._save(remaining)
        return True

    def for_user(self, username: str) -> list[Absence]:
        return [a for a in self.all() if a.username == username]

    def upcoming(self, now: datetime, days: int = 30) -> list[Absence]:
        """Absences overlapping the next ``days`` days."""
        start = now.date()
        end = start + timedelta(days=days)
        return [a for a in self.all() if a.end_date >= start and a.start_date <= end]

    def import_csv(self, text: str) -> tuple[int, list[str]]:
        """Merge absences from CSV text. Returns (imported count, errors)."""
        imported, errors = parse_absence_csv(text)
        if imported:
            by_id = {a.id: a for a in self.all()}
            for absence in imported:
                by_id[absence.id] = absence
            self._save(list(by_id.values()))
        return len(imported), errors

    def export_csv(self) -> str:
        return absences_to_csv(self.all())
