"""Risk register."""

import logging
from dataclasses import asdict, dataclass

from gitlab_pm.store import KeyValueStore, scoped_key

logger = logging.getLogger(__name__)

RISKS_KEY = "risks"
LEVELS = {"low": 1, "medium": 2, "high": 3}
HIGH_SCORE = 6
MEDIUM_SCORE = 3
CLOSED_STATUSES = ("closed", "mitigated")


@dataclass
class Risk:
    """A project risk scored by probability and impact."""

    id: str
    title: str
    description: str = ""
    probability: str = "medium"
    impact: str = "medium"
    status: str = "open"
    owner: str = ""
    mitigation: str = ""
    created_at: str = ""

    @property
    def score(self) -> int:
        return LEVELS.get(self.probability, 2) * LEVELS.get(self.impact, 2)

    @property
    def level(self) -> str:
        if self.score >= HIGH_SCORE:
            return "high"
        if self.score >= MEDIUM_SCORE:
            return "medium"
        return "low"

    @property
    def is_open(self) -> bool:
        return self.status not in CLOSED_STATUSES


def risk_from_dict(data: dict) -> Risk:
    if not data.get("id") or not data.get("title"):
        raise ValueError("risk requires id and title")
    risk = Risk(**{k: data[k] for k in Risk.__dataclass_fields__ if k in data})
    if risk.probability not in LEVELS or risk.impact not in LEVELS:
        raise ValueError("probability and impact must be low, medium or high")
    return risk


class RiskRegister:
    """Risks stored per project."""

    def __init__(self, store: KeyValueStore, project_id: str | None = None) -> None:
        self.store = store
        self.key = scoped_key(RISKS_KEY, project_id=project_id)

    def all(self) -> list[Risk]:
        risks = []
        for raw in self.store.get(self.key, []):
            try:
                risks.append(risk_from_dict(raw))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning("Skipping stored risk %r: %s", raw, e)
        return risks

    def save(self, risk: Risk) -> None:
        risks = [r for r in self.all() if r.id != risk.id]
        risks.append(risk)
        self.store.set(self.key, [asdict(r) for r in risks])

    def remove(self, risk_id: str) -> bool:
        risks = self.all()
        remaining = [r for r in risks if r.id != risk_id]
        if len(remaining) == len(risks):
            return False
        self.store.set(self.key, [asdict(r) for r in remaining])
        return True
