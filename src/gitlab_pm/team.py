"""Team roster, roles and per-sprint capacity overrides."""

import logging
from dataclasses import asdict, dataclass

from gitlab_pm.store import KeyValueStore, scoped_key

logger = logging.getLogger(__name__)

TEAM_CONFIG_KEY = "team_config"
SPRINT_CAPACITY_KEY = "sprint_capacity"
DEFAULT_WEEKLY_CAPACITY = 40.0

DEFAULT_ROLES = [
    "Developer",
    "Data Engineer",
    "QA Engineer",
    "DevOps Engineer",
    "SRE",
    "Business Analyst",
    "Product Owner",
    "Initiative Manager",
    "Scrum Master",
    "Custom",
]

# Work may only be moved between roles of the same group.
ROLE_COMPATIBILITY_GROUPS = {
    "technical": ["Developer", "Data Engineer", "SRE", "DevOps Engineer", "QA Engineer"],
    "analysis": ["Business Analyst", "Product Owner", "Initiative Manager"],
    "management": ["Scrum Master"],
}


@dataclass
class TeamMember:
    """A configured team member."""

    username: str
    name: str = ""
    role: str = "Developer"
    default_capacity: float = DEFAULT_WEEKLY_CAPACITY  # weekly hours


@dataclass
class CapacityOverride:
    """Hours set by hand for one member in one sprint."""

    username: str
    available_hours: float
    reason: str = ""


def roles_compatible(first: str, second: str) -> bool:
    if first == second:
        return True
    if "Custom" in (first, second):
        return False
    return any(first in group and second in group for group in ROLE_COMPATIBILITY_GROUPS.values())


def member_from_dict(data: dict) -> TeamMember:
    username = str(data.get("username", "")).strip()
    if not username:
        raise ValueError("team member without username")
    return TeamMember(
        username=username,
        name=str(data.get("name") or username),
        role=str(data.get("role") or "Developer"),
        default_capacity=float(data.get("default_capacity", DEFAULT_WEEKLY_CAPACITY)),
    )


class TeamDirectory:
    """Team configuration resolved pod first, then project, then global."""

    def __init__(
        self,
        store: KeyValueStore,
        project_id: str | None = None,
        pod_id: str | None = None,
    ) -> None:
        self.store = store
        self.project_id = project_id
        self.pod_id = pod_id

    def _write_key(self, base: str) -> str:
        return scoped_key(base, project_id=self.project_id, pod_id=self.pod_id)

    def members(self) -> list[TeamMember]:
        data = self.store.get_scoped(TEAM_CONFIG_KEY, self.project_id, self.pod_id, {})
        members = []
        for raw in data.get("members", []) if isinstance(data, dict) else []:
            try:
                members.append(member_from_dict(raw))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning("Skipping team member %r: %s", raw, e)
        return members

    def member(self, username: str) -> TeamMember | None:
        for member in self.members():
            if member.username == username:
                return member
        return None

    def save_members(self, members: list[TeamMember]) -> None:
        self.store.set(self._write_key(TEAM_CONFIG_KEY), {"members": [asdict(m) for m in members]})

    def upsert_member(self, member: TeamMember) -> None:
        members = [m for m in self.members() if m.username != member.username]
        members.append(member)
        self.save_members(members)

    def remove_member(self, username: str) -> bool:
        members = self.members()
        remaining = [m for m in members if m.username != username]
        if len(remaining) == len(members):
            return False
        self.save_members(remaining)
        return True

    def weekly_capacities(self) -> dict[str, float]:
        return {m.username: m.default_capacity for m in self.members()}

    def _sprints(self) -> list[dict]:
        data = self.store.get_scoped(SPRINT_CAPACITY_KEY, self.project_id, self.pod_id, {})
        return list(data.get("sprints", [])) if isinstance(data, dict) else []

    def overrides(self, sprint_id) -> dict[str, CapacityOverride]:
        """Per-member overrides for a sprint, keyed by username."""
        for sprint in self._sprints():
            if str(sprint.get("sprint_id")) == str(sprint_id):
                result = {}
                for raw in sprint.get("members", []):
                    try:
                        override = CapacityOverride(
                            username=raw["username"],
                            available_hours=float(raw["available_hours"]),
                            reason=raw.get("reason", ""),
                        )
                    except (KeyError, TypeError, ValueError):
                        logger.warning("Skipping capacity override %r", raw)
                        continue
                    result[override.username] = override
                return result
        return {}

    def set_override(
        self,
        sprint_id,
        sprint_name: str,
        username: str,
        available_hours: float,
        reason: str = "",
    ) -> None:
        """Set hand-entered hours for a member in a sprint."""
        if available_hours < 0:
            raise ValueError("available hours must not be negative")
        sprints = self._sprints()
        sprint = next((s for s in sprints if str(s.get("sprint_id")) == str(sprint_id)), None)
        if sprint is None:
            sprint = {"sprint_id": sprint_id, "sprint_name": sprint_name, "members": []}
            sprints.append(sprint)
        members = [m for m in sprint.get("members", []) if m.get("username") != username]
        members.append({"username": username, "available_hours": available_hours, "reason": reason})
        sprint["members"] = members
        self.store.set(self._write_key(SPRINT_CAPACITY_KEY), {"sprints": sprints})

    def clear_override(self, sprint_id, username: str) -> bool:
        sprints = self._sprints()
        changed = False
        for sprint in sprints:
            if str(sprint.get("sprint_id")) != str(sprint_id):
                continue
            members = [m for m in sprint.get("members", []) if m.get("username") != username]
            changed = len(members) != len(sprint.get("members", []))
            sprint["members"] = members
        if changed:
            self.store.set(self._write_key(SPRINT_CAPACITY_KEY), {"sprints": sprints})
        return changed
