"""One analysis run over a snapshot, in dependency order."""

import logging
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import date, datetime
from pathlib import Path

import requests

from gitlab_pm import gitlab_client
from gitlab_pm.absences import AbsenceCalendar
from gitlab_pm.backlog import BacklogHealthHistory, calculate_backlog_health, issues_needing_refinement
from gitlab_pm.capacity import plan_sprint_capacity
from gitlab_pm.communications import CommunicationLog
from gitlab_pm.config import Config
from gitlab_pm.exceptions import (
    GitLabAuthError,
    GitLabConnectionError,
    GitLabRateLimitError,
    SnapshotError,
)
from gitlab_pm.export import SummaryDocument, build_summary_document
from gitlab_pm.metrics import assess_health, current_iteration
from gitlab_pm.milestones import upcoming
from gitlab_pm.models import (
    BacklogHealth,
    HealthScore,
    InsufficientVelocity,
    Initiative,
    Iteration,
    Quarter,
    RagAnalysis,
    RefinementItem,
    Snapshot,
    SprintCapacity,
    SprintVelocity,
    TeamVelocity,
    UpcomingMilestone,
)
from gitlab_pm.rag import analyze_epic, rag_analysis_to_dict
from gitlab_pm.risks import RiskRegister
from gitlab_pm.roadmap import assign_quarters, group_initiatives, roadmap_to_dict
from gitlab_pm.settings import EngineConfig, SettingsStore, config_to_dict
from gitlab_pm.snapshot import build_snapshot, issue_to_dict, load_snapshot_file
from gitlab_pm.store import KeyValueStore
from gitlab_pm.team import TeamDirectory
from gitlab_pm.velocity import VelocityCache, VelocityService

logger = logging.getLogger(__name__)

DEFAULT_MILESTONE_WINDOW = 30


def fetch_snapshot(config: Config) -> Snapshot:
    """Read the configured snapshot file, or fetch a live snapshot from GitLab.

    Raises:
        SnapshotError: If the snapshot file is unreadable
        GitLabAuthError: If authentication fails
        GitLabConnectionError: If GitLab cannot be reached
        GitLabRateLimitError: If retries are exhausted
    """
    if config.snapshot_path:
        return load_snapshot_file(Path(config.snapshot_path).expanduser())

    client = gitlab_client.GitLabClient(config)
    try:
        raw = client.fetch_snapshot_data()
    except gitlab_client.AuthenticationError as e:
        raise GitLabAuthError(str(e)) from e
    except gitlab_client.ConnectionError as e:
        raise GitLabConnectionError(str(e)) from e
    except gitlab_client.RateLimitError as e:
        raise GitLabRateLimitError(str(e)) from e
    except requests.HTTPError as e:
        raise SnapshotError(f"GitLab request failed: {e}") from e
    return build_snapshot(raw, project_id=config.project_id)


@dataclass
class AnalysisResult:
    """Everything derived from one snapshot under one configuration."""

    snapshot: Snapshot
    config: EngineConfig
    now: datetime
    current_iteration: str | None
    health: HealthScore
    backlog: BacklogHealth
    refinement: list[RefinementItem]
    velocity: SprintVelocity
    team_velocity: TeamVelocity | InsufficientVelocity
    capacity: SprintCapacity | None
    epics: list[RagAnalysis]
    milestones: list[UpcomingMilestone]
    quarters: list[Quarter]
    initiatives: list[Initiative] = field(default_factory=list)


class AnalyticsEngine:
    """Runs analyses over the loaded snapshot with the stored configuration.

    The velocity cache is cleared whenever the configuration changes or a new
    snapshot is loaded.
    """

    def __init__(
        self,
        store: KeyValueStore,
        project_id: str | None = None,
        pod_id: str | None = None,
        cache: VelocityCache | None = None,
    ) -> None:
        self.store = store
        self.project_id = project_id
        self.pod_id = pod_id
        self.cache = cache if cache is not None else VelocityCache()
        self.settings = SettingsStore(store)
        self.settings.subscribe(self._on_config_changed)
        self.backlog_history = BacklogHealthHistory(store)
        self._snapshot: Snapshot | None = None
        self._bind_registers()

    def _bind_registers(self) -> None:
        self.team = TeamDirectory(self.store, self.project_id, self.pod_id)
        self.absences = AbsenceCalendar(self.store, self.project_id)
        self.risks = RiskRegister(self.store, self.project_id)
        self.communications = CommunicationLog(self.store, self.project_id)

    def _on_config_changed(self, config: EngineConfig) -> None:
        logger.debug("Configuration changed; clearing velocity cache")
        self.cache.invalidate()

    def load_snapshot(self, snapshot: Snapshot) -> None:
        self._snapshot = snapshot
        if snapshot.project_id and not self.project_id:
            self.project_id = snapshot.project_id
            self._bind_registers()
        self.cache.invalidate()

    def unload_snapshot(self) -> None:
        self._snapshot = None
        self.cache.invalidate()

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> Snapshot:
        if self._snapshot is None:
            raise SnapshotError("No snapshot loaded")
        return self._snapshot

    def velocity_service(self, config: EngineConfig | None = None) -> VelocityService:
        config = config or self.settings.load()
        return VelocityService(
            self.snapshot.issues,
            config.velocity,
            self.team.weekly_capacities(),
            self.absences.all(),
            config.capacity.working_days_per_week,
            self.cache,
        )

    def _sprint(self, sprint_id, now: datetime) -> Iteration | None:
        calendar = self.snapshot.iterations
        if sprint_id is not None:
            for iteration in calendar:
                if str(iteration.id) == str(sprint_id) or iteration.title == str(sprint_id):
                    return iteration
            return None
        name = current_iteration(self.snapshot.issues, now, calendar)
        if name is None:
            return None
        for iteration in calendar:
            if iteration.title == name:
                return iteration
        return Iteration(id=None, title=name)

    def sprint_capacity(
        self,
        sprint_id=None,
        now: datetime | None = None,
        config: EngineConfig | None = None,
    ) -> SprintCapacity | None:
        """Capacity plan for a sprint, the current one by default; None if there is none."""
        now = now or self.snapshot.taken_at
        config = config or self.settings.load()
        sprint = self._sprint(sprint_id, now)
        if sprint is None:
            return None
        return plan_sprint_capacity(
            self.snapshot.issues,
            sprint,
            self.team.members(),
            config.capacity,
            self.team.overrides(sprint.id if sprint.id is not None else sprint.title),
            self.absences.all(),
        )

    def analyze_epic(self, epic_id: int, now: datetime | None = None) -> RagAnalysis | None:
        """RAG analysis of one epic, looked up by id and then by iid."""
        snapshot = self.snapshot
        epic = next((e for e in snapshot.epics if e.id == epic_id), None)
        if epic is None:
            epic = next((e for e in snapshot.epics if e.iid == epic_id), None)
        if epic is None:
            return None
        lookback = self.settings.load().velocity.lookback
        return analyze_epic(epic, now or snapshot.taken_at, snapshot.iterations, lookback)

    def analyze(
        self,
        now: datetime | None = None,
        milestone_window: int = DEFAULT_MILESTONE_WINDOW,
        record_history: bool = True,
    ) -> AnalysisResult:
        """Run every analysis over the loaded snapshot.

        Args:
            now: Snapshot time; defaults to the snapshot's own timestamp
            milestone_window: Days ahead for the upcoming-milestone list
            record_history: Append today's backlog score to the stored history

        Returns:
            AnalysisResult
        """
        snapshot = self.snapshot
        now = now or snapshot.taken_at
        config = self.settings.load()

        iteration_name = current_iteration(snapshot.issues, now, snapshot.iterations)
        health = assess_health(snapshot.issues, config.health, now, snapshot.iterations)

        backlog = calculate_backlog_health(snapshot.issues)
        if record_history:
            self.backlog_history.record(backlog.score, now.date())
        backlog.trend = self.backlog_history.trend()

        velocity = self.velocity_service(config)
        epics = [
            analyze_epic(epic, now, snapshot.iterations, config.velocity.lookback)
            for epic in snapshot.epics
        ]

        return AnalysisResult(
            snapshot=snapshot,
            config=config,
            now=now,
            current_iteration=iteration_name,
            health=health,
            backlog=backlog,
            refinement=issues_needing_refinement(snapshot.issues),
            velocity=velocity.sprint(),
            team_velocity=velocity.team(),
            capacity=self.sprint_capacity(now=now, config=config),
            epics=epics,
            milestones=upcoming(snapshot.milestones, milestone_window, now, snapshot.issues),
            quarters=assign_quarters(snapshot.epics, now),
            initiatives=group_initiatives(snapshot.epics, now),
        )

    def summary_document(self, now: datetime | None = None) -> SummaryDocument:
        snapshot = self.snapshot
        now = now or snapshot.taken_at
        config = self.settings.load()
        return build_summary_document(
            snapshot.project_id or self.project_id,
            now.date(),
            assess_health(snapshot.issues, config.health, now, snapshot.iterations),
            config.health,
            snapshot.milestones,
            snapshot.issues,
            self.risks.all(),
        )


def to_jsonable(value):
    """Recursively convert dataclasses to dicts and dates to ISO strings."""
    if is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(asdict(value))
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def analysis_to_dict(result: AnalysisResult) -> dict:
    """Convert an AnalysisResult to a JSON-serializable dict."""
    health = result.health
    return {
        "project_id": result.snapshot.project_id,
        "snapshot_date": result.now.isoformat(),
        "current_iteration": result.current_iteration,
        "config": config_to_dict(result.config),
        "health": {
            "score": health.score,
            "status": health.status,
            "breakdown": to_jsonable(health.breakdown),
            "stats": to_jsonable(health.stats),
        },
        "backlog": to_jsonable(result.backlog),
        "refinement": [
            {
                "issue": issue_to_dict(item.issue),
                "missing_fields": item.missing_fields,
                "needs_work": item.needs_work,
            }
            for item in result.refinement
        ],
        "velocity": to_jsonable(result.velocity),
        "team_velocity": to_jsonable(result.team_velocity),
        "capacity": to_jsonable(result.capacity),
        "epics": [rag_analysis_to_dict(a) for a in result.epics],
        "milestones": [
            {
                "id": m.milestone.id,
                "title": m.milestone.title,
                "due_date": m.milestone.due_date.isoformat() if m.milestone.due_date else None,
                "url": m.milestone.web_url,
                "days_until": m.days_until,
                "progress": m.progress,
                "status": m.status,
            }
            for m in result.milestones
        ],
        "roadmap": roadmap_to_dict(result.quarters, result.initiatives),
    }
