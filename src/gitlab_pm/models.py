"""Data models for GitLab PM analytics."""

from dataclasses import dataclass, field
from datetime import date, datetime


@dataclass
class Person:
    """A GitLab user referenced by an issue or epic."""

    username: str
    name: str = ""
    avatar_url: str | None = None


@dataclass
class IterationRef:
    """The iteration (sprint) an issue is scheduled in."""

    title: str
    id: int | None = None
    start_date: date | None = None
    due_date: date | None = None


@dataclass
class EntityRef:
    """Lightweight reference from an issue to its epic or milestone."""

    id: int
    title: str = ""
    iid: int | None = None


@dataclass
class Issue:
    """A tracker issue as handed to the engine."""

    id: int
    iid: int
    title: str
    state: str  # "opened" | "closed"
    description: str = ""
    labels: list[str] = field(default_factory=list)
    assignees: list[Person] = field(default_factory=list)
    author: Person | None = None
    iteration: IterationRef | None = None
    milestone: EntityRef | None = None
    epic: EntityRef | None = None
    weight: int | None = None
    due_date: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    web_url: str = ""
    reference: str = ""  # short external identifier, e.g. "#42"
    time_estimate: int = 0  # seconds
    time_spent: int = 0  # seconds

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

    @property
    def is_open(self) -> bool:
        return self.state != "closed"


@dataclass
class Epic:
    """An epic with the issues attached to it by the ingester."""

    id: int
    iid: int
    title: str
    state: str = "opened"
    description: str = ""
    labels: list[str] = field(default_factory=list)
    start_date: date | None = None
    due_date: date | None = None  # due_date, falling back to end_date
    end_date: date | None = None
    web_url: str = ""
    author: Person | None = None
    issues: list[Issue] = field(default_factory=list)


@dataclass
class MilestoneStats:
    """Aggregate issue counts reported for a milestone."""

    total_issues: int = 0
    closed_issues: int = 0


@dataclass
class Milestone:
    """A project or group milestone."""

    id: int
    iid: int
    title: str
    state: str = "active"
    description: str = ""
    start_date: date | None = None
    due_date: date | None = None
    web_url: str = ""
    stats: MilestoneStats | None = None


@dataclass
class Iteration:
    """A named, dated iteration from the iteration calendar."""

    id: int | None
    title: str
    start_date: date | None = None
    due_date: date | None = None


@dataclass
class Snapshot:
    """Immutable point-in-time set of tracker entities."""

    issues: list[Issue]
    epics: list[Epic]
    milestones: list[Milestone]
    iterations: list[Iteration]
    taken_at: datetime
    project_id: str | None = None


@dataclass
class LabelFacets:
    """Semantic facets extracted from an issue's labels and iteration."""

    priority: str  # "low" | "medium" | "high"
    blocker: bool
    story_points: int | None = None
    sprint: str | None = None
    initiative: str | None = None
    team: str | None = None


@dataclass
class IssueStats:
    """Summary counts over a set of issues."""

    total: int = 0
    open: int = 0
    closed: int = 0
    blockers: int = 0
    overdue: int = 0
    at_risk: int = 0
    completion_rate: int = 0


@dataclass
class HealthBreakdown:
    """Per-dimension health sub-scores, each in [0, 100]."""

    completion_score: float
    schedule_score: float
    blocker_score: float
    risk_score: float


@dataclass
class HealthScore:
    """Composite project health."""

    score: int
    status: str  # "green" | "amber" | "red"
    breakdown: HealthBreakdown
    stats: IssueStats


@dataclass
class BacklogHealth:
    """Refinement quality of the open backlog."""

    score: int
    status: str  # "healthy" | "needs-attention" | "critical"
    open_issues: int
    refined: float  # fractions in [0, 1]
    described: float
    sprint_ready: float
    trend: str | None = None  # "improving" | "declining" | "stable"


@dataclass
class BacklogHistoryEntry:
    """One stored backlog-health measurement."""

    day: date
    score: int


@dataclass
class RefinementItem:
    """An open issue that is not ready for a sprint."""

    issue: Issue
    missing_fields: list[str]
    needs_work: int


@dataclass
class SprintVelocityRow:
    """Completed work for one sprint."""

    sprint: str
    start_date: date | None
    end_date: date | None
    total_issues: int
    completed_issues: int
    total_points: int
    completed_points: int
    completion_rate: int


@dataclass
class VelocityTrend:
    """Direction of sprint velocity over time."""

    direction: str  # "improving" | "declining" | "stable" | "insufficient"
    change_percent: float = 0.0


@dataclass
class SprintVelocity:
    """Sprint-mode velocity over the lookback window."""

    sprints: list[SprintVelocityRow]
    avg_by_issues: float
    avg_by_points: float
    sprints_analyzed: int
    data_quality: str  # "no-data" | "low" | "moderate" | "excellent"
    trend: VelocityTrend | None = None


@dataclass
class IterationVelocity:
    """One iteration's contribution to a member's velocity."""

    iteration: str
    start_date: date
    due_date: date
    completed: float
    work_days: int
    absence_hours: float
    available_hours: float


@dataclass
class MemberVelocity:
    """Hours per story point (or issue) for one member."""

    username: str
    metric: str  # "points" | "issues"
    hours_per_unit: float
    total_metric: float
    total_hours: float
    iterations_analyzed: int
    data_quality: str  # "low" | "moderate" | "excellent"
    iterations: list[IterationVelocity] = field(default_factory=list)


@dataclass
class InsufficientVelocity:
    """Velocity could not be derived from the available history."""

    data_quality: str  # "no-data" | "no-history" | "no-completed-work" | "low" | "insufficient"
    iterations_analyzed: int = 0
    username: str | None = None
    reason: str = ""


@dataclass
class TeamVelocity:
    """Average hours per unit across qualifying members."""

    metric: str
    hours_per_unit: float
    members_analyzed: int
    member_values: dict[str, float]
    data_quality: str  # "good" | "moderate"


@dataclass
class VelocityFallback:
    """Hours per unit with the provenance of the value."""

    hours: float
    source: str  # "individual" | "team-average" | "static"
    quality: str
    metric: str
    details: str = ""


@dataclass
class MemberCapacity:
    """One member's hours for a sprint."""

    username: str
    name: str
    role: str
    available_hours: float
    allocated_hours: float
    remaining_hours: float
    utilization: float
    status: str  # "overloaded" | "at-capacity" | "healthy"
    issue_count: int = 0
    reason: str = ""


@dataclass
class SprintCapacity:
    """Team capacity and allocation for a sprint."""

    sprint_id: int | None
    sprint_name: str
    members: list[MemberCapacity]
    total_available: float
    total_allocated: float
    total_remaining: float
    utilization: float
    status: str  # "overloaded" | "at-capacity" | "healthy" | "under-utilized"
    recommendations: list[str] = field(default_factory=list)


@dataclass
class RagFactor:
    """A contributing cause behind an epic's RAG status."""

    severity: str  # "critical" | "warning" | "info"
    category: str
    title: str
    description: str
    impact: str = ""


@dataclass
class RagAction:
    """A recommended corrective action."""

    priority: str  # "low" | "medium" | "high" | "critical"
    title: str
    description: str
    estimated_effort: str  # "small" | "medium" | "large"
    impact: str


@dataclass
class RagProjection:
    """Forecast completion date at current velocity."""

    date: date
    iterations_needed: int
    weeks_needed: int
    on_time: bool | None
    days_variance: int | None


@dataclass
class RagMetrics:
    """Inputs used to classify an epic."""

    total_issues: int
    closed_issues: int
    progress_percent: float
    current_velocity: float
    remaining_issues: int
    remaining_iterations: int | None
    required_velocity: float
    days_to_due: int | None
    blocker_count: int


@dataclass
class RagAnalysis:
    """Per-epic RAG verdict with root causes and a projection."""

    epic_id: int
    epic_title: str
    status: str  # "red" | "amber" | "green"
    reason: str
    metrics: RagMetrics
    factors: list[RagFactor] = field(default_factory=list)
    actions: list[RagAction] = field(default_factory=list)
    projection: RagProjection | None = None


@dataclass
class UpcomingMilestone:
    """A milestone inside the upcoming window."""

    milestone: Milestone
    days_until: int
    progress: int
    status: str  # "overdue" | "on-track" | "at-risk"


@dataclass
class QuarterEpic:
    """An epic placed in a quarter with its simplified RAG."""

    epic: Epic
    rag_status: str
    completion_rate: int


@dataclass
class Quarter:
    """A calendar quarter on the roadmap."""

    label: str  # "Q2 2026"
    year: int
    quarter: int
    epics: list[QuarterEpic]
    is_current: bool = False


@dataclass
class Initiative:
    """Epics grouped by an ``initiative::`` label."""

    key: str
    name: str
    epics: list[Epic]
    total_issues: int
    closed_issues: int
    progress: int
    start_date: date | None
    due_date: date | None
    status: str  # "on-track" | "at-risk" | "delayed" | "completed"
