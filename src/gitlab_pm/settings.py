"""Engine configuration: health, velocity and capacity settings.

Settings live in the key/value store under the ``health``, ``velocity`` and
``capacity`` keys. ``SettingsStore.save`` is the only write path and rejects
invalid configurations before anything reaches the scoring code.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable

from gitlab_pm.exceptions import InvalidConfigError
from gitlab_pm.store import KeyValueStore

logger = logging.getLogger(__name__)

HEALTH_KEY = "health"
VELOCITY_KEY = "velocity"
CAPACITY_KEY = "capacity"

TIMEFRAME_MODES = ("all", "iteration", "days")
DEFAULT_TIMEFRAME_DAYS = 90
WEIGHT_TOLERANCE = 0.01


@dataclass
class HealthWeights:
    """Fraction of the overall score carried by each dimension."""

    completion: float = 0.30
    schedule: float = 0.25
    blockers: float = 0.25
    risk: float = 0.20

    def total(self) -> float:
        return self.completion + self.schedule + self.blockers + self.risk


@dataclass
class HealthAmplifiers:
    """Penalty multipliers applied to overdue, blocker and at-risk ratios."""

    schedule: int = 200
    blockers: int = 300
    risk: int = 200


@dataclass
class HealthThresholds:
    good: int = 80
    warning: int = 60


@dataclass
class HealthTimeframe:
    """Which issues feed the health score: all, current iteration, or last N days."""

    mode: str = "iteration"
    days: int | None = None

    @property
    def window_days(self) -> int:
        return self.days if self.days is not None else DEFAULT_TIMEFRAME_DAYS


@dataclass
class HealthConfig:
    weights: HealthWeights = field(default_factory=HealthWeights)
    amplifiers: HealthAmplifiers = field(default_factory=HealthAmplifiers)
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    timeframe: HealthTimeframe = field(default_factory=HealthTimeframe)

    def validate(self) -> list[str]:
        """Validate health settings. Returns list of error messages."""
        errors: list[str] = []

        weights = asdict(self.weights)
        for name, value in weights.items():
            if value < 0:
                errors.append(f"Health weight '{name}' must not be negative")
        total = self.weights.total()
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            errors.append(f"Health weights must sum to 1.0 (got {total:.2f})")

        for name, value in asdict(self.amplifiers).items():
            if not isinstance(value, int) or not 100 <= value <= 500:
                errors.append(f"Health amplifier '{name}' must be an integer between 100 and 500")

        good, warning = self.thresholds.good, self.thresholds.warning
        if good > 100:
            errors.append("Good threshold must not exceed 100")
        if warning >= good:
            errors.append("Warning threshold must be lower than the good threshold")
        if warning < 30:
            errors.append("Warning threshold must be at least 30")

        if self.timeframe.mode not in TIMEFRAME_MODES:
            errors.append(f"Unknown health timeframe '{self.timeframe.mode}'")
        elif self.timeframe.mode == "days" and not 7 <= self.timeframe.window_days <= 365:
            errors.append("Health timeframe days must be between 7 and 365")

        return errors


@dataclass
class VelocityConfig:
    """How hours per unit of work are derived."""

    mode: str = "dynamic"  # "dynamic" | "static"
    metric: str = "points"  # "points" | "issues"
    lookback: int = 3
    min_iterations: int = 2
    static_hours_per_point: float = 6.0
    static_hours_per_issue: float = 8.0

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.mode not in ("dynamic", "static"):
            errors.append(f"Unknown velocity mode '{self.mode}'")
        if self.metric not in ("points", "issues"):
            errors.append(f"Unknown velocity metric '{self.metric}'")
        if self.lookback < 1:
            errors.append("Velocity lookback must be at least 1 iteration")
        if self.min_iterations < 1:
            errors.append("Minimum iterations for individual velocity must be at least 1")
        if self.static_hours_per_point <= 0 or self.static_hours_per_issue <= 0:
            errors.append("Static velocity hours must be positive")
        return errors

    @property
    def static_hours(self) -> float:
        if self.metric == "points":
            return self.static_hours_per_point
        return self.static_hours_per_issue


@dataclass
class CapacitySettings:
    """Conversion rates from estimates to hours."""

    hours_per_point: float = 8.0
    hours_per_issue: float = 4.0
    working_days_per_week: int = 5

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.hours_per_point <= 0:
            errors.append("Hours per story point must be positive")
        if self.hours_per_issue <= 0:
            errors.append("Default hours per issue must be positive")
        if not 1 <= self.working_days_per_week <= 7:
            errors.append("Working days per week must be between 1 and 7")
        return errors


@dataclass
class EngineConfig:
    """All settings that parameterize an analysis run."""

    health: HealthConfig = field(default_factory=HealthConfig)
    velocity: VelocityConfig = field(default_factory=VelocityConfig)
    capacity: CapacitySettings = field(default_factory=CapacitySettings)

    def validate(self) -> list[str]:
        return self.health.validate() + self.velocity.validate() + self.capacity.validate()


def health_from_dict(data: dict) -> HealthConfig:
    """Build health settings from stored data, defaulting missing fields."""
    return HealthConfig(
        weights=HealthWeights(**data.get("weights", {})),
        amplifiers=HealthAmplifiers(**data.get("amplifiers", {})),
        thresholds=HealthThresholds(**data.get("thresholds", {})),
        timeframe=HealthTimeframe(**data.get("timeframe", {})),
    )


def config_from_dict(data: dict) -> EngineConfig:
    """Build an EngineConfig from a ``{"health", "velocity", "capacity"}`` mapping."""
    return EngineConfig(
        health=health_from_dict(data.get("health", {})),
        velocity=VelocityConfig(**data.get("velocity", {})),
        capacity=CapacitySettings(**data.get("capacity", {})),
    )


def config_to_dict(config: EngineConfig) -> dict:
    return asdict(config)


class SettingsStore:
    """Load, save and reset engine configuration in a KeyValueStore."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._listeners: list[Callable[[EngineConfig], None]] = []

    def subscribe(self, listener: Callable[[EngineConfig], None]) -> None:
        """Register a callback run after every successful save or reset."""
        self._listeners.append(listener)

    def load(self) -> EngineConfig:
        """Read the stored configuration, falling back to defaults.

        Stored values that no longer validate are replaced by defaults for
        their group and logged.
        """
        data = {
            "health": self.store.get(HEALTH_KEY, {}),
            "velocity": self.store.get(VELOCITY_KEY, {}),
            "capacity": self.store.get(CAPACITY_KEY, {}),
        }
        defaults = EngineConfig()
        try:
            health = health_from_dict(data["health"])
        except TypeError:
            logger.warning("Stored health settings are malformed; using defaults")
            health = defaults.health
        if health.validate():
            logger.warning("Stored health settings are invalid; using defaults")
            health = defaults.health

        try:
            velocity = VelocityConfig(**data["velocity"])
        except TypeError:
            logger.warning("Stored velocity settings are malformed; using defaults")
            velocity = defaults.velocity
        if velocity.validate():
            logger.warning("Stored velocity settings are invalid; using defaults")
            velocity = defaults.velocity

        try:
            capacity = CapacitySettings(**data["capacity"])
        except TypeError:
            logger.warning("Stored capacity settings are malformed; using defaults")
            capacity = defaults.capacity
        if capacity.validate():
            logger.warning("Stored capacity settings are invalid; using defaults")
            capacity = defaults.capacity

        return EngineConfig(health=health, velocity=velocity, capacity=capacity)

    def save(self, config: EngineConfig) -> None:
        """Persist a configuration.

        Raises:
            InvalidConfigError: If any group fails validation; nothing is written.
        """
        errors = config.validate()
        if errors:
            raise InvalidConfigError(errors)

        self.store.set(HEALTH_KEY, asdict(config.health))
        self.store.set(VELOCITY_KEY, asdict(config.velocity))
        self.store.set(CAPACITY_KEY, asdict(config.capacity))
        self._notify(config)

    def reset(self) -> EngineConfig:
        """Restore engine defaults."""
        for key in (HEALTH_KEY, VELOCITY_KEY, CAPACITY_KEY):
            self.store.delete(key)
        config = EngineConfig()
        self._notify(config)
        return config

    def _notify(self, config: EngineConfig) -> None:
        for listener in self._listeners:
            listener(config)
