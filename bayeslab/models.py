"""Shared data models for the analysis and simulation pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from bayeslab.errors import ConfigurationError

PROBABILITY_FLOOR = 0.01
PROBABILITY_CEILING = 0.99


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO 8601 timestamp (or pass a datetime through) as an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_numeric(state: str | None) -> float | None:
    """Return the state as a finite float, or None if it is not numeric."""
    if state is None:
        return None
    try:
        value = float(state.strip())
    except (ValueError, AttributeError):
        return None
    return value if math.isfinite(value) else None


def to_millis(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


def clamp_probability(value: float, floor: float = PROBABILITY_FLOOR, ceiling: float = PROBABILITY_CEILING) -> float:
    """Hard-clamp a conditional probability into [floor, ceiling] (default [0.01, 0.99])."""
    return min(ceiling, max(floor, value))


@dataclass(frozen=True)
class TimePeriod:
    """A user-labeled interval asserting the desired composite sensor output."""

    id: str
    start: datetime
    end: datetime
    is_true_period: bool
    label: str | None = None

    def __post_init__(self):
        if not self.start < self.end:
            raise ConfigurationError(f"Period {self.id}: start {self.start} must be before end {self.end}")

    @property
    def midpoint(self) -> datetime:
        return self.start + (self.end - self.start) / 2

    @property
    def duration_ms(self) -> int:
        return to_millis(self.end) - to_millis(self.start)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimePeriod:
        return cls(
            id=str(data["id"]),
            start=parse_timestamp(data["start"]),
            end=parse_timestamp(data["end"]),
            is_true_period=bool(data.get("is_true_period", data.get("isTruePeriod"))),
            label=data.get("label"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "is_true_period": self.is_true_period,
            "label": self.label,
        }


@dataclass(frozen=True)
class HistoryEntry:
    """One state change of an entity."""

    state: str
    changed_at: datetime
    entity_id: str | None = None

    @classmethod
    def from_ha(cls, row: dict[str, Any]) -> HistoryEntry:
        """Build from a Home Assistant history row (last_changed / last_updated)."""
        ts = row.get("last_changed") or row.get("last_updated")
        if ts is None:
            raise ValueError(f"History row has no timestamp: {row!r}")
        return cls(state=str(row.get("state", "")), changed_at=parse_timestamp(ts), entity_id=row.get("entity_id"))

    def to_dict(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "state": self.state, "last_changed": self.changed_at.isoformat()}


def sort_history(history: list[HistoryEntry]) -> list[HistoryEntry]:
    """Stable sort by change time; history sources may deliver out-of-order rows."""
    return sorted(history, key=lambda e: e.changed_at)


@dataclass(frozen=True)
class SensorChunk:
    """A piece of one period during which an entity held one numeric value."""

    value: float
    duration: int  # milliseconds
    desired_output: bool


@dataclass(frozen=True)
class ValueDuration:
    value: float
    duration: int


@dataclass
class NumericStateStats:
    """Duration-weighted numeric summary of an entity across all periods."""

    is_numeric: bool
    min: float | None = None
    max: float | None = None
    true_chunks: list[ValueDuration] = field(default_factory=list)
    false_chunks: list[ValueDuration] = field(default_factory=list)


@dataclass(frozen=True)
class OptimalThresholds:
    above: float | None = None
    below: float | None = None

    @property
    def is_empty(self) -> bool:
        return self.above is None and self.below is None

    def matches(self, value: float) -> bool:
        """Inclusive upper bound: above < value <= below."""
        if self.above is not None and self.below is not None:
            return self.above < value <= self.below
        if self.above is not None:
            return value > self.above
        if self.below is not None:
            return value <= self.below
        return False

    def describe(self) -> str:
        if self.above is not None and self.below is not None:
            return f"{self.above:.2f} < value <= {self.below:.2f}"
        if self.above is not None:
            return f"> {self.above:.2f}"
        if self.below is not None:
            return f"<= {self.below:.2f}"
        return "numeric"


@dataclass(frozen=True)
class EntityProbability:
    """One scored observation candidate."""

    entity_id: str
    state: str
    prob_given_true: float
    prob_given_false: float
    discrimination_power: float
    true_occurrences: int
    false_occurrences: int
    total_true_periods: int
    total_false_periods: int
    numeric_stats: NumericStateStats | None = None
    optimal_thresholds: OptimalThresholds | None = None

    @property
    def is_numeric(self) -> bool:
        return self.numeric_stats is not None and self.numeric_stats.is_numeric

    def to_observation(self) -> Observation:
        if self.is_numeric:
            thresholds = self.optimal_thresholds or OptimalThresholds()
            return Observation(
                entity_id=self.entity_id,
                kind="numeric",
                prob_given_true=self.prob_given_true,
                prob_given_false=self.prob_given_false,
                above=thresholds.above,
                below=thresholds.below,
            )
        return Observation(
            entity_id=self.entity_id,
            kind="discrete",
            prob_given_true=self.prob_given_true,
            prob_given_false=self.prob_given_false,
            to_state=self.state,
        )

    def to_dict(self) -> dict[str, Any]:
        result = {
            "entity_id": self.entity_id,
            "state": self.state,
            "prob_given_true": self.prob_given_true,
            "prob_given_false": self.prob_given_false,
            "discrimination_power": self.discrimination_power,
            "true_occurrences": self.true_occurrences,
            "false_occurrences": self.false_occurrences,
            "total_true_periods": self.total_true_periods,
            "total_false_periods": self.total_false_periods,
        }
        if self.optimal_thresholds is not None:
            result["optimal_thresholds"] = {
                "above": self.optimal_thresholds.above,
                "below": self.optimal_thresholds.below,
            }
        return result


@dataclass(frozen=True)
class Observation:
    """Observation descriptor consumed by the simulator and config serialization."""

    entity_id: str
    kind: Literal["discrete", "numeric"]
    prob_given_true: float
    prob_given_false: float
    to_state: str | None = None
    above: float | None = None
    below: float | None = None

    def is_active(self, state: str) -> bool:
        """Evaluate the observation predicate against a raw state string."""
        if self.kind == "discrete":
            return self.to_state is not None and state == self.to_state
        value = parse_numeric(state)
        if value is None:
            return False
        if self.above is None and self.below is None:
            return False
        if self.above is not None and value <= self.above:
            return False
        if self.below is not None and value > self.below:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "entity_id": self.entity_id,
            "kind": self.kind,
            "prob_given_true": self.prob_given_true,
            "prob_given_false": self.prob_given_false,
        }
        if self.to_state is not None:
            result["to_state"] = self.to_state
        if self.above is not None:
            result["above"] = self.above
        if self.below is not None:
            result["below"] = self.below
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Observation:
        kind = data.get("kind")
        if kind is None:
            # Home Assistant observation shape
            kind = "numeric" if data.get("platform") == "numeric_state" else "discrete"
        if kind not in ("discrete", "numeric"):
            raise ConfigurationError(f"Unknown observation kind: {kind!r}")
        return cls(
            entity_id=data["entity_id"],
            kind=kind,
            prob_given_true=float(data["prob_given_true"]),
            prob_given_false=float(data["prob_given_false"]),
            to_state=data.get("to_state"),
            above=data.get("above"),
            below=data.get("below"),
        )


class EntityStatus(str, Enum):
    QUEUED = "queued"
    FETCHING = "fetching"
    FETCHED = "fetched"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EntityStatus.COMPLETED, EntityStatus.ERROR)


# Allowed forward transitions; ERROR is reachable from any non-terminal state.
STATUS_TRANSITIONS: dict[EntityStatus, set[EntityStatus]] = {
    EntityStatus.QUEUED: {EntityStatus.FETCHING},
    EntityStatus.FETCHING: {EntityStatus.FETCHED},
    EntityStatus.FETCHED: {EntityStatus.ANALYZING},
    EntityStatus.ANALYZING: {EntityStatus.COMPLETED},
    EntityStatus.COMPLETED: set(),
    EntityStatus.ERROR: set(),
}


@dataclass(frozen=True)
class EntityStatusUpdate:
    entity_id: str
    status: EntityStatus
    message: str | None = None


@dataclass(frozen=True)
class AnalysisProgress:
    current: int
    total: int
    current_entity: str = ""


@dataclass(frozen=True)
class SimulationPoint:
    timestamp: datetime
    probability: float
    sensor_state: bool
    active_observations: frozenset[str] = frozenset()


@dataclass(frozen=True)
class SimulationStatistics:
    avg_probability: float = 0.0
    max_probability: float = 0.0
    min_probability: float = 0.0
    on_time_ms: int = 0
    on_percentage: float = 0.0
    trigger_count: int = 0


@dataclass(frozen=True)
class OnPeriod:
    start: datetime
    end: datetime


@dataclass
class SimulationSummary:
    points: list[SimulationPoint]
    statistics: SimulationStatistics
    on_periods: list[OnPeriod]

    def to_dict(self) -> dict[str, Any]:
        stats = self.statistics
        return {
            "points": [
                {
                    "timestamp": p.timestamp.isoformat(),
                    "probability": p.probability,
                    "sensor_state": p.sensor_state,
                    "active_observations": sorted(p.active_observations),
                }
                for p in self.points
            ],
            "statistics": {
                "avg_probability": stats.avg_probability,
                "max_probability": stats.max_probability,
                "min_probability": stats.min_probability,
                "on_time_ms": stats.on_time_ms,
                "on_percentage": stats.on_percentage,
                "trigger_count": stats.trigger_count,
            },
            "on_periods": [{"start": p.start.isoformat(), "end": p.end.isoformat()} for p in self.on_periods],
        }
