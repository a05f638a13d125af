"""Replay a Bayesian composite sensor against recorded history.

At every sample time the state of each observed entity is resolved (last
change at or before the sample), each observation is folded into the prior
with Bayes' rule (P(obs|on), P(obs|off) when its predicate holds, the
complements when it does not) and the posterior is compared to the threshold.
"""

from __future__ import annotations

import bisect
import logging
from datetime import datetime, timedelta
from typing import Protocol

from bayeslab.errors import ConfigurationError
from bayeslab.models import (
    HistoryEntry,
    Observation,
    OnPeriod,
    SimulationPoint,
    SimulationStatistics,
    SimulationSummary,
    sort_history,
    to_millis,
)
from bayeslab.shared.entity_buffer import BufferExport, BufferView

logger = logging.getLogger(__name__)


class StateResolver(Protocol):
    def state_at(self, entity_id: str, timestamp: datetime) -> str | None: ...


class RawHistoryResolver:
    """Resolves states from cached raw history (bisect per entity)."""

    def __init__(self, history_by_entity: dict[str, list[HistoryEntry]]):
        self._times: dict[str, list[datetime]] = {}
        self._states: dict[str, list[str]] = {}
        for entity_id, history in history_by_entity.items():
            ordered = sort_history(history)
            self._times[entity_id] = [e.changed_at for e in ordered]
            self._states[entity_id] = [e.state for e in ordered]

    def state_at(self, entity_id: str, timestamp: datetime) -> str | None:
        times = self._times.get(entity_id)
        if not times:
            return None
        idx = bisect.bisect_right(times, timestamp) - 1
        return self._states[entity_id][idx] if idx >= 0 else None


class BufferStateResolver:
    """Resolves states from EntityHistoryBuffer exports."""

    def __init__(self, exports: dict[str, BufferExport]):
        self._views = {entity_id: BufferView(export) for entity_id, export in exports.items()}

    def state_at(self, entity_id: str, timestamp: datetime) -> str | None:
        view = self._views.get(entity_id)
        return view.state_at_or_before(timestamp) if view is not None else None


def bayes_update(prior: float, prob_given_true: float, prob_given_false: float) -> float:
    """Posterior after one observation; unchanged if the denominator is 0."""
    numerator = prob_given_true * prior
    denominator = numerator + prob_given_false * (1 - prior)
    if denominator == 0:
        return prior
    return numerator / denominator


def _sample_times(start: datetime, end: datetime, step: timedelta) -> list[datetime]:
    times = []
    k = 0
    while True:
        ts = start + step * k
        if ts > end:
            return times
        times.append(ts)
        k += 1


def _on_periods(points: list[SimulationPoint]) -> list[OnPeriod]:
    periods = []
    run_start: datetime | None = None
    for point in points:
        if point.sensor_state and run_start is None:
            run_start = point.timestamp
        elif not point.sensor_state and run_start is not None:
            periods.append(OnPeriod(start=run_start, end=point.timestamp))
            run_start = None
    if run_start is not None:
        periods.append(OnPeriod(start=run_start, end=points[-1].timestamp))
    return periods


def simulate(
    prior: float,
    threshold: float,
    observations: list[Observation],
    history_source: StateResolver,
    time_range: tuple[datetime, datetime],
    sample_interval_minutes: float = 5,
) -> SimulationSummary:
    """Replay ``observations`` over ``time_range``.

    Observations whose entity has no resolvable state at a sample are skipped
    for that sample. Deterministic for identical inputs.

    Raises:
        ConfigurationError: bad interval, reversed range, or prior/threshold outside [0, 1]
    """
    start, end = time_range
    if sample_interval_minutes <= 0:
        raise ConfigurationError("sample_interval_minutes must be positive")
    if end < start:
        raise ConfigurationError(f"Simulation range ends ({end}) before it starts ({start})")
    if not 0 <= prior <= 1 or not 0 <= threshold <= 1:
        raise ConfigurationError("prior and threshold must be within [0, 1]")

    step = timedelta(minutes=sample_interval_minutes)
    points: list[SimulationPoint] = []
    for ts in _sample_times(start, end, step):
        probability = prior
        active: set[str] = set()
        for observation in observations:
            state = history_source.state_at(observation.entity_id, ts)
            if state is None:
                continue
            if observation.is_active(state):
                active.add(observation.entity_id)
                probability = bayes_update(probability, observation.prob_given_true, observation.prob_given_false)
            else:
                probability = bayes_update(
                    probability, 1 - observation.prob_given_true, 1 - observation.prob_given_false
                )
        points.append(
            SimulationPoint(
                timestamp=ts,
                probability=probability,
                sensor_state=probability >= threshold,
                active_observations=frozenset(active),
            )
        )

    statistics = _statistics(points, start, end, step)
    logger.debug(
        "Simulated %d samples with %d observations: %.1f%% on, %d triggers",
        len(points),
        len(observations),
        statistics.on_percentage,
        statistics.trigger_count,
    )
    return SimulationSummary(points=points, statistics=statistics, on_periods=_on_periods(points))


def _statistics(points: list[SimulationPoint], start: datetime, end: datetime, step: timedelta) -> SimulationStatistics:
    if not points:
        return SimulationStatistics()

    probabilities = [p.probability for p in points]
    step_ms = int(step.total_seconds() * 1000)
    on_time = sum(1 for p in points if p.sensor_state) * step_ms
    total_ms = to_millis(end) - to_millis(start)

    triggers = 0
    was_on = False
    for point in points:
        if point.sensor_state and not was_on:
            triggers += 1
        was_on = point.sensor_state

    return SimulationStatistics(
        avg_probability=sum(probabilities) / len(probabilities),
        max_probability=max(probabilities),
        min_probability=min(probabilities),
        on_time_ms=on_time,
        on_percentage=on_time / total_ms * 100 if total_ms > 0 else 0.0,
        trigger_count=triggers,
    )
