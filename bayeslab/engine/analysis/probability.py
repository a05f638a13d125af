"""Probability estimator — P(state | TRUE) and P(state | FALSE) per entity.

Numeric entities (at least one chunk from the segmenter) produce a single
record describing the optimal threshold predicate; probabilities are the
duration-weighted share of each class's chunks that satisfy it.

Discrete entities produce one record per state seen at a period midpoint;
probabilities are period counts divided by the number of periods of each
polarity. All probabilities are clamped to [0.01, 0.99] so that no single
observation can drive a Bayesian posterior to 0 or 1.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any

from bayeslab.engine.analysis.thresholds import ThresholdCache, cached_optimal_thresholds
from bayeslab.engine.analysis.timeline import (
    HistoryIndex,
    dominant_state,
    segment_indexed,
    stats_from_chunks,
)
from bayeslab.engine.config import AnalysisConfig
from bayeslab.errors import AnalysisError, ConfigurationError
from bayeslab.models import (
    EntityProbability,
    HistoryEntry,
    NumericStateStats,
    OptimalThresholds,
    TimePeriod,
    ValueDuration,
    clamp_probability,
)
from bayeslab.shared.periods import split_by_polarity

logger = logging.getLogger(__name__)


def split_periods(periods: list[TimePeriod]) -> tuple[list[TimePeriod], list[TimePeriod]]:
    """Split into (true, false) periods; both must be non-empty."""
    true_periods, false_periods = split_by_polarity(periods)
    if not true_periods or not false_periods:
        raise ConfigurationError(
            f"Analysis needs at least one TRUE and one FALSE period "
            f"(got {len(true_periods)} TRUE, {len(false_periods)} FALSE)"
        )
    return true_periods, false_periods


def coerce_history(entity_id: str, rows: list[HistoryEntry | dict[str, Any]]) -> list[HistoryEntry]:
    """Accept HistoryEntry objects or raw Home Assistant rows."""
    history = []
    for row in rows:
        if isinstance(row, HistoryEntry):
            history.append(row)
            continue
        try:
            history.append(HistoryEntry.from_ha(row))
        except (ValueError, TypeError, AttributeError) as e:
            raise AnalysisError(entity_id, f"malformed history row: {e}") from e
    return history


def _weighted_match_rate(chunks: list[ValueDuration], thresholds: OptimalThresholds) -> float:
    total = sum(c.duration for c in chunks)
    if total <= 0:
        return 0.0
    matched = sum(c.duration for c in chunks if thresholds.matches(c.value))
    return matched / total


def _numeric_probability(
    entity_id: str,
    stats: NumericStateStats,
    thresholds: OptimalThresholds,
    total_true: int,
    total_false: int,
    config: AnalysisConfig,
) -> EntityProbability:
    pgt = clamp_probability(
        _weighted_match_rate(stats.true_chunks, thresholds), config.probability_floor, config.probability_ceiling
    )
    pgf = clamp_probability(
        _weighted_match_rate(stats.false_chunks, thresholds), config.probability_floor, config.probability_ceiling
    )
    return EntityProbability(
        entity_id=entity_id,
        state=thresholds.describe(),
        prob_given_true=pgt,
        prob_given_false=pgf,
        discrimination_power=abs(pgt - pgf),
        true_occurrences=total_true,
        false_occurrences=total_false,
        total_true_periods=total_true,
        total_false_periods=total_false,
        numeric_stats=stats,
        optimal_thresholds=thresholds,
    )


def _discrete_probabilities(
    entity_id: str,
    index: HistoryIndex,
    true_periods: list[TimePeriod],
    false_periods: list[TimePeriod],
    config: AnalysisConfig,
) -> list[EntityProbability]:
    true_counts: Counter[str] = Counter()
    false_counts: Counter[str] = Counter()
    seen: dict[str, None] = {}

    for period in true_periods:
        state = dominant_state(index, period)
        if state is not None:
            true_counts[state] += 1
            seen.setdefault(state, None)
    for period in false_periods:
        state = dominant_state(index, period)
        if state is not None:
            false_counts[state] += 1
            seen.setdefault(state, None)

    total_true = len(true_periods)
    total_false = len(false_periods)
    results = []
    for state in seen:
        pgt = clamp_probability(true_counts[state] / total_true, config.probability_floor, config.probability_ceiling)
        pgf = clamp_probability(false_counts[state] / total_false, config.probability_floor, config.probability_ceiling)
        results.append(
            EntityProbability(
                entity_id=entity_id,
                state=state,
                prob_given_true=pgt,
                prob_given_false=pgf,
                discrimination_power=abs(pgt - pgf),
                true_occurrences=true_counts[state],
                false_occurrences=false_counts[state],
                total_true_periods=total_true,
                total_false_periods=total_false,
            )
        )
    return results


def analyze_entity(
    entity_id: str,
    history: list[HistoryEntry] | list[dict[str, Any]],
    periods: list[TimePeriod],
    cache: ThresholdCache | None = None,
    config: AnalysisConfig | None = None,
) -> list[EntityProbability]:
    """Score one entity against the labeled periods.

    Args:
        entity_id: Entity being analyzed
        history: State changes (HistoryEntry or raw HA rows), any order
        periods: Labeled periods, at least one of each polarity
        cache: Optional threshold cache consulted for numeric entities
        config: Analysis settings (defaults to AnalysisConfig())

    Returns:
        Records sorted by discrimination power, highest first.

    Raises:
        ConfigurationError: no TRUE or no FALSE period
        AnalysisError: the history could not be interpreted
    """
    config = config or AnalysisConfig()
    true_periods, false_periods = split_periods(periods)

    entries = coerce_history(entity_id, history)
    if not entries:
        logger.debug("No history for %s", entity_id)
        return []

    try:
        index = HistoryIndex(entries)
        stats = stats_from_chunks(segment_indexed(index, periods, config.min_chunk_ms))

        if stats.is_numeric:
            thresholds = cached_optimal_thresholds(
                entity_id, stats, cache, config.grid_steps, config.max_range_tests
            )
            results = [
                _numeric_probability(
                    entity_id, stats, thresholds, len(true_periods), len(false_periods), config
                )
            ]
        else:
            results = _discrete_probabilities(entity_id, index, true_periods, false_periods, config)
    except (TypeError, ValueError, AttributeError) as e:
        raise AnalysisError(entity_id, str(e)) from e

    return rank_probabilities(results)


def rank_probabilities(probabilities: list[EntityProbability]) -> list[EntityProbability]:
    """Stable sort by discrimination power, descending."""
    return sorted(probabilities, key=lambda p: p.discrimination_power, reverse=True)


def calculate_entity_probabilities(
    history_by_entity: dict[str, list[HistoryEntry]],
    periods: list[TimePeriod],
    cache: ThresholdCache | None = None,
    config: AnalysisConfig | None = None,
) -> list[EntityProbability]:
    """In-process batch version of the pipeline: analyze every entity, then rank."""
    split_periods(periods)
    results: list[EntityProbability] = []
    for entity_id, history in history_by_entity.items():
        results.extend(analyze_entity(entity_id, history, periods, cache=cache, config=config))
    return rank_probabilities(results)


def _slugify(name: str) -> str:
    return re.sub(r"\s+", "_", name.strip().lower())


def generate_bayesian_config(
    probabilities: list[EntityProbability],
    name: str,
    max_observations: int = 10,
    prior: float = 0.5,
    probability_threshold: float = 0.5,
) -> dict[str, Any]:
    """Home Assistant ``bayesian`` binary sensor config from the top records."""
    observations = []
    for record in probabilities[:max_observations]:
        if record.is_numeric:
            thresholds = record.optimal_thresholds or OptimalThresholds()
            observation: dict[str, Any] = {
                "platform": "numeric_state",
                "entity_id": record.entity_id,
                "prob_given_true": record.prob_given_true,
                "prob_given_false": record.prob_given_false,
            }
            if thresholds.above is not None:
                observation["above"] = thresholds.above
            if thresholds.below is not None:
                observation["below"] = thresholds.below
        else:
            observation = {
                "platform": "state",
                "entity_id": record.entity_id,
                "to_state": record.state,
                "prob_given_true": record.prob_given_true,
                "prob_given_false": record.prob_given_false,
            }
        observations.append(observation)

    return {
        "platform": "bayesian",
        "name": name,
        "unique_id": f"bayesian_{_slugify(name)}",
        "prior": prior,
        "probability_threshold": probability_threshold,
        "observations": observations,
    }
