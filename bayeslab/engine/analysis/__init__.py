"""Timeline segmentation, threshold optimization and probability estimation."""

from bayeslab.engine.analysis.probability import (
    analyze_entity,
    calculate_entity_probabilities,
    generate_bayesian_config,
    rank_probabilities,
)
from bayeslab.engine.analysis.thresholds import (
    ThresholdCache,
    calculate_threshold_score,
    find_optimal_thresholds,
)
from bayeslab.engine.analysis.timeline import analyze_numeric_states, segment

__all__ = [
    "ThresholdCache",
    "analyze_entity",
    "analyze_numeric_states",
    "calculate_entity_probabilities",
    "calculate_threshold_score",
    "find_optimal_thresholds",
    "generate_bayesian_config",
    "rank_probabilities",
    "segment",
]
