"""Threshold optimizer — the numeric cut that best separates TRUE from FALSE chunks.

Score of a threshold = |true_pct - false_pct| where each percentage is the
duration-weighted share of that class's chunks matching the predicate
(``value > above``, ``value <= below`` or ``above < value <= below``).

Each class is held as a sorted value array plus cumulative durations, so a
score costs two ``searchsorted`` calls and the single-threshold strategies
score every candidate in one vectorized pass.

Search order: above-only, below-only, range. A later strategy replaces the
current winner only with a strictly higher score.

Within the above-only and below-only strategies the winner is not the first
candidate reaching the maximum but the middle of the first run of adjacent
candidates that all reach it. A perfect split between 25 and 80 therefore
lands near the middle of the gap, not on the last observed value. The range
strategy keeps the first maximal pair.
"""

from __future__ import annotations

import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass

import numpy as np

from bayeslab.models import NumericStateStats, OptimalThresholds, ValueDuration

logger = logging.getLogger(__name__)

GRID_STEPS = 20
MAX_RANGE_TESTS = 100
SCORE_TOLERANCE = 1e-12


class _DurationProfile:
    """One class of chunks, sorted by value with cumulative durations."""

    def __init__(self, chunks: list[ValueDuration]):
        ordered = sorted(chunks, key=lambda c: c.value)
        self.values = np.array([c.value for c in ordered], dtype=float)
        durations = np.array([max(c.duration, 0) for c in ordered], dtype=np.int64)
        self.cumulative = np.concatenate((np.zeros(1, dtype=np.int64), np.cumsum(durations, dtype=np.int64)))
        self.total = int(self.cumulative[-1])

    def _weight_at_or_below(self, points: np.ndarray) -> np.ndarray:
        return self.cumulative[np.searchsorted(self.values, points, side="right")]

    def fraction_above(self, above: np.ndarray) -> np.ndarray:
        if self.total <= 0:
            return np.zeros(len(above))
        return (self.total - self._weight_at_or_below(above)) / self.total

    def fraction_at_or_below(self, below: np.ndarray) -> np.ndarray:
        if self.total <= 0:
            return np.zeros(len(below))
        return self._weight_at_or_below(below) / self.total

    def fraction_between(self, above: np.ndarray, below: np.ndarray) -> np.ndarray:
        if self.total <= 0:
            return np.zeros(len(above))
        inside = self._weight_at_or_below(below) - self._weight_at_or_below(above)
        return np.maximum(inside, 0) / self.total


@dataclass(frozen=True)
class ThresholdSearch:
    """Winning thresholds with the score and strategy that produced them."""

    thresholds: OptimalThresholds
    score: float
    strategy: str  # "above", "below" or "range"


def chunk_matches_threshold(value: float, above: float | None, below: float | None) -> bool:
    return OptimalThresholds(above=above, below=below).matches(value)


def calculate_threshold_score(
    true_chunks: list[ValueDuration],
    false_chunks: list[ValueDuration],
    above: float | None = None,
    below: float | None = None,
) -> float:
    """Duration-weighted separation of one threshold, in [0, 1].

    A class with no chunks (or zero total duration) contributes 0.
    Symmetric under swapping the two chunk lists.
    """
    if above is None and below is None:
        return 0.0

    true_profile = _DurationProfile(true_chunks)
    false_profile = _DurationProfile(false_chunks)
    true_pct, false_pct = _match_fractions(true_profile, false_profile, above, below)
    return float(abs(true_pct[0] - false_pct[0]))


def _match_fractions(
    true_profile: _DurationProfile,
    false_profile: _DurationProfile,
    above: float | None,
    below: float | None,
) -> tuple[np.ndarray, np.ndarray]:
    if above is not None and below is not None:
        lo, hi = np.array([above]), np.array([below])
        return true_profile.fraction_between(lo, hi), false_profile.fraction_between(lo, hi)
    if above is not None:
        lo = np.array([above])
        return true_profile.fraction_above(lo), false_profile.fraction_above(lo)
    hi = np.array([below])
    return true_profile.fraction_at_or_below(hi), false_profile.fraction_at_or_below(hi)


def generate_candidates(stats: NumericStateStats, grid_steps: int = GRID_STEPS) -> np.ndarray:
    """Observed values, adjacent midpoints and an even grid over [min, max], ascending."""
    observed = np.array([c.value for c in stats.true_chunks + stats.false_chunks], dtype=float)
    if len(observed) == 0:
        return observed

    distinct = np.unique(observed)
    midpoints = (distinct[:-1] + distinct[1:]) / 2
    lo = stats.min if stats.min is not None else float(distinct[0])
    hi = stats.max if stats.max is not None else float(distinct[-1])
    grid = np.linspace(lo, hi, grid_steps + 1)
    return np.unique(np.concatenate((distinct, midpoints, grid)))


def _plateau_middle(scores: np.ndarray) -> tuple[int, float]:
    """Index of the middle of the first run of maximal scores, and that score."""
    first = int(np.argmax(scores))
    best = float(scores[first])
    last = first
    while last + 1 < len(scores) and abs(scores[last + 1] - best) <= SCORE_TOLERANCE:
        last += 1
    return (first + last) // 2, best


def sample_pairs(n: int, max_tests: int) -> tuple[np.ndarray, np.ndarray]:
    """Deterministic sample of (i, j) index pairs with i < j.

    Enumerates every pair when there are at most ``max_tests`` of them,
    otherwise walks the triangular pair index with a fixed stride.
    """
    total = n * (n - 1) // 2
    if total <= 0 or max_tests <= 0:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty

    if total <= max_tests:
        flat = np.arange(total, dtype=np.int64)
    else:
        flat = (np.arange(max_tests, dtype=np.int64) * total) // max_tests

    # Row i holds pairs (i, i+1) .. (i, n-1)
    row_lengths = np.arange(n - 1, 0, -1, dtype=np.int64)
    row_starts = np.concatenate((np.zeros(1, dtype=np.int64), np.cumsum(row_lengths)[:-1]))
    rows = np.searchsorted(row_starts, flat, side="right") - 1
    cols = rows + 1 + (flat - row_starts[rows])
    return rows, cols


def search_thresholds(
    stats: NumericStateStats,
    grid_steps: int = GRID_STEPS,
    max_range_tests: int = MAX_RANGE_TESTS,
) -> ThresholdSearch | None:
    """Run all three strategies; None when there is nothing to separate."""
    if not stats.is_numeric or not stats.true_chunks or not stats.false_chunks:
        return None

    candidates = generate_candidates(stats, grid_steps)
    if len(candidates) == 0:
        return None

    true_profile = _DurationProfile(stats.true_chunks)
    false_profile = _DurationProfile(stats.false_chunks)

    above_scores = np.abs(true_profile.fraction_above(candidates) - false_profile.fraction_above(candidates))
    idx, best_score = _plateau_middle(above_scores)
    best = ThresholdSearch(OptimalThresholds(above=float(candidates[idx])), best_score, "above")

    below_scores = np.abs(
        true_profile.fraction_at_or_below(candidates) - false_profile.fraction_at_or_below(candidates)
    )
    idx, score = _plateau_middle(below_scores)
    if score > best.score + SCORE_TOLERANCE:
        best = ThresholdSearch(OptimalThresholds(below=float(candidates[idx])), score, "below")

    rows, cols = sample_pairs(len(candidates), max_range_tests)
    if len(rows):
        lo, hi = candidates[rows], candidates[cols]
        range_scores = np.abs(true_profile.fraction_between(lo, hi) - false_profile.fraction_between(lo, hi))
        k = int(np.argmax(range_scores))
        if range_scores[k] > best.score + SCORE_TOLERANCE:
            best = ThresholdSearch(
                OptimalThresholds(above=float(lo[k]), below=float(hi[k])), float(range_scores[k]), "range"
            )

    logger.debug(
        "Threshold search: %d candidates, %d range pairs, best %s (%s, score %.3f)",
        len(candidates),
        len(rows),
        best.thresholds.describe(),
        best.strategy,
        best.score,
    )
    return best


def find_optimal_thresholds(
    stats: NumericStateStats,
    grid_steps: int = GRID_STEPS,
    max_range_tests: int = MAX_RANGE_TESTS,
) -> OptimalThresholds:
    """Best-separating thresholds; both bounds None when a class has no chunks."""
    result = search_thresholds(stats, grid_steps, max_range_tests)
    return result.thresholds if result is not None else OptimalThresholds()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def _chunk_summary(chunks: list[ValueDuration]) -> str:
    ordered = sorted(chunks, key=lambda c: (c.value, c.duration))
    return ",".join(f"{c.value:.2f}-{c.duration}" for c in ordered)


def threshold_cache_key(stats: NumericStateStats) -> str:
    """SHA-256 content hash of the sorted true|false chunk summary."""
    summary = f"{_chunk_summary(stats.true_chunks)}|{_chunk_summary(stats.false_chunks)}"
    return hashlib.sha256(summary.encode("utf-8")).hexdigest()


class ThresholdCache:
    """Bounded LRU of optimizer results keyed by (entity_id, content hash).

    Owned by one orchestrator. Worker processes get a small per-entity copy
    via ``entries_for`` and hand new entries back through ``update``.
    """

    def __init__(self, max_entries: int = 512):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], OptimalThresholds] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, entity_id: str, key: str) -> OptimalThresholds | None:
        entry = self._entries.get((entity_id, key))
        if entry is None:
            self.misses += 1
            return None
        self._entries.move_to_end((entity_id, key))
        self.hits += 1
        return entry

    def put(self, entity_id: str, key: str, thresholds: OptimalThresholds):
        self._entries[(entity_id, key)] = thresholds
        self._entries.move_to_end((entity_id, key))
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Threshold cache evicted %s", evicted[0])

    def entries_for(self, entity_id: str) -> dict[str, OptimalThresholds]:
        return {key: value for (eid, key), value in self._entries.items() if eid == entity_id}

    def update(self, entity_id: str, entries: dict[str, OptimalThresholds]):
        for key, thresholds in entries.items():
            self.put(entity_id, key, thresholds)

    def clear(self):
        self._entries.clear()
        self.hits = 0
        self.misses = 0


def cached_optimal_thresholds(
    entity_id: str,
    stats: NumericStateStats,
    cache: ThresholdCache | None = None,
    grid_steps: int = GRID_STEPS,
    max_range_tests: int = MAX_RANGE_TESTS,
) -> OptimalThresholds:
    """find_optimal_thresholds, consulting and filling ``cache`` when given."""
    if cache is None:
        return find_optimal_thresholds(stats, grid_steps, max_range_tests)

    key = threshold_cache_key(stats)
    cached = cache.get(entity_id, key)
    if cached is not None:
        return cached
    thresholds = find_optimal_thresholds(stats, grid_steps, max_range_tests)
    cache.put(entity_id, key, thresholds)
    return thresholds
