"""Timeline segmentation — raw state history to duration-weighted chunks.

For every labeled period the entity's history is cut at each state change
strictly inside the period, yielding (value, duration, desired_output)
chunks. History is sorted and indexed once (numpy ``searchsorted``), so each
period costs O(log n + k) where k is the number of changes inside it.
"""

from __future__ import annotations

import logging

import numpy as np

from bayeslab.models import (
    HistoryEntry,
    NumericStateStats,
    SensorChunk,
    TimePeriod,
    ValueDuration,
    parse_numeric,
    sort_history,
    to_millis,
)

logger = logging.getLogger(__name__)

MIN_CHUNK_MS = 1000


class HistoryIndex:
    """Sorted, time-indexed view of one entity's history.

    Attributes:
        entries: history sorted by change time (stable for duplicates)
        times: int64 millisecond timestamps, aligned with entries
        values: numeric value of each entry, or None if not numeric
        carried: last numeric value at or before each index (None until the first)
    """

    def __init__(self, history: list[HistoryEntry]):
        self.entries = sort_history(history)
        self.times = np.fromiter((to_millis(e.changed_at) for e in self.entries), dtype=np.int64, count=len(self.entries))
        self.values = [parse_numeric(e.state) for e in self.entries]
        self.carried: list[float | None] = []
        last = None
        for value in self.values:
            if value is not None:
                last = value
            self.carried.append(last)

    def __len__(self) -> int:
        return len(self.entries)

    def count_at_or_before(self, ts_ms: int) -> int:
        return int(np.searchsorted(self.times, ts_ms, side="right"))

    def first_at_or_after(self, ts_ms: int) -> int:
        return int(np.searchsorted(self.times, ts_ms, side="left"))


def segment_indexed(index: HistoryIndex, periods: list[TimePeriod], min_chunk_ms: int = MIN_CHUNK_MS) -> list[SensorChunk]:
    """Segment a pre-built HistoryIndex against every period."""
    if len(index) == 0 or not periods:
        return []

    chunks: list[SensorChunk] = []
    for period in periods:
        start = to_millis(period.start)
        end = to_millis(period.end)

        # Value entering the period: last numeric state at or before start
        entering = index.count_at_or_before(start)
        current = index.carried[entering - 1] if entering > 0 else None

        # Changes strictly inside (start, end)
        first_inside = entering
        stop = index.first_at_or_after(end)
        inside_times = index.times[first_inside:stop].tolist()
        points = [start, *inside_times, end]

        for k in range(len(points) - 1):
            if k > 0:
                changed = index.values[first_inside + k - 1]
                if changed is not None:
                    current = changed
            duration = points[k + 1] - points[k]
            if duration < min_chunk_ms:
                continue
            if current is None:
                continue
            chunks.append(SensorChunk(value=current, duration=duration, desired_output=period.is_true_period))

    return chunks


def segment(history: list[HistoryEntry], periods: list[TimePeriod], min_chunk_ms: int = MIN_CHUNK_MS) -> list[SensorChunk]:
    """Convert one entity's raw history + the period set into value chunks."""
    return segment_indexed(HistoryIndex(history), periods, min_chunk_ms)


def stats_from_chunks(chunks: list[SensorChunk]) -> NumericStateStats:
    """Aggregate chunks into NumericStateStats; numeric iff there is at least one chunk."""
    if not chunks:
        return NumericStateStats(is_numeric=False)

    values = [c.value for c in chunks]
    return NumericStateStats(
        is_numeric=True,
        min=min(values),
        max=max(values),
        true_chunks=[ValueDuration(c.value, c.duration) for c in chunks if c.desired_output],
        false_chunks=[ValueDuration(c.value, c.duration) for c in chunks if not c.desired_output],
    )


def analyze_numeric_states(
    history: list[HistoryEntry], periods: list[TimePeriod], min_chunk_ms: int = MIN_CHUNK_MS
) -> NumericStateStats:
    return stats_from_chunks(segment(history, periods, min_chunk_ms))


def dominant_state(index: HistoryIndex, period: TimePeriod) -> str | None:
    """State active at the period midpoint.

    Falls back to the first state observed strictly inside the period when
    the history starts after the midpoint.
    """
    if len(index) == 0:
        return None

    midpoint = to_millis(period.midpoint)
    at_mid = index.count_at_or_before(midpoint)
    if at_mid > 0:
        return index.entries[at_mid - 1].state

    start = to_millis(period.start)
    end = to_millis(period.end)
    first = index.count_at_or_before(start)
    if first < len(index) and index.times[first] < end:
        return index.entries[first].state
    return None
