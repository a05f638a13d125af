"""Helpers for editing the labeled period set.

Periods are immutable; every helper returns new TimePeriod objects.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import Literal

from bayeslab.errors import ConfigurationError
from bayeslab.models import TimePeriod

logger = logging.getLogger(__name__)

MERGE_TOLERANCE = timedelta(minutes=1)
TRIM_GAP = timedelta(seconds=1)

ConflictStrategy = Literal["replace", "trim", "reject"]


def format_period_label(start: datetime, end: datetime) -> str:
    """E.g. ``"Mar 4 08:00 - 09:30"``."""
    return f"{start:%b} {start.day} {start:%H:%M} - {end:%H:%M}"


def _new_period_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class RangeConflict:
    conflicting_period: TimePeriod
    overlap_start: datetime
    overlap_end: datetime

    @property
    def overlap_duration(self) -> timedelta:
        return self.overlap_end - self.overlap_start


@dataclass
class ConflictResolution:
    resolved_periods: list[TimePeriod]
    new_period: TimePeriod | None
    removed_periods: list[TimePeriod] = field(default_factory=list)
    modified_periods: list[TimePeriod] = field(default_factory=list)


def ranges_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def detect_range_conflicts(start: datetime, end: datetime, periods: list[TimePeriod]) -> list[RangeConflict]:
    conflicts = []
    for period in periods:
        overlap_start = max(start, period.start)
        overlap_end = min(end, period.end)
        if overlap_start < overlap_end:
            conflicts.append(RangeConflict(period, overlap_start, overlap_end))
    return conflicts


def validate_non_overlapping(periods: list[TimePeriod]) -> list[tuple[TimePeriod, TimePeriod]]:
    """All overlapping pairs; an empty list means the set is valid."""
    overlapping = []
    for i, first in enumerate(periods):
        for second in periods[i + 1 :]:
            if ranges_overlap(first.start, first.end, second.start, second.end):
                overlapping.append((first, second))
    return overlapping


def merge_adjacent_periods(periods: list[TimePeriod], tolerance: timedelta = MERGE_TOLERANCE) -> list[TimePeriod]:
    """Merge same-polarity periods that overlap or are within ``tolerance``.

    The merged period keeps the id of the earliest one.
    """
    if len(periods) < 2:
        return list(periods)

    merged: list[TimePeriod] = []
    for period in sorted(periods, key=lambda p: p.start):
        if merged:
            last = merged[-1]
            if last.is_true_period == period.is_true_period and period.start - last.end <= tolerance:
                start = min(last.start, period.start)
                end = max(last.end, period.end)
                merged[-1] = TimePeriod(
                    id=last.id,
                    start=start,
                    end=end,
                    is_true_period=last.is_true_period,
                    label=format_period_label(start, end),
                )
                continue
        merged.append(period)
    return merged


def _trim(period: TimePeriod, start: datetime, end: datetime, period_id: str | None = None) -> TimePeriod | None:
    if not start < end:
        return None
    return TimePeriod(
        id=period_id or period.id,
        start=start,
        end=end,
        is_true_period=period.is_true_period,
        label=format_period_label(start, end),
    )


def resolve_conflicts(
    start: datetime,
    end: datetime,
    is_true_period: bool,
    periods: list[TimePeriod],
    strategy: ConflictStrategy = "replace",
    period_id: str | None = None,
) -> ConflictResolution:
    """Insert a new period, handling overlaps with ``strategy``.

    - replace: conflicting periods are removed
    - trim: conflicting periods are shortened or split, leaving a 1 s gap
    - reject: nothing changes and ``new_period`` is None
    """
    new_period = TimePeriod(
        id=period_id or _new_period_id(),
        start=start,
        end=end,
        is_true_period=is_true_period,
        label=format_period_label(start, end),
    )
    conflicts = detect_range_conflicts(start, end, periods)
    if not conflicts:
        return ConflictResolution(resolved_periods=[*periods, new_period], new_period=new_period)

    if strategy == "reject":
        logger.debug("Rejected period %s: %d conflicts", new_period.id, len(conflicts))
        return ConflictResolution(resolved_periods=list(periods), new_period=None)

    conflicting_ids = {c.conflicting_period.id for c in conflicts}
    removed: list[TimePeriod] = []
    modified: list[TimePeriod] = []
    resolved: list[TimePeriod] = []

    for period in periods:
        if period.id not in conflicting_ids:
            resolved.append(period)
            continue

        if strategy == "replace" or (start <= period.start and end >= period.end):
            removed.append(period)
        elif start > period.start and end < period.end:
            parts = [
                _trim(period, period.start, start - TRIM_GAP, f"{period.id}_1"),
                _trim(period, end + TRIM_GAP, period.end, f"{period.id}_2"),
            ]
            kept = [p for p in parts if p is not None]
            modified.extend(kept)
            resolved.extend(kept)
        else:
            if start <= period.start:
                trimmed = _trim(period, end + TRIM_GAP, period.end)
            else:
                trimmed = _trim(period, period.start, start - TRIM_GAP)
            if trimmed is None:
                removed.append(period)
            else:
                modified.append(trimmed)
                resolved.append(trimmed)

    resolved.append(new_period)
    return ConflictResolution(
        resolved_periods=merge_adjacent_periods(resolved),
        new_period=new_period,
        removed_periods=removed,
        modified_periods=modified,
    )


def delete_period(periods: list[TimePeriod], period_id: str) -> list[TimePeriod]:
    return [p for p in periods if p.id != period_id]


def snap_to_interval(ts: datetime, interval_minutes: int = 15) -> datetime:
    """Round to the nearest ``interval_minutes`` boundary within the hour."""
    snapped = int(ts.minute / interval_minutes + 0.5) * interval_minutes
    return ts.replace(minute=0, second=0, microsecond=0) + timedelta(minutes=snapped)


def generate_daily_periods(
    first_day: date,
    days: int,
    start: time,
    end: time,
    is_true_period: bool,
    tzinfo=None,
) -> list[TimePeriod]:
    """One period per day between ``start`` and ``end`` (crossing midnight if end <= start)."""
    if days <= 0:
        raise ConfigurationError("days must be positive")

    tz = tzinfo or start.tzinfo or UTC
    periods = []
    for offset in range(days):
        day = first_day + timedelta(days=offset)
        period_start = datetime.combine(day, start.replace(tzinfo=None), tzinfo=tz)
        period_end = datetime.combine(day, end.replace(tzinfo=None), tzinfo=tz)
        if period_end <= period_start:
            period_end += timedelta(days=1)
        periods.append(
            TimePeriod(
                id=_new_period_id(),
                start=period_start,
                end=period_end,
                is_true_period=is_true_period,
                label=format_period_label(period_start, period_end),
            )
        )
    return periods


def split_by_polarity(periods: list[TimePeriod]) -> tuple[list[TimePeriod], list[TimePeriod]]:
    """(true_periods, false_periods), order preserved."""
    return [p for p in periods if p.is_true_period], [p for p in periods if not p.is_true_period]


def time_range_of(periods: list[TimePeriod]) -> tuple[datetime, datetime]:
    """Earliest start and latest end over all periods."""
    if not periods:
        raise ConfigurationError("No periods defined")
    return min(p.start for p in periods), max(p.end for p in periods)
