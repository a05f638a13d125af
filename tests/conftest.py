"""Shared fixtures: a six-hour labeled day with motion and temperature history."""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest

from bayeslab.hub.worker_pool import AnalysisPool
from bayeslab.models import HistoryEntry, TimePeriod

BASE_TIME = datetime(2024, 3, 4, 8, 0, tzinfo=UTC)

# Alternating hourly periods starting with TRUE: 08-09 T, 09-10 F, 10-11 T, ...
TRUE_TEMPERATURES = ["80", "85", "82"]
FALSE_TEMPERATURES = ["20", "25", "22"]


def _build_periods():
    return [
        TimePeriod(
            id=f"p{i}",
            start=BASE_TIME + timedelta(hours=i),
            end=BASE_TIME + timedelta(hours=i + 1),
            is_true_period=(i % 2 == 0),
        )
        for i in range(6)
    ]


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def periods():
    return _build_periods()


@pytest.fixture
def motion_history():
    """``on`` for each TRUE hour, ``off`` for each FALSE hour."""
    return [
        HistoryEntry(state="on" if p.is_true_period else "off", changed_at=p.start, entity_id="binary_sensor.motion")
        for p in _build_periods()
    ]


@pytest.fixture
def temperature_history():
    true_values = iter(TRUE_TEMPERATURES)
    false_values = iter(FALSE_TEMPERATURES)
    return [
        HistoryEntry(
            state=next(true_values) if p.is_true_period else next(false_values),
            changed_at=p.start,
            entity_id="sensor.desk_temperature",
        )
        for p in _build_periods()
    ]


@pytest.fixture
def thread_executor_factory():
    return lambda: ThreadPoolExecutor(max_workers=1)


@pytest.fixture
def thread_pool(thread_executor_factory):
    """AnalysisPool running workers on threads instead of processes."""
    pool = AnalysisPool(2, executor_factory=thread_executor_factory)
    yield pool
    pool.shutdown()
