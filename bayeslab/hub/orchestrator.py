"""Analysis orchestrator — fetch pool feeding the process-based analysis pool.

Per entity the pipeline is::

    queued -> fetching -> fetched -> analyzing -> completed
                 |                       |
                 +--------> error <------+

A small set of asyncio fetch workers drains the entity queue, calling the
history source once per entity. Each fetched entity is handed straight to
the AnalysisPool, so fetching and analysis overlap. Failures are isolated
per entity and surface as an ``error`` status with a message.

All mutable state (status map, results, queue) lives on the orchestrator
and is touched only from coroutines on its event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from bayeslab.engine.analysis.probability import split_periods
from bayeslab.engine.analysis.thresholds import ThresholdCache
from bayeslab.engine.collectors.entity_scorer import filter_and_sort_entities
from bayeslab.engine.collectors.ha_api import HistorySource
from bayeslab.engine.config import AnalysisConfig, PoolConfig
from bayeslab.engine.hardware import cpu_concurrency_hint
from bayeslab.errors import AnalysisError, EntityError, FetchError
from bayeslab.hub.worker_pool import AnalysisPool, ResponseKind
from bayeslab.models import (
    STATUS_TRANSITIONS,
    AnalysisProgress,
    EntityProbability,
    EntityStatus,
    EntityStatusUpdate,
    HistoryEntry,
    TimePeriod,
)
from bayeslab.shared.periods import time_range_of

logger = logging.getLogger(__name__)


@dataclass
class AnalysisCallbacks:
    """Optional incremental notifications, all invoked on the event loop."""

    on_status: Callable[[EntityStatusUpdate], None] | None = None
    on_result: Callable[[str, list[EntityProbability]], None] | None = None
    on_fetched: Callable[[str, list[HistoryEntry]], None] | None = None
    on_progress: Callable[[AnalysisProgress], None] | None = None


def relevant_entity_ids(states: list[dict[str, Any]], selected: list[str] | None = None) -> list[str]:
    """Entity ids worth analyzing, best candidates first."""
    return filter_and_sort_entities(states, selected)


class AnalysisOrchestrator:
    """Runs analysis batches; one orchestrator per session until cancelled.

    Args:
        history_source: where entity history comes from
        pool_config: fetch concurrency, worker bounds, retries, timeouts
        analysis_config: segmentation and threshold settings sent to workers
        pool: analysis pool to use (default: one sized from the CPU count)
        cache: threshold cache shared across batches
        callbacks: incremental notifications
    """

    def __init__(
        self,
        history_source: HistorySource,
        pool_config: PoolConfig | None = None,
        analysis_config: AnalysisConfig | None = None,
        pool: AnalysisPool | None = None,
        cache: ThresholdCache | None = None,
        callbacks: AnalysisCallbacks | None = None,
    ):
        self.history_source = history_source
        self.pool_config = pool_config or PoolConfig()
        self.analysis_config = analysis_config or AnalysisConfig()
        self.callbacks = callbacks or AnalysisCallbacks()
        self.cache = cache or ThresholdCache(self.analysis_config.threshold_cache_size)
        if pool is None:
            size = self.pool_config.resolve_analysis_workers(cpu_concurrency_hint())
            pool = AnalysisPool(
                size,
                max_task_retries=self.pool_config.max_task_retries,
                task_timeout=self.pool_config.analysis_timeout,
            )
        self.pool = pool

        self.statuses: dict[str, EntityStatusUpdate] = {}
        self.errors: dict[str, EntityError] = {}
        self.results: list[EntityProbability] = []
        self.progress = AnalysisProgress(current=0, total=0)
        self._queue: deque[str] = deque()
        self._analysis_tasks: set[asyncio.Task] = set()
        self._cancelled = False
        self._running = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify(self, name: str, *args):
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("%s callback failed", name)

    def _set_status(self, entity_id: str, status: EntityStatus, message: str | None = None):
        current = self.statuses.get(entity_id)
        if current is not None:
            allowed = STATUS_TRANSITIONS[current.status]
            if status not in allowed and not (status is EntityStatus.ERROR and not current.status.is_terminal):
                raise RuntimeError(f"{entity_id}: illegal status change {current.status.value} -> {status.value}")
        update = EntityStatusUpdate(entity_id=entity_id, status=status, message=message)
        self.statuses[entity_id] = update
        self._notify("on_status", update)

    def _fail(self, entity_id: str, error: EntityError, prefix: str):
        logger.warning("%s %s: %s", prefix, entity_id, error.message)
        self.errors[entity_id] = error
        self._set_status(entity_id, EntityStatus.ERROR, f"{prefix}: {error.message}")

    def _advance_progress(self, entity_id: str):
        self.progress = AnalysisProgress(
            current=self.progress.current + 1, total=self.progress.total, current_entity=entity_id
        )
        self._notify("on_progress", self.progress)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _fetch(self, entity_id: str, start: datetime, end: datetime) -> list[HistoryEntry] | None:
        self._set_status(entity_id, EntityStatus.FETCHING, "Fetching history...")
        timeout = self.pool_config.fetch_timeout
        try:
            request = self.history_source.fetch_history([entity_id], start, end)
            if timeout is not None:
                fetched = await asyncio.wait_for(request, timeout)
            else:
                fetched = await request
            history = list(fetched.get(entity_id, []))
        except FetchError as e:
            self._fail(entity_id, FetchError(entity_id, e.message), "Fetch failed")
            return None
        except TimeoutError:
            self._fail(entity_id, FetchError(entity_id, f"timed out after {timeout}s"), "Fetch failed")
            return None
        except Exception as e:
            self._fail(entity_id, FetchError(entity_id, str(e) or type(e).__name__), "Fetch failed")
            return None

        if self._cancelled:
            return None
        self._set_status(entity_id, EntityStatus.FETCHED, f"History fetched ({len(history)} changes)")
        self._notify("on_fetched", entity_id, history)
        return history

    async def _analyze(self, entity_id: str, history: list[HistoryEntry], periods: list[TimePeriod]):
        if self._cancelled:
            return
        self._set_status(entity_id, EntityStatus.ANALYZING, "Analyzing states...")
        try:
            response = await self.pool.analyze(
                entity_id,
                history,
                periods,
                known_thresholds=self.cache.entries_for(entity_id),
                config=self.analysis_config,
            )
        except asyncio.CancelledError:
            if self._cancelled:
                return
            raise
        except TimeoutError:
            if not self._cancelled:
                self._fail(entity_id, AnalysisError(entity_id, "analysis timed out"), "Analysis failed")
                self._advance_progress(entity_id)
            return
        except Exception as e:
            if not self._cancelled:
                self._fail(entity_id, AnalysisError(entity_id, str(e) or type(e).__name__), "Analysis failed")
                self._advance_progress(entity_id)
            return

        if self._cancelled:
            logger.debug("Discarding late result for %s", entity_id)
            return

        if response.kind is ResponseKind.RESULT:
            self.cache.update(entity_id, response.thresholds)
            results = list(response.results)
            self.results.extend(results)
            self._set_status(entity_id, EntityStatus.COMPLETED, f"Analysis complete ({len(results)} states)")
            self._notify("on_result", entity_id, results)
        elif response.kind is ResponseKind.ERROR:
            self._fail(entity_id, AnalysisError(entity_id, response.error or "unknown error"), "Analysis failed")
        else:
            error = AnalysisError(entity_id, f"unexpected {response.kind.value} response")
            self._fail(entity_id, error, "Analysis failed")
        self._advance_progress(entity_id)

    async def _fetch_worker(self, start: datetime, end: datetime, periods: list[TimePeriod]):
        while self._queue and not self._cancelled:
            entity_id = self._queue.popleft()
            history = await self._fetch(entity_id, start, end)
            if history is None:
                if not self._cancelled:
                    self._advance_progress(entity_id)
                continue
            task = asyncio.create_task(self._analyze(entity_id, history, periods))
            self._analysis_tasks.add(task)
            task.add_done_callback(self._analysis_tasks.discard)

    async def analyze_entities(self, entity_ids: list[str], periods: list[TimePeriod]) -> list[EntityProbability]:
        """Fetch and analyze every entity; returns results in completion order.

        Raises:
            ConfigurationError: no TRUE or no FALSE period (before any work starts)
            RuntimeError: the orchestrator was cancelled or is already running
        """
        split_periods(periods)
        if self._cancelled:
            raise RuntimeError("orchestrator has been cancelled")
        if self._running:
            raise RuntimeError("an analysis batch is already running")

        entity_ids = list(dict.fromkeys(entity_ids))
        start, end = time_range_of(periods)

        self._running = True
        self.statuses = {}
        self.errors = {}
        self.results = []
        self._queue = deque(entity_ids)
        for entity_id in entity_ids:
            self._set_status(entity_id, EntityStatus.QUEUED, "Waiting to fetch")
        self.progress = AnalysisProgress(current=0, total=len(entity_ids))
        self._notify("on_progress", self.progress)

        logger.info(
            "Analyzing %d entities over %d periods (%d fetch workers, %d analysis workers)",
            len(entity_ids),
            len(periods),
            self.pool_config.fetch_concurrency,
            self.pool.size,
        )
        try:
            workers = [
                asyncio.create_task(self._fetch_worker(start, end, list(periods)))
                for _ in range(min(self.pool_config.fetch_concurrency, len(entity_ids)))
            ]
            await asyncio.gather(*workers)
            while self._analysis_tasks:
                await asyncio.gather(*list(self._analysis_tasks), return_exceptions=True)
        finally:
            self._running = False

        failed = sum(1 for s in self.statuses.values() if s.status is EntityStatus.ERROR)
        logger.info(
            "Analysis %s: %d results, %d entities failed",
            "cancelled" if self._cancelled else "finished",
            len(self.results),
            failed,
        )
        return list(self.results)

    async def analyze_relevant(
        self, states: list[dict[str, Any]], periods: list[TimePeriod], selected: list[str] | None = None
    ) -> list[EntityProbability]:
        """analyze_entities over ``relevant_entity_ids(states, selected)``."""
        return await self.analyze_entities(relevant_entity_ids(states, selected), periods)

    def cancel(self):
        """Stop scheduling work and release the analysis workers.

        Entities not yet started stay ``queued``; results that arrive after
        this call are discarded.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._queue.clear()
        self.pool.shutdown()
        logger.info("Analysis cancelled")

    def shutdown(self):
        self.pool.shutdown()
