"""AnalysisSession — one user's working set of periods, history and results.

Ties the pieces together: labeled periods, the orchestrator, a raw history
cache plus EntityHistoryBuffer (filled from ``on_fetched``), ranked results,
and simulation of a chosen observation set.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from bayeslab.engine.analysis.probability import generate_bayesian_config, rank_probabilities, split_periods
from bayeslab.engine.analysis.thresholds import ThresholdCache
from bayeslab.engine.collectors.ha_api import HistorySource
from bayeslab.engine.config import AppConfig
from bayeslab.engine.simulation import BufferStateResolver, RawHistoryResolver, StateResolver, simulate
from bayeslab.hub.orchestrator import AnalysisCallbacks, AnalysisOrchestrator, relevant_entity_ids
from bayeslab.hub.worker_pool import AnalysisPool
from bayeslab.models import (
    AnalysisProgress,
    EntityProbability,
    EntityStatusUpdate,
    HistoryEntry,
    Observation,
    SimulationSummary,
    TimePeriod,
)
from bayeslab.shared.entity_buffer import EntityHistoryBuffer
from bayeslab.shared.periods import (
    ConflictResolution,
    ConflictStrategy,
    delete_period,
    merge_adjacent_periods,
    resolve_conflicts,
    time_range_of,
)

logger = logging.getLogger(__name__)


class AnalysisSession:
    def __init__(
        self,
        history_source: HistorySource,
        config: AppConfig | None = None,
        pool_factory=None,
        callbacks: AnalysisCallbacks | None = None,
    ):
        self.history_source = history_source
        self.config = config or AppConfig()
        self._pool_factory = pool_factory
        self._external_callbacks = callbacks or AnalysisCallbacks()

        self.periods: list[TimePeriod] = []
        self.buffer = EntityHistoryBuffer()
        self.history_cache: dict[str, list[HistoryEntry]] = {}
        self.results: list[EntityProbability] = []
        self.statuses: dict[str, EntityStatusUpdate] = {}
        self.progress = AnalysisProgress(current=0, total=0)
        self.threshold_cache = ThresholdCache(self.config.analysis.threshold_cache_size)
        self._orchestrator: AnalysisOrchestrator | None = None

    # ------------------------------------------------------------------
    # Periods
    # ------------------------------------------------------------------

    def add_period(
        self,
        start: datetime,
        end: datetime,
        is_true_period: bool,
        strategy: ConflictStrategy = "replace",
    ) -> ConflictResolution:
        resolution = resolve_conflicts(start, end, is_true_period, self.periods, strategy)
        self.periods = resolution.resolved_periods
        return resolution

    def set_periods(self, periods: list[TimePeriod]):
        self.periods = merge_adjacent_periods(periods)

    def remove_period(self, period_id: str):
        self.periods = delete_period(self.periods, period_id)

    @property
    def can_analyze(self) -> bool:
        return any(p.is_true_period for p in self.periods) and any(not p.is_true_period for p in self.periods)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _on_status(self, update: EntityStatusUpdate):
        self.statuses[update.entity_id] = update
        if self._external_callbacks.on_status:
            self._external_callbacks.on_status(update)

    def _on_result(self, entity_id: str, results: list[EntityProbability]):
        self.results = rank_probabilities(self.results + results)
        if self._external_callbacks.on_result:
            self._external_callbacks.on_result(entity_id, results)

    def _on_fetched(self, entity_id: str, history: list[HistoryEntry]):
        self.history_cache[entity_id] = history
        try:
            self.buffer.bulk_load(entity_id, history)
        except ValueError as e:
            # Raw history cache still serves simulation for this entity
            logger.warning("Could not buffer %s: %s", entity_id, e)
            self.buffer.clear_entity(entity_id)
        if self._external_callbacks.on_fetched:
            self._external_callbacks.on_fetched(entity_id, history)

    def _on_progress(self, progress: AnalysisProgress):
        self.progress = progress
        if self._external_callbacks.on_progress:
            self._external_callbacks.on_progress(progress)

    def _new_orchestrator(self) -> AnalysisOrchestrator:
        pool: AnalysisPool | None = self._pool_factory() if self._pool_factory else None
        return AnalysisOrchestrator(
            self.history_source,
            pool_config=self.config.pool,
            analysis_config=self.config.analysis,
            pool=pool,
            cache=self.threshold_cache,
            callbacks=AnalysisCallbacks(
                on_status=self._on_status,
                on_result=self._on_result,
                on_fetched=self._on_fetched,
                on_progress=self._on_progress,
            ),
        )

    async def analyze(
        self,
        entity_ids: list[str] | None = None,
        states: list[dict[str, Any]] | None = None,
    ) -> list[EntityProbability]:
        """Analyze ``entity_ids`` (or the relevant entities among ``states``).

        Raises:
            ConfigurationError: the period set lacks a TRUE or a FALSE period
        """
        split_periods(self.periods)
        if entity_ids is None:
            entity_ids = relevant_entity_ids(states or [])

        if self._orchestrator is None or self._orchestrator.cancelled:
            self._orchestrator = self._new_orchestrator()

        self.results = []
        self.statuses = {}
        await self._orchestrator.analyze_entities(entity_ids, self.periods)
        return self.results

    def cancel(self):
        if self._orchestrator is not None:
            self._orchestrator.cancel()

    def close(self):
        if self._orchestrator is not None:
            self._orchestrator.shutdown()
            self._orchestrator = None

    # ------------------------------------------------------------------
    # Simulation and config
    # ------------------------------------------------------------------

    def resolver_for(self, entity_ids: list[str]) -> StateResolver:
        """Buffer-backed resolver when every entity is buffered, raw history otherwise."""
        if entity_ids and all(self.buffer.has_entity(e) for e in entity_ids):
            return BufferStateResolver(self.buffer.export_many(entity_ids))
        return RawHistoryResolver({e: self.history_cache.get(e, []) for e in entity_ids})

    def simulate(
        self,
        observations: list[Observation] | None = None,
        prior: float | None = None,
        threshold: float | None = None,
        time_range: tuple[datetime, datetime] | None = None,
        sample_interval_minutes: float | None = None,
    ) -> SimulationSummary:
        """Replay ``observations`` (default: the top ranked results)."""
        sim = self.config.simulation
        if observations is None:
            observations = [r.to_observation() for r in self.results[: sim.max_observations]]
        entity_ids = list(dict.fromkeys(o.entity_id for o in observations))
        return simulate(
            prior=sim.prior if prior is None else prior,
            threshold=sim.probability_threshold if threshold is None else threshold,
            observations=observations,
            history_source=self.resolver_for(entity_ids),
            time_range=time_range or time_range_of(self.periods),
            sample_interval_minutes=sample_interval_minutes or sim.sample_interval_minutes,
        )

    def generate_config(self, name: str, max_observations: int | None = None) -> dict[str, Any]:
        sim = self.config.simulation
        return generate_bayesian_config(
            self.results,
            name,
            max_observations=max_observations or sim.max_observations,
            prior=sim.prior,
            probability_threshold=sim.probability_threshold,
        )
