"""Supervised pool of single-process analysis workers.

Each ``WorkerHandle`` wraps a one-process executor, so a crashed worker
breaks only its own handle. The ``AnalysisPool`` hands idle handles to
tasks, respawns a handle whose executor broke and retries the task on the
fresh worker, restoring the configured pool size.

Work crosses the process boundary as ``AnalysisRequest`` messages answered
by ``AnalysisResponse`` messages; both kinds are closed enums handled by the
module-level ``handle_request`` (which is what runs inside the worker).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from concurrent.futures import BrokenExecutor, Executor, ProcessPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from bayeslab.engine.analysis.probability import analyze_entity
from bayeslab.engine.analysis.thresholds import ThresholdCache
from bayeslab.engine.config import AnalysisConfig
from bayeslab.errors import BayesLabError, WorkerCrash
from bayeslab.models import EntityProbability, HistoryEntry, OptimalThresholds, TimePeriod

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[], Executor]


class RequestKind(Enum):
    ANALYZE_ENTITY = "analyze_entity"
    PING = "ping"


class ResponseKind(Enum):
    RESULT = "result"
    ERROR = "error"
    PONG = "pong"


@dataclass(frozen=True)
class AnalysisRequest:
    kind: RequestKind
    task_id: str
    entity_id: str | None = None
    history: tuple[HistoryEntry, ...] = ()
    periods: tuple[TimePeriod, ...] = ()
    known_thresholds: dict[str, OptimalThresholds] = field(default_factory=dict)
    config: AnalysisConfig | None = None


@dataclass(frozen=True)
class AnalysisResponse:
    kind: ResponseKind
    task_id: str
    entity_id: str | None = None
    results: tuple[EntityProbability, ...] = ()
    thresholds: dict[str, OptimalThresholds] = field(default_factory=dict)
    error: str | None = None


def _analyze(request: AnalysisRequest) -> AnalysisResponse:
    if request.entity_id is None:
        raise ValueError("analyze request without entity_id")
    cache = ThresholdCache()
    cache.update(request.entity_id, request.known_thresholds)
    results = analyze_entity(
        request.entity_id,
        list(request.history),
        list(request.periods),
        cache=cache,
        config=request.config,
    )
    return AnalysisResponse(
        kind=ResponseKind.RESULT,
        task_id=request.task_id,
        entity_id=request.entity_id,
        results=tuple(results),
        thresholds=cache.entries_for(request.entity_id),
    )


def handle_request(request: AnalysisRequest) -> AnalysisResponse:
    """Worker entry point. Computation errors come back as ERROR responses."""
    if request.kind is RequestKind.PING:
        return AnalysisResponse(kind=ResponseKind.PONG, task_id=request.task_id)
    if request.kind is RequestKind.ANALYZE_ENTITY:
        try:
            return _analyze(request)
        except Exception as e:
            return AnalysisResponse(
                kind=ResponseKind.ERROR,
                task_id=request.task_id,
                entity_id=request.entity_id,
                error=str(e) or type(e).__name__,
            )
    raise ValueError(f"Unhandled request kind: {request.kind!r}")


def default_executor_factory() -> Executor:
    return ProcessPoolExecutor(max_workers=1)


class WorkerHandle:
    """One worker slot: a single-process executor that can be replaced."""

    def __init__(self, index: int, executor_factory: ExecutorFactory):
        self.index = index
        self._executor_factory = executor_factory
        self.executor = executor_factory()
        self.generation = 0
        self.tasks_completed = 0

    async def run(self, request: AnalysisRequest) -> AnalysisResponse:
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(self.executor, handle_request, request)
        self.tasks_completed += 1
        return response

    def respawn(self):
        """Tear down the current executor and start a fresh one."""
        self.executor.shutdown(wait=False, cancel_futures=True)
        self.executor = self._executor_factory()
        self.generation += 1

    def shutdown(self):
        self.executor.shutdown(wait=False, cancel_futures=True)


class PoolClosed(BayesLabError):
    """The pool was shut down before the task could run."""


class AnalysisPool:
    """Fixed-size supervisor over WorkerHandles.

    Args:
        size: number of worker handles (each one process)
        executor_factory: builds the executor behind each handle
        max_task_retries: retries of a task whose worker crashed
        task_timeout: seconds before a task is abandoned (None = wait forever)
    """

    def __init__(
        self,
        size: int,
        executor_factory: ExecutorFactory | None = None,
        max_task_retries: int = 1,
        task_timeout: float | None = None,
    ):
        if size <= 0:
            raise ValueError("pool size must be positive")
        self.size = size
        self.max_task_retries = max_task_retries
        self.task_timeout = task_timeout
        self._handles = [WorkerHandle(i, executor_factory or default_executor_factory) for i in range(size)]
        self._idle: asyncio.Queue[WorkerHandle] = asyncio.Queue()
        for handle in self._handles:
            self._idle.put_nowait(handle)
        self._task_ids = itertools.count(1)
        self._closed = False
        self.crash_count = 0
        logger.debug("Analysis pool created with %d workers", size)

    @property
    def closed(self) -> bool:
        return self._closed

    def status(self) -> dict:
        idle = self._idle.qsize()
        return {
            "total_workers": self.size,
            "idle_workers": idle,
            "busy_workers": self.size - idle,
            "crash_count": self.crash_count,
            "closed": self._closed,
        }

    def next_task_id(self) -> str:
        return f"task-{next(self._task_ids)}"

    async def _run_on(self, handle: WorkerHandle, request: AnalysisRequest) -> AnalysisResponse:
        if self.task_timeout is None:
            return await handle.run(request)
        try:
            return await asyncio.wait_for(handle.run(request), self.task_timeout)
        except TimeoutError:
            # The stuck process cannot be interrupted; replace it so the slot is usable.
            logger.warning(
                "Task %s timed out after %.1fs on worker %d, replacing worker",
                request.task_id,
                self.task_timeout,
                handle.index,
            )
            handle.respawn()
            raise

    async def submit(self, request: AnalysisRequest) -> AnalysisResponse:
        """Run ``request`` on the next idle worker.

        Raises:
            WorkerCrash: the worker crashed on every allowed attempt
            TimeoutError: task_timeout elapsed
            PoolClosed: the pool was shut down
        """
        if self._closed:
            raise PoolClosed("analysis pool is shut down")

        handle = await self._idle.get()
        try:
            if self._closed:
                raise PoolClosed("analysis pool is shut down")
            attempt = 0
            while True:
                try:
                    return await self._run_on(handle, request)
                except BrokenExecutor as e:
                    self.crash_count += 1
                    logger.warning(
                        "Worker %d crashed on %s (%s): %s, respawning",
                        handle.index,
                        request.task_id,
                        request.entity_id,
                        e,
                    )
                    if self._closed:
                        raise PoolClosed("analysis pool is shut down") from e
                    handle.respawn()
                    if attempt >= self.max_task_retries:
                        raise WorkerCrash(
                            f"worker crashed while analyzing {request.entity_id} "
                            f"({attempt + 1} attempts)"
                        ) from e
                    attempt += 1
        finally:
            self._idle.put_nowait(handle)

    async def analyze(
        self,
        entity_id: str,
        history: list[HistoryEntry],
        periods: list[TimePeriod],
        known_thresholds: dict[str, OptimalThresholds] | None = None,
        config: AnalysisConfig | None = None,
    ) -> AnalysisResponse:
        request = AnalysisRequest(
            kind=RequestKind.ANALYZE_ENTITY,
            task_id=self.next_task_id(),
            entity_id=entity_id,
            history=tuple(history),
            periods=tuple(periods),
            known_thresholds=dict(known_thresholds or {}),
            config=config,
        )
        return await self.submit(request)

    async def ping(self) -> list[AnalysisResponse]:
        """PING once per worker slot; warms up the worker processes."""
        requests = [AnalysisRequest(kind=RequestKind.PING, task_id=self.next_task_id()) for _ in self._handles]
        return list(await asyncio.gather(*(self.submit(r) for r in requests)))

    def shutdown(self):
        """Release every worker; queued and later submits raise PoolClosed."""
        if self._closed:
            return
        self._closed = True
        for handle in self._handles:
            handle.shutdown()
        logger.debug("Analysis pool shut down (%d crashes recovered)", self.crash_count)
