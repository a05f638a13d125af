"""Configuration dataclasses for the bayeslab engine.

Type-safe, testable config objects; ``from_env`` constructors for CLI use.
"""

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass
class HAConfig:
    """Home Assistant connection settings."""
    url: str = "http://homeassistant.local:8123"
    token: str = ""
    request_timeout: float = 30.0

    @classmethod
    def from_env(cls):
        return cls(
            url=os.environ.get("HA_URL", cls.url).rstrip("/"),
            token=os.environ.get("HA_TOKEN", ""),
            request_timeout=_env_float("HA_REQUEST_TIMEOUT", cls.request_timeout),
        )


@dataclass
class AnalysisConfig:
    """Segmentation, threshold search and probability settings."""
    min_chunk_ms: int = 1000  # shorter segments are treated as bounce
    probability_floor: float = 0.01
    probability_ceiling: float = 0.99
    grid_steps: int = 20  # evenly spaced candidates = grid_steps + 1
    max_range_tests: int = 100
    threshold_cache_size: int = 512


@dataclass
class PoolConfig:
    """Fetch / analysis pool sizing."""
    fetch_concurrency: int = 2
    min_analysis_workers: int = 2
    max_analysis_workers: int = 8
    analysis_workers: int | None = None  # None = derive from CPU count
    max_task_retries: int = 1
    fetch_timeout: float | None = None  # seconds, None = no timeout
    analysis_timeout: float | None = None

    def resolve_analysis_workers(self, cpu_hint: int | None) -> int:
        """Clamp the requested (or hinted) worker count into [min, max]."""
        requested = self.analysis_workers or cpu_hint or 4
        return max(self.min_analysis_workers, min(requested, self.max_analysis_workers))

    @classmethod
    def from_env(cls):
        return cls(
            fetch_concurrency=_env_int("BAYESLAB_FETCH_CONCURRENCY", cls.fetch_concurrency),
            analysis_workers=_env_int("BAYESLAB_ANALYSIS_WORKERS", None),
            fetch_timeout=_env_float("BAYESLAB_FETCH_TIMEOUT", None),
            analysis_timeout=_env_float("BAYESLAB_ANALYSIS_TIMEOUT", None),
        )


@dataclass
class SimulationConfig:
    """Composite sensor replay defaults."""
    prior: float = 0.5
    probability_threshold: float = 0.5
    sample_interval_minutes: float = 5
    max_observations: int = 10


@dataclass
class AppConfig:
    """Top-level config composing all sub-configs."""
    ha: HAConfig = field(default_factory=HAConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)

    @classmethod
    def from_env(cls):
        """Create config from environment variables."""
        return cls(
            ha=HAConfig.from_env(),
            analysis=AnalysisConfig(),
            pool=PoolConfig.from_env(),
            simulation=SimulationConfig(),
        )
