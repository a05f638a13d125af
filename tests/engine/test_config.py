"""Tests for config dataclasses and environment loading."""

import pytest

from bayeslab.engine.config import AnalysisConfig, AppConfig, HAConfig, PoolConfig, SimulationConfig


class TestDefaults:
    def test_analysis_defaults(self):
        config = AnalysisConfig()
        assert config.min_chunk_ms == 1000
        assert config.probability_floor == 0.01
        assert config.probability_ceiling == 0.99
        assert config.max_range_tests == 100

    def test_pool_defaults(self):
        config = PoolConfig()
        assert config.fetch_concurrency == 2
        assert config.analysis_workers is None
        assert config.fetch_timeout is None

    def test_simulation_defaults(self):
        config = SimulationConfig()
        assert config.prior == 0.5
        assert config.probability_threshold == 0.5
        assert config.sample_interval_minutes == 5


class TestResolveAnalysisWorkers:
    @pytest.mark.parametrize(
        "hint,expected",
        [(1, 2), (2, 2), (6, 6), (8, 8), (32, 8), (None, 4)],
    )
    def test_clamped_to_bounds(self, hint, expected):
        assert PoolConfig().resolve_analysis_workers(hint) == expected

    def test_explicit_count_still_clamped(self):
        assert PoolConfig(analysis_workers=3).resolve_analysis_workers(16) == 3
        assert PoolConfig(analysis_workers=64).resolve_analysis_workers(16) == 8


class TestFromEnv:
    def test_ha_config(self, monkeypatch):
        monkeypatch.setenv("HA_URL", "http://ha.test:8123/")
        monkeypatch.setenv("HA_TOKEN", "secret")
        monkeypatch.setenv("HA_REQUEST_TIMEOUT", "5")
        config = HAConfig.from_env()
        assert config.url == "http://ha.test:8123"
        assert config.token == "secret"
        assert config.request_timeout == 5.0

    def test_ha_config_defaults(self, monkeypatch):
        monkeypatch.delenv("HA_URL", raising=False)
        monkeypatch.delenv("HA_TOKEN", raising=False)
        monkeypatch.delenv("HA_REQUEST_TIMEOUT", raising=False)
        config = HAConfig.from_env()
        assert config.url == "http://homeassistant.local:8123"
        assert config.token == ""

    def test_pool_config(self, monkeypatch):
        monkeypatch.setenv("BAYESLAB_FETCH_CONCURRENCY", "3")
        monkeypatch.setenv("BAYESLAB_ANALYSIS_WORKERS", "4")
        monkeypatch.setenv("BAYESLAB_FETCH_TIMEOUT", "12.5")
        monkeypatch.setenv("BAYESLAB_ANALYSIS_TIMEOUT", "")
        config = PoolConfig.from_env()
        assert config.fetch_concurrency == 3
        assert config.analysis_workers == 4
        assert config.fetch_timeout == 12.5
        assert config.analysis_timeout is None

    def test_app_config(self, monkeypatch):
        monkeypatch.setenv("HA_TOKEN", "abc")
        config = AppConfig.from_env()
        assert config.ha.token == "abc"
        assert isinstance(config.analysis, AnalysisConfig)
        assert isinstance(config.simulation, SimulationConfig)
