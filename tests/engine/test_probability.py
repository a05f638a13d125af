"""Tests for probability estimation and bayesian config generation."""

from datetime import UTC, datetime

import pytest

from bayeslab.engine.analysis.probability import (
    analyze_entity,
    calculate_entity_probabilities,
    generate_bayesian_config,
    rank_probabilities,
    split_periods,
)
from bayeslab.engine.analysis.thresholds import ThresholdCache
from bayeslab.errors import AnalysisError, ConfigurationError
from bayeslab.models import EntityProbability, HistoryEntry, TimePeriod


def record(entity_id, state, pgt, pgf, **kwargs):
    defaults = dict(true_occurrences=1, false_occurrences=1, total_true_periods=3, total_false_periods=3)
    defaults.update(kwargs)
    return EntityProbability(
        entity_id=entity_id,
        state=state,
        prob_given_true=pgt,
        prob_given_false=pgf,
        discrimination_power=abs(pgt - pgf),
        **defaults,
    )


class TestPeriodValidation:
    def test_requires_true_and_false_periods(self, periods, motion_history):
        true_only = [p for p in periods if p.is_true_period]
        false_only = [p for p in periods if not p.is_true_period]
        with pytest.raises(ConfigurationError):
            analyze_entity("binary_sensor.motion", motion_history, true_only)
        with pytest.raises(ConfigurationError):
            analyze_entity("binary_sensor.motion", motion_history, false_only)
        with pytest.raises(ConfigurationError):
            split_periods([])

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            split_periods([])


class TestDiscreteEntity:
    def test_motion_on_discriminates(self, periods, motion_history):
        results = analyze_entity("binary_sensor.motion", motion_history, periods)
        by_state = {r.state: r for r in results}
        assert set(by_state) == {"on", "off"}

        on = by_state["on"]
        assert on.prob_given_true == pytest.approx(0.99)
        assert on.prob_given_false == pytest.approx(0.01)
        assert on.discrimination_power == pytest.approx(0.98)
        assert on.true_occurrences == 3
        assert on.false_occurrences == 0
        assert on.total_true_periods == 3
        assert on.total_false_periods == 3
        assert not on.is_numeric

        off = by_state["off"]
        assert off.prob_given_true == pytest.approx(0.01)
        assert off.prob_given_false == pytest.approx(0.99)

    def test_state_carried_into_later_period(self):
        day = datetime(2024, 1, 1, tzinfo=UTC)
        periods = [
            TimePeriod(id="morning", start=day.replace(hour=9), end=day.replace(hour=13), is_true_period=True),
            TimePeriod(id="afternoon", start=day.replace(hour=13), end=day.replace(hour=17), is_true_period=False),
        ]
        # Motion turns off at 12:00 and is still off at the 15:00 midpoint
        history = [
            HistoryEntry(state="on", changed_at=day.replace(hour=10)),
            HistoryEntry(state="off", changed_at=day.replace(hour=12)),
        ]
        by_state = {r.state: r for r in analyze_entity("binary_sensor.motion", history, periods)}

        assert set(by_state) == {"on", "off"}
        assert (by_state["on"].true_occurrences, by_state["on"].false_occurrences) == (1, 0)
        assert (by_state["off"].true_occurrences, by_state["off"].false_occurrences) == (0, 1)
        assert by_state["on"].prob_given_true == pytest.approx(0.99)
        assert by_state["off"].prob_given_false == pytest.approx(0.99)

    def test_ties_keep_first_seen_order(self, periods, motion_history):
        results = analyze_entity("binary_sensor.motion", motion_history, periods)
        assert [r.state for r in results] == ["on", "off"]

    def test_partial_occurrence(self, periods):
        # "home" in two of three TRUE periods and one of three FALSE periods
        states = ["home", "away", "home", "home", "away", "away"]
        history = [HistoryEntry(state=s, changed_at=p.start) for s, p in zip(states, periods)]
        by_state = {r.state: r for r in analyze_entity("person.alex", history, periods)}
        assert by_state["home"].prob_given_true == pytest.approx(2 / 3)
        assert by_state["home"].prob_given_false == pytest.approx(1 / 3)

    def test_probabilities_always_clamped(self, periods, motion_history, temperature_history):
        for history in (motion_history, temperature_history):
            for r in analyze_entity("x.y", history, periods):
                assert 0.01 <= r.prob_given_true <= 0.99
                assert 0.01 <= r.prob_given_false <= 0.99
                assert r.discrimination_power == pytest.approx(abs(r.prob_given_true - r.prob_given_false))


class TestNumericEntity:
    def test_single_record_with_threshold(self, periods, temperature_history):
        results = analyze_entity("sensor.desk_temperature", temperature_history, periods)
        assert len(results) == 1
        result = results[0]
        assert result.is_numeric
        assert result.optimal_thresholds.above is not None
        assert 25 < result.optimal_thresholds.above < 80
        assert result.state == result.optimal_thresholds.describe()
        assert result.state.startswith("> ")
        assert result.prob_given_true == pytest.approx(0.99)
        assert result.prob_given_false == pytest.approx(0.01)
        assert result.true_occurrences == result.total_true_periods == 3
        assert result.false_occurrences == result.total_false_periods == 3

    def test_observation_descriptor(self, periods, temperature_history):
        result = analyze_entity("sensor.desk_temperature", temperature_history, periods)[0]
        observation = result.to_observation()
        assert observation.kind == "numeric"
        assert observation.above == result.optimal_thresholds.above
        assert observation.is_active("81")
        assert not observation.is_active("21")

    def test_threshold_cache_filled(self, periods, temperature_history):
        cache = ThresholdCache()
        analyze_entity("sensor.desk_temperature", temperature_history, periods, cache=cache)
        analyze_entity("sensor.desk_temperature", temperature_history, periods, cache=cache)
        assert len(cache.entries_for("sensor.desk_temperature")) == 1
        assert cache.hits == 1


class TestInputHandling:
    def test_empty_history(self, periods):
        assert analyze_entity("sensor.empty", [], periods) == []

    def test_accepts_raw_rows(self, periods):
        rows = [
            {"state": "on" if p.is_true_period else "off", "last_changed": p.start.isoformat()} for p in periods
        ]
        results = analyze_entity("binary_sensor.door", rows, periods)
        assert results[0].state == "on"

    def test_malformed_row_raises_analysis_error(self, periods):
        with pytest.raises(AnalysisError) as exc_info:
            analyze_entity("sensor.bad", [{"state": "on", "last_changed": "not-a-date"}], periods)
        assert exc_info.value.entity_id == "sensor.bad"

    def test_row_without_timestamp(self, periods):
        with pytest.raises(AnalysisError):
            analyze_entity("sensor.bad", [{"state": "on"}], periods)


class TestRanking:
    def test_sorted_descending_and_stable(self):
        records = [
            record("a", "on", 0.5, 0.4),
            record("b", "on", 0.9, 0.1),
            record("c", "on", 0.6, 0.5),
            record("d", "on", 0.2, 0.1),
        ]
        ranked = rank_probabilities(records)
        assert ranked[0].entity_id == "b"
        powers = [r.discrimination_power for r in ranked]
        assert powers == sorted(powers, reverse=True)

    def test_stable_for_equal_power(self):
        records = [record("a", "x", 0.8, 0.2), record("b", "y", 0.8, 0.2), record("c", "z", 0.8, 0.2)]
        ranked = rank_probabilities(records)
        assert [r.entity_id for r in ranked] == ["a", "b", "c"]

    def test_batch_ranks_across_entities(self, periods, motion_history, temperature_history):
        noise = [HistoryEntry(state="idle", changed_at=p.start) for p in periods]
        results = calculate_entity_probabilities(
            {
                "media_player.tv": noise,
                "binary_sensor.motion": motion_history,
                "sensor.desk_temperature": temperature_history,
            },
            periods,
        )
        assert results[-1].entity_id == "media_player.tv"
        assert results[0].discrimination_power == pytest.approx(0.98)


class TestBayesianConfig:
    def test_config_shape(self, periods, motion_history, temperature_history):
        results = calculate_entity_probabilities(
            {"binary_sensor.motion": motion_history, "sensor.desk_temperature": temperature_history}, periods
        )
        config = generate_bayesian_config(results, "Office Occupied", max_observations=10)
        assert config["platform"] == "bayesian"
        assert config["name"] == "Office Occupied"
        assert config["unique_id"] == "bayesian_office_occupied"
        assert config["prior"] == 0.5
        assert config["probability_threshold"] == 0.5

        platforms = {o["entity_id"]: o for o in config["observations"] if o.get("to_state") != "off"}
        assert platforms["sensor.desk_temperature"]["platform"] == "numeric_state"
        assert "above" in platforms["sensor.desk_temperature"]
        assert "below" not in platforms["sensor.desk_temperature"]
        assert platforms["binary_sensor.motion"]["platform"] == "state"
        assert platforms["binary_sensor.motion"]["to_state"] == "on"

    def test_max_observations(self):
        records = [record(f"sensor.s{i}", "on", 0.9, 0.1) for i in range(5)]
        config = generate_bayesian_config(records, "Test", max_observations=3)
        assert [o["entity_id"] for o in config["observations"]] == ["sensor.s0", "sensor.s1", "sensor.s2"]
