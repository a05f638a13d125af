"""Tests for entity relevance scoring."""

from datetime import UTC, datetime, timedelta

from bayeslab.engine.collectors.entity_scorer import (
    attribute_score,
    availability_penalty,
    filter_and_sort_entities,
    naming_score,
    recency_score,
    score_entity,
    state_type_score,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def state(entity_id, value="on", hours_ago=None, **attributes):
    entity = {"entity_id": entity_id, "state": value, "attributes": attributes}
    if hours_ago is not None:
        entity["last_changed"] = (NOW - timedelta(hours=hours_ago)).isoformat()
    return entity


class TestComponents:
    def test_state_types(self):
        assert state_type_score(state("binary_sensor.door", "open")) == 50
        assert state_type_score(state("sensor.temp", "21.5")) == 30
        assert state_type_score(state("media_player.tv", "playing")) == 20
        assert state_type_score(state("input_select.mode", "away_mode")) == 20
        assert state_type_score(state("sensor.weather", "partly cloudy")) == 5

    def test_recency_steps(self):
        assert recency_score(state("light.a", hours_ago=0.5), NOW) == 30
        assert recency_score(state("light.a", hours_ago=3), NOW) == 20
        assert recency_score(state("light.a", hours_ago=12), NOW) == 10
        assert recency_score(state("light.a", hours_ago=48), NOW) == 5
        assert recency_score(state("light.a", hours_ago=100), NOW) == 0
        assert recency_score(state("light.a"), NOW) == 0

    def test_bad_timestamp_scores_zero(self):
        entity = state("light.a")
        entity["last_changed"] = "yesterday"
        assert recency_score(entity, NOW) == 0

    def test_attributes(self):
        rich = {f"attr_{i}": i for i in range(6)}
        assert attribute_score(state("sensor.a", **rich, device_class="temperature")) == 20
        assert attribute_score(state("sensor.a", friendly_name="A", icon="mdi:x")) == 0

    def test_availability(self):
        assert availability_penalty(state("sensor.a", "unavailable")) == -100
        assert availability_penalty(state("sensor.a", "unknown")) == -80
        assert availability_penalty(state("sensor.a", "")) == -50
        assert availability_penalty(state("sensor.a", "1", restored=True)) == -20
        assert availability_penalty(state("sensor.a", "1")) == 0

    def test_naming(self):
        assert naming_score("sensor.kitchen_sensor_temp") == 5
        assert naming_score("sensor.kitchen_temp") == 3
        assert naming_score("sensor.Kitchen-Temp") == 0
        assert naming_score("sensor." + "x" * 51) == -5


class TestScoreEntity:
    def test_total_and_reasons(self):
        score = score_entity(state("binary_sensor.hall_motion", "on", hours_ago=0.1), NOW)
        # domain 100 + boolean 50 + recent 30 + clean name 3
        assert score.score == 183
        assert "Domain binary_sensor: +100" in score.reasons

    def test_penalty_listed(self):
        score = score_entity(state("sensor.x", "unavailable"), NOW)
        assert any(r.startswith("Availability issues: -100") for r in score.reasons)


class TestFilterAndSort:
    def test_binary_before_numeric_and_excluded_dropped(self):
        entities = [
            state("sensor.temp", "21", hours_ago=0.1),
            state("automation.lights", "on"),
            state("binary_sensor.motion", "off", hours_ago=0.1),
            state("light.broken", "unavailable"),
        ]
        assert filter_and_sort_entities(entities, now=NOW) == ["binary_sensor.motion", "sensor.temp"]

    def test_selection_bypasses_relevance_filter(self):
        entities = [state("automation.lights", "on"), state("sensor.temp", "21")]
        assert filter_and_sort_entities(entities, selected=["automation.lights"], now=NOW) == ["automation.lights"]
