"""Rank Home Assistant entities by how likely they are to be useful observations.

Used to order the analysis queue when the caller does not pick entities
explicitly: binary, recently active, well-described entities go first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from bayeslab.models import parse_numeric, parse_timestamp

DOMAIN_WEIGHTS = {
    "binary_sensor": 100,
    "switch": 90,
    "light": 85,
    "input_boolean": 80,
    "sensor": 70,
    "cover": 65,
    "lock": 60,
    "climate": 55,
    "fan": 50,
    "media_player": 45,
    "device_tracker": 40,
    "person": 35,
    "vacuum": 30,
    "water_heater": 25,
    "humidifier": 20,
    "number": 15,
    "input_number": 10,
    "select": 5,
    "input_select": 5,
    "input_text": 2,
    "text": 2,
    "image": -100,
}

STATE_TYPE_WEIGHTS = {"boolean": 50, "numeric": 30, "enumerated": 20, "text": 5}

BOOLEAN_STATES = {
    "on", "off", "true", "false", "open", "closed",
    "locked", "unlocked", "home", "not_home", "detected", "clear",
}
ENUMERATED_STATES = {"idle", "playing", "paused", "heat", "cool", "auto", "off"}

# (max hours since last change, score)
RECENCY_STEPS = [(1, 30), (6, 20), (24, 10), (72, 5)]

BORING_ATTRIBUTES = {"friendly_name", "icon", "entity_id", "unit_of_measurement"}

EXCLUDED_DOMAINS = {
    "automation",
    "script",
    "scene",
    "group",
    "zone",
    "update",
    "button",
    "persistent_notification",
}

UNUSABLE_STATES = {"unavailable", "unknown", ""}

_CLEAN_NAME = re.compile(r"^[a-z0-9_]+$")


@dataclass
class EntityScore:
    entity_id: str
    score: int
    reasons: list[str] = field(default_factory=list)


def _split_entity_id(entity_id: str) -> tuple[str, str]:
    domain, _, name = entity_id.partition(".")
    return domain, name


def state_type_score(entity: dict[str, Any]) -> int:
    state = str(entity.get("state", "")).lower()
    if state in BOOLEAN_STATES:
        return STATE_TYPE_WEIGHTS["boolean"]
    if parse_numeric(state) is not None:
        return STATE_TYPE_WEIGHTS["numeric"]
    domain, _ = _split_entity_id(entity["entity_id"])
    if domain in ("select", "input_select") or state in ENUMERATED_STATES:
        return STATE_TYPE_WEIGHTS["enumerated"]
    return STATE_TYPE_WEIGHTS["text"]


def recency_score(entity: dict[str, Any], now: datetime) -> int:
    last_changed = entity.get("last_changed")
    if not last_changed:
        return 0
    try:
        changed = parse_timestamp(last_changed)
    except ValueError:
        return 0
    hours = (now - changed).total_seconds() / 3600
    for limit, score in RECENCY_STEPS:
        if hours < limit:
            return score
    return 0


def attribute_score(entity: dict[str, Any]) -> int:
    attributes = entity.get("attributes") or {}
    score = 0
    if len(attributes) > 5:
        score += 5
    if len([key for key in attributes if key not in BORING_ATTRIBUTES]) > 2:
        score += 10
    if attributes.get("device_class"):
        score += 5
    return score


def availability_penalty(entity: dict[str, Any]) -> int:
    state = str(entity.get("state", "")).lower()
    if state == "unavailable":
        return -100
    if state == "unknown":
        return -80
    if state == "":
        return -50
    if (entity.get("attributes") or {}).get("restored") is True:
        return -20
    return 0


def naming_score(entity_id: str) -> int:
    _, name = _split_entity_id(entity_id)
    if "_sensor_" in name or "_switch_" in name:
        return 5
    if len(name) > 50:
        return -5
    if _CLEAN_NAME.match(name):
        return 3
    return 0


def score_entity(entity: dict[str, Any], now: datetime | None = None) -> EntityScore:
    """Score one entity state dict (as returned by ``/api/states``)."""
    now = now or datetime.now(UTC)
    entity_id = entity["entity_id"]
    domain, _ = _split_entity_id(entity_id)
    result = EntityScore(entity_id=entity_id, score=0)

    parts = [
        (f"Domain {domain}", DOMAIN_WEIGHTS.get(domain, 0)),
        ("State type", state_type_score(entity)),
        ("Recent activity", recency_score(entity, now)),
        ("Rich attributes", attribute_score(entity)),
        ("Availability issues", availability_penalty(entity)),
        ("Clear naming", naming_score(entity_id)),
    ]
    for label, value in parts:
        result.score += value
        if value > 0:
            result.reasons.append(f"{label}: +{value}")
        elif value < 0 and label == "Availability issues":
            result.reasons.append(f"{label}: {value}")
    return result


def score_entities(entities: list[dict[str, Any]], now: datetime | None = None) -> list[EntityScore]:
    """Scores sorted best first (stable for ties)."""
    now = now or datetime.now(UTC)
    return sorted((score_entity(e, now) for e in entities), key=lambda s: s.score, reverse=True)


def is_relevant(entity: dict[str, Any]) -> bool:
    domain, _ = _split_entity_id(entity["entity_id"])
    return domain not in EXCLUDED_DOMAINS and entity.get("state", "") not in UNUSABLE_STATES


def filter_and_sort_entities(
    entities: list[dict[str, Any]],
    selected: list[str] | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Entity ids to analyze, best first.

    With ``selected`` only those entities are kept (no relevance filter);
    otherwise excluded domains and unavailable/unknown/empty states are dropped.
    """
    if selected:
        wanted = set(selected)
        candidates = [e for e in entities if e["entity_id"] in wanted]
    else:
        candidates = [e for e in entities if is_relevant(e)]
    return [s.entity_id for s in score_entities(candidates, now)]
