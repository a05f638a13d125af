"""History sources and entity selection."""

from bayeslab.engine.collectors.entity_scorer import filter_and_sort_entities, score_entity
from bayeslab.engine.collectors.ha_api import HistorySource, HomeAssistantHistorySource
from bayeslab.engine.collectors.static import StaticHistorySource

__all__ = [
    "HistorySource",
    "HomeAssistantHistorySource",
    "StaticHistorySource",
    "filter_and_sort_entities",
    "score_entity",
]
