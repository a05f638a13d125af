"""History sources: the HistorySource protocol and the Home Assistant REST client."""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime
from typing import Any, Protocol

import aiohttp

from bayeslab.engine.config import HAConfig
from bayeslab.errors import FetchError
from bayeslab.models import HistoryEntry

logger = logging.getLogger(__name__)


class HistorySource(Protocol):
    """Anything that can return state history for a set of entities."""

    async def fetch_history(
        self, entity_ids: list[str], start: datetime, end: datetime
    ) -> dict[str, list[HistoryEntry]]: ...


def retry_on_network_error(max_attempts: int = 3, backoff_factor: float = 1.5):
    """Retry decorator for async network calls.

    Retries on aiohttp.ClientError and TimeoutError only.
    Uses exponential backoff: delay = backoff_factor ** (attempt - 1) seconds.

    Args:
        max_attempts: Maximum number of attempts (default 3).
        backoff_factor: Multiplier for backoff delay (default 1.5).
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except (aiohttp.ClientError, TimeoutError) as e:
                    last_exception = e
                    if attempt < max_attempts:
                        delay = backoff_factor ** (attempt - 1)
                        logger.warning(
                            "%s attempt %d/%d failed: %s, retrying in %.1fs",
                            func.__name__,
                            attempt,
                            max_attempts,
                            e,
                            delay,
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.warning(
                            "%s failed after %d attempts: %s",
                            func.__name__,
                            max_attempts,
                            e,
                        )
            raise last_exception

        return wrapper

    return decorator


def parse_history_response(entity_ids: list[str], payload: Any) -> dict[str, list[HistoryEntry]]:
    """Group a ``/api/history/period`` response by entity.

    The response is a list of per-entity lists. With minimal responses only the
    first row of each list carries ``entity_id``, so rows inherit it.
    """
    if not isinstance(payload, list):
        raise FetchError(",".join(entity_ids), f"unexpected history payload: {type(payload).__name__}")

    grouped: dict[str, list[HistoryEntry]] = {entity_id: [] for entity_id in entity_ids}
    for rows in payload:
        if not rows:
            continue
        entity_id = rows[0].get("entity_id")
        if entity_id is None:
            continue
        entries = grouped.setdefault(entity_id, [])
        for row in rows:
            try:
                entry = HistoryEntry.from_ha(row)
            except (ValueError, TypeError) as e:
                raise FetchError(entity_id, f"malformed history row: {e}") from e
            entries.append(HistoryEntry(state=entry.state, changed_at=entry.changed_at, entity_id=entity_id))
    return grouped


class HomeAssistantHistorySource:
    """HistorySource backed by the Home Assistant REST API.

    The aiohttp session is created lazily and must be released with
    ``close()`` (or by using the source as an async context manager).
    """

    def __init__(self, ha_config: HAConfig | None = None, session: aiohttp.ClientSession | None = None):
        self.ha_config = ha_config or HAConfig.from_env()
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self.ha_config.token}",
                    "Content-Type": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.ha_config.request_timeout),
            )
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    @retry_on_network_error(max_attempts=3, backoff_factor=1.5)
    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> Any:
        url = f"{self.ha_config.url}{path}"
        async with self._get_session().get(url, params=params) as response:
            if response.status != 200:
                error_text = await response.text()
                raise FetchError(path, f"HTTP {response.status}: {error_text[:200]}")
            return await response.json()

    async def fetch_history(
        self, entity_ids: list[str], start: datetime, end: datetime
    ) -> dict[str, list[HistoryEntry]]:
        """Fetch full (not significant-only) state history for ``entity_ids``.

        Raises:
            FetchError: HTTP error, network failure after retries, or bad payload
        """
        if not entity_ids:
            return {}

        label = ",".join(entity_ids)
        params = {
            "end_time": end.isoformat(),
            "filter_entity_id": label,
            "significant_changes_only": "0",
        }
        try:
            payload = await self._get_json(f"/api/history/period/{start.isoformat()}", params=params)
        except FetchError as e:
            raise FetchError(label, e.message) from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise FetchError(label, f"network error: {e}") from e

        history = parse_history_response(entity_ids, payload)
        logger.debug(
            "Fetched history for %s: %d changes", label, sum(len(rows) for rows in history.values())
        )
        return history

    async def get_states(self) -> list[dict]:
        """All current entity states from ``/api/states``."""
        try:
            return await self._get_json("/api/states")
        except (aiohttp.ClientError, TimeoutError) as e:
            raise FetchError("states", f"network error: {e}") from e

    async def test_connection(self) -> bool:
        try:
            await self._get_json("/api/")
            return True
        except (FetchError, aiohttp.ClientError, TimeoutError) as e:
            logger.warning("Home Assistant at %s unreachable: %s", self.ha_config.url, e)
            return False
