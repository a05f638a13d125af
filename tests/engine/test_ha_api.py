"""Tests for the Home Assistant history source and the offline static source."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from bayeslab.engine.collectors.ha_api import (
    HomeAssistantHistorySource,
    parse_history_response,
    retry_on_network_error,
)
from bayeslab.engine.collectors.static import StaticHistorySource
from bayeslab.engine.config import HAConfig
from bayeslab.errors import FetchError
from bayeslab.models import HistoryEntry

START = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)
END = START + timedelta(hours=6)

HISTORY_PAYLOAD = [
    [
        {"entity_id": "binary_sensor.motion", "state": "off", "last_changed": "2024-01-01T00:00:00+00:00"},
        {"state": "on", "last_changed": "2024-01-01T01:00:00+00:00"},
    ],
    [
        {"entity_id": "sensor.temp", "state": "21.5", "last_changed": "2024-01-01T00:00:00+00:00"},
    ],
]


def make_response(status=200, payload=None, text=""):
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.json = AsyncMock(return_value=payload)
    mock_resp.text = AsyncMock(return_value=text)
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)
    return mock_resp


def make_source(session):
    return HomeAssistantHistorySource(HAConfig(url="http://ha.test:8123", token="secret"), session=session)


class TestParseHistoryResponse:
    def test_groups_rows_and_inherits_entity_id(self):
        history = parse_history_response(["binary_sensor.motion", "sensor.temp"], HISTORY_PAYLOAD)
        assert [e.state for e in history["binary_sensor.motion"]] == ["off", "on"]
        assert all(e.entity_id == "binary_sensor.motion" for e in history["binary_sensor.motion"])
        assert history["sensor.temp"][0].state == "21.5"

    def test_requested_entity_without_rows_is_empty(self):
        history = parse_history_response(["sensor.quiet"], [])
        assert history == {"sensor.quiet": []}

    def test_non_list_payload(self):
        with pytest.raises(FetchError):
            parse_history_response(["sensor.temp"], {"message": "oops"})

    def test_malformed_row(self):
        with pytest.raises(FetchError) as exc_info:
            parse_history_response(["sensor.temp"], [[{"entity_id": "sensor.temp", "state": "1"}]])
        assert exc_info.value.entity_id == "sensor.temp"


class TestRetryOnNetworkError:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failure(self):
        call_count = 0

        @retry_on_network_error(max_attempts=3, backoff_factor=0.01)
        async def fails_once():
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise aiohttp.ClientConnectionError("connection refused")
            return "ok"

        with patch("bayeslab.engine.collectors.ha_api.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            assert await fails_once() == "ok"
        assert call_count == 2
        mock_sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exhausts_attempts(self):
        call_count = 0

        @retry_on_network_error(max_attempts=3, backoff_factor=0.01)
        async def always_times_out():
            nonlocal call_count
            call_count += 1
            raise TimeoutError("timed out")

        with patch("bayeslab.engine.collectors.ha_api.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(TimeoutError):
                await always_times_out()
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        call_count = 0

        @retry_on_network_error(max_attempts=3, backoff_factor=0.01)
        async def raises_value_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a network error")

        with pytest.raises(ValueError):
            await raises_value_error()
        assert call_count == 1


class TestHomeAssistantHistorySource:
    @pytest.mark.asyncio
    async def test_fetch_history(self):
        session = MagicMock()
        session.get = MagicMock(return_value=make_response(payload=HISTORY_PAYLOAD))
        source = make_source(session)

        history = await source.fetch_history(["binary_sensor.motion", "sensor.temp"], START, END)

        assert len(history["binary_sensor.motion"]) == 2
        url = session.get.call_args[0][0]
        params = session.get.call_args[1]["params"]
        assert url == f"http://ha.test:8123/api/history/period/{START.isoformat()}"
        assert params["filter_entity_id"] == "binary_sensor.motion,sensor.temp"
        assert params["significant_changes_only"] == "0"
        assert params["end_time"] == END.isoformat()

    @pytest.mark.asyncio
    async def test_empty_entity_list_skips_request(self):
        session = MagicMock()
        source = make_source(session)
        assert await source.fetch_history([], START, END) == {}
        session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error_raises_fetch_error(self):
        session = MagicMock()
        session.get = MagicMock(return_value=make_response(status=500, text="Internal Server Error"))
        source = make_source(session)

        with pytest.raises(FetchError) as exc_info:
            await source.fetch_history(["sensor.temp"], START, END)
        assert exc_info.value.entity_id == "sensor.temp"
        assert "HTTP 500" in exc_info.value.message
        # HTTP errors are not retried
        assert session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_network_error_retried_then_fetch_error(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientError("connection refused"))
        source = make_source(session)

        with patch("bayeslab.engine.collectors.ha_api.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(FetchError) as exc_info:
                await source.fetch_history(["sensor.temp"], START, END)
        assert "network error" in exc_info.value.message
        assert session.get.call_count == 3

    @pytest.mark.asyncio
    async def test_get_states(self):
        states = [{"entity_id": "light.desk", "state": "on"}]
        session = MagicMock()
        session.get = MagicMock(return_value=make_response(payload=states))
        source = make_source(session)
        assert await source.get_states() == states
        assert session.get.call_args[0][0].endswith("/api/states")

    @pytest.mark.asyncio
    async def test_connection_ok(self):
        session = MagicMock()
        session.get = MagicMock(return_value=make_response(payload={"message": "API running."}))
        assert await make_source(session).test_connection() is True

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        session = MagicMock()
        session.get = MagicMock(return_value=make_response(status=401, text="Unauthorized"))
        assert await make_source(session).test_connection() is False

    @pytest.mark.asyncio
    async def test_close_leaves_injected_session_open(self):
        session = MagicMock()
        session.close = AsyncMock()
        source = make_source(session)
        await source.close()
        session.close.assert_not_awaited()


class TestStaticHistorySource:
    def history(self):
        return {
            "sensor.temp": [
                HistoryEntry(state="19", changed_at=START - timedelta(hours=2)),
                HistoryEntry(state="20", changed_at=START - timedelta(hours=1)),
                HistoryEntry(state="21", changed_at=START + timedelta(hours=1)),
                HistoryEntry(state="22", changed_at=END + timedelta(hours=1)),
            ]
        }

    @pytest.mark.asyncio
    async def test_clips_to_window_with_state_at_start(self):
        source = StaticHistorySource(self.history())
        result = await source.fetch_history(["sensor.temp"], START, END)
        assert [e.state for e in result["sensor.temp"]] == ["20", "21"]

    @pytest.mark.asyncio
    async def test_unknown_entity_raises(self):
        source = StaticHistorySource(self.history())
        with pytest.raises(FetchError):
            await source.fetch_history(["sensor.other"], START, END)

    def test_from_file(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text(
            json.dumps({"light.desk": [{"state": "on", "last_changed": "2024-01-01T00:00:00+00:00"}]})
        )
        source = StaticHistorySource.from_file(path)
        assert source.entity_ids == ["light.desk"]

    def test_from_file_rejects_list(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("[]")
        with pytest.raises(ValueError):
            StaticHistorySource.from_file(path)
