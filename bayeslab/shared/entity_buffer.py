"""Compact per-entity history buffers for fast replay.

Each entity gets one growable ``bytearray`` of fixed 8-byte records:
little-endian ``u32`` seconds since the epoch followed by a ``u32`` state id
(assigned on first sight, per entity). Capacity doubles once the write
offset reaches 90% of the buffer.

``export_trimmed`` hands out immutable ``bytes`` of exactly the written
length; ``BufferView`` reads such an export through numpy without copying,
so exports can be passed to other tasks or processes freely.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from datetime import UTC, datetime

import numpy as np

from bayeslab.models import HistoryEntry, sort_history

logger = logging.getLogger(__name__)

RECORD = struct.Struct("<II")
RECORD_SIZE = RECORD.size
RECORD_DTYPE = np.dtype([("ts", "<u4"), ("state", "<u4")])
GROWTH_THRESHOLD = 0.9
DEFAULT_POINTS = 2000
MAX_TIMESTAMP = 2**32 - 1


def _to_seconds(ts: datetime) -> int:
    seconds = int(ts.timestamp())
    if not 0 <= seconds <= MAX_TIMESTAMP:
        raise ValueError(f"Timestamp {ts.isoformat()} does not fit in an unsigned 32-bit second count")
    return seconds


@dataclass(frozen=True)
class BufferMetadata:
    entity_id: str
    point_count: int
    start_time: datetime | None
    end_time: datetime | None
    state_dictionary: dict[str, int]


@dataclass(frozen=True)
class BufferExport:
    """Trimmed, immutable snapshot of one entity's buffer."""

    data: bytes
    metadata: BufferMetadata


@dataclass
class _EntityBuffer:
    data: bytearray
    write_offset: int = 0
    state_ids: dict[str, int] = field(default_factory=dict)
    state_names: list[str] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_seconds: int = 0

    @property
    def capacity(self) -> int:
        return len(self.data)

    @property
    def point_count(self) -> int:
        return self.write_offset // RECORD_SIZE


class EntityHistoryBuffer:
    """Owner of all per-entity buffers for one session."""

    def __init__(self, default_points: int = DEFAULT_POINTS):
        self.default_points = default_points
        self._buffers: dict[str, _EntityBuffer] = {}

    def initialize_entity(self, entity_id: str, estimated_points: int | None = None) -> _EntityBuffer:
        """(Re)create an empty buffer sized for ``estimated_points`` records."""
        points = max(1, estimated_points if estimated_points is not None else self.default_points)
        buffer = _EntityBuffer(data=bytearray(points * RECORD_SIZE))
        self._buffers[entity_id] = buffer
        return buffer

    def _expand(self, entity_id: str, buffer: _EntityBuffer):
        grown = bytearray(buffer.capacity * 2)
        grown[: buffer.write_offset] = buffer.data[: buffer.write_offset]
        buffer.data = grown
        logger.debug("Buffer for %s grown to %d bytes", entity_id, buffer.capacity)

    def append(self, entity_id: str, timestamp: datetime, state: str):
        """Append one record; timestamps must not go backwards."""
        buffer = self._buffers.get(entity_id)
        if buffer is None:
            buffer = self.initialize_entity(entity_id)

        seconds = _to_seconds(timestamp)
        if buffer.point_count and seconds < buffer.last_seconds:
            raise ValueError(f"{entity_id}: out-of-order append at {timestamp.isoformat()}")

        if buffer.write_offset >= GROWTH_THRESHOLD * buffer.capacity:
            self._expand(entity_id, buffer)

        state_id = buffer.state_ids.get(state)
        if state_id is None:
            state_id = buffer.state_ids[state] = len(buffer.state_names)
            buffer.state_names.append(state)
        RECORD.pack_into(buffer.data, buffer.write_offset, seconds, state_id)
        buffer.write_offset += RECORD_SIZE
        buffer.last_seconds = seconds

        if buffer.start_time is None:
            buffer.start_time = timestamp
        buffer.end_time = timestamp

    def bulk_load(self, entity_id: str, history: list[HistoryEntry]):
        """Replace an entity's buffer with the given history (sorted first)."""
        if not history:
            self.clear_entity(entity_id)
            return
        self.initialize_entity(entity_id, len(history))
        for entry in sort_history(history):
            self.append(entity_id, entry.changed_at, entry.state)

    def _record(self, buffer: _EntityBuffer, index: int) -> tuple[int, int]:
        return RECORD.unpack_from(buffer.data, index * RECORD_SIZE)

    def lookup_state_at_or_before(self, entity_id: str, timestamp: datetime) -> str | None:
        """State of the last record at or before ``timestamp``, or None."""
        buffer = self._buffers.get(entity_id)
        if buffer is None or buffer.point_count == 0:
            return None

        target = int(timestamp.timestamp())
        lo, hi = 0, buffer.point_count
        while lo < hi:
            mid = (lo + hi) // 2
            if self._record(buffer, mid)[0] <= target:
                lo = mid + 1
            else:
                hi = mid
        if lo == 0:
            return None

        return buffer.state_names[self._record(buffer, lo - 1)[1]]

    def export_trimmed(self, entity_id: str) -> BufferExport | None:
        buffer = self._buffers.get(entity_id)
        if buffer is None:
            return None
        return BufferExport(
            data=bytes(buffer.data[: buffer.write_offset]),
            metadata=BufferMetadata(
                entity_id=entity_id,
                point_count=buffer.point_count,
                start_time=buffer.start_time,
                end_time=buffer.end_time,
                state_dictionary=dict(buffer.state_ids),
            ),
        )

    def export_many(self, entity_ids: list[str]) -> dict[str, BufferExport]:
        exports = {}
        for entity_id in entity_ids:
            export = self.export_trimmed(entity_id)
            if export is not None:
                exports[entity_id] = export
        return exports

    def has_entity(self, entity_id: str) -> bool:
        buffer = self._buffers.get(entity_id)
        return buffer is not None and buffer.point_count > 0

    def entity_ids(self) -> list[str]:
        return list(self._buffers)

    def entity_stats(self, entity_id: str) -> dict | None:
        buffer = self._buffers.get(entity_id)
        if buffer is None:
            return None
        return {
            "point_count": buffer.point_count,
            "capacity_bytes": buffer.capacity,
            "used_bytes": buffer.write_offset,
            "unique_states": len(buffer.state_ids),
            "start_time": buffer.start_time,
            "end_time": buffer.end_time,
        }

    def memory_usage(self) -> dict:
        allocated = sum(b.capacity for b in self._buffers.values())
        used = sum(b.write_offset for b in self._buffers.values())
        return {
            "entities": len(self._buffers),
            "allocated_bytes": allocated,
            "used_bytes": used,
            "points": used // RECORD_SIZE,
        }

    def clear_entity(self, entity_id: str):
        self._buffers.pop(entity_id, None)

    def clear_all(self):
        self._buffers.clear()


class BufferView:
    """Read-only numpy view over a BufferExport."""

    def __init__(self, export: BufferExport):
        self.metadata = export.metadata
        self.records = np.frombuffer(export.data, dtype=RECORD_DTYPE)
        self._states = {sid: state for state, sid in export.metadata.state_dictionary.items()}

    def __len__(self) -> int:
        return len(self.records)

    @property
    def entity_id(self) -> str:
        return self.metadata.entity_id

    def state_at_or_before(self, timestamp: datetime) -> str | None:
        if len(self.records) == 0:
            return None
        target = int(timestamp.timestamp())
        if target < 0:
            return None
        idx = int(np.searchsorted(self.records["ts"], min(target, MAX_TIMESTAMP), side="right")) - 1
        if idx < 0:
            return None
        return self._states.get(int(self.records["state"][idx]))

    def to_history(self) -> list[HistoryEntry]:
        """Decode back into HistoryEntry objects (second precision, UTC)."""
        return [
            HistoryEntry(
                state=self._states[int(sid)],
                changed_at=datetime.fromtimestamp(int(ts), tz=UTC),
                entity_id=self.entity_id,
            )
            for ts, sid in zip(self.records["ts"], self.records["state"])
        ]
