from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class RecordingChunk:
    """
    One uploaded slice of a recording. `events` is the base64 payload
    (gzip-compressed on the normal path, plain on teardown).
    """

    session_id: str
    chunk_index: int
    events: str
    event_count: int
    start_time: float  # epoch ms
    end_time: float  # epoch ms
    is_last: bool = False

    def as_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "chunkIndex": self.chunk_index,
            "events": self.events,
            "eventCount": self.event_count,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "isLast": self.is_last,
        }
