from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pulse.core.clock import realtime_environment
from pulse.core.config import load_config
from pulse.features.bootstrap.service import bootstrap_client


@dataclass(frozen=True)
class SendResult:
    visitor_id: str
    session_id: str
    num_events: int
    # events still queued after the async flush; shutdown beacons them
    pending_after_flush: int


def read_events(path: str | Path) -> list[tuple[str, dict[str, Any] | None]]:
    """
    One JSON object per line: {"name": ..., "properties": {...}}. Blank lines are skipped.
    """
    out: list[tuple[str, dict[str, Any] | None]] = []
    for lineno, line in enumerate(Path(path).read_text().splitlines(), start=1):
        if not line.strip():
            continue
        obj = json.loads(line)
        if not isinstance(obj, dict) or not obj.get("name"):
            raise ValueError(f"{path}:{lineno}: expected an object with a 'name'")
        props = obj.get("properties")
        if props is not None and not isinstance(props, dict):
            raise ValueError(f"{path}:{lineno}: 'properties' must be an object")
        out.append((str(obj["name"]), props))
    return out


def send_events(config_path: str, events_path: str) -> SendResult:
    cfg = load_config(config_path)
    events = read_events(events_path)

    # retry backoff waits in wall-clock time
    client = bootstrap_client(cfg, env=realtime_environment())
    try:
        for name, properties in events:
            client.track(name, properties)
        client.run(until=client.flush())
        pending = client.batcher.get_queue_size()
        return SendResult(
            visitor_id=client.identity.get_visitor_id(),
            session_id=client.identity.get_session_id(),
            num_events=len(events),
            pending_after_flush=pending,
        )
    finally:
        client.shutdown()
