from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from pulse.core.logging import get_logger
from pulse.features.events.schema import EVENT_TYPES, TrackingEvent


class EventSink(Protocol):
    """
    Minimal surface area the emitter needs. EventBatcher satisfies it.
    """

    def add(self, event: TrackingEvent) -> None: ...


class ClockLike(Protocol):
    def now_ms(self) -> float: ...


class EventEmitter:
    """
    Shared capability composed into every tracker: stamps the envelope
    (timestamp, url) on a partial event and hands it to the sink.
    """

    def __init__(
        self,
        *,
        sink: EventSink,
        clock: ClockLike,
        url_provider: Callable[[], str] = lambda: "",
    ) -> None:
        self._sink = sink
        self._clock = clock
        self._url_provider = url_provider
        self._logger = get_logger(__name__)

    def emit(self, event_type: str, **fields: Any) -> TrackingEvent:
        """
        Build and forward a single event.

        Contracts enforced:
        - event_type must be in EVENT_TYPES
        - timestamp/url come from the emitter, never from the caller
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(
                f"Unsupported event_type={event_type!r}. " f"Allowed={sorted(EVENT_TYPES)}"
            )
        if "timestamp" in fields or "url" in fields:
            raise ValueError("timestamp and url are stamped by the emitter")

        event = TrackingEvent(
            type=event_type,
            timestamp=self._clock.now_ms(),
            url=self._url_provider(),
            **fields,
        )
        self._sink.add(event)
        self._logger.debug("event_emitted", extra={"feature": "events", "reason": event_type})
        return event
