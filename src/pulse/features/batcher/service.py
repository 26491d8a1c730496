from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

import simpy

from pulse.core import signals as sig
from pulse.core.clock import TimerHandle
from pulse.core.http import EVENTS_PATH, DeliveryError
from pulse.core.logging import get_logger
from pulse.features.events.schema import EventBatch, SessionMetadata, TrackingEvent

MAX_ATTEMPTS = 3
RETRY_DELAY_S = 1.0
RETRY_QUEUE_FACTOR = 3


class TransportLike(Protocol):
    def post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]: ...
    def send_beacon(
        self, path: str, body: dict[str, Any], *, with_headers: bool = False
    ) -> bool: ...


class IdentityLike(Protocol):
    def get_session_id(self) -> str: ...
    def get_visitor_id(self) -> str: ...
    def get_user_identifier(self) -> str | None: ...
    def is_first_batch_for_session(self) -> bool: ...
    def mark_first_batch_sent(self) -> None: ...
    def get_session_metadata(self) -> SessionMetadata: ...


class EventBatcher:
    """
    Buffered event sink + delivery policy.

    - Flush on size (queue reaches batch_size), on a periodic timer while
      anything is pending, and when the page becomes hidden.
    - One delivery in flight at a time. Events added meanwhile wait for the
      next flush.
    - A failed delivery goes back to a bounded retry queue that is sent ahead
      of newer events on the next cycle.
    - Teardown (page hide / destroy) sends everything pending in one beacon.
    """

    def __init__(
        self,
        *,
        env: simpy.Environment,
        transport: TransportLike,
        identity: IdentityLike,
        batch_size: int = 10,
        batch_interval_s: float = 5.0,
        retry_delay_s: float = RETRY_DELAY_S,
        max_attempts: int = MAX_ATTEMPTS,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        if int(batch_size) < 1:
            raise ValueError("batch_size must be >= 1")
        if float(batch_interval_s) <= 0:
            raise ValueError("batch_interval_s must be > 0")
        if int(max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")

        self.env = env
        self.transport = transport
        self.identity = identity
        self.batch_size = int(batch_size)
        self.batch_interval_s = float(batch_interval_s)
        self.retry_delay_s = float(retry_delay_s)
        self.max_attempts = int(max_attempts)
        self.on_error = on_error

        self._queue: list[TrackingEvent] = []
        self._retry: list[TrackingEvent] = []
        self._in_flight: simpy.Process | None = None
        self._destroyed = False
        self._unsubscribe: list[Callable[[], None]] = []
        self._logger = get_logger(__name__)

        self._timer = TimerHandle(env, env.process(self._periodic_flush_proc()))

    # ----------------------------
    # Public API
    # ----------------------------
    @property
    def is_flushing(self) -> bool:
        return self._in_flight is not None

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def add(self, event: TrackingEvent) -> None:
        if self._destroyed:
            return
        self._queue.append(event)
        if len(self._queue) >= self.batch_size:
            self.flush()

    def get_queue_size(self) -> int:
        return len(self._queue) + len(self._retry)

    def flush(self) -> simpy.Event:
        """
        Start an asynchronous delivery of everything pending.

        Returns an event the caller may yield on or `env.run(until=...)`. While
        a delivery is already in flight that delivery is returned instead.
        """
        if self._in_flight is not None:
            return self._in_flight
        if self._destroyed or not (self._queue or self._retry):
            return self._done()

        # retry events go first so order is preserved across failures
        events = self._retry + self._queue
        self._retry = []
        self._queue = []

        self._in_flight = self.env.process(self._deliver(events))
        return self._in_flight

    def flush_sync(self) -> bool:
        """
        Teardown send: one beacon with everything pending, no retry. Never raises.
        """
        events = self._retry + self._queue
        self._retry = []
        self._queue = []
        if not events:
            return False

        try:
            batch = self._build_batch(events)
            ok = self.transport.send_beacon(EVENTS_PATH, batch.as_payload())
        except Exception as exc:
            self._logger.warning(
                "teardown_send_failed",
                extra={"feature": "batcher", "num_events": len(events), "error": repr(exc)},
            )
            return False

        if ok:
            self.identity.mark_first_batch_sent()
        self._logger.info(
            "teardown_send",
            extra={"feature": "batcher", "num_events": len(events), "reason": "ok" if ok else "failed"},
        )
        return ok

    def on_visibility_change(self, state: str) -> None:
        if state == "hidden":
            self.flush()

    def on_page_hide(self) -> None:
        if not self._destroyed:
            self.flush_sync()

    def attach(self, source: sig.SignalSource) -> None:
        if self._unsubscribe:
            return
        self._unsubscribe = [
            source.subscribe(sig.VISIBILITY, lambda s: self.on_visibility_change(s.state)),
            source.subscribe(sig.PAGE_HIDE, lambda _s: self.on_page_hide()),
        ]

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._timer.cancel()
        for unsub in self._unsubscribe:
            unsub()
        self._unsubscribe = []
        self.flush_sync()
        self._destroyed = True

    # ----------------------------
    # Internals
    # ----------------------------
    def _done(self) -> simpy.Event:
        ev = self.env.event()
        ev.succeed()
        return ev

    def _periodic_flush_proc(self):
        try:
            while True:
                yield self.env.timeout(self.batch_interval_s)
                if self.get_queue_size() > 0:
                    self.flush()
        except simpy.Interrupt:
            return

    def _build_batch(self, events: list[TrackingEvent]) -> EventBatch:
        identity = self.identity
        session = identity.get_session_metadata() if identity.is_first_batch_for_session() else None
        return EventBatch(
            session_id=identity.get_session_id(),
            visitor_id=identity.get_visitor_id(),
            events=tuple(events),
            user_identifier=identity.get_user_identifier(),
            session=session,
        )

    def _deliver(self, events: list[TrackingEvent]):
        try:
            payload = self._build_batch(events).as_payload()

            for attempt in range(1, self.max_attempts + 1):
                try:
                    body = self.transport.post_json(EVENTS_PATH, payload)
                    if not body.get("success"):
                        raise DeliveryError(str(body.get("error") or "Collector rejected batch"))
                except DeliveryError as exc:
                    self._logger.debug(
                        "batch_attempt_failed",
                        extra={"feature": "batcher", "attempt": attempt, "error": str(exc)},
                    )
                    if attempt == self.max_attempts:
                        self._requeue(events, exc)
                        return
                    yield self.env.timeout(attempt * self.retry_delay_s)
                    continue

                self.identity.mark_first_batch_sent()
                self._logger.info(
                    "batch_sent",
                    extra={
                        "feature": "batcher",
                        "num_events": len(events),
                        "attempt": attempt,
                        "session_id": payload["sessionId"],
                    },
                )
                return
        finally:
            self._in_flight = None

    def _requeue(self, events: list[TrackingEvent], exc: Exception) -> None:
        cap = self.batch_size * RETRY_QUEUE_FACTOR
        self._retry = events[:cap]
        dropped = len(events) - len(self._retry)
        self._logger.warning(
            "batch_failed",
            extra={
                "feature": "batcher",
                "num_events": len(events),
                "reason": f"requeued={len(self._retry)} dropped={dropped}",
                "error": str(exc),
            },
        )
        if self.on_error is not None:
            try:
                self.on_error(exc)
            except Exception:
                self._logger.exception("on_error_callback_failed", extra={"feature": "batcher"})
