from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any, Protocol

import simpy

from pulse.core import signals as sig
from pulse.core.clock import SimClock, TimerHandle
from pulse.core.http import RECORDINGS_PATH, DeliveryError
from pulse.core.logging import get_logger

from .compression import compress_to_base64, encode_plain_base64, estimate_size
from .types import RecordingChunk

FLUSH_INTERVAL_S = 30.0
MAX_BUFFER_EVENTS = 500


class TransportLike(Protocol):
    def post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]: ...
    def send_beacon(
        self, path: str, body: dict[str, Any], *, with_headers: bool = False
    ) -> bool: ...


class IdentityLike(Protocol):
    def get_session_id(self) -> str: ...


class RecordingPipeline:
    """
    Buffers replay events and uploads them as indexed, compressed chunks.

    States: stopped -> recording -> stopped, destroyed is terminal.
    - Flush on buffer cap and on a periodic timer while recording.
    - A failed upload puts its events back at the front of the buffer and
      does not advance the chunk index, so indices stay gap-free.
    - stop() waits for any in-flight upload, then always sends one chunk
      marked isLast (possibly empty).
    - destroy() while recording sends the remainder uncompressed in a single
      teardown request.
    """

    def __init__(
        self,
        *,
        env: simpy.Environment,
        transport: TransportLike,
        identity: IdentityLike,
        flush_interval_s: float = FLUSH_INTERVAL_S,
        max_buffer_events: int = MAX_BUFFER_EVENTS,
        max_duration_minutes: float = 30.0,
        on_error: Callable[[Exception], None] | None = None,
        clock: SimClock | None = None,
    ) -> None:
        if float(flush_interval_s) <= 0:
            raise ValueError("flush_interval_s must be > 0")
        if int(max_buffer_events) < 1:
            raise ValueError("max_buffer_events must be >= 1")

        self.env = env
        self.transport = transport
        self.identity = identity
        self.flush_interval_s = float(flush_interval_s)
        self.max_buffer_events = int(max_buffer_events)
        self.max_duration_s = float(max_duration_minutes) * 60.0
        self.on_error = on_error
        self.clock = clock if clock is not None else SimClock(env)

        self._buffer: list[dict[str, Any]] = []
        self._recording = False
        self._destroyed = False
        self._terminal_pending = False
        self._in_flight: simpy.Process | None = None
        self._stop_proc: simpy.Process | None = None
        self._timers: list[TimerHandle] = []
        self._unsubscribe: list[Callable[[], None]] = []

        self._chunk_index = 0
        self._chunk_session_id: str | None = None
        self._chunk_start_ms = 0.0
        self._recording_start_ms = 0.0

        self._logger = get_logger(__name__)

    # ----------------------------
    # Public API
    # ----------------------------
    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def chunk_index(self) -> int:
        return self._chunk_index

    def buffered(self) -> int:
        return len(self._buffer)

    def duration_s(self) -> int:
        if not self._recording:
            return 0
        return round((self.clock.now_ms() - self._recording_start_ms) / 1000.0)

    def start(self) -> bool:
        if self._recording or self._destroyed or self._stop_proc is not None:
            self._logger.debug("recording_start_ignored", extra={"feature": "recording"})
            return False

        now = self.clock.now_ms()
        self._recording = True
        self._terminal_pending = True
        self._recording_start_ms = now
        # events from a failed upload stay queued for the next chunk
        if not self._buffer:
            self._chunk_start_ms = now

        self._timers = [
            self.clock.every(self.flush_interval_s, self._on_flush_timer),
            self.clock.after(self.max_duration_s, self._on_max_duration),
        ]
        self._logger.info(
            "recording_started",
            extra={"feature": "recording", "session_id": self.identity.get_session_id()},
        )
        return True

    def record(self, event: dict[str, Any]) -> None:
        if self._destroyed or not self._recording:
            return
        self._buffer.append(event)
        if len(self._buffer) >= self.max_buffer_events:
            self.flush()

    def flush(self, is_last: bool = False) -> simpy.Event:
        """
        Upload the buffer as the next chunk. An empty buffer is only sent when
        it carries the terminal marker.
        """
        if self._in_flight is not None:
            return self._in_flight
        if self._destroyed or (not self._buffer and not is_last):
            return self._done()

        events = self._buffer
        self._buffer = []
        self._in_flight = self.env.process(self._upload(events, is_last))
        return self._in_flight

    def stop(self) -> simpy.Event:
        if self._stop_proc is not None:
            return self._stop_proc
        if not self._recording or self._destroyed:
            return self._done()

        # stop accepting events before draining
        self._recording = False
        self._cancel_timers()
        self._stop_proc = self.env.process(self._stop())
        return self._stop_proc

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._recording = False
        self._cancel_timers()
        for unsub in self._unsubscribe:
            unsub()
        self._unsubscribe = []

        if self._terminal_pending:
            self._send_teardown_chunk()
        self._logger.info("recording_destroyed", extra={"feature": "recording"})

    def attach(self, source: sig.SignalSource) -> None:
        if self._unsubscribe:
            return
        self._unsubscribe = [
            source.subscribe(sig.RECORDING, self.record),
            source.subscribe(sig.PAGE_HIDE, lambda _s: self.destroy()),
        ]

    # ----------------------------
    # Internals
    # ----------------------------
    def _done(self) -> simpy.Event:
        ev = self.env.event()
        ev.succeed()
        return ev

    def _cancel_timers(self) -> None:
        for t in self._timers:
            t.cancel()
        self._timers = []

    def _on_flush_timer(self) -> None:
        if self._buffer:
            self.flush()

    def _on_max_duration(self) -> None:
        if self._recording:
            self._logger.info(
                "recording_max_duration", extra={"feature": "recording", "reason": "max_duration"}
            )
            self.stop()

    def _stop(self):
        try:
            if self._in_flight is not None:
                yield self._in_flight
            if self._destroyed:
                return
            yield self.flush(is_last=True)
        finally:
            self._stop_proc = None
        self._logger.info("recording_stopped", extra={"feature": "recording"})

    def _next_chunk_index(self, session_id: str) -> int:
        if session_id != self._chunk_session_id:
            self._chunk_session_id = session_id
            self._chunk_index = 0
        return self._chunk_index

    def _upload(self, events: list[dict[str, Any]], is_last: bool):
        try:
            chunk_start = self._chunk_start_ms
            chunk_end = self.clock.now_ms()
            self._chunk_start_ms = chunk_end

            session_id = self.identity.get_session_id()
            chunk_index = self._next_chunk_index(session_id)
            serialized = json.dumps(events, separators=(",", ":"))
            # compression finishes on a later tick; new records land in the live buffer
            yield self.env.timeout(0)

            chunk = RecordingChunk(
                session_id=session_id,
                chunk_index=chunk_index,
                events=compress_to_base64(serialized),
                event_count=len(events),
                start_time=chunk_start,
                end_time=chunk_end,
                is_last=is_last,
            )

            try:
                body = self.transport.post_json(RECORDINGS_PATH, chunk.as_payload())
                if not body.get("success"):
                    raise DeliveryError(
                        str(body.get("error") or "Collector rejected recording chunk")
                    )
            except DeliveryError as exc:
                self._buffer = events + self._buffer
                self._chunk_start_ms = chunk_start
                self._report(exc, chunk)
                return

            self._chunk_index += 1
            if is_last:
                self._terminal_pending = False
            self._logger.info(
                "chunk_uploaded",
                extra={
                    "feature": "recording",
                    "chunk_index": chunk.chunk_index,
                    "num_events": len(events),
                    "session_id": session_id,
                    "reason": f"last={is_last} kb={round(estimate_size(serialized) / 1024)}",
                },
            )
        finally:
            self._in_flight = None

    def _report(self, exc: Exception, chunk: RecordingChunk) -> None:
        self._logger.warning(
            "chunk_upload_failed",
            extra={
                "feature": "recording",
                "chunk_index": chunk.chunk_index,
                "num_events": chunk.event_count,
                "error": str(exc),
            },
        )
        if self.on_error is not None:
            try:
                self.on_error(exc)
            except Exception:
                self._logger.exception("on_error_callback_failed", extra={"feature": "recording"})

    def _send_teardown_chunk(self) -> None:
        events = self._buffer
        self._buffer = []
        try:
            session_id = self.identity.get_session_id()
            index = self._next_chunk_index(session_id)
            if self._in_flight is not None:
                # the in-flight upload owns the current index
                index += 1
            chunk = RecordingChunk(
                session_id=session_id,
                chunk_index=index,
                events=encode_plain_base64(json.dumps(events, separators=(",", ":"))),
                event_count=len(events),
                start_time=self._chunk_start_ms,
                end_time=self.clock.now_ms(),
                is_last=True,
            )
            ok = self.transport.send_beacon(RECORDINGS_PATH, chunk.as_payload(), with_headers=True)
        except Exception as exc:
            self._logger.warning(
                "teardown_chunk_failed", extra={"feature": "recording", "error": repr(exc)}
            )
            return

        self._terminal_pending = False
        if ok:
            self._chunk_index = chunk.chunk_index + 1
        self._logger.info(
            "teardown_chunk",
            extra={
                "feature": "recording",
                "chunk_index": chunk.chunk_index,
                "num_events": chunk.event_count,
                "reason": "ok" if ok else "failed",
            },
        )
