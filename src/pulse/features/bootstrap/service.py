from __future__ import annotations

from collections.abc import Callable
from typing import Any

import simpy

from pulse.core import signals as sig
from pulse.core.clock import SimClock
from pulse.core.config import PulseConfig
from pulse.core.http import CollectorTransport
from pulse.core.ids import IdGenerator, UuidGenerator
from pulse.core.logging import get_logger, set_level
from pulse.core.types import PageEnvironment
from pulse.features.batcher.service import EventBatcher
from pulse.features.events.schema import TrackingEvent
from pulse.features.events.service import EventEmitter
from pulse.features.experiments.service import ExperimentClient
from pulse.features.identity.service import IdentityConfig, IdentityStore
from pulse.features.recording.service import RecordingPipeline
from pulse.features.storage.duckdb_adapter import DuckDBStorage
from pulse.features.storage.service import Storage, open_storage
from pulse.features.trackers.service import (
    ClickTracker,
    ErrorTracker,
    MovementTracker,
    PageViewTracker,
    ScrollTracker,
    Tracker,
    VisibilityTracker,
)


class AnalyticsClient:
    """
    Everything one page needs, wired onto a single simpy environment.

    The host drives time with run(until) and feeds platform signals into
    `signals`; shutdown() is the teardown path (beacon delivery, then close).
    """

    def __init__(
        self,
        *,
        cfg: PulseConfig,
        env: simpy.Environment,
        clock: SimClock,
        signals: sig.SignalBus,
        page: PageEnvironment,
        storage: Storage,
        transport: CollectorTransport,
        identity: IdentityStore,
        batcher: EventBatcher,
        emitter: EventEmitter,
        trackers: list[Tracker],
        recorder: RecordingPipeline,
        experiments: ExperimentClient,
        owned_closers: list[Callable[[], None]] | None = None,
    ) -> None:
        self.cfg = cfg
        self.env = env
        self.clock = clock
        self.signals = signals
        self.page = page
        self.storage = storage
        self.transport = transport
        self.identity = identity
        self.batcher = batcher
        self.emitter = emitter
        self.trackers = trackers
        self.recorder = recorder
        self.experiments = experiments
        self._closers = owned_closers or []
        self._shut_down = False
        self._logger = get_logger(__name__)

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    def track(self, name: str, properties: dict[str, Any] | None = None) -> TrackingEvent | None:
        if self._shut_down:
            return None
        if not name:
            raise ValueError("event name is required")
        return self.emitter.emit("custom", name=name, properties=properties)

    def identify(self, user_id: str, traits: dict[str, Any] | None = None) -> None:
        self.identity.identify(user_id, traits)
        self.experiments.identify(user_id)

    def capture_exception(self, exc: BaseException) -> None:
        for tracker in self.trackers:
            if isinstance(tracker, ErrorTracker):
                tracker.capture_exception(exc)
                return

    def reset(self) -> str:
        """
        New visitor for every subsystem: identity mints it (with a fresh session),
        experiments adopt it and drop their assignments.
        """
        visitor_id = self.identity.reset_visitor()
        self.experiments.reset(visitor_id=visitor_id)
        return visitor_id

    def flush(self) -> simpy.Event:
        return self.batcher.flush()

    def start_recording(self) -> bool:
        return self.recorder.start()

    def stop_recording(self) -> simpy.Event:
        return self.recorder.stop()

    def record(self, event: dict[str, Any]) -> None:
        self.recorder.record(event)

    def run(self, until: float | simpy.Event) -> None:
        self.env.run(until=until)

    def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True

        for tracker in self.trackers:
            tracker.stop()
        self.identity.detach()
        self.recorder.destroy()
        self.batcher.destroy()

        for close in self._closers:
            try:
                close()
            except Exception:
                self._logger.exception("close_failed", extra={"feature": "bootstrap"})
        self._closers = []
        self._logger.info(
            "client_shutdown",
            extra={"feature": "bootstrap", "session_id": self.identity.get_session_id()},
        )


def bootstrap_client(
    cfg: PulseConfig,
    *,
    env: simpy.Environment | None = None,
    storage: Storage | None = None,
    transport: CollectorTransport | None = None,
    signals: sig.SignalBus | None = None,
    page: PageEnvironment | None = None,
    on_error: Callable[[Exception], None] | None = None,
    on_session_start: Callable[[str], None] | None = None,
    start_epoch_ms: float | None = None,
    ids: IdGenerator | None = None,
) -> AnalyticsClient:
    logger = get_logger("pulse", cfg.logging.level)
    set_level(cfg.logging.level)

    env = env if env is not None else simpy.Environment()
    clock = SimClock(env, start_epoch_ms=start_epoch_ms)
    signals = signals if signals is not None else sig.SignalBus()
    page = page if page is not None else PageEnvironment()
    ids = ids if ids is not None else UuidGenerator()
    closers: list[Callable[[], None]] = []

    # ----- storage -----
    if storage is None:
        safe, backend = open_storage(
            cfg.storage.duckdb_path, clean_slate=cfg.storage.clean_slate, now_ms=clock.now_ms
        )
        storage = safe
        if isinstance(backend, DuckDBStorage):
            closers.append(backend.close)

    # ----- transport -----
    if transport is None:
        transport = CollectorTransport(
            base_url=cfg.client.base_url,
            api_key=cfg.client.api_key,
            timeout_s=cfg.client.timeout_s,
        )
        closers.insert(0, transport.close)

    # ----- identity -----
    identity = IdentityStore(
        storage=storage,
        clock=clock,
        cfg=IdentityConfig(session_timeout_minutes=cfg.analytics.session_timeout_minutes),
        ids=ids,
        page=page,
        on_session_start=on_session_start,
    )
    identity.attach(signals)

    # ----- delivery -----
    analytics = cfg.analytics
    batcher = EventBatcher(
        env=env,
        transport=transport,
        identity=identity,
        batch_size=analytics.batch_size,
        batch_interval_s=analytics.batch_interval_s,
        on_error=on_error,
    )
    batcher.attach(signals)
    emitter = EventEmitter(sink=batcher, clock=clock, url_provider=lambda: page.url)

    # ----- trackers -----
    trackers: list[Tracker] = []
    scroll = (
        ScrollTracker(emitter=emitter, source=signals, clock=clock)
        if analytics.track_scroll
        else None
    )
    movement = MovementTracker(source=signals, clock=clock) if analytics.track_movement else None
    # depth milestones and heatmaps are per page
    per_page = [t for t in (scroll, movement) if t is not None]

    def new_page(_url: str) -> None:
        for t in per_page:
            t.reset()

    if analytics.track_page_views:
        trackers.append(
            PageViewTracker(
                emitter=emitter,
                source=signals,
                clock=clock,
                page=page,
                on_page_change=new_page if per_page else None,
            )
        )
        trackers.append(VisibilityTracker(emitter=emitter, source=signals, clock=clock))
    if analytics.track_clicks:
        trackers.append(
            ClickTracker(
                emitter=emitter,
                source=signals,
                clock=clock,
                ignored_selectors=analytics.ignored_selectors,
                rage=analytics.rage_clicks,
            )
        )
    if scroll is not None:
        trackers.append(scroll)
    if movement is not None:
        trackers.append(movement)
    if analytics.track_errors:
        trackers.append(ErrorTracker(emitter=emitter, source=signals))
    for tracker in trackers:
        tracker.start()

    # ----- recording -----
    rec = cfg.recording
    recorder = RecordingPipeline(
        env=env,
        transport=transport,
        identity=identity,
        flush_interval_s=rec.flush_interval_s,
        max_buffer_events=rec.max_buffer_events,
        max_duration_minutes=rec.max_duration_minutes,
        on_error=on_error,
        clock=clock,
    )
    recorder.attach(signals)
    if rec.enabled:
        recorder.start()

    # ----- experiments -----
    experiments = ExperimentClient(
        transport=transport,
        storage=storage,
        clock=clock,
        visitor_id=identity.get_visitor_id(),
        environment=page,
        local_evaluation=cfg.experiments.local_evaluation,
        config_ttl_s=cfg.experiments.config_ttl_s,
        ids=ids,
    )

    logger.info(
        "client_started",
        extra={
            "feature": "bootstrap",
            "visitor_id": identity.get_visitor_id(),
            "session_id": identity.get_session_id(),
            "reason": ",".join(type(t).__name__ for t in trackers) or "no_trackers",
        },
    )

    return AnalyticsClient(
        cfg=cfg,
        env=env,
        clock=clock,
        signals=signals,
        page=page,
        storage=storage,
        transport=transport,
        identity=identity,
        batcher=batcher,
        emitter=emitter,
        trackers=trackers,
        recorder=recorder,
        experiments=experiments,
        owned_closers=closers,
    )
