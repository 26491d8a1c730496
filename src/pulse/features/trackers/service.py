from __future__ import annotations

import math
import re
import traceback
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from pulse.core import signals as sig
from pulse.core.clock import Clock, TimerHandle
from pulse.core.config import RageClickConfig
from pulse.core.logging import get_logger
from pulse.core.types import PageEnvironment
from pulse.features.events.service import EventEmitter

MAX_ELEMENT_TEXT = 200
HEATMAP_CELLS = 100
MOVEMENT_GRID_SIDE = 100
MAX_HOTSPOTS = 10
ATTENTION_SELECTORS = ("button", "a", "input", "select", "textarea", ".cta", ".btn")


class Tracker(Protocol):
    def start(self) -> None: ...
    def stop(self) -> None: ...


class _Subscriptions:
    """
    Bookkeeping shared by every tracker: signal subscriptions plus timers,
    released together on stop().
    """

    def __init__(self) -> None:
        self._unsubscribe: list[Callable[[], None]] = []
        self._timers: list[TimerHandle] = []
        self.active = False

    def subscribe(self, source: sig.SignalSource, kind: str, cb: Callable[[Any], None]) -> None:
        self._unsubscribe.append(source.subscribe(kind, cb))

    def timer(self, handle: TimerHandle) -> TimerHandle:
        self._timers.append(handle)
        return handle

    def release(self) -> None:
        for unsub in self._unsubscribe:
            unsub()
        for t in self._timers:
            t.cancel()
        self._unsubscribe = []
        self._timers = []
        self.active = False


# ----------------------------
# Selector matching
# ----------------------------

_SIMPLE_RE = re.compile(r"([.#]?[^.#:\s]+)")


@dataclass(frozen=True)
class _Simple:
    tag: str | None
    element_id: str | None
    classes: frozenset[str]


def _parse_simple(selector: str) -> _Simple:
    tag = element_id = None
    classes = set()
    for token in _SIMPLE_RE.findall(selector.split(":", 1)[0]):
        if token.startswith("#"):
            element_id = token[1:]
        elif token.startswith("."):
            classes.add(token[1:])
        else:
            tag = token.lower()
    return _Simple(tag=tag, element_id=element_id, classes=frozenset(classes))


def matching_element(path: str, selector: str) -> str | None:
    """
    Path up to and including the innermost element on the `a > b.c > #d`
    path that satisfies the simple `selector` (tag, #id, .class or a
    combination), or None.
    """
    want = _parse_simple(selector)
    if want.tag is None and want.element_id is None and not want.classes:
        return None
    parts = [p.strip() for p in path.split(">")]
    for i in range(len(parts) - 1, -1, -1):
        have = _parse_simple(parts[i])
        if want.tag is not None and want.tag != have.tag:
            continue
        if want.element_id is not None and want.element_id != have.element_id:
            continue
        if not want.classes <= have.classes:
            continue
        return " > ".join(parts[: i + 1])
    return None


def selector_matches(path: str, ignored: str) -> bool:
    return matching_element(path, ignored) is not None


# ----------------------------
# Trackers
# ----------------------------


class ClickTracker:
    """
    Click events with page-relative coordinates and rage-click detection.

    Rage click: at least `threshold` clicks inside `window_ms`, every one of
    them within `radius_px` of the first. While a streak continues each click
    carries an increasing sequence number.
    """

    def __init__(
        self,
        *,
        emitter: EventEmitter,
        source: sig.SignalSource,
        clock: Clock,
        ignored_selectors: Sequence[str] = (),
        rage: RageClickConfig = RageClickConfig(),
    ) -> None:
        self.emitter = emitter
        self.source = source
        self.clock = clock
        self.ignored_selectors = tuple(ignored_selectors)
        self.rage = rage
        self._subs = _Subscriptions()
        self._recent: list[tuple[float, float, float]] = []  # (x, y, ts_ms)
        self._sequence = 0
        self._in_streak = False
        self._logger = get_logger(__name__)

    def start(self) -> None:
        if self._subs.active:
            return
        self._subs.subscribe(self.source, sig.CLICK, self.on_click)
        self._subs.active = True

    def stop(self) -> None:
        self._subs.release()

    def on_click(self, click: sig.ClickSignal) -> None:
        if not self._subs.active:
            return
        if any(selector_matches(click.selector, s) for s in self.ignored_selectors):
            self._logger.debug("click_ignored", extra={"feature": "trackers", "reason": click.selector})
            return

        x_percent = (click.x / click.page_width) * 100 if click.page_width > 0 else 0.0
        y_percent = (click.y / click.page_height) * 100 if click.page_height > 0 else 0.0

        is_rage, sequence = False, None
        if self.rage.enabled:
            is_rage, sequence = self._detect_rage_click(click.x, click.y)

        self.emitter.emit(
            "click",
            x=click.x,
            y=click.y,
            x_percent=x_percent,
            y_percent=y_percent,
            selector=click.selector,
            element_tag=click.tag.lower(),
            element_text=click.text.strip()[:MAX_ELEMENT_TEXT],
            element_classes=click.classes,
            element_id=click.element_id or None,
            is_rage_click=True if is_rage else None,
            rage_click_sequence=sequence,
        )

    def _detect_rage_click(self, x: float, y: float) -> tuple[bool, int | None]:
        now = self.clock.now_ms()
        self._recent.append((x, y, now))
        self._recent = [c for c in self._recent if now - c[2] <= self.rage.window_ms]

        if len(self._recent) < self.rage.threshold:
            self._in_streak = False
            self._sequence = 0
            return False, None

        fx, fy, _ = self._recent[0]
        if all(math.hypot(cx - fx, cy - fy) <= self.rage.radius_px for cx, cy, _ in self._recent):
            if self._in_streak:
                self._sequence += 1
            else:
                self._in_streak = True
                self._sequence = len(self._recent)
            return True, self._sequence

        self._in_streak = False
        self._sequence = 0
        return False, None


class ScrollTracker:
    """
    Scroll depth milestones plus a 100-cell viewport heatmap.

    Depth is bucketed down to a multiple of `threshold` percent and only ever
    increases; each new milestone emits one scroll event. The heatmap counts,
    per sample, every 1% band of the page inside the viewport.
    """

    def __init__(
        self,
        *,
        emitter: EventEmitter,
        source: sig.SignalSource,
        clock: Clock,
        threshold: int = 25,
        heatmap_sampling: bool = True,
        sample_interval_s: float = 0.2,
        debounce_s: float = 0.1,
    ) -> None:
        if not 0 < int(threshold) <= 100:
            raise ValueError("threshold must be in (0, 100]")
        self.emitter = emitter
        self.source = source
        self.clock = clock
        self.threshold = int(threshold)
        self.heatmap_sampling = heatmap_sampling
        self.sample_interval_s = float(sample_interval_s)
        self.debounce_s = float(debounce_s)

        self._subs = _Subscriptions()
        self._position: sig.ScrollSignal | None = None
        self._debounce: TimerHandle | None = None
        self._last_tracked_depth = 0
        self._max_depth = 0
        self._grid = [0] * HEATMAP_CELLS
        self._last_sample_ms: float | None = None

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def start(self) -> None:
        if self._subs.active:
            return
        self._subs.subscribe(self.source, sig.SCROLL, self.on_scroll)
        self._subs.active = True
        if self.heatmap_sampling:
            self._subs.timer(self.clock.every(self.sample_interval_s, self.sample))

    def stop(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        self._subs.release()

    def on_scroll(self, position: sig.ScrollSignal) -> None:
        if not self._subs.active:
            return
        self._position = position
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = self.clock.after(self.debounce_s, self._track_depth)

    def _track_depth(self) -> None:
        self._debounce = None
        pos = self._position
        if pos is None or not self._subs.active:
            return

        scrollable = pos.page_height - pos.viewport_height
        if scrollable > 0:
            percent = min(100, round(pos.scroll_top / scrollable * 100))
        else:
            percent = 100
        depth = (percent // self.threshold) * self.threshold

        if depth > self._last_tracked_depth:
            self._last_tracked_depth = depth
            self._max_depth = max(self._max_depth, depth)
            self.emitter.emit(
                "scroll",
                scroll_depth=depth,
                scroll_depth_pixels=round(pos.scroll_top + pos.viewport_height),
                page_height=int(pos.page_height),
            )

    def sample(self) -> None:
        pos = self._position
        if pos is None or pos.page_height <= 0:
            return
        now = self.clock.now_ms()
        min_gap_ms = self.sample_interval_s * 1000.0 * 0.8
        if self._last_sample_ms is not None and now - self._last_sample_ms < min_gap_ms:
            return
        self._last_sample_ms = now

        top = max(0.0, min(100.0, pos.scroll_top / pos.page_height * 100))
        bottom = max(0.0, min(100.0, (pos.scroll_top + pos.viewport_height) / pos.page_height * 100))
        start = math.floor(top)
        end = min(HEATMAP_CELLS - 1, math.ceil(bottom))
        for i in range(start, end + 1):
            self._grid[i] += 1

    def heatmap_grid(self) -> list[int]:
        return list(self._grid)

    def heatmap_metrics(self) -> dict[str, Any]:
        grid = self.heatmap_grid()
        total = sum(grid)
        weighted = sum(i * v for i, v in enumerate(grid))
        viewed = [i for i, v in enumerate(grid) if v > 0]
        return {
            "grid": grid,
            "maxDepth": viewed[-1] if viewed else 0,
            "avgDepth": round(weighted / total) if total > 0 else 0,
            "totalSamples": max(1, grid[0]),
        }

    def reset(self) -> None:
        self._last_tracked_depth = 0
        self._max_depth = 0
        self._grid = [0] * HEATMAP_CELLS
        self._last_sample_ms = None


class MovementTracker:
    """
    Pointer heatmap on a 100x100 viewport grid plus hover time per element.

    Emits nothing; the host reads movement_grid(), attention_time() or
    movement_metrics(). An element earns attention time while the pointer is
    over it, keyed by its path when it matches one of `attention_selectors`.
    """

    def __init__(
        self,
        *,
        source: sig.SignalSource,
        clock: Clock,
        sample_interval_s: float = 0.1,
        track_attention: bool = True,
        attention_selectors: Sequence[str] = ATTENTION_SELECTORS,
    ) -> None:
        self.source = source
        self.clock = clock
        self.sample_interval_s = float(sample_interval_s)
        self.track_attention = track_attention
        self.attention_selectors = tuple(attention_selectors)

        self._subs = _Subscriptions()
        self._grid = [0] * (MOVEMENT_GRID_SIDE * MOVEMENT_GRID_SIDE)
        self._last_sample_ms: float | None = None
        self._attention: dict[str, float] = {}
        self._hovered: tuple[str, float] | None = None  # (element path, since ms)

    def start(self) -> None:
        if self._subs.active:
            return
        self._subs.subscribe(self.source, sig.POINTER_MOVE, self.on_pointer_move)
        if self.track_attention:
            self._subs.subscribe(self.source, sig.POINTER_OVER, self.on_pointer_over)
            self._subs.subscribe(self.source, sig.POINTER_OUT, self.on_pointer_out)
        self._subs.active = True

    def stop(self) -> None:
        self._end_attention()
        self._subs.release()

    def on_pointer_move(self, pointer: sig.PointerSignal) -> None:
        if not self._subs.active:
            return
        now = self.clock.now_ms()
        min_gap_ms = self.sample_interval_s * 1000.0
        if self._last_sample_ms is not None and now - self._last_sample_ms < min_gap_ms:
            return
        self._last_sample_ms = now

        x = _grid_cell(pointer.x, pointer.viewport_width)
        y = _grid_cell(pointer.y, pointer.viewport_height)
        self._grid[y * MOVEMENT_GRID_SIDE + x] += 1

    def on_pointer_over(self, hover: sig.HoverSignal) -> None:
        if not self._subs.active:
            return
        element = self._attention_element(hover.selector)
        if element is None:
            return
        self._end_attention()
        self._hovered = (element, self.clock.now_ms())

    def on_pointer_out(self, hover: sig.HoverSignal) -> None:
        if not self._subs.active or self._hovered is None:
            return
        if self._attention_element(hover.selector) == self._hovered[0]:
            self._end_attention()

    def movement_grid(self) -> list[int]:
        return list(self._grid)

    def attention_time(self) -> dict[str, float]:
        """
        Seconds per element path, rounded to 0.1, including the current hover.
        """
        totals = dict(self._attention)
        if self._hovered is not None:
            element, since = self._hovered
            totals[element] = totals.get(element, 0.0) + (self.clock.now_ms() - since) / 1000.0
        return {element: round(seconds, 1) for element, seconds in totals.items()}

    def movement_metrics(self) -> dict[str, Any]:
        grid = self.movement_grid()
        peak = max(grid)
        hotspots = []
        if peak > 0:
            hot = [(i, v) for i, v in enumerate(grid) if v > peak * 0.5]
            hot.sort(key=lambda cell: cell[1], reverse=True)
            hotspots = [
                {
                    "x": i % MOVEMENT_GRID_SIDE,
                    "y": i // MOVEMENT_GRID_SIDE,
                    "intensity": round(v / peak * 100),
                }
                for i, v in hot[:MAX_HOTSPOTS]
            ]
        return {
            "grid": grid,
            "attentionTime": self.attention_time(),
            "totalSamples": sum(grid),
            "hotspots": hotspots,
        }

    def reset(self) -> None:
        self._grid = [0] * (MOVEMENT_GRID_SIDE * MOVEMENT_GRID_SIDE)
        self._last_sample_ms = None
        self._attention = {}
        self._hovered = None

    def _attention_element(self, path: str) -> str | None:
        for selector in self.attention_selectors:
            element = matching_element(path, selector)
            if element is not None:
                return element
        return None

    def _end_attention(self) -> None:
        if self._hovered is None:
            return
        element, since = self._hovered
        self._hovered = None
        elapsed_s = (self.clock.now_ms() - since) / 1000.0
        self._attention[element] = self._attention.get(element, 0.0) + elapsed_s


def _grid_cell(position: float, extent: float) -> int:
    if extent <= 0:
        return 0
    return max(0, min(MOVEMENT_GRID_SIDE - 1, round(position / extent * 100)))


class ErrorTracker:
    def __init__(self, *, emitter: EventEmitter, source: sig.SignalSource) -> None:
        self.emitter = emitter
        self.source = source
        self._subs = _Subscriptions()

    def start(self) -> None:
        if self._subs.active:
            return
        self._subs.subscribe(self.source, sig.ERROR, self.on_error)
        self._subs.active = True

    def stop(self) -> None:
        self._subs.release()

    def on_error(self, err: sig.ErrorSignal) -> None:
        if not self._subs.active:
            return
        self.emitter.emit(
            "error",
            error_message=err.message,
            error_stack=err.stack,
            error_type=err.error_type or "Error",
            error_source=err.source,
            error_line=err.line,
            error_column=err.column,
        )

    def capture_exception(self, exc: BaseException) -> None:
        """
        Report a caught exception from host code.
        """
        if not self._subs.active:
            return
        tb = exc.__traceback__
        frames = traceback.extract_tb(tb) if tb is not None else []
        last = frames[-1] if frames else None
        self.emitter.emit(
            "error",
            error_message=str(exc) or type(exc).__name__,
            error_stack="".join(traceback.format_exception(type(exc), exc, tb)),
            error_type=type(exc).__name__,
            error_source=last.filename if last else None,
            error_line=last.lineno if last else None,
        )


class PageViewTracker:
    """
    One pageview per distinct URL. Leaving a page first emits a hidden
    visibility_change carrying the seconds spent on it.
    """

    def __init__(
        self,
        *,
        emitter: EventEmitter,
        source: sig.SignalSource,
        clock: Clock,
        page: PageEnvironment,
        on_page_change: Callable[[str], None] | None = None,
    ) -> None:
        self.emitter = emitter
        self.source = source
        self.clock = clock
        self.page = page
        self.on_page_change = on_page_change
        self._subs = _Subscriptions()
        self._last_url = ""
        self._page_start_ms = clock.now_ms()

    def start(self) -> None:
        if self._subs.active:
            return
        self._subs.subscribe(self.source, sig.NAVIGATION, self.on_navigation)
        self._subs.active = True
        self.track_page_view()

    def stop(self) -> None:
        self._subs.release()

    def on_navigation(self, nav: sig.NavigationSignal) -> None:
        if not self._subs.active:
            return
        self.page.navigate(nav.url, nav.title)
        if self.page.url != self._last_url:
            self.track_page_view()

    def track_manual_page_view(self, url: str | None = None) -> None:
        if url:
            self._last_url = url
        self.track_page_view()

    def track_page_view(self) -> None:
        if not self._subs.active:
            return
        now = self.clock.now_ms()
        if self._last_url:
            self.emitter.emit(
                "visibility_change",
                visibility_state="hidden",
                time_on_page=round((now - self._page_start_ms) / 1000.0),
            )

        self.emitter.emit(
            "pageview",
            page_title=self.page.title,
            referrer=self._last_url or self.page.referrer or None,
        )
        self._last_url = self.page.url
        self._page_start_ms = now
        if self.on_page_change is not None:
            self.on_page_change(self.page.url)


class VisibilityTracker:
    def __init__(self, *, emitter: EventEmitter, source: sig.SignalSource, clock: Clock) -> None:
        self.emitter = emitter
        self.source = source
        self.clock = clock
        self._subs = _Subscriptions()
        self._page_start_ms = clock.now_ms()

    def start(self) -> None:
        if self._subs.active:
            return
        self._subs.subscribe(self.source, sig.VISIBILITY, self.on_visibility)
        self._subs.active = True

    def stop(self) -> None:
        self._subs.release()

    def on_visibility(self, vis: sig.VisibilitySignal) -> None:
        if not self._subs.active:
            return
        now = self.clock.now_ms()
        hidden = vis.state == "hidden"
        self.emitter.emit(
            "visibility_change",
            visibility_state=vis.state,
            time_on_page=round((now - self._page_start_ms) / 1000.0) if hidden else None,
        )
        if not hidden:
            self._page_start_ms = now
