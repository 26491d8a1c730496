from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pulse.core.logging import get_logger

# Signal kinds published by the host platform
CLICK = "click"
SCROLL = "scroll"
KEYDOWN = "keydown"
POINTER_MOVE = "pointermove"
POINTER_OVER = "pointerover"
POINTER_OUT = "pointerout"
VISIBILITY = "visibility"
NAVIGATION = "navigation"
ERROR = "error"
PAGE_HIDE = "pagehide"
RECORDING = "recording"

Callback = Callable[[Any], None]


@dataclass(frozen=True)
class ClickSignal:
    x: float
    y: float
    page_width: float = 0.0
    page_height: float = 0.0
    selector: str = ""
    tag: str = ""
    text: str = ""
    classes: str = ""
    element_id: str | None = None


@dataclass(frozen=True)
class ScrollSignal:
    scroll_top: float
    viewport_height: float
    page_height: float


@dataclass(frozen=True)
class PointerSignal:
    x: float
    y: float
    viewport_width: float
    viewport_height: float


@dataclass(frozen=True)
class HoverSignal:
    selector: str  # element path, outermost first: "body > div.card > button.cta"


@dataclass(frozen=True)
class ErrorSignal:
    message: str
    stack: str | None = None
    error_type: str = "Error"
    source: str | None = None
    line: int | None = None
    column: int | None = None


@dataclass(frozen=True)
class NavigationSignal:
    url: str
    title: str = ""


@dataclass(frozen=True)
class VisibilitySignal:
    state: str  # "visible" | "hidden"


class SignalSource(Protocol):
    def subscribe(self, kind: str, callback: Callback) -> Callable[[], None]: ...


class SignalBus:
    """
    In-process producer of platform signals. Subscribers run in subscription
    order; a failing subscriber is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._subs: dict[str, list[Callback]] = defaultdict(list)
        self._logger = get_logger(__name__)

    def subscribe(self, kind: str, callback: Callback) -> Callable[[], None]:
        self._subs[kind].append(callback)

        def unsubscribe() -> None:
            subs = self._subs.get(kind, [])
            if callback in subs:
                subs.remove(callback)

        return unsubscribe

    def publish(self, kind: str, signal: Any = None) -> None:
        for cb in list(self._subs.get(kind, ())):
            try:
                cb(signal)
            except Exception:
                self._logger.exception("signal_subscriber_failed", extra={"reason": kind})

    def subscriber_count(self, kind: str) -> int:
        return len(self._subs.get(kind, ()))
