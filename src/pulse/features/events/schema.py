from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from typing import Any

EVENT_TYPES: frozenset[str] = frozenset(
    {
        "pageview",
        "click",
        "scroll",
        "error",
        "custom",
        "form_submit",
        "visibility_change",
    }
)

VISIBILITY_STATES: frozenset[str] = frozenset({"visible", "hidden"})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _compact(obj: Any) -> dict[str, Any]:
    """
    camelCase wire dict of a dataclass, dropping None fields.
    """
    out: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        out[_camel(f.name)] = value
    return out


@dataclass(frozen=True, slots=True)
class TrackingEvent:
    """
    One client event. Envelope is (type, timestamp, url); everything else is
    optional and kind-specific. Immutable once created.
    """

    type: str
    timestamp: float  # epoch ms
    url: str

    name: str | None = None
    properties: dict[str, Any] | None = None

    # click
    x: float | None = None
    y: float | None = None
    x_percent: float | None = None
    y_percent: float | None = None
    selector: str | None = None
    element_tag: str | None = None
    element_text: str | None = None
    element_classes: str | None = None
    element_id: str | None = None
    is_rage_click: bool | None = None
    rage_click_sequence: int | None = None

    # scroll
    scroll_depth: int | None = None
    scroll_depth_pixels: int | None = None
    page_height: int | None = None

    # error
    error_message: str | None = None
    error_stack: str | None = None
    error_type: str | None = None
    error_source: str | None = None
    error_line: int | None = None
    error_column: int | None = None

    # pageview / visibility
    page_title: str | None = None
    referrer: str | None = None
    time_on_page: int | None = None
    visibility_state: str | None = None

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unsupported event type={self.type!r}. Allowed={sorted(EVENT_TYPES)}")
        if self.visibility_state is not None and self.visibility_state not in VISIBILITY_STATES:
            raise ValueError(f"Unsupported visibility_state={self.visibility_state!r}")

    def as_payload(self) -> dict[str, Any]:
        """
        Wire representation: camelCase keys, absent fields omitted.
        """
        return _compact(self)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> TrackingEvent:
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _snake(key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class SessionMetadata:
    user_agent: str
    screen_width: int
    screen_height: int
    viewport_width: int
    viewport_height: int
    language: str
    referrer: str | None = None
    utm_params: dict[str, str] | None = None

    def as_payload(self) -> dict[str, Any]:
        return _compact(self)


@dataclass(frozen=True, slots=True)
class EventBatch:
    session_id: str
    visitor_id: str
    events: tuple[TrackingEvent, ...] = field(default_factory=tuple)
    user_identifier: str | None = None
    session: SessionMetadata | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sessionId": self.session_id,
            "visitorId": self.visitor_id,
            "events": [e.as_payload() for e in self.events],
        }
        if self.user_identifier is not None:
            payload["userIdentifier"] = self.user_identifier
        if self.session is not None:
            payload["session"] = self.session.as_payload()
        return payload
