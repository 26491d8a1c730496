from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import parse_qs, urlsplit

from pulse.core import signals as sig
from pulse.core.ids import IdGenerator, UuidGenerator
from pulse.core.logging import get_logger
from pulse.core.types import PageEnvironment
from pulse.features.events.schema import SessionMetadata
from pulse.features.storage.service import Storage

VISITOR_ID_KEY = "visitor_id"
SESSION_KEY = "session"

UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")

ACTIVITY_KINDS = frozenset({"click", "scroll", "keydown", "pointermove", "visible"})


class ClockLike(Protocol):
    def now_ms(self) -> float: ...


@dataclass(frozen=True)
class IdentityConfig:
    session_timeout_minutes: float = 30.0
    pointer_throttle_s: float = 5.0

    @property
    def timeout_ms(self) -> float:
        return float(self.session_timeout_minutes) * 60_000.0


def extract_utm_params(url: str) -> dict[str, str]:
    query = parse_qs(urlsplit(url).query)
    out: dict[str, str] = {}
    for key in UTM_KEYS:
        values = query.get(key)
        if values and values[0]:
            out[key] = values[0]
    return out


def get_or_create_visitor_id(storage: Storage, ids: IdGenerator) -> str:
    """
    Shared by the identity store and the experiment client so both agree on
    one visitor per storage scope.
    """
    stored = storage.get(VISITOR_ID_KEY)
    if stored:
        return stored
    new_id = ids.new_id()
    storage.set(VISITOR_ID_KEY, new_id)
    return new_id


class IdentityStore:
    """
    Owns visitor + session identity.

    - Visitor id: created once per storage scope, no TTL.
    - Session: restored when last activity is within the timeout, otherwise
      replaced. Rollover happens at construction and on activity signals only.
    - First-batch flag: session metadata rides on the first delivered batch.
    """

    def __init__(
        self,
        *,
        storage: Storage,
        clock: ClockLike,
        cfg: IdentityConfig = IdentityConfig(),
        ids: IdGenerator | None = None,
        page: PageEnvironment | None = None,
        on_session_start: Callable[[str], None] | None = None,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self.cfg = cfg
        self._ids = ids if ids is not None else UuidGenerator()
        self.page = page if page is not None else PageEnvironment()
        self._on_session_start = on_session_start
        self._logger = get_logger(__name__)

        self._session_id: str | None = None
        self._last_activity_ms: float = clock.now_ms()
        self._is_first_batch = True
        self._last_pointer_ms: float | None = None
        self._user_identifier: str | None = None
        self._user_traits: dict[str, Any] = {}
        self._unsubscribe: list[Callable[[], None]] = []

        self._visitor_id = get_or_create_visitor_id(storage, self._ids)
        self._restore_or_start_session()

    # ----------------------------
    # Public API
    # ----------------------------
    def get_visitor_id(self) -> str:
        return self._visitor_id

    def get_session_id(self) -> str:
        if self._session_id is None:
            return self.start_new_session()
        return self._session_id

    @property
    def last_activity_ms(self) -> float:
        return self._last_activity_ms

    def touch(self) -> None:
        self._last_activity_ms = self._clock.now_ms()
        self._persist_session()

    def identify(self, user_id: str, traits: dict[str, Any] | None = None) -> None:
        self._user_identifier = user_id
        if traits:
            self._user_traits = {**self._user_traits, **traits}
        self._logger.debug("identified", extra={"feature": "identity", "visitor_id": self._visitor_id})

    def clear_identity(self) -> None:
        self._user_identifier = None
        self._user_traits = {}

    def get_user_identifier(self) -> str | None:
        return self._user_identifier

    def get_user_traits(self) -> dict[str, Any]:
        return dict(self._user_traits)

    def is_first_batch_for_session(self) -> bool:
        return self._is_first_batch

    def mark_first_batch_sent(self) -> None:
        self._is_first_batch = False

    def get_session_metadata(self) -> SessionMetadata:
        p = self.page
        return SessionMetadata(
            user_agent=p.user_agent,
            screen_width=int(p.screen_width),
            screen_height=int(p.screen_height),
            viewport_width=int(p.viewport_width),
            viewport_height=int(p.viewport_height),
            language=p.language,
            referrer=p.referrer or None,
            utm_params=extract_utm_params(p.url),
        )

    def on_activity(self, kind: str) -> None:
        """
        Opportunistic expiry check driven by user activity.
        pointermove is throttled; every other kind is checked each time.
        """
        if kind not in ACTIVITY_KINDS:
            raise ValueError(f"Unsupported activity kind={kind!r}. Allowed={sorted(ACTIVITY_KINDS)}")

        now = self._clock.now_ms()
        if kind == "pointermove":
            throttle_ms = float(self.cfg.pointer_throttle_s) * 1000.0
            if self._last_pointer_ms is not None and now - self._last_pointer_ms < throttle_ms:
                return
            self._last_pointer_ms = now

        if now - self._last_activity_ms > self.cfg.timeout_ms:
            self.start_new_session()
        else:
            self._last_activity_ms = now
            self._persist_session()

    def start_new_session(self) -> str:
        self._session_id = self._ids.new_id()
        self._last_activity_ms = self._clock.now_ms()
        self._is_first_batch = True
        self._persist_session()
        self._logger.info(
            "session_started",
            extra={
                "feature": "identity",
                "session_id": self._session_id,
                "visitor_id": self._visitor_id,
            },
        )
        if self._on_session_start is not None:
            self._on_session_start(self._session_id)
        return self._session_id

    def reset_visitor(self) -> str:
        """
        Explicit reset: new visitor id and a fresh session.
        """
        self._storage.remove(VISITOR_ID_KEY)
        self._visitor_id = get_or_create_visitor_id(self._storage, self._ids)
        self.clear_identity()
        self.start_new_session()
        return self._visitor_id

    def attach(self, source: sig.SignalSource) -> None:
        if self._unsubscribe:
            return
        for kind in (sig.CLICK, sig.SCROLL, sig.KEYDOWN, sig.POINTER_MOVE):
            self._unsubscribe.append(
                source.subscribe(kind, lambda _s, k=kind: self.on_activity(k))
            )
        self._unsubscribe.append(source.subscribe(sig.VISIBILITY, self._on_visibility))

    def detach(self) -> None:
        for unsub in self._unsubscribe:
            unsub()
        self._unsubscribe = []

    # ----------------------------
    # Internals
    # ----------------------------
    def _on_visibility(self, signal: sig.VisibilitySignal) -> None:
        if signal is not None and signal.state == "visible":
            self.on_activity("visible")

    def _restore_or_start_session(self) -> None:
        stored = self._read_stored_session()
        if stored is not None:
            session_id, last_activity = stored
            if self._clock.now_ms() - last_activity < self.cfg.timeout_ms:
                self._session_id = session_id
                self._last_activity_ms = last_activity
                # metadata went out with this session's first batch already
                self._is_first_batch = False
                self._logger.debug(
                    "session_restored",
                    extra={"feature": "identity", "session_id": session_id},
                )
                return
        self.start_new_session()

    def _read_stored_session(self) -> tuple[str, float] | None:
        raw = self._storage.get(SESSION_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
            session_id = str(data["sessionId"])
            last_activity = float(data["lastActivity"])
        except (ValueError, KeyError, TypeError):
            return None
        if not session_id:
            return None
        return session_id, last_activity

    def _persist_session(self) -> None:
        if self._session_id is None:
            return
        data = {"sessionId": self._session_id, "lastActivity": self._last_activity_ms}
        self._storage.set(SESSION_KEY, json.dumps(data), ttl_ms=self.cfg.timeout_ms)
