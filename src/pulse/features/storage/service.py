from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

from pulse.core.logging import get_logger

from .duckdb_adapter import DuckDBStorage


class Storage(Protocol):
    """
    Minimal persisted-state surface shared by identity and experiments.
    """

    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str, ttl_ms: float | None = None) -> None: ...
    def remove(self, key: str) -> None: ...


def _wall_ms() -> float:
    return time.time() * 1000.0


class MemoryStorage:
    """
    Process-lifetime storage with the same TTL semantics as DuckDBStorage.
    """

    def __init__(self, now_ms: Callable[[], float] = _wall_ms) -> None:
        self._now_ms = now_ms
        self._items: dict[str, tuple[str, float | None]] = {}

    def get(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at_ms = item
        if expires_at_ms is not None and expires_at_ms <= self._now_ms():
            del self._items[key]
            return None
        return value

    def set(self, key: str, value: str, ttl_ms: float | None = None) -> None:
        expires_at_ms = None if ttl_ms is None else self._now_ms() + float(ttl_ms)
        self._items[key] = (value, expires_at_ms)

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class SafeStorage:
    """
    Wraps a backend so storage failures never reach callers.

    The first backend error is logged once; from then on every call goes to an
    in-memory fallback for the rest of the process. Persistence is an
    optimization, identity keeps working without it.
    """

    def __init__(self, backend: Storage, *, now_ms: Callable[[], float] = _wall_ms) -> None:
        self._backend = backend
        self._fallback = MemoryStorage(now_ms)
        self.degraded = False
        self._logger = get_logger(__name__)

    def degrade(self, op: str, exc: Exception) -> None:
        if not self.degraded:
            self._logger.warning(
                "storage_unavailable",
                extra={"feature": "storage", "reason": op, "error": repr(exc)},
            )
        self.degraded = True

    def get(self, key: str) -> str | None:
        if not self.degraded:
            try:
                return self._backend.get(key)
            except Exception as exc:
                self.degrade("get", exc)
        return self._fallback.get(key)

    def set(self, key: str, value: str, ttl_ms: float | None = None) -> None:
        if not self.degraded:
            try:
                self._backend.set(key, value, ttl_ms)
                return
            except Exception as exc:
                self.degrade("set", exc)
        self._fallback.set(key, value, ttl_ms)

    def remove(self, key: str) -> None:
        if not self.degraded:
            try:
                self._backend.remove(key)
                return
            except Exception as exc:
                self.degrade("remove", exc)
        self._fallback.remove(key)


def open_storage(
    duckdb_path: str | None,
    *,
    clean_slate: bool = False,
    now_ms: Callable[[], float] = _wall_ms,
) -> tuple[SafeStorage, DuckDBStorage | None]:
    """
    Build the default storage for the composition root.

    Returns the safe wrapper and the DuckDB backend (None when in-memory) so
    the caller can close it on shutdown.
    """
    if duckdb_path is None:
        return SafeStorage(MemoryStorage(now_ms), now_ms=now_ms), None

    backend = DuckDBStorage(duckdb_path, clean_slate=clean_slate, now_ms=now_ms)
    safe = SafeStorage(backend, now_ms=now_ms)
    try:
        backend.open()
    except Exception as exc:
        safe.degrade("open", exc)
    return safe, backend
