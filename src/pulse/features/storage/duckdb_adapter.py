from __future__ import annotations

import os
import time
from collections.abc import Callable

import duckdb

from .schema import KV_TABLE_NAME, create_schema


def _wall_ms() -> float:
    return time.time() * 1000.0


class DuckDBStorage:
    """
    DuckDB-backed key/value store. Owns the connection and schema.

    Values are strings (callers serialize JSON themselves). An optional TTL
    turns into an absolute expiry; expired rows read as missing and are purged.
    """

    def __init__(
        self,
        path: str,
        *,
        clean_slate: bool = False,
        namespace: str = "default",
        now_ms: Callable[[], float] = _wall_ms,
    ) -> None:
        self.path = path
        self.clean_slate = clean_slate
        self.namespace = namespace
        self._now_ms = now_ms
        self._conn: duckdb.DuckDBPyConnection | None = None

    def open(self) -> None:
        if self.clean_slate and os.path.exists(self.path):
            os.remove(self.path)

        # Ensure parent dir exists
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        self._conn = duckdb.connect(self.path)
        create_schema(self._conn)

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError("DuckDBStorage not opened. Call open() first.")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def get(self, key: str) -> str | None:
        row = self.conn.execute(
            f"SELECT value, expires_at_ms FROM {KV_TABLE_NAME} WHERE namespace = ? AND key = ?",
            [self.namespace, key],
        ).fetchone()
        if row is None:
            return None

        value, expires_at_ms = row
        if expires_at_ms is not None and float(expires_at_ms) <= self._now_ms():
            self.remove(key)
            return None
        return str(value)

    def set(self, key: str, value: str, ttl_ms: float | None = None) -> None:
        expires_at_ms = None if ttl_ms is None else self._now_ms() + float(ttl_ms)
        self.conn.execute(
            f"INSERT OR REPLACE INTO {KV_TABLE_NAME} (namespace, key, value, expires_at_ms) "
            "VALUES (?, ?, ?, ?)",
            [self.namespace, key, value, expires_at_ms],
        )

    def remove(self, key: str) -> None:
        self.conn.execute(
            f"DELETE FROM {KV_TABLE_NAME} WHERE namespace = ? AND key = ?",
            [self.namespace, key],
        )

    def purge_expired(self) -> int:
        """
        Delete every expired row in this namespace. Returns the number removed.
        """
        now = self._now_ms()
        res = self.conn.execute(
            f"SELECT COUNT(*) FROM {KV_TABLE_NAME} "
            "WHERE namespace = ? AND expires_at_ms IS NOT NULL AND expires_at_ms <= ?",
            [self.namespace, now],
        ).fetchone()
        n = int(res[0]) if res else 0
        if n:
            self.conn.execute(
                f"DELETE FROM {KV_TABLE_NAME} "
                "WHERE namespace = ? AND expires_at_ms IS NOT NULL AND expires_at_ms <= ?",
                [self.namespace, now],
            )
        return n

    def count_keys(self) -> int:
        """
        Convenience method for sanity checks/tests.
        """
        res = self.conn.execute(
            f"SELECT COUNT(*) FROM {KV_TABLE_NAME} WHERE namespace = ?",
            [self.namespace],
        ).fetchone()
        return int(res[0]) if res else 0
