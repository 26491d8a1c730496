from __future__ import annotations

KV_TABLE_NAME = "kv_store"

KV_DDL = f"""
CREATE TABLE IF NOT EXISTS {KV_TABLE_NAME} (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,

    value TEXT NOT NULL,

    -- NULL means the entry never expires
    expires_at_ms DOUBLE,

    PRIMARY KEY (namespace, key)
);
"""

KV_INDEXES = [
    f"CREATE INDEX IF NOT EXISTS idx_kv_expires ON {KV_TABLE_NAME}(expires_at_ms);",
]


def create_schema(conn) -> None:
    """
    Create tables/indexes. No migrations. Safe to call on every open.
    """
    conn.execute(KV_DDL)
    for ddl in KV_INDEXES:
        conn.execute(ddl)
