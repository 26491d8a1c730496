from __future__ import annotations


class FakeNow:
    def __init__(self, t: float = 1_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class BrokenStorage:
    def __init__(self) -> None:
        self.calls = 0

    def get(self, key: str) -> str | None:
        self.calls += 1
        raise OSError("quota exceeded")

    def set(self, key: str, value: str, ttl_ms: float | None = None) -> None:
        self.calls += 1
        raise OSError("quota exceeded")

    def remove(self, key: str) -> None:
        self.calls += 1
        raise OSError("quota exceeded")


def test_duckdb_storage_roundtrip_and_clean_slate(tmp_path):
    from pulse.features.storage.duckdb_adapter import DuckDBStorage

    db_path = tmp_path / "pulse.duckdb"

    s1 = DuckDBStorage(str(db_path), clean_slate=True)
    s1.open()
    s1.set("visitor_id", "v-1")
    s1.set("visitor_id", "v-2")  # replace, not duplicate
    assert s1.get("visitor_id") == "v-2"
    assert s1.count_keys() == 1
    s1.close()

    # reopen without clean_slate keeps data
    s2 = DuckDBStorage(str(db_path), clean_slate=False)
    s2.open()
    assert s2.get("visitor_id") == "v-2"
    s2.close()

    # clean_slate removes the old file
    s3 = DuckDBStorage(str(db_path), clean_slate=True)
    s3.open()
    assert s3.get("visitor_id") is None
    s3.close()


def test_duckdb_storage_ttl_expiry(tmp_path):
    from pulse.features.storage.duckdb_adapter import DuckDBStorage

    now = FakeNow()
    s = DuckDBStorage(str(tmp_path / "ttl.duckdb"), clean_slate=True, now_ms=now)
    s.open()

    s.set("session", '{"sessionId":"s1"}', ttl_ms=1_000.0)
    s.set("forever", "x")

    now.t += 999.0
    assert s.get("session") is not None

    now.t += 2.0
    assert s.get("session") is None
    assert s.get("forever") == "x"
    assert s.count_keys() == 1

    s.set("short", "y", ttl_ms=1.0)
    now.t += 5.0
    assert s.purge_expired() == 1
    s.close()


def test_duckdb_storage_namespaces_are_isolated(tmp_path):
    from pulse.features.storage.duckdb_adapter import DuckDBStorage

    path = str(tmp_path / "ns.duckdb")
    a = DuckDBStorage(path, clean_slate=True, namespace="tab-a")
    a.open()
    a.set("k", "a")
    a.close()

    b = DuckDBStorage(path, namespace="tab-b")
    b.open()
    assert b.get("k") is None
    b.close()


def test_memory_storage_ttl():
    from pulse.features.storage.service import MemoryStorage

    now = FakeNow()
    s = MemoryStorage(now)
    s.set("a", "1", ttl_ms=10.0)
    s.set("b", "2")
    now.t += 10.0
    assert s.get("a") is None
    assert s.get("b") == "2"
    s.remove("b")
    s.remove("missing")
    assert len(s) == 0


def test_safe_storage_degrades_to_memory_once():
    from pulse.features.storage.service import SafeStorage

    backend = BrokenStorage()
    s = SafeStorage(backend)

    s.set("visitor_id", "v-1")  # swallowed
    assert s.degraded is True
    assert s.get("visitor_id") == "v-1"  # served from memory
    s.remove("visitor_id")
    assert s.get("visitor_id") is None

    # backend is not retried after the first failure
    assert backend.calls == 1


def test_open_storage_in_memory_and_duckdb(tmp_path):
    from pulse.features.storage.service import open_storage

    mem, backend = open_storage(None)
    assert backend is None
    mem.set("k", "v")
    assert mem.get("k") == "v"

    disk, backend = open_storage(str(tmp_path / "sub" / "pulse.duckdb"), clean_slate=True)
    assert backend is not None
    disk.set("k", "v")
    assert backend.get("k") == "v"
    assert disk.degraded is False
    backend.close()
