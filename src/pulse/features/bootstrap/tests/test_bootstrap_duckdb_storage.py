import duckdb
import httpx
import simpy

from pulse.core.config import parse_config
from pulse.core.http import CollectorTransport
from pulse.features.bootstrap.service import bootstrap_client
from pulse.features.storage.schema import KV_TABLE_NAME


def _boot(cfg):
    transport = CollectorTransport(
        base_url=cfg.client.base_url,
        api_key=cfg.client.api_key,
        client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"success": True}))),
    )
    return bootstrap_client(cfg, env=simpy.Environment(), transport=transport)


def test_bootstrap_persists_identity_in_duckdb(tmp_path):
    db_path = tmp_path / "pulse.duckdb"
    cfg = parse_config(
        {
            "client": {"api_key": "pk_test", "base_url": "http://collector.test"},
            "analytics": {"track_page_views": False},
            "storage": {"duckdb_path": str(db_path)},
            "logging": {"level": "INFO"},
        }
    )

    first = _boot(cfg)
    visitor_id = first.identity.get_visitor_id()
    session_id = first.identity.get_session_id()
    first.shutdown()

    assert db_path.exists()
    con = duckdb.connect(str(db_path), read_only=True)
    rows = dict(con.execute(f"SELECT key, value FROM {KV_TABLE_NAME}").fetchall())
    con.close()

    assert rows["visitor_id"] == visitor_id
    assert session_id in rows["session"]

    # a fresh client on the same file is the same visitor, still inside its session
    second = _boot(cfg)
    assert second.identity.get_visitor_id() == visitor_id
    assert second.identity.get_session_id() == session_id
    second.shutdown()
