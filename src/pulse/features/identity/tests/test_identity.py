from __future__ import annotations

import json

import simpy

T0 = 1_700_000_000_000.0


def _mk_store(env, storage, **kwargs):
    from pulse.core.clock import SimClock
    from pulse.core.ids import CounterIdGenerator
    from pulse.features.identity.service import IdentityStore

    clock = SimClock(env, start_epoch_ms=T0)
    return IdentityStore(
        storage=storage,
        clock=clock,
        ids=kwargs.pop("ids", CounterIdGenerator("id")),
        **kwargs,
    )


def _memory(env):
    from pulse.features.storage.service import MemoryStorage

    return MemoryStorage(now_ms=lambda: T0 + env.now * 1000.0)


def test_visitor_id_created_once_and_reused():
    env = simpy.Environment()
    storage = _memory(env)

    s1 = _mk_store(env, storage)
    vid = s1.get_visitor_id()
    s2 = _mk_store(env, storage)

    assert vid == s2.get_visitor_id()
    assert storage.get("visitor_id") == vid


def test_session_restored_when_recent():
    env = simpy.Environment()
    storage = _memory(env)
    storage.set("session", json.dumps({"sessionId": "sess_old", "lastActivity": T0 - 10_000}))

    store = _mk_store(env, storage)

    assert store.get_session_id() == "sess_old"
    assert store.is_first_batch_for_session() is False


def test_session_replaced_when_expired():
    env = simpy.Environment()
    storage = _memory(env)
    storage.set(
        "session", json.dumps({"sessionId": "sess_old", "lastActivity": T0 - 40 * 60_000})
    )
    started: list[str] = []

    store = _mk_store(env, storage, on_session_start=started.append)

    sid = store.get_session_id()
    assert sid != "sess_old"
    assert started == [sid]
    assert store.is_first_batch_for_session() is True


def test_touch_persists_last_activity():
    env = simpy.Environment()
    storage = _memory(env)
    store = _mk_store(env, storage)

    env.run(until=20)
    store.touch()

    assert store.last_activity_ms == T0 + 20_000
    assert json.loads(storage.get("session"))["lastActivity"] == T0 + 20_000

def test_malformed_session_is_a_miss():
    env = simpy.Environment()
    storage = _memory(env)
    storage.set("session", "{not json")

    store = _mk_store(env, storage)

    assert store.get_session_id()
    assert json.loads(storage.get("session"))["sessionId"] == store.get_session_id()


def test_activity_after_timeout_rolls_session():
    from pulse.features.identity.service import IdentityConfig

    env = simpy.Environment()
    store = _mk_store(env, _memory(env), cfg=IdentityConfig(session_timeout_minutes=1))
    first = store.get_session_id()
    store.mark_first_batch_sent()

    env.run(until=30)
    store.on_activity("click")
    assert store.get_session_id() == first

    env.run(until=100)
    store.on_activity("scroll")
    assert store.get_session_id() != first
    assert store.is_first_batch_for_session() is True


def test_pointermove_is_throttled():
    env = simpy.Environment()
    store = _mk_store(env, _memory(env))

    env.run(until=1)
    store.on_activity("pointermove")
    assert store.last_activity_ms == T0 + 1000

    env.run(until=3)
    store.on_activity("pointermove")
    assert store.last_activity_ms == T0 + 1000

    env.run(until=7)
    store.on_activity("pointermove")
    assert store.last_activity_ms == T0 + 7000


def test_identify_keeps_ids_and_merges_traits():
    env = simpy.Environment()
    store = _mk_store(env, _memory(env))
    vid, sid = store.get_visitor_id(), store.get_session_id()

    store.identify("user-1", {"plan": "free"})
    store.identify("user-1", {"seats": 3})

    assert store.get_user_identifier() == "user-1"
    assert store.get_user_traits() == {"plan": "free", "seats": 3}
    assert (store.get_visitor_id(), store.get_session_id()) == (vid, sid)

    store.clear_identity()
    assert store.get_user_identifier() is None


def test_session_metadata_reads_page_and_utm():
    from pulse.core.types import PageEnvironment

    env = simpy.Environment()
    page = PageEnvironment(
        url="https://shop.test/?utm_source=news&utm_campaign=spring&ref=x",
        referrer="https://search.test/",
        user_agent="UA",
        language="de",
        screen_width=1920,
        screen_height=1080,
        viewport_width=1280,
        viewport_height=720,
    )
    store = _mk_store(env, _memory(env), page=page)

    meta = store.get_session_metadata()
    assert meta.utm_params == {"utm_source": "news", "utm_campaign": "spring"}
    assert meta.language == "de"
    assert meta.viewport_width == 1280

    page.navigate("https://shop.test/cart")
    assert store.get_session_metadata().utm_params == {}


def test_signals_drive_activity_until_detached():
    from pulse.core import signals as sig
    from pulse.features.identity.service import IdentityConfig

    env = simpy.Environment()
    bus = sig.SignalBus()
    store = _mk_store(env, _memory(env), cfg=IdentityConfig(session_timeout_minutes=1))
    store.attach(bus)
    first = store.get_session_id()

    env.run(until=120)
    bus.publish(sig.VISIBILITY, sig.VisibilitySignal("hidden"))
    assert store.get_session_id() == first

    bus.publish(sig.VISIBILITY, sig.VisibilitySignal("visible"))
    second = store.get_session_id()
    assert second != first

    store.detach()
    env.run(until=300)
    bus.publish(sig.CLICK, sig.ClickSignal(x=1, y=1))
    assert store.get_session_id() == second


def test_storage_failure_degrades_to_memory():
    from pulse.features.storage.service import SafeStorage

    class BrokenStorage:
        def get(self, key):
            raise OSError("quota")

        def set(self, key, value, ttl_ms=None):
            raise OSError("quota")

        def remove(self, key):
            raise OSError("quota")

    env = simpy.Environment()
    storage = SafeStorage(BrokenStorage(), now_ms=lambda: T0 + env.now * 1000.0)

    store = _mk_store(env, storage)

    assert storage.degraded is True
    assert store.get_visitor_id() == storage.get("visitor_id")
    assert store.get_session_id()


def test_reset_visitor_mints_new_ids():
    env = simpy.Environment()
    storage = _memory(env)
    store = _mk_store(env, storage)
    vid, sid = store.get_visitor_id(), store.get_session_id()

    store.reset_visitor()

    assert store.get_visitor_id() != vid
    assert store.get_session_id() != sid
