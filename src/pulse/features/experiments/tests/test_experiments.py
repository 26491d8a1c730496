from __future__ import annotations

import json

import httpx
import pytest
import simpy

T0 = 1_700_000_000_000.0

PRICING = {
    "key": "pricing-page",
    "name": "Pricing page",
    "trafficAllocation": 100,
    "targeting": None,
    "variations": [
        {"key": "control", "name": "Control", "weight": 50, "isControl": True, "configuration": None},
        {
            "key": "annual-first",
            "name": "Annual first",
            "weight": 50,
            "isControl": False,
            "configuration": {"headline": "Save 20%"},
        },
    ],
}


class FakeCollector:
    def __init__(self, *, assign_status: int = 200, variation: str = "annual-first") -> None:
        self.assign_status = assign_status
        self.variation = variation
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/sdk/config":
            return httpx.Response(200, json={"success": True, "experiments": [PRICING]})
        if path == "/sdk/assign":
            if self.assign_status != 200:
                return httpx.Response(self.assign_status, json={"error": "nope"})
            v = next(v for v in PRICING["variations"] if v["key"] == self.variation)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "assigned": True,
                    "variation": {"key": v["key"], "name": v["name"], "configuration": v["configuration"]},
                    "bucketValue": 42,
                    "isNewAssignment": True,
                    "assignmentId": "asg_1",
                },
            )
        if path == "/sdk/track":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"error": "not found"})

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def _mk_client(env, handler, storage=None, **kwargs):
    from pulse.core.clock import SimClock
    from pulse.core.http import CollectorTransport
    from pulse.core.ids import CounterIdGenerator
    from pulse.features.experiments.service import ExperimentClient
    from pulse.features.storage.service import MemoryStorage

    clock = SimClock(env, start_epoch_ms=T0)
    transport = CollectorTransport(
        base_url="http://collector.test",
        api_key="pk_test",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    storage = storage if storage is not None else MemoryStorage(now_ms=clock.now_ms)
    return ExperimentClient(
        transport=transport,
        storage=storage,
        clock=clock,
        ids=kwargs.pop("ids", CounterIdGenerator("vis")),
        **kwargs,
    )


def test_second_get_variation_is_served_from_cache():
    env = simpy.Environment()
    collector = FakeCollector()
    client = _mk_client(env, collector)
    client.cache.store_config(client.fetch_config().experiments)
    collector.requests.clear()

    first = client.get_variation("pricing-page")
    assert collector.paths() == ["/sdk/assign"]

    second = client.get_variation("pricing-page")
    assert collector.paths() == ["/sdk/assign"]
    assert first.key == second.key == "annual-first"
    assert second.configuration == {"headline": "Save 20%"}


def test_stale_config_is_refetched_once_per_ttl():
    env = simpy.Environment()
    collector = FakeCollector()
    client = _mk_client(env, collector)

    client.get_variation("pricing-page")
    client.get_variation("pricing-page")
    client.get_variation("pricing-page")
    assert collector.paths() == ["/sdk/assign", "/sdk/config"]

    env.run(until=61)
    client.get_variation("pricing-page")
    assert collector.paths() == ["/sdk/assign", "/sdk/config", "/sdk/config"]


def test_track_without_assignment_makes_no_request():
    env = simpy.Environment()
    collector = FakeCollector()
    client = _mk_client(env, collector)

    result = client.track("checkout-flow", "purchase", 99.99)

    assert result.success is False
    assert result.error == "Not assigned to experiment"
    assert collector.requests == []


def test_track_after_assignment_posts_conversion():
    env = simpy.Environment()
    collector = FakeCollector()
    client = _mk_client(env, collector)
    client.assign("pricing-page")

    result = client.track("pricing-page", "purchase", 99.99, {"plan": "pro"})

    assert result.success is True
    body = json.loads(collector.requests[-1].content)
    assert body == {
        "experimentKey": "pricing-page",
        "visitorId": client.get_visitor_id(),
        "eventName": "purchase",
        "eventValue": 99.99,
        "properties": {"plan": "pro"},
    }


@pytest.mark.parametrize("status", [400, 500, 503])
def test_assign_http_failure_degrades_to_not_assigned(status):
    env = simpy.Environment()
    client = _mk_client(env, FakeCollector(assign_status=status))

    result = client.assign("pricing-page")

    assert (result.success, result.assigned, result.variation) == (False, False, None)
    assert result.bucket_value is None
    assert client.get_active_experiments() == {}
    assert client.get_variation("pricing-page") is None


def test_network_errors_never_escape():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    env = simpy.Environment()
    client = _mk_client(env, handler)

    assert client.get_variation("pricing-page") is None
    assert client.fetch_config().success is False
    client.cache.put("pricing-page", "control", "asg_0")
    assert client.track("pricing-page", "purchase").success is False


def test_malformed_assignment_body_is_not_assigned():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "assigned": True, "variation": {"name": "x"}})

    env = simpy.Environment()
    client = _mk_client(env, handler)

    assert client.assign("pricing-page").assigned is False


def test_cached_assignment_is_not_overwritten():
    env = simpy.Environment()
    client = _mk_client(env, FakeCollector(variation="annual-first"))
    client.cache.put("pricing-page", "control", "asg_0")

    client.assign("pricing-page")

    assert client.get_active_experiments() == {
        "pricing-page": {"variationKey": "control", "assignmentId": "asg_0"}
    }
    assert client.get_variation("pricing-page").key == "control"


def test_cached_variation_survives_config_outage_without_reassigning():
    class ConfigDown(FakeCollector):
        def __call__(self, request: httpx.Request) -> httpx.Response:
            if request.url.path == "/sdk/config":
                self.requests.append(request)
                return httpx.Response(503, json={"error": "down"})
            return super().__call__(request)

    env = simpy.Environment()
    collector = ConfigDown(variation="annual-first")
    client = _mk_client(env, collector)
    client.cache.put("pricing-page", "control", "asg_0")

    variation = client.get_variation("pricing-page")

    assert variation.key == "control"
    assert variation.configuration is None
    assert "/sdk/assign" not in collector.paths()

    result = client.assign("pricing-page")
    assert result.variation.key == "control"
    assert result.assignment_id == "asg_0"
    assert result.is_new_assignment is False
    assert client.get_active_experiments()["pricing-page"]["variationKey"] == "control"

def test_assignments_and_visitor_survive_a_new_client():
    from pulse.features.storage.service import MemoryStorage

    env = simpy.Environment()
    collector = FakeCollector()
    storage = MemoryStorage(now_ms=lambda: T0 + env.now * 1000.0)

    c1 = _mk_client(env, collector, storage=storage)
    c1.assign("pricing-page")
    c2 = _mk_client(env, collector, storage=storage)

    assert c2.get_visitor_id() == c1.get_visitor_id()
    assert c2.get_active_experiments() == c1.get_active_experiments()


def test_visitor_id_is_shared_with_identity_store():
    from pulse.core.clock import SimClock
    from pulse.features.identity.service import IdentityStore
    from pulse.features.storage.service import MemoryStorage

    env = simpy.Environment()
    storage = MemoryStorage(now_ms=lambda: T0 + env.now * 1000.0)
    identity = IdentityStore(storage=storage, clock=SimClock(env, start_epoch_ms=T0))

    client = _mk_client(env, FakeCollector(), storage=storage)

    assert client.get_visitor_id() == identity.get_visitor_id()


def test_malformed_cached_assignments_are_a_miss():
    from pulse.features.experiments.cache import ASSIGNMENTS_KEY
    from pulse.features.storage.service import MemoryStorage

    env = simpy.Environment()
    storage = MemoryStorage(now_ms=lambda: T0)
    storage.set(ASSIGNMENTS_KEY, "[not json")

    client = _mk_client(env, FakeCollector(), storage=storage)

    assert client.get_active_experiments() == {}


def test_reset_clears_assignments_and_rotates_visitor():
    from pulse.features.identity.service import VISITOR_ID_KEY

    env = simpy.Environment()
    client = _mk_client(env, FakeCollector())
    client.get_variation("pricing-page")
    before = client.get_visitor_id()

    client.reset()

    assert client.get_visitor_id() != before
    assert client.storage.get(VISITOR_ID_KEY) == client.get_visitor_id()
    assert client.get_active_experiments() == {}
    assert client.cache.config_snapshot() is None


def test_assign_sends_identity_and_device_context():
    from pulse.core.types import PageEnvironment

    env = simpy.Environment()
    collector = FakeCollector()
    page = PageEnvironment(user_agent="Mozilla/5.0 (iPhone) Mobile Safari", language="fr")
    client = _mk_client(env, collector, environment=page, visitor_id="visitor-9")
    client.identify("user-7")

    client.assign("pricing-page")

    body = json.loads(collector.requests[0].content)
    assert body["visitorId"] == "visitor-9"
    assert body["userIdentifier"] == "user-7"
    assert body["context"] == {
        "deviceType": "mobile",
        "userAgent": "Mozilla/5.0 (iPhone) Mobile Safari",
        "language": "fr",
    }


@pytest.mark.parametrize(
    "ua, expected",
    [
        ("Mozilla/5.0 (Linux; Android 14) Mobile", "mobile"),
        ("Mozilla/5.0 (iPad; CPU OS 17_0)", "tablet"),
        ("Mozilla/5.0 (Linux; Android 14; Tablet)", "tablet"),
        ("Mozilla/5.0 (X11; Linux x86_64)", "desktop"),
    ],
)
def test_infer_device_type(ua, expected):
    from pulse.features.experiments.service import infer_device_type

    assert infer_device_type(ua) == expected


def test_local_evaluation_buckets_without_assign_request():
    env = simpy.Environment()
    collector = FakeCollector()
    client = _mk_client(env, collector, visitor_id="visitor-2", local_evaluation=True)

    variation = client.get_variation("pricing-page")

    # arm bucket 27 falls in the first 50%
    assert variation.key == "control"
    assert collector.paths() == ["/sdk/config"]
    assert client.get_active_experiments() == {}
