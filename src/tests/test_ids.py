import re

from pulse.core.ids import CounterIdGenerator, UuidGenerator
from pulse.core.rng import RNG

UUID_V4 = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$")


def test_seeded_uuids_are_reproducible_and_v4_shaped():
    a = UuidGenerator(rng=RNG(123))
    b = UuidGenerator(rng=RNG(123))

    ids_a = [a.new_id() for _ in range(3)]
    ids_b = [b.new_id() for _ in range(3)]

    assert ids_a == ids_b
    assert len(set(ids_a)) == 3
    assert all(UUID_V4.match(i) for i in ids_a)


def test_unseeded_uuids_are_v4():
    assert UUID_V4.match(UuidGenerator().new_id())


def test_counter_ids_are_monotonic():
    gen = CounterIdGenerator("sess")
    assert [gen.new_id(), gen.new_id()] == ["sess_00000001", "sess_00000002"]
