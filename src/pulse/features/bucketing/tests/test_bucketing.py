from __future__ import annotations

import pytest

from pulse.features.bucketing.service import bucket, bucket_key, murmur3_32, pick_weighted

REFERENCE_VISITOR = "11111111-1111-4111-8111-111111111111"


@pytest.mark.parametrize(
    "key,seed,expected",
    [
        ("", 0, 0),
        ("", 42, 142593372),
        ("a", 0, 1009084850),
        ("hello", 0, 613153351),
        ("hello", 42, 3806057185),
        ("Hello, world!", 0, 3224780355),
        ("The quick brown fox jumps over the lazy dog", 0, 776992547),
    ],
)
def test_murmur3_matches_reference_vectors(key, seed, expected):
    assert murmur3_32(key, seed) == expected


def test_murmur3_non_ascii_uses_low_byte_of_each_code_unit():
    assert murmur3_32("été") == 727614503
    assert murmur3_32("中文") == 1012793263


def test_bucket_reference_values():
    assert bucket("checkout-flow", REFERENCE_VISITOR) == 99
    assert bucket("checkout-flow", REFERENCE_VISITOR, "v2") == 68
    assert bucket("pricing-page", "visitor-42") == 8
    assert bucket("homepage-hero", "abc") == 85


def test_bucket_is_stable_and_in_range():
    values = {bucket("exp", f"visitor-{i}") for i in range(500)}
    assert all(0 <= v < 100 for v in values)
    # enough spread that the hash is not degenerate
    assert len(values) > 80

    for i in range(50):
        assert bucket("exp", f"v{i}") == bucket("exp", f"v{i}")


def test_empty_salt_is_no_salt():
    assert bucket_key("e", "v", "") == "e:v"
    assert bucket("e", "v", "") == bucket("e", "v")
    assert bucket_key("e", "v", "s") == "e:v:s"


def test_pick_weighted_cumulative_ranges():
    weights = [50, 50]
    assert pick_weighted(weights, 0) == 0
    assert pick_weighted(weights, 49) == 0
    assert pick_weighted(weights, 50) == 1
    assert pick_weighted(weights, 99) == 1


def test_pick_weighted_partial_and_degenerate():
    assert pick_weighted([30, 20], 60) is None
    assert pick_weighted([0, 0], 10) is None
    assert pick_weighted([0, 100], 0) == 1
    # over-allocated weights are rescaled to 100
    assert pick_weighted([100, 100], 49) == 0
    assert pick_weighted([100, 100], 50) == 1


def _experiment(allocation: float = 50.0, device_types: tuple[str, ...] = ()):
    from pulse.features.experiments.types import ExperimentConfig, Targeting, VariationConfig

    return ExperimentConfig(
        key="pricing-page",
        name="Pricing page",
        traffic_allocation=allocation,
        targeting=Targeting(device_types=device_types) if device_types else None,
        variations=(
            VariationConfig(key="control", name="Control", weight=50, is_control=True),
            VariationConfig(key="annual-first", name="Annual first", weight=50),
        ),
    )


def test_evaluate_traffic_gate_and_arm_choice():
    from pulse.features.bucketing.service import evaluate

    exp = _experiment(allocation=50)

    # traffic bucket 79 is outside a 50% allocation
    assert evaluate(exp, "visitor-1") == (None, 79)

    # traffic 34, arm bucket 27 -> first arm
    variation, b = evaluate(exp, "visitor-2")
    assert (variation.key, b) == ("control", 34)

    # traffic 44, arm bucket 87 -> second arm
    variation, b = evaluate(exp, "visitor-4")
    assert (variation.key, b) == ("annual-first", 44)


def test_evaluate_respects_device_targeting():
    from pulse.features.bucketing.service import evaluate

    exp = _experiment(allocation=100, device_types=("mobile",))

    assert evaluate(exp, "visitor-2", "desktop") == (None, 34)
    variation, _ = evaluate(exp, "visitor-2", "mobile")
    assert variation is not None
