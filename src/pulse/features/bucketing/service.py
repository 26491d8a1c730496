from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pulse.features.experiments.types import ExperimentConfig, VariationConfig

_C1 = 0xCC9E2D51
_C2 = 0x1B873593
_MASK = 0xFFFFFFFF

NUM_BUCKETS = 100


def _rotl32(x: int, r: int) -> int:
    return ((x << r) | (x >> (32 - r))) & _MASK


def _code_unit_bytes(key: str) -> bytes:
    """
    One byte per UTF-16 code unit: its low 8 bits.

    Browser clients hash `charCodeAt(i) & 0xff`, so non-ASCII text must be
    reduced the same way for buckets to agree across implementations.
    """
    return key.encode("utf-16-le", "surrogatepass")[::2]


def murmur3_32(key: str, seed: int = 0) -> int:
    """
    MurmurHash3 x86_32 over the code-unit bytes of `key`. Unsigned result.
    """
    data = _code_unit_bytes(key)
    length = len(data)
    nblocks = length // 4
    h1 = seed & _MASK

    for i in range(nblocks):
        k1 = int.from_bytes(data[i * 4 : i * 4 + 4], "little")
        k1 = (k1 * _C1) & _MASK
        k1 = _rotl32(k1, 15)
        k1 = (k1 * _C2) & _MASK

        h1 ^= k1
        h1 = _rotl32(h1, 13)
        h1 = (h1 * 5 + 0xE6546B64) & _MASK

    tail = data[nblocks * 4 :]
    k1 = 0
    if len(tail) >= 3:
        k1 ^= tail[2] << 16
    if len(tail) >= 2:
        k1 ^= tail[1] << 8
    if len(tail) >= 1:
        k1 ^= tail[0]
        k1 = (k1 * _C1) & _MASK
        k1 = _rotl32(k1, 15)
        k1 = (k1 * _C2) & _MASK
        h1 ^= k1

    # finalization mix
    h1 ^= length
    h1 ^= h1 >> 16
    h1 = (h1 * 0x85EBCA6B) & _MASK
    h1 ^= h1 >> 13
    h1 = (h1 * 0xC2B2AE35) & _MASK
    h1 ^= h1 >> 16
    return h1


def bucket_key(experiment_key: str, visitor_id: str, salt: str | None = None) -> str:
    suffix = f":{salt}" if salt else ""
    return f"{experiment_key}:{visitor_id}{suffix}"


def bucket(experiment_key: str, visitor_id: str, salt: str | None = None) -> int:
    """
    Deterministic bucket in [0, 100) for a visitor in an experiment.
    An empty salt is the same as no salt.
    """
    return murmur3_32(bucket_key(experiment_key, visitor_id, salt)) % NUM_BUCKETS


def pick_weighted(weights: Sequence[float], bucket_value: int) -> int | None:
    """
    Index of the arm whose cumulative weight range contains `bucket_value`.

    Weights are percentages of all traffic; if they sum to less than 100 the
    remainder maps to None. Weights that sum to more than 100 are rescaled.
    """
    total = float(sum(w for w in weights if w > 0))
    if total <= 0:
        return None

    scale = NUM_BUCKETS / total if total > NUM_BUCKETS else 1.0
    cumulative = 0.0
    for idx, w in enumerate(weights):
        if w <= 0:
            continue
        cumulative += float(w) * scale
        if bucket_value < cumulative:
            return idx
    return None


VARIATION_SALT = "variation"


def evaluate(
    experiment: ExperimentConfig, visitor_id: str, device_type: str | None = None
) -> tuple[VariationConfig | None, int]:
    """
    Local assignment without the collector.

    - Targeting: only device types are checked here.
    - Traffic gate: bucket(key, visitor) < traffic_allocation.
    - Arm: cumulative weights walked against a second, salted bucket so the
      arm choice is independent of the traffic gate.

    Returns (variation or None, traffic bucket).
    """
    traffic_bucket = bucket(experiment.key, visitor_id)

    targeting = experiment.targeting
    if targeting is not None and targeting.device_types:
        if device_type not in targeting.device_types:
            return None, traffic_bucket

    if traffic_bucket >= experiment.traffic_allocation:
        return None, traffic_bucket

    arm_bucket = bucket(experiment.key, visitor_id, VARIATION_SALT)
    idx = pick_weighted([v.weight for v in experiment.variations], arm_bucket)
    if idx is None:
        return None, traffic_bucket
    return experiment.variations[idx], traffic_bucket
