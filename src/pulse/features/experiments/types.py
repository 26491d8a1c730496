from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Variation:
    key: str
    name: str
    configuration: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> Variation:
        return cls(
            key=str(data["key"]),
            name=str(data.get("name") or data["key"]),
            configuration=data.get("configuration"),
        )

    def as_payload(self) -> dict[str, Any]:
        return {"key": self.key, "name": self.name, "configuration": self.configuration}


@dataclass(frozen=True)
class VariationConfig:
    key: str
    name: str
    weight: float
    is_control: bool = False
    configuration: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> VariationConfig:
        return cls(
            key=str(data["key"]),
            name=str(data.get("name") or data["key"]),
            weight=float(data.get("weight", 0)),
            is_control=bool(data.get("isControl", False)),
            configuration=data.get("configuration"),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "weight": self.weight,
            "isControl": self.is_control,
            "configuration": self.configuration,
        }

    def to_variation(self) -> Variation:
        return Variation(key=self.key, name=self.name, configuration=self.configuration)


@dataclass(frozen=True)
class Targeting:
    user_segments: tuple[str, ...] = ()
    countries: tuple[str, ...] = ()
    device_types: tuple[str, ...] = ()
    custom_attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any] | None) -> Targeting | None:
        if not data:
            return None
        return cls(
            user_segments=tuple(data.get("userSegments") or ()),
            countries=tuple(data.get("countries") or ()),
            device_types=tuple(data.get("deviceTypes") or ()),
            custom_attributes=dict(data.get("customAttributes") or {}),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "userSegments": list(self.user_segments),
            "countries": list(self.countries),
            "deviceTypes": list(self.device_types),
            "customAttributes": dict(self.custom_attributes),
        }


@dataclass(frozen=True)
class ExperimentConfig:
    """
    Experiment definition as served by the config endpoint.
    traffic_allocation is a percentage of visitors in [0, 100].
    """

    key: str
    name: str
    traffic_allocation: float = 100.0
    targeting: Targeting | None = None
    variations: tuple[VariationConfig, ...] = ()

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ExperimentConfig:
        return cls(
            key=str(data["key"]),
            name=str(data.get("name") or data["key"]),
            traffic_allocation=float(data.get("trafficAllocation", 100)),
            targeting=Targeting.from_payload(data.get("targeting")),
            variations=tuple(VariationConfig.from_payload(v) for v in data.get("variations") or ()),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "trafficAllocation": self.traffic_allocation,
            "targeting": self.targeting.as_payload() if self.targeting else None,
            "variations": [v.as_payload() for v in self.variations],
        }

    def find_variation(self, variation_key: str) -> VariationConfig | None:
        for v in self.variations:
            if v.key == variation_key:
                return v
        return None


@dataclass(frozen=True)
class ConfigResponse:
    success: bool
    experiments: tuple[ExperimentConfig, ...] = ()
    message: str | None = None


@dataclass(frozen=True)
class AssignmentContext:
    device_type: str | None = None
    user_agent: str | None = None
    language: str | None = None

    def as_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.device_type is not None:
            out["deviceType"] = self.device_type
        if self.user_agent is not None:
            out["userAgent"] = self.user_agent
        if self.language is not None:
            out["language"] = self.language
        return out


@dataclass(frozen=True)
class AssignmentResult:
    success: bool
    assigned: bool
    variation: Variation | None = None
    bucket_value: int | None = None
    is_new_assignment: bool = False
    assignment_id: str | None = None

    @classmethod
    def not_assigned(cls) -> AssignmentResult:
        return cls(success=False, assigned=False)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> AssignmentResult:
        raw_variation = data.get("variation")
        bucket_value = data.get("bucketValue")
        return cls(
            success=bool(data.get("success", False)),
            assigned=bool(data.get("assigned", False)),
            variation=Variation.from_payload(raw_variation) if raw_variation else None,
            bucket_value=int(bucket_value) if bucket_value is not None else None,
            is_new_assignment=bool(data.get("isNewAssignment", False)),
            assignment_id=data.get("assignmentId"),
        )


@dataclass(frozen=True)
class TrackResult:
    success: bool
    error: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> TrackResult:
        error = data.get("error")
        return cls(success=bool(data.get("success", False)), error=str(error) if error else None)


@dataclass(frozen=True)
class CachedAssignment:
    variation_key: str
    assignment_id: str
    timestamp: float = 0.0  # epoch ms

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> CachedAssignment:
        return cls(
            variation_key=str(data["variationKey"]),
            assignment_id=str(data.get("assignmentId") or ""),
            timestamp=float(data.get("timestamp", 0.0)),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "variationKey": self.variation_key,
            "assignmentId": self.assignment_id,
            "timestamp": self.timestamp,
        }
