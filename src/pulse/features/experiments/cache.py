from __future__ import annotations

import json
from typing import Protocol

from pulse.core.logging import get_logger
from pulse.features.storage.service import Storage

from .types import CachedAssignment, ExperimentConfig

ASSIGNMENTS_KEY = "exp_assignments"
CONFIG_KEY = "exp_config"
CONFIG_TTL_S = 60.0


class ClockLike(Protocol):
    def now_ms(self) -> float: ...


class AssignmentCache:
    """
    Persisted experiment -> variation decisions plus a short-lived snapshot
    of experiment config.

    Assignments have no TTL and are only dropped by reset(). A cached decision
    is never replaced by a different variation for the same experiment.
    """

    def __init__(
        self, *, storage: Storage, clock: ClockLike, config_ttl_s: float = CONFIG_TTL_S
    ) -> None:
        self._storage = storage
        self._clock = clock
        self.config_ttl_ms = float(config_ttl_s) * 1000.0
        self._logger = get_logger(__name__)

        self._assignments: dict[str, CachedAssignment] = self._load_assignments()
        self._config: tuple[float, tuple[ExperimentConfig, ...]] | None = None

    # ----------------------------
    # Assignments
    # ----------------------------
    def get(self, experiment_key: str) -> CachedAssignment | None:
        return self._assignments.get(experiment_key)

    def put(self, experiment_key: str, variation_key: str, assignment_id: str) -> CachedAssignment:
        existing = self._assignments.get(experiment_key)
        if existing is not None:
            if existing.variation_key != variation_key:
                self._logger.warning(
                    "assignment_conflict_ignored",
                    extra={
                        "feature": "experiments",
                        "experiment_key": experiment_key,
                        "reason": f"cached={existing.variation_key} offered={variation_key}",
                    },
                )
            return existing

        entry = CachedAssignment(
            variation_key=variation_key,
            assignment_id=assignment_id,
            timestamp=self._clock.now_ms(),
        )
        self._assignments[experiment_key] = entry
        self._save_assignments()
        return entry

    def all(self) -> dict[str, CachedAssignment]:
        return dict(self._assignments)

    # ----------------------------
    # Config snapshot
    # ----------------------------
    def config_snapshot(self, *, allow_stale: bool = False) -> tuple[ExperimentConfig, ...] | None:
        """
        Cached experiment configs, or None when absent, malformed or older than
        the TTL. allow_stale returns whatever is held in memory regardless of age.
        """
        if self._config is None:
            self._config = self._load_config()
        if self._config is None:
            return None

        fetched_at, experiments = self._config
        if allow_stale or self._clock.now_ms() - fetched_at < self.config_ttl_ms:
            return experiments
        return None

    def store_config(self, experiments: tuple[ExperimentConfig, ...] | list[ExperimentConfig]) -> None:
        fetched_at = self._clock.now_ms()
        self._config = (fetched_at, tuple(experiments))
        data = {"fetchedAt": fetched_at, "experiments": [e.as_payload() for e in experiments]}
        self._storage.set(CONFIG_KEY, json.dumps(data), ttl_ms=self.config_ttl_ms)

    def reset(self) -> None:
        self._assignments = {}
        self._config = None
        self._storage.remove(ASSIGNMENTS_KEY)
        self._storage.remove(CONFIG_KEY)

    # ----------------------------
    # Internals
    # ----------------------------
    def _load_assignments(self) -> dict[str, CachedAssignment]:
        raw = self._storage.get(ASSIGNMENTS_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return {str(k): CachedAssignment.from_payload(v) for k, v in data.items()}
        except (ValueError, KeyError, TypeError, AttributeError):
            self._logger.debug(
                "assignments_malformed", extra={"feature": "experiments", "reason": "cache_miss"}
            )
            return {}

    def _save_assignments(self) -> None:
        data = {k: v.as_payload() for k, v in self._assignments.items()}
        self._storage.set(ASSIGNMENTS_KEY, json.dumps(data))

    def _load_config(self) -> tuple[float, tuple[ExperimentConfig, ...]] | None:
        raw = self._storage.get(CONFIG_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
            fetched_at = float(data["fetchedAt"])
            experiments = tuple(ExperimentConfig.from_payload(e) for e in data["experiments"])
        except (ValueError, KeyError, TypeError, AttributeError):
            return None
        return fetched_at, experiments
