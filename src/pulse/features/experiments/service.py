from __future__ import annotations

import re
from dataclasses import replace
from typing import Any, Protocol

from pulse.core.http import ASSIGN_PATH, CONFIG_PATH, TRACK_PATH, DeliveryError
from pulse.core.ids import IdGenerator, UuidGenerator
from pulse.core.logging import get_logger
from pulse.core.types import PageEnvironment
from pulse.features.bucketing.service import evaluate
from pulse.features.identity.service import VISITOR_ID_KEY, get_or_create_visitor_id
from pulse.features.storage.service import Storage

from .cache import CONFIG_TTL_S, AssignmentCache, ClockLike
from .types import (
    AssignmentContext,
    AssignmentResult,
    CachedAssignment,
    ConfigResponse,
    ExperimentConfig,
    TrackResult,
    Variation,
)

_MOBILE_RE = re.compile(r"mobile", re.IGNORECASE)
_TABLET_RE = re.compile(r"tablet|ipad", re.IGNORECASE)

NOT_ASSIGNED_ERROR = "Not assigned to experiment"

# malformed collector bodies surface as these while parsing
_PARSE_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


class TransportLike(Protocol):
    def post_json(self, path: str, body: dict[str, Any]) -> dict[str, Any]: ...
    def get_json(self, path: str) -> dict[str, Any]: ...


def infer_device_type(user_agent: str) -> str:
    if _MOBILE_RE.search(user_agent):
        return "mobile"
    if _TABLET_RE.search(user_agent):
        return "tablet"
    return "desktop"


class ExperimentClient:
    """
    A/B assignment with a local cache.

    - get_variation: cached decision first (resolved against the config
      snapshot, no assignment request), otherwise assign().
    - assign: one round trip; an assigned answer is cached with its
      assignment id for later conversion tracking.
    - track: only for experiments with a cached assignment.

    Network failures never raise out of this class; they become
    not-assigned / failed results.
    """

    def __init__(
        self,
        *,
        transport: TransportLike,
        storage: Storage,
        clock: ClockLike,
        visitor_id: str | None = None,
        user_identifier: str | None = None,
        environment: PageEnvironment | None = None,
        local_evaluation: bool = False,
        config_ttl_s: float = CONFIG_TTL_S,
        ids: IdGenerator | None = None,
    ) -> None:
        self.transport = transport
        self.storage = storage
        self.clock = clock
        self.environment = environment
        self.local_evaluation = bool(local_evaluation)
        self._ids = ids if ids is not None else UuidGenerator()
        self._logger = get_logger(__name__)

        self.cache = AssignmentCache(storage=storage, clock=clock, config_ttl_s=config_ttl_s)
        self._visitor_id = visitor_id or get_or_create_visitor_id(storage, self._ids)
        self._user_identifier = user_identifier

        self._logger.debug(
            "experiments_ready", extra={"feature": "experiments", "visitor_id": self._visitor_id}
        )

    # ----------------------------
    # Public API
    # ----------------------------
    def get_visitor_id(self) -> str:
        return self._visitor_id

    def identify(self, user_id: str) -> None:
        self._user_identifier = user_id

    def context(self) -> AssignmentContext:
        env = self.environment
        if env is None:
            return AssignmentContext()
        return AssignmentContext(
            device_type=infer_device_type(env.user_agent),
            user_agent=env.user_agent or None,
            language=env.language or None,
        )

    def get_variation(self, experiment_key: str) -> Variation | None:
        cached = self.cache.get(experiment_key)
        if cached is not None:
            return self._resolve_cached(experiment_key, cached)

        if self.local_evaluation:
            result = self.evaluate_locally(experiment_key)
            if result is not None:
                return result.variation if result.assigned else None

        result = self.assign(experiment_key)
        if result.assigned and result.variation is not None:
            return result.variation
        return None

    def assign(self, experiment_key: str) -> AssignmentResult:
        body: dict[str, Any] = {
            "experimentKey": experiment_key,
            "visitorId": self._visitor_id,
            "context": self.context().as_payload(),
        }
        if self._user_identifier is not None:
            body["userIdentifier"] = self._user_identifier

        try:
            data = self.transport.post_json(ASSIGN_PATH, body)
            result = AssignmentResult.from_payload(data)
        except DeliveryError as exc:
            self._log_failure("assign_failed", experiment_key, exc)
            return AssignmentResult.not_assigned()
        except _PARSE_ERRORS as exc:
            self._log_failure("assign_malformed", experiment_key, exc)
            return AssignmentResult.not_assigned()

        if result.assigned and result.variation is not None:
            kept = self.cache.put(experiment_key, result.variation.key, result.assignment_id or "")
            if kept.variation_key != result.variation.key:
                # the earlier decision stands; report it instead of the offered one
                result = replace(
                    result,
                    variation=self._resolve_cached(experiment_key, kept),
                    assignment_id=kept.assignment_id,
                    is_new_assignment=False,
                )

        self._logger.info(
            "assigned" if result.assigned else "not_assigned",
            extra={
                "feature": "experiments",
                "experiment_key": experiment_key,
                "reason": result.variation.key if result.variation else None,
            },
        )
        return result

    def evaluate_locally(self, experiment_key: str) -> AssignmentResult | None:
        """
        Bucket against the config snapshot without asking the collector.
        None when the experiment is unknown locally. Local answers are not
        cached, so they cannot be tracked.
        """
        experiment = self._find_experiment(experiment_key)
        if experiment is None:
            return None

        variation, bucket_value = evaluate(
            experiment, self._visitor_id, self.context().device_type
        )
        return AssignmentResult(
            success=True,
            assigned=variation is not None,
            variation=variation.to_variation() if variation is not None else None,
            bucket_value=bucket_value,
            is_new_assignment=False,
        )

    def track(
        self,
        experiment_key: str,
        event_name: str,
        value: float | None = None,
        properties: dict[str, Any] | None = None,
    ) -> TrackResult:
        if self.cache.get(experiment_key) is None:
            self._logger.debug(
                "track_skipped",
                extra={"feature": "experiments", "experiment_key": experiment_key, "reason": "unassigned"},
            )
            return TrackResult(success=False, error=NOT_ASSIGNED_ERROR)

        body: dict[str, Any] = {
            "experimentKey": experiment_key,
            "visitorId": self._visitor_id,
            "eventName": event_name,
        }
        if value is not None:
            body["eventValue"] = value
        if properties is not None:
            body["properties"] = properties

        try:
            return TrackResult.from_payload(self.transport.post_json(TRACK_PATH, body))
        except DeliveryError as exc:
            self._log_failure("track_failed", experiment_key, exc)
            return TrackResult(success=False, error=str(exc))

    def get_active_experiments(self) -> dict[str, dict[str, str]]:
        return {
            key: {"variationKey": a.variation_key, "assignmentId": a.assignment_id}
            for key, a in self.cache.all().items()
        }

    def fetch_config(self) -> ConfigResponse:
        try:
            data = self.transport.get_json(CONFIG_PATH)
            experiments = tuple(ExperimentConfig.from_payload(e) for e in data.get("experiments") or ())
        except DeliveryError as exc:
            self._log_failure("config_fetch_failed", None, exc)
            return ConfigResponse(success=False)
        except _PARSE_ERRORS as exc:
            self._log_failure("config_malformed", None, exc)
            return ConfigResponse(success=False)

        return ConfigResponse(
            success=bool(data.get("success", False)),
            experiments=experiments,
            message=data.get("message"),
        )

    def reset(self, visitor_id: str | None = None) -> str:
        """
        Forget all assignments and config and start over as a new visitor.

        With `visitor_id` the caller has already rotated the shared visitor
        key (IdentityStore.reset_visitor) and this client adopts that id.
        """
        self.cache.reset()
        if visitor_id is not None:
            self._visitor_id = visitor_id
        else:
            self.storage.remove(VISITOR_ID_KEY)
            self._visitor_id = get_or_create_visitor_id(self.storage, self._ids)
        self._logger.info(
            "experiments_reset", extra={"feature": "experiments", "visitor_id": self._visitor_id}
        )
        return self._visitor_id

    # ----------------------------
    # Internals
    # ----------------------------
    def _config(self) -> tuple[ExperimentConfig, ...] | None:
        snapshot = self.cache.config_snapshot()
        if snapshot is not None:
            return snapshot

        response = self.fetch_config()
        if response.success:
            self.cache.store_config(response.experiments)
            return response.experiments
        # keep serving the last known config
        return self.cache.config_snapshot(allow_stale=True)

    def _resolve_cached(self, experiment_key: str, cached: CachedAssignment) -> Variation:
        """
        The cached decision as a Variation. Without a config entry for it the
        key alone is returned; the cached decision is never re-requested.
        """
        experiment = self._find_experiment(experiment_key)
        if experiment is not None:
            variation = experiment.find_variation(cached.variation_key)
            if variation is not None:
                return variation.to_variation()
        self._logger.debug(
            "cached_variation_unresolved",
            extra={"feature": "experiments", "experiment_key": experiment_key},
        )
        return Variation(key=cached.variation_key, name=cached.variation_key)

    def _find_experiment(self, experiment_key: str) -> ExperimentConfig | None:
        for experiment in self._config() or ():
            if experiment.key == experiment_key:
                return experiment
        return None

    def _log_failure(self, msg: str, experiment_key: str | None, exc: Exception) -> None:
        self._logger.warning(
            msg,
            extra={"feature": "experiments", "experiment_key": experiment_key, "error": str(exc)},
        )
