from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_BASE_URL = "http://localhost:8000"


@dataclass(frozen=True)
class ClientConfig:
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    timeout_s: float = 10.0


@dataclass(frozen=True)
class RageClickConfig:
    enabled: bool = True
    threshold: int = 3
    window_ms: float = 1000.0
    radius_px: float = 50.0


@dataclass(frozen=True)
class AnalyticsConfig:
    batch_size: int = 10
    batch_interval_s: float = 5.0
    session_timeout_minutes: float = 30.0
    track_page_views: bool = True
    track_clicks: bool = True
    track_scroll: bool = True
    track_errors: bool = True
    track_movement: bool = False
    ignored_selectors: tuple[str, ...] = ()
    rage_clicks: RageClickConfig = RageClickConfig()


@dataclass(frozen=True)
class RecordingConfig:
    enabled: bool = False
    flush_interval_s: float = 30.0
    max_buffer_events: int = 500
    max_duration_minutes: float = 30.0


@dataclass(frozen=True)
class ExperimentsConfig:
    config_ttl_s: float = 60.0
    local_evaluation: bool = False


@dataclass(frozen=True)
class StorageConfig:
    duckdb_path: str | None = None
    clean_slate: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class PulseConfig:
    client: ClientConfig
    logging: LoggingConfig
    analytics: AnalyticsConfig = AnalyticsConfig()
    recording: RecordingConfig = RecordingConfig()
    experiments: ExperimentsConfig = ExperimentsConfig()
    storage: StorageConfig = StorageConfig()
    raw: dict[str, Any] = field(default_factory=dict)  # original parsed YAML (for debugging)


def load_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    data = yaml.safe_load(p.read_text())
    if not isinstance(data, dict):
        raise ValueError("Config YAML must parse to a dict at the top level.")
    return data


def parse_config(data: dict[str, Any]) -> PulseConfig:
    for key in ["client", "logging"]:
        if key not in data:
            raise ValueError(f"Missing required top-level config section: '{key}'")

    client = data.get("client") or {}
    logging_cfg = data.get("logging") or {}
    analytics = data.get("analytics") or {}
    recording = data.get("recording") or {}
    experiments = data.get("experiments") or {}
    storage = data.get("storage") or {}

    api_key = str(client.get("api_key") or "").strip()
    if not api_key:
        raise ValueError("client.api_key is required")

    client_cfg = ClientConfig(
        api_key=api_key,
        base_url=str(client.get("base_url") or DEFAULT_BASE_URL).rstrip("/"),
        timeout_s=float(client.get("timeout_s", 10.0)),
    )

    # --- analytics ---
    rage = analytics.get("rage_clicks") or {}
    analytics_cfg = AnalyticsConfig(
        batch_size=int(analytics.get("batch_size", 10)),
        batch_interval_s=float(analytics.get("batch_interval_s", 5.0)),
        session_timeout_minutes=float(analytics.get("session_timeout_minutes", 30.0)),
        track_page_views=bool(analytics.get("track_page_views", True)),
        track_clicks=bool(analytics.get("track_clicks", True)),
        track_scroll=bool(analytics.get("track_scroll", True)),
        track_errors=bool(analytics.get("track_errors", True)),
        track_movement=bool(analytics.get("track_movement", False)),
        ignored_selectors=tuple(str(s) for s in analytics.get("ignored_selectors") or ()),
        rage_clicks=RageClickConfig(
            enabled=bool(rage.get("enabled", True)),
            threshold=int(rage.get("threshold", 3)),
            window_ms=float(rage.get("window_ms", 1000.0)),
            radius_px=float(rage.get("radius_px", 50.0)),
        ),
    )
    if analytics_cfg.batch_size < 1:
        raise ValueError("analytics.batch_size must be >= 1")
    if analytics_cfg.batch_interval_s <= 0:
        raise ValueError("analytics.batch_interval_s must be > 0")

    recording_cfg = RecordingConfig(
        enabled=bool(recording.get("enabled", False)),
        flush_interval_s=float(recording.get("flush_interval_s", 30.0)),
        max_buffer_events=int(recording.get("max_buffer_events", 500)),
        max_duration_minutes=float(recording.get("max_duration_minutes", 30.0)),
    )

    experiments_cfg = ExperimentsConfig(
        config_ttl_s=float(experiments.get("config_ttl_s", 60.0)),
        local_evaluation=bool(experiments.get("local_evaluation", False)),
    )

    duckdb_path = storage.get("duckdb_path")
    storage_cfg = StorageConfig(
        duckdb_path=None if duckdb_path is None else str(duckdb_path),
        clean_slate=bool(storage.get("clean_slate", False)),
    )

    log_cfg = LoggingConfig(level=str(logging_cfg.get("level", "INFO")).upper())

    return PulseConfig(
        client=client_cfg,
        logging=log_cfg,
        analytics=analytics_cfg,
        recording=recording_cfg,
        experiments=experiments_cfg,
        storage=storage_cfg,
        raw=data,
    )


def load_config(path: str | Path) -> PulseConfig:
    data = load_yaml(path)
    return parse_config(data)
