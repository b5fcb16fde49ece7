from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class FeedConfig:
    api_base: str
    results_per_page: int
    page_delay_seconds: float
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: float


@dataclass(frozen=True)
class CollectionConfig:
    manual_days_back: int
    max_window_days: int
    critical_score: float
    reprocess_days_back: int
    default_backfill_months: int
    max_backfill_months: int
    manual_timeout_seconds: int
    backfill_timeout_seconds: int


@dataclass(frozen=True)
class AlertsConfig:
    enabled: bool


@dataclass(frozen=True)
class ScheduleConfig:
    enabled: bool
    interval_minutes: int
    days_back: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int


@dataclass(frozen=True)
class Config:
    feed: FeedConfig
    collection: CollectionConfig
    alerts: AlertsConfig
    schedule: ScheduleConfig
    jobs: JobsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "feed": {
        "api_base": "https://services.nvd.nist.gov/rest/json/cves/2.0",
        "results_per_page": 2000,
        "page_delay_seconds": 6.0,
        "timeout_seconds": 30,
        "user_agent": "CVE-Alert-System/1.0",
        "max_retries": 2,
        "backoff_seconds": 2.0,
    },
    "collection": {
        "manual_days_back": 30,
        "max_window_days": 120,
        "critical_score": 9.0,
        "reprocess_days_back": 1,
        "default_backfill_months": 6,
        "max_backfill_months": 120,
        "manual_timeout_seconds": 300,
        "backfill_timeout_seconds": 540,
    },
    "alerts": {
        "enabled": True,
    },
    "schedule": {
        "enabled": True,
        "interval_minutes": 1440,
        "days_back": 1,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
    },
}

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("CA_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def load_config_file(path: str) -> dict[str, Any]:
    """Read a (possibly partial) YAML config and overlay it on the defaults."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping")
    merged = _deep_merge(_deep_copy(DEFAULT_CONFIG), loaded)
    errors = validate_runtime_config(merged)
    if errors:
        raise ConfigError("Invalid config file: " + "; ".join(errors))
    return merged


def load_subscribers_file(path: str) -> list[dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read subscribers file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if isinstance(loaded, dict):
        loaded = loaded.get("subscribers")
    if not isinstance(loaded, list):
        raise ConfigError(f"{path} must contain a list of subscribers")
    subscribers: list[dict[str, Any]] = []
    for index, item in enumerate(loaded):
        if not isinstance(item, dict) or not item.get("id"):
            raise ConfigError(f"subscribers[{index}] must be a mapping with an id")
        watch_list = item.get("watch_list") or []
        if not isinstance(watch_list, list):
            raise ConfigError(f"subscribers[{index}].watch_list must be a list")
        for entry in watch_list:
            if not isinstance(entry, dict) or not str(entry.get("vendor") or "").strip():
                raise ConfigError(f"subscribers[{index}].watch_list entries need a vendor")
        subscribers.append(item)
    return subscribers


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        elif value < 0:
            errors.append(f"{path} must not be negative")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        elif value < 0:
            errors.append(f"{path} must not be negative")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def build_config(cfg: dict[str, Any]) -> Config:
    feed_cfg = cfg.get("feed") or {}
    collection_cfg = cfg.get("collection") or {}
    alerts_cfg = cfg.get("alerts") or {}
    schedule_cfg = cfg.get("schedule") or {}
    jobs_cfg = cfg.get("jobs") or {}

    feed = FeedConfig(
        api_base=str(feed_cfg.get("api_base")),
        results_per_page=int(feed_cfg.get("results_per_page")),
        page_delay_seconds=float(feed_cfg.get("page_delay_seconds")),
        timeout_seconds=int(feed_cfg.get("timeout_seconds")),
        user_agent=str(feed_cfg.get("user_agent")),
        max_retries=int(feed_cfg.get("max_retries")),
        backoff_seconds=float(feed_cfg.get("backoff_seconds")),
    )

    collection = CollectionConfig(
        manual_days_back=int(collection_cfg.get("manual_days_back")),
        max_window_days=int(collection_cfg.get("max_window_days")),
        critical_score=float(collection_cfg.get("critical_score")),
        reprocess_days_back=int(collection_cfg.get("reprocess_days_back")),
        default_backfill_months=int(collection_cfg.get("default_backfill_months")),
        max_backfill_months=int(collection_cfg.get("max_backfill_months")),
        manual_timeout_seconds=int(collection_cfg.get("manual_timeout_seconds")),
        backfill_timeout_seconds=int(collection_cfg.get("backfill_timeout_seconds")),
    )

    alerts = AlertsConfig(enabled=bool(alerts_cfg.get("enabled")))

    schedule = ScheduleConfig(
        enabled=bool(schedule_cfg.get("enabled")),
        interval_minutes=int(schedule_cfg.get("interval_minutes")),
        days_back=int(schedule_cfg.get("days_back")),
    )

    jobs = JobsConfig(lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")))

    return Config(
        feed=feed,
        collection=collection,
        alerts=alerts,
        schedule=schedule,
        jobs=jobs,
    )


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
