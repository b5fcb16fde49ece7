import copy

import pytest

from cvealert.config import (
    DEFAULT_CONFIG,
    ConfigError,
    get_runtime_config,
    load_config_file,
    load_runtime_config,
    load_subscribers_file,
    set_runtime_config,
    validate_runtime_config,
)
from cvealert.storage import init_db


def test_runtime_config_bootstraps_defaults(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))

    config = load_runtime_config(conn)

    assert config.feed.results_per_page == 2000
    assert config.feed.page_delay_seconds == 6.0
    assert config.feed.user_agent == "CVE-Alert-System/1.0"
    assert config.collection.max_window_days == 120
    assert config.collection.critical_score == 9.0
    assert config.schedule.interval_minutes == 1440
    assert config.alerts.enabled is True


def test_runtime_config_sections_are_all_consumed():
    assert set(DEFAULT_CONFIG) == {"feed", "collection", "alerts", "schedule", "jobs"}
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["app"] = {"name": "cvealert"}

    assert validate_runtime_config(cfg) == ["unknown config.runtime.app"]


def test_validation_reports_missing_unknown_and_types():
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    del cfg["alerts"]
    cfg["extra"] = {}
    cfg["feed"]["max_retries"] = "3"
    cfg["collection"]["critical_score"] = -1.0
    cfg["schedule"]["enabled"] = 1

    errors = validate_runtime_config(cfg)

    assert "missing config.runtime.alerts" in errors
    assert "unknown config.runtime.extra" in errors
    assert "config.runtime.feed.max_retries must be an integer" in errors
    assert "config.runtime.collection.critical_score must not be negative" in errors
    assert "config.runtime.schedule.enabled must be a boolean" in errors


def test_set_runtime_config_rejects_invalid(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(ConfigError):
        set_runtime_config(conn, {"feed": {}})
    assert get_runtime_config(conn) == DEFAULT_CONFIG


def test_yaml_overlay_merges_onto_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "feed:\n  page_delay_seconds: 1\ncollection:\n  manual_days_back: 14\n",
        encoding="utf-8",
    )

    cfg = load_config_file(str(path))

    assert cfg["feed"]["page_delay_seconds"] == 1
    assert cfg["feed"]["results_per_page"] == 2000
    assert cfg["collection"]["manual_days_back"] == 14


def test_yaml_overlay_rejects_unknown_keys(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("feed:\n  page_size: 10\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(str(path))


def test_subscribers_file_requires_vendor(tmp_path):
    good = tmp_path / "subscribers.yml"
    good.write_text(
        "subscribers:\n"
        "  - id: alice\n"
        "    notifications_enabled: true\n"
        "    watch_list:\n"
        "      - vendor: microsoft\n"
        "      - vendor: cisco\n"
        "        product: webex\n",
        encoding="utf-8",
    )
    loaded = load_subscribers_file(str(good))
    assert loaded[0]["id"] == "alice"
    assert len(loaded[0]["watch_list"]) == 2

    bad = tmp_path / "bad.yml"
    bad.write_text("- id: bob\n  watch_list:\n    - product: only\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_subscribers_file(str(bad))
