import io
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from conftest import FakeFeedClient, make_item

from cvealert import feed_client
from cvealert.alerts import dispatch
from cvealert.collector import (
    CollectionTimeout,
    build_record,
    collect,
    is_critical,
    load_historical,
    plan_chunks,
    reprocess_existing,
    resolve_days_back,
    resolve_months,
    resolve_vendor_terms,
)
from cvealert.config import DEFAULT_CONFIG, build_config
from cvealert.feed_client import FeedClient, FeedError
from cvealert.models import Severity, WatchEntry
from cvealert.storage import (
    add_watch_entry,
    get_vulnerability,
    init_db,
    list_audit,
    list_notifications,
    list_vulnerabilities,
    upsert_subscriber,
)

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
MS_CPE = "cpe:2.3:a:microsoft:exchange_server:2019:*:*:*:*:*:*:*"


class _Response(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _collection_config():
    return build_config(DEFAULT_CONFIG).collection


def _seed(conn, subscriber_id: str, entries, notifications: bool = True) -> None:
    upsert_subscriber(conn, subscriber_id, email=f"{subscriber_id}@example.com", notifications_enabled=notifications)
    for vendor, product in entries:
        add_watch_entry(conn, subscriber_id, WatchEntry.create(vendor, product))


def test_vendor_terms_are_distinct_and_skip_wildcards(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("Microsoft", "*"), ("microsoft ", "exchange"), ("*", "")])
    _seed(conn, "bob", [("cisco", None)])

    assert resolve_vendor_terms(conn, "alice") == ("microsoft",)
    assert set(resolve_vendor_terms(conn)) == {"microsoft", "cisco"}


def test_zero_terms_skip_feed(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    client = FakeFeedClient()

    result = collect(conn, client, _collection_config(), window_days=30, now=NOW)

    assert result.new_count == 0
    assert result.critical_count == 0
    assert client.keyword_calls == []
    assert list_audit(conn, "cve_collection_completed")[0]["details"]["new_count"] == 0


def test_window_applies_offset(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("cisco", "*")])
    client = FakeFeedClient()

    collect(conn, client, _collection_config(), window_days=60, offset_days=120, now=NOW)

    keyword, start, end = client.keyword_calls[0]
    assert keyword == "cisco"
    assert end == NOW - timedelta(days=120)
    assert start == NOW - timedelta(days=180)


def test_collect_is_idempotent(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("microsoft", "*"), ("cisco", "*")])
    shared = make_item("CVE-2025-0100", criteria=[MS_CPE], v31=(9.8, "CRITICAL"))
    client = FakeFeedClient(
        {
            "microsoft": [shared, make_item("CVE-2025-0101", criteria=[MS_CPE])],
            "cisco": [shared],
        }
    )

    first = collect(conn, client, _collection_config(), window_days=30, now=NOW)
    second = collect(conn, client, _collection_config(), window_days=30, now=NOW)

    assert first.total_fetched == 2
    assert first.new_count == 2
    assert first.critical_count == 1
    assert second.new_count == 0
    assert second.critical_count == 0
    assert second.skipped == 2
    assert len(list_vulnerabilities(conn)) == 2


def test_rejected_records_are_dropped(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("cisco", "*")])
    client = FakeFeedClient(
        {
            "cisco": [
                make_item("CVE-2025-0200", status="Rejected"),
                make_item("CVE-2025-0201", status="REJECTED"),
                make_item("CVE-2025-0202", status="Awaiting Analysis"),
            ]
        }
    )

    result = collect(conn, client, _collection_config(), window_days=30, now=NOW)

    assert result.rejected == 2
    assert result.new_count == 1
    assert get_vulnerability(conn, "CVE-2025-0200") is None
    details = list_audit(conn, "cve_collection_completed")[0]["details"]
    assert details["total_fetched"] == 3
    assert details["valid_count"] == 1
    assert details["rejected"] == 2


def test_unknown_severity_with_high_score_is_critical():
    item = make_item("CVE-2025-0300", v31=(9.2, "bogus"))

    record = build_record(item)

    assert record.severity is Severity.UNKNOWN
    assert record.cvss_score == 9.2
    assert is_critical(record)


def test_critical_severity_with_low_score_is_critical():
    record = build_record(make_item("CVE-2025-0301", v31=(0.0, "CRITICAL")))
    assert is_critical(record)
    assert not is_critical(build_record(make_item("CVE-2025-0302", v31=(8.9, "HIGH"))))


def test_stored_record_keeps_extracted_fields(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("microsoft", "*")])
    item = make_item("CVE-2025-0400", description="Exchange bug", criteria=[MS_CPE], v31=(8.1, "HIGH"))
    client = FakeFeedClient({"microsoft": [item]})

    collect(conn, client, _collection_config(), window_days=1, now=NOW)
    stored = get_vulnerability(conn, "CVE-2025-0400")

    assert stored.description == "Exchange bug"
    assert stored.vendors == {"microsoft"}
    assert stored.products == {"exchange_server"}
    assert stored.severity is Severity.HIGH
    assert stored.cvss_score == 8.1
    assert stored.vuln_status == "Analyzed"
    assert stored.collected_at is not None
    assert stored.reprocessed_at is None
    assert [ref.url for ref in stored.references] == ["https://nvd.example/CVE-2025-0400"]


def test_reprocess_never_creates_and_keeps_collected_at(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("microsoft", "*")])
    original = make_item("CVE-2025-0500", description="Microsoft Exchange flaw")
    collect(conn, FakeFeedClient({"microsoft": [original]}), _collection_config(), window_days=1, now=NOW)
    before = get_vulnerability(conn, "CVE-2025-0500")
    assert before.products == frozenset()

    refreshed = make_item("CVE-2025-0500", criteria=[MS_CPE])
    unknown = make_item("CVE-2025-0501", criteria=[MS_CPE])
    client = FakeFeedClient(recent=[refreshed, unknown])

    result = reprocess_existing(conn, client, _collection_config(), now=NOW)

    assert result.fetched == 2
    assert result.updated == 1
    assert get_vulnerability(conn, "CVE-2025-0501") is None
    after = get_vulnerability(conn, "CVE-2025-0500")
    assert after.products == {"exchange_server"}
    assert after.collected_at == before.collected_at
    assert after.reprocessed_at is not None
    assert after.description == before.description
    assert list_audit(conn, "cve_reprocess_completed")[0]["details"]["updated"] == 1


def test_reprocess_first_page_failure_propagates(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(FeedError):
        reprocess_existing(conn, FakeFeedClient(fail_recent=True), _collection_config(), now=NOW)


def test_plan_chunks_splits_months():
    assert plan_chunks(6) == [(0, 120), (120, 60)]
    assert plan_chunks(1) == [(0, 30)]
    assert plan_chunks(4) == [(0, 120)]
    assert plan_chunks(0) == []


def test_load_historical_sums_chunks(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("cisco", "*")])
    client = FakeFeedClient(
        {"cisco": [make_item("CVE-2025-0600", v31=(9.9, "CRITICAL")), make_item("CVE-2025-0601")]}
    )

    result = load_historical(conn, client, _collection_config(), months=6, subscriber_id="alice", now=NOW)

    assert result.chunks_processed == 2
    assert result.months_loaded == 6
    assert result.total_new_count == 2
    assert result.total_critical_count == 1
    windows = [(NOW - end, end - start) for _, start, end in client.keyword_calls]
    assert windows == [
        (timedelta(days=0), timedelta(days=120)),
        (timedelta(days=120), timedelta(days=60)),
    ]


def test_deadline_aborts_before_audit(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("cisco", "*"), ("oracle", "*")])
    client = FakeFeedClient({"cisco": [make_item("CVE-2025-0700")]})
    ticks = iter([0.0, 1.0, 100.0, 100.0, 100.0])

    with pytest.raises(CollectionTimeout):
        collect(
            conn,
            client,
            _collection_config(),
            window_days=1,
            timeout_seconds=10,
            now=NOW,
            clock=lambda: next(ticks),
        )

    assert len(client.keyword_calls) == 1
    assert list_audit(conn, "cve_collection_completed") == []


def test_resolve_days_back_and_months():
    config = _collection_config()
    assert resolve_days_back(None, config) == 30
    assert resolve_days_back(500, config) == 120
    assert resolve_days_back(-3, config) == 0
    assert resolve_months(None, config) == 6
    assert resolve_months(0, config) == 6
    assert resolve_months(500, config) == 120
    with pytest.raises(ValueError):
        resolve_months(-1, config)


def test_microsoft_end_to_end(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("microsoft", "*")])
    _seed(conn, "bob", [("cisco", "*")])
    _seed(conn, "carol", [("microsoft", "exchange_server")], notifications=False)
    client = FakeFeedClient(
        {
            "microsoft": [
                make_item("CVE-2025-0800", criteria=[MS_CPE], v31=(9.8, "CRITICAL")),
                make_item("CVE-2025-0801", criteria=[MS_CPE], v31=(5.0, "MEDIUM")),
            ]
        }
    )

    result = collect(conn, client, _collection_config(), window_days=1, now=NOW)
    sent = dispatch(conn, result.critical_records)

    assert result.new_count == 2
    assert result.critical_count == 1
    assert sent == 1
    notes = list_notifications(conn)
    assert len(notes) == 1
    assert notes[0]["subscriber_id"] == "alice"
    assert notes[0]["cve_ids"] == ["CVE-2025-0800"]
    assert notes[0]["count"] == 1
    assert notes[0]["read"] is False
    audit = list_audit(conn, "critical_alert_created")
    assert audit[0]["details"] == {"cve_count": 1}


def test_one_vendor_network_failure_keeps_other_vendors(tmp_path, monkeypatch):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    _seed(conn, "alice", [("apache", "*"), ("microsoft", "*")])
    ms_item = make_item("CVE-2025-0900", criteria=[MS_CPE], v31=(9.8, "CRITICAL"))

    def fake_urlopen(request, timeout=None):
        keyword = parse_qs(urlparse(request.full_url).query)["keywordSearch"][0]
        if keyword == "apache":
            raise ConnectionResetError("peer reset")
        body = {"totalResults": 1, "vulnerabilities": [ms_item]}
        return _Response(json.dumps(body).encode("utf-8"))

    monkeypatch.setattr(feed_client, "urlopen", fake_urlopen)
    feed_config = replace(build_config(DEFAULT_CONFIG).feed, max_retries=0)
    client = FeedClient(feed_config, sleep=lambda _: None)

    result = collect(conn, client, _collection_config(), window_days=1, now=NOW)

    assert result.new_count == 1
    assert result.critical_count == 1
    assert get_vulnerability(conn, "CVE-2025-0900") is not None
    assert list_audit(conn, "cve_collection_completed")[0]["details"]["new_count"] == 1
