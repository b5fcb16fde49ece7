from conftest import FakeFeedClient, make_item

from cvealert import worker
from cvealert.config import get_state_db_path
from cvealert.feed_client import FeedError
from cvealert.models import WatchEntry
from cvealert.storage import (
    add_watch_entry,
    enqueue_job,
    get_setting,
    init_db,
    list_jobs,
    list_notifications,
    set_setting,
    upsert_subscriber,
)
from cvealert.utils import utc_now_iso

MS_CPE = "cpe:2.3:a:microsoft:windows:10:*:*:*:*:*:*:*"


def _seed(monkeypatch, feed):
    conn = init_db(get_state_db_path())
    upsert_subscriber(conn, "alice", notifications_enabled=True)
    add_watch_entry(conn, "alice", WatchEntry.create("microsoft"))
    monkeypatch.setattr(worker, "_build_feed_client", lambda config: feed)
    return conn


def test_scheduled_collect_dispatches_alerts(monkeypatch):
    feed = FakeFeedClient(
        {"microsoft": [make_item("CVE-2025-2000", criteria=[MS_CPE], v31=(9.8, "CRITICAL"))]}
    )
    conn = _seed(monkeypatch, feed)

    assert worker.run_once("worker-1") == 0

    jobs = list_jobs(conn)
    assert [(job.job_type, job.status) for job in jobs] == [("scheduled_collect", "succeeded")]
    assert jobs[0].result["notifications"] == 1
    assert list_notifications(conn, "alice")[0]["cve_ids"] == ["CVE-2025-2000"]
    assert get_setting(conn, worker.LAST_SCHEDULED_KEY, None) is not None
    _, start, end = feed.keyword_calls[0]
    assert (end - start).days == 1


def test_scheduled_collect_not_enqueued_before_interval(monkeypatch):
    conn = _seed(monkeypatch, FakeFeedClient())
    set_setting(conn, worker.LAST_SCHEDULED_KEY, utc_now_iso())

    assert worker.run_once("worker-1") == 0

    assert list_jobs(conn) == []


def test_manual_collect_job_does_not_dispatch(monkeypatch):
    feed = FakeFeedClient(
        {"microsoft": [make_item("CVE-2025-2001", criteria=[MS_CPE], v31=(9.8, "CRITICAL"))]}
    )
    conn = _seed(monkeypatch, feed)
    set_setting(conn, worker.LAST_SCHEDULED_KEY, utc_now_iso())
    job_id = enqueue_job(conn, "collect", {"days_back": 500, "subscriber_id": "alice"})

    assert worker.run_once("worker-1") == 0

    job = list_jobs(conn)[0]
    assert job.id == job_id
    assert job.status == "succeeded"
    assert job.result == {"new_count": 1, "critical_count": 1, "days_collected": 120}
    assert list_notifications(conn) == []


def test_failing_job_is_marked_failed(monkeypatch):
    conn = _seed(monkeypatch, FakeFeedClient(fail_recent=True))
    set_setting(conn, worker.LAST_SCHEDULED_KEY, utc_now_iso())
    enqueue_job(conn, "reprocess", None)

    assert worker.run_once("worker-1") == 1

    job = list_jobs(conn)[0]
    assert job.status == "failed"
    assert "503" in job.error


def test_failed_scheduled_collect_waits_for_next_interval(monkeypatch):
    conn = _seed(monkeypatch, FakeFeedClient())
    sweeps = []

    def failing_collect(*args, **kwargs):
        sweeps.append(kwargs)
        raise FeedError("feed returned HTTP 503", status=503)

    monkeypatch.setattr(worker, "collect", failing_collect)

    for _ in range(3):
        worker.run_once("worker-1")

    jobs = list_jobs(conn)
    assert [(job.job_type, job.status) for job in jobs] == [("scheduled_collect", "failed")]
    assert len(sweeps) == 1
