from __future__ import annotations

import argparse
import logging
import os
import time
from datetime import timedelta

from .alerts import dispatch
from .collector import (
    collect,
    load_historical,
    reprocess_existing,
    resolve_days_back,
    resolve_months,
)
from .config import (
    Config,
    ConfigError,
    bootstrap_runtime_config,
    get_state_db_path,
    load_runtime_config,
)
from .feed_client import FeedClient
from .models import Job
from .storage import (
    claim_next_job,
    complete_job,
    enqueue_job,
    fail_job,
    get_setting,
    init_db,
    set_setting,
)
from .utils import configure_logging, log_event, parse_iso, utc_now, utc_now_iso

WORKER_JOB_TYPES = [
    "collect",
    "load_historical",
    "reprocess",
    "scheduled_collect",
]

LAST_SCHEDULED_KEY = "collection.last_scheduled_at"


def _setup_logging() -> logging.Logger:
    return configure_logging("cvealert.worker")


def _build_feed_client(config: Config) -> FeedClient:
    return FeedClient.from_env(config.feed)


def run_once(worker_id: str, allowed_types: list[str] | None = None) -> int:
    logger = _setup_logging()
    try:
        conn = init_db(get_state_db_path())
        bootstrap_runtime_config(conn)
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    try:
        _maybe_enqueue_scheduled_collect(conn, config, logger)
        job = claim_next_job(
            conn,
            worker_id,
            allowed_types=allowed_types or WORKER_JOB_TYPES,
            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        )
        if not job:
            return 0
        return _process_claimed_job(conn, config, job, logger)
    finally:
        conn.close()


def _process_claimed_job(conn, config: Config, job: Job, logger: logging.Logger) -> int:
    try:
        result = run_claimed_job(conn, config, job, logger)
    except Exception as exc:  # noqa: BLE001
        fail_job(conn, job.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            error=str(exc),
        )
        return 1

    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type)
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def run_loop(worker_id: str, sleep_seconds: int, allowed_types: list[str] | None = None) -> int:
    while True:
        run_once(worker_id, allowed_types)
        time.sleep(sleep_seconds)


def run_claimed_job(conn, config: Config, job: Job, logger: logging.Logger) -> dict[str, object]:
    log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type)
    payload = job.payload or {}
    if job.job_type == "collect":
        return _handle_collect(conn, config, payload, logger)
    if job.job_type == "load_historical":
        return _handle_load_historical(conn, config, payload, logger)
    if job.job_type == "reprocess":
        return _handle_reprocess(conn, config, logger)
    if job.job_type == "scheduled_collect":
        return _handle_scheduled_collect(conn, config, logger)
    raise ValueError(f"unsupported job type {job.job_type}")


def _handle_collect(
    conn, config: Config, payload: dict[str, object], logger: logging.Logger
) -> dict[str, object]:
    days_back = resolve_days_back(payload.get("days_back"), config.collection)
    subscriber_id = _optional_str(payload.get("subscriber_id"))
    result = collect(
        conn,
        _build_feed_client(config),
        config.collection,
        window_days=days_back,
        subscriber_id=subscriber_id,
        timeout_seconds=config.collection.manual_timeout_seconds,
    )
    log_event(
        logger,
        logging.INFO,
        "collect_job_done",
        days_back=days_back,
        new=result.new_count,
        critical=result.critical_count,
    )
    return {
        "new_count": result.new_count,
        "critical_count": result.critical_count,
        "days_collected": days_back,
    }


def _handle_load_historical(
    conn, config: Config, payload: dict[str, object], logger: logging.Logger
) -> dict[str, object]:
    months = resolve_months(payload.get("months"), config.collection)
    result = load_historical(
        conn,
        _build_feed_client(config),
        config.collection,
        months=months,
        subscriber_id=_optional_str(payload.get("subscriber_id")),
        timeout_seconds=config.collection.backfill_timeout_seconds,
    )
    log_event(
        logger,
        logging.INFO,
        "load_historical_job_done",
        months=months,
        chunks=result.chunks_processed,
        new=result.total_new_count,
    )
    return {
        "total_new_count": result.total_new_count,
        "total_critical_count": result.total_critical_count,
        "months_loaded": result.months_loaded,
        "chunks_processed": result.chunks_processed,
    }


def _handle_reprocess(conn, config: Config, logger: logging.Logger) -> dict[str, object]:
    result = reprocess_existing(conn, _build_feed_client(config), config.collection)
    log_event(logger, logging.INFO, "reprocess_job_done", updated=result.updated)
    return {"fetched": result.fetched, "updated": result.updated}


def _handle_scheduled_collect(conn, config: Config, logger: logging.Logger) -> dict[str, object]:
    result = collect(
        conn,
        _build_feed_client(config),
        config.collection,
        window_days=config.schedule.days_back,
    )
    notifications = 0
    if config.alerts.enabled and result.critical_records:
        notifications = dispatch(conn, result.critical_records)
    set_setting(conn, LAST_SCHEDULED_KEY, utc_now_iso())
    log_event(
        logger,
        logging.INFO,
        "scheduled_collect_done",
        new=result.new_count,
        critical=result.critical_count,
        notifications=notifications,
    )
    return {
        "new_count": result.new_count,
        "critical_count": result.critical_count,
        "notifications": notifications,
    }


def _maybe_enqueue_scheduled_collect(conn, config: Config, logger: logging.Logger) -> str | None:
    if not config.schedule.enabled:
        return None
    now = utc_now()
    interval = timedelta(minutes=config.schedule.interval_minutes)
    last_run = get_setting(conn, LAST_SCHEDULED_KEY, None)
    if isinstance(last_run, str):
        try:
            if parse_iso(last_run) + interval > now:
                return None
        except ValueError:
            log_event(logger, logging.WARNING, "schedule_marker_invalid", value=last_run)
    job_id = enqueue_job(conn, "scheduled_collect", None, debounce=True)
    set_setting(conn, LAST_SCHEDULED_KEY, utc_now_iso())
    log_event(logger, logging.DEBUG, "scheduled_collect_due", job_id=job_id)
    return job_id


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cvealert-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=10, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("CA_WORKER_ONLY_TYPES", ""))
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(args.worker_id, allowed_types)
    return run_loop(args.worker_id, args.sleep, allowed_types)
