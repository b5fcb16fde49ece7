from __future__ import annotations

import argparse
import logging
import os

from .collector import (
    CollectionTimeout,
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
    load_config_file,
    load_runtime_config,
    load_subscribers_file,
    set_runtime_config,
)
from .feed_client import FeedClient, FeedError
from .models import WatchEntry
from .storage import (
    add_watch_entry,
    delete_watch_entries,
    enqueue_job,
    init_db,
    list_jobs,
    upsert_subscriber,
)
from .utils import configure_logging, log_event
from .worker import WORKER_JOB_TYPES


def _setup_logging() -> logging.Logger:
    return configure_logging("cvealert")


def _build_feed_client(config: Config) -> FeedClient:
    return FeedClient.from_env(config.feed)


def _open(logger: logging.Logger):
    conn = init_db(get_state_db_path())
    try:
        bootstrap_runtime_config(conn)
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_collect(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        days_back = resolve_days_back(args.days, config.collection)
        result = collect(
            conn,
            _build_feed_client(config),
            config.collection,
            window_days=days_back,
            offset_days=args.offset,
            subscriber_id=args.subscriber,
        )
    except CollectionTimeout as exc:
        log_event(logger, logging.ERROR, "collect_timeout", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "collect_complete",
        days_back=days_back,
        fetched=result.total_fetched,
        rejected=result.rejected,
        skipped=result.skipped,
        new=result.new_count,
        critical=result.critical_count,
    )
    return 0


def _cmd_backfill(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        months = resolve_months(args.months, config.collection)
        result = load_historical(
            conn,
            _build_feed_client(config),
            config.collection,
            months=months,
            subscriber_id=args.subscriber,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "backfill_invalid", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "backfill_complete",
        months=result.months_loaded,
        chunks=result.chunks_processed,
        new=result.total_new_count,
        critical=result.total_critical_count,
    )
    return 0


def _cmd_reprocess(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        result = reprocess_existing(conn, _build_feed_client(config), config.collection)
    except FeedError as exc:
        log_event(logger, logging.ERROR, "reprocess_failed", status=exc.status, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "reprocess_complete", fetched=result.fetched, updated=result.updated)
    return 0


def _cmd_subscribers_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        subscribers = load_subscribers_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "subscribers_import_error", error=str(exc))
        return 1
    conn = init_db(get_state_db_path())
    try:
        entries = 0
        for item in subscribers:
            subscriber_id = str(item["id"])
            upsert_subscriber(
                conn,
                subscriber_id,
                email=item.get("email"),
                display_name=item.get("display_name"),
                notifications_enabled=bool(item.get("notifications_enabled", False)),
                token=item.get("token"),
            )
            if "watch_list" in item:
                delete_watch_entries(conn, subscriber_id)
                for raw in item.get("watch_list") or []:
                    add_watch_entry(
                        conn,
                        subscriber_id,
                        WatchEntry.create(raw.get("vendor"), raw.get("product")),
                    )
                    entries += 1
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "subscribers_imported",
        count=len(subscribers),
        watch_entries=entries,
    )
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        cfg = load_config_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn = init_db(get_state_db_path())
    try:
        set_runtime_config(conn, cfg)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = get_state_db_path()
    conn = init_db(path)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    payload: dict[str, object] = {}
    if args.days_back is not None:
        payload["days_back"] = args.days_back
    if args.months is not None:
        payload["months"] = args.months
    if args.subscriber_id:
        payload["subscriber_id"] = args.subscriber_id
    conn = init_db(get_state_db_path())
    try:
        job_id = enqueue_job(conn, args.job_type, payload, debounce=args.debounce)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(get_state_db_path())
    try:
        jobs = list_jobs(conn, limit=args.limit)
    finally:
        conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            requested_at=job.requested_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            error=job.error,
            result=job.result,
        )
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("cvealert.api:app", host=args.host, port=args.port, proxy_headers=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cvealert", description="CVE alert CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    collect_parser = subparsers.add_parser("collect", help="Collect recent CVEs for watched vendors")
    collect_parser.add_argument("--days", type=int, default=None, help="Days back to collect")
    collect_parser.add_argument("--offset", type=int, default=0, help="Days to shift the window back")
    collect_parser.add_argument("--subscriber", default=None, help="Limit to one subscriber's watch list")
    collect_parser.set_defaults(func=_cmd_collect)

    backfill_parser = subparsers.add_parser("backfill", help="Load historical CVEs in chunks")
    backfill_parser.add_argument("--months", type=int, default=None, help="Months to load")
    backfill_parser.add_argument("--subscriber", default=None, help="Limit to one subscriber's watch list")
    backfill_parser.set_defaults(func=_cmd_backfill)

    reprocess_parser = subparsers.add_parser(
        "reprocess", help="Re-derive vendors/products for recently published CVEs"
    )
    reprocess_parser.set_defaults(func=_cmd_reprocess)

    subscribers_parser = subparsers.add_parser("subscribers", help="Manage subscribers")
    subscribers_subparsers = subscribers_parser.add_subparsers(
        dest="subscribers_command", required=True
    )
    subscribers_import = subscribers_subparsers.add_parser(
        "import", help="Import subscribers and watch lists from YAML"
    )
    subscribers_import.add_argument("path", help="Path to subscribers YAML file")
    subscribers_import.set_defaults(func=_cmd_subscribers_import)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_import = config_subparsers.add_parser("import", help="Store a YAML config overlay")
    config_import.add_argument("path", help="Path to config YAML file")
    config_import.set_defaults(func=_cmd_config_import)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("job_type", choices=WORKER_JOB_TYPES, help="Job type to enqueue")
    jobs_enqueue.add_argument("--days-back", type=int, default=None)
    jobs_enqueue.add_argument("--months", type=int, default=None)
    jobs_enqueue.add_argument("--subscriber-id", default=None)
    jobs_enqueue.add_argument(
        "--debounce",
        action="store_true",
        help="Avoid enqueuing if a job of the same type is queued/running",
    )
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)
    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=os.environ.get("CA_HOST", "0.0.0.0"))
    serve_parser.add_argument("--port", type=int, default=int(os.environ.get("CA_PORT", "8000")))
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
