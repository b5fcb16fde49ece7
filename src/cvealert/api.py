from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

try:
    from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
except Exception:  # noqa: BLE001
    ProxyHeadersMiddleware = None

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
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .feed_client import FeedClient
from .matcher import annotate, meets_quality
from .models import MatchQuality, MatchResult, Subscriber, VulnerabilityRecord
from .storage import (
    enqueue_job,
    get_subscriber_by_token,
    init_db,
    list_jobs,
    list_notifications,
    list_vulnerabilities,
    list_watch_entries,
)
from .utils import configure_logging, log_event
from .worker import WORKER_JOB_TYPES

app = FastAPI(title="CVE Alert API")

if ProxyHeadersMiddleware:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("CA_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _require_subscriber(request: Request) -> Subscriber:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="unauthenticated")
    conn = _get_conn()
    try:
        subscriber = get_subscriber_by_token(conn, token.strip())
    finally:
        conn.close()
    if subscriber is None:
        raise HTTPException(status_code=401, detail="unauthenticated")
    return subscriber


class CollectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    days_back: int | None = Field(default=None, alias="daysBack")


class BackfillRequest(BaseModel):
    months: int | None = None


class JobRequest(BaseModel):
    job_type: str
    payload: dict[str, object] | None = None


class RuntimeConfigRequest(BaseModel):
    config: dict


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.post("/api/collect")
def collect_manual(
    payload: CollectRequest | None = None,
    subscriber: Subscriber = Depends(_require_subscriber),
) -> dict[str, object]:
    logger = logging.getLogger("cvealert.api")
    conn = _get_conn()
    try:
        config = _load_config(conn)
        days_back = resolve_days_back(payload.days_back if payload else None, config.collection)
        result = collect(
            conn,
            _build_feed_client(config),
            config.collection,
            window_days=days_back,
            subscriber_id=subscriber.id,
            timeout_seconds=config.collection.manual_timeout_seconds,
        )
    except CollectionTimeout as exc:
        log_event(logger, logging.WARNING, "manual_collect_timeout", subscriber_id=subscriber.id)
        raise HTTPException(status_code=504, detail="collection_timeout") from exc
    except HTTPException:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("manual_collect_failed subscriber_id=%s", subscriber.id)
        raise HTTPException(status_code=500, detail="internal_error") from exc
    finally:
        conn.close()
    return {
        "success": True,
        "newCount": result.new_count,
        "criticalCount": result.critical_count,
        "daysCollected": days_back,
    }


@app.post("/api/backfill")
def backfill(
    payload: BackfillRequest | None = None,
    subscriber: Subscriber = Depends(_require_subscriber),
) -> dict[str, object]:
    logger = logging.getLogger("cvealert.api")
    conn = _get_conn()
    try:
        config = _load_config(conn)
        try:
            months = resolve_months(payload.months if payload else None, config.collection)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        result = load_historical(
            conn,
            _build_feed_client(config),
            config.collection,
            months=months,
            subscriber_id=subscriber.id,
            timeout_seconds=config.collection.backfill_timeout_seconds,
        )
    except CollectionTimeout as exc:
        log_event(logger, logging.WARNING, "backfill_timeout", subscriber_id=subscriber.id)
        raise HTTPException(status_code=504, detail="collection_timeout") from exc
    except HTTPException:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("backfill_failed subscriber_id=%s", subscriber.id)
        raise HTTPException(status_code=500, detail="internal_error") from exc
    finally:
        conn.close()
    return {
        "success": True,
        "totalNewCount": result.total_new_count,
        "totalCriticalCount": result.total_critical_count,
        "monthsLoaded": result.months_loaded,
        "chunksProcessed": result.chunks_processed,
    }


@app.post("/api/reprocess")
def reprocess(subscriber: Subscriber = Depends(_require_subscriber)) -> dict[str, object]:
    logger = logging.getLogger("cvealert.api")
    conn = _get_conn()
    try:
        config = _load_config(conn)
        result = reprocess_existing(conn, _build_feed_client(config), config.collection)
    except HTTPException:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("reprocess_failed subscriber_id=%s", subscriber.id)
        raise HTTPException(status_code=500, detail="internal_error") from exc
    finally:
        conn.close()
    return {"success": True, "updated": result.updated}


@app.get("/api/vulnerabilities")
def vulnerabilities(
    view: str = Query("my", pattern="^(my|all)$"),
    min_quality: str | None = None,
    severity: str | None = None,
    limit: int = Query(200, ge=1, le=1000),
    subscriber: Subscriber = Depends(_require_subscriber),
) -> dict[str, object]:
    threshold = None
    if min_quality:
        try:
            threshold = MatchQuality(min_quality.strip().upper())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="invalid min_quality") from exc
    conn = _get_conn()
    try:
        entries = list_watch_entries(conn, subscriber.id)
        records = list_vulnerabilities(conn, limit=limit, severity=severity)
    finally:
        conn.close()
    rows = []
    for record, result in annotate(records, entries):
        if view == "my" and result is None:
            continue
        if threshold is not None and not meets_quality(result, threshold):
            continue
        rows.append(_record_payload(record, result))
    return {"view": view, "count": len(rows), "items": rows}


@app.get("/api/notifications")
def notifications(subscriber: Subscriber = Depends(_require_subscriber)) -> list[dict[str, object]]:
    conn = _get_conn()
    try:
        return list_notifications(conn, subscriber.id)
    finally:
        conn.close()


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"status": "ok"}


@app.post("/jobs/enqueue")
def enqueue(job: JobRequest, _: None = Depends(_require_admin_token)) -> dict[str, str]:
    logger = logging.getLogger("cvealert.api")
    if job.job_type not in WORKER_JOB_TYPES:
        raise HTTPException(status_code=400, detail="unknown job_type")
    conn = _get_conn()
    try:
        job_id = enqueue_job(conn, job.job_type, job.payload, debounce=True)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=job.job_type)
    return {"job_id": job_id}


@app.get("/jobs", dependencies=[Depends(_require_admin_token)])
def jobs(limit: int = 20) -> list[dict[str, object]]:
    conn = _get_conn()
    try:
        rows = list_jobs(conn, limit=limit)
    finally:
        conn.close()
    return [
        {
            "id": job.id,
            "job_type": job.job_type,
            "status": job.status,
            "requested_at": job.requested_at,
            "started_at": job.started_at or "",
            "finished_at": job.finished_at or "",
            "error": job.error or "",
            "result": job.result or {},
        }
        for job in rows
    ]


def _record_payload(record: VulnerabilityRecord, result: MatchResult | None) -> dict[str, object]:
    return {
        "cveId": record.cve_id,
        "description": record.description,
        "vendors": sorted(record.vendors),
        "products": sorted(record.products),
        "cvssScore": record.cvss_score,
        "severity": record.severity.value,
        "cvssVector": record.cvss_vector,
        "publishedDate": record.published_at,
        "lastModifiedDate": record.last_modified_at,
        "references": [{"url": ref.url, "source": ref.source} for ref in record.references],
        "matchQuality": result.quality.value if result else None,
        "matchedEntry": (
            {"vendor": result.entry.vendor, "product": result.entry.product} if result else None
        ),
    }


def _build_feed_client(config: Config) -> FeedClient:
    return FeedClient.from_env(config.feed)


def _load_config(conn) -> Config:
    return load_runtime_config(conn)


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("cvealert")
    except Exception:  # noqa: BLE001
        return "unknown"


def _setup_logging() -> None:
    configure_logging("cvealert.api")


_setup_logging()
