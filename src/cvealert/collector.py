from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import CollectionConfig
from .extract import (
    extract_description,
    extract_identifiers,
    extract_references,
    extract_severity,
)
from .feed_client import FeedClient
from .models import Severity, VulnerabilityRecord, WILDCARD
from .storage import (
    insert_audit,
    insert_vulnerability,
    list_all_watch_entries,
    list_watch_entries,
    update_vulnerability_identifiers,
    vulnerability_exists,
)
from .utils import log_event, utc_now, utc_now_iso

REJECTED_STATUS = "rejected"
DAYS_PER_MONTH = 30


class CollectionTimeout(RuntimeError):
    pass


@dataclass(frozen=True)
class CollectionResult:
    new_count: int
    critical_count: int
    critical_records: tuple[VulnerabilityRecord, ...]
    total_fetched: int
    kept: int
    rejected: int
    skipped: int
    errors: int
    vendor_terms: tuple[str, ...]


@dataclass(frozen=True)
class ProcessResult:
    created: bool
    critical: bool
    record: VulnerabilityRecord | None


@dataclass(frozen=True)
class HistoricalResult:
    total_new_count: int
    total_critical_count: int
    months_loaded: int
    chunks_processed: int
    critical_records: tuple[VulnerabilityRecord, ...]


@dataclass(frozen=True)
class ReprocessResult:
    fetched: int
    updated: int


class _Deadline:
    def __init__(self, timeout_seconds: float | None, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._expires = clock() + timeout_seconds if timeout_seconds is not None else None

    def remaining(self) -> float | None:
        if self._expires is None:
            return None
        return self._expires - self._clock()

    def check(self, stage: str) -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise CollectionTimeout(f"collection deadline exceeded during {stage}")


def resolve_vendor_terms(conn, subscriber_id: str | None = None) -> tuple[str, ...]:
    if subscriber_id:
        entries = list_watch_entries(conn, subscriber_id)
    else:
        entries = list_all_watch_entries(conn)
    terms: dict[str, None] = {}
    for entry in entries:
        vendor = entry.vendor.strip().lower()
        if vendor and vendor != WILDCARD:
            terms.setdefault(vendor, None)
    return tuple(terms)


def collection_window(
    window_days: int, offset_days: int = 0, now: datetime | None = None
) -> tuple[datetime, datetime]:
    now = now or utc_now()
    end = now - timedelta(days=offset_days)
    start = end - timedelta(days=window_days)
    return start, end


def resolve_days_back(days_back: Any, config: CollectionConfig) -> int:
    if days_back is None:
        return config.manual_days_back
    days = int(days_back)
    return max(0, min(days, config.max_window_days))


def resolve_months(months: Any, config: CollectionConfig) -> int:
    if not months:
        return config.default_backfill_months
    value = int(months)
    if value < 0:
        raise ValueError("months must not be negative")
    return min(value, config.max_backfill_months)


def is_critical(record: VulnerabilityRecord, threshold: float = 9.0) -> bool:
    return record.severity is Severity.CRITICAL or record.cvss_score >= threshold


def build_record(raw: dict[str, Any], collected_at: str | None = None) -> VulnerabilityRecord | None:
    cve = raw.get("cve") or {}
    cve_id = cve.get("id")
    if not cve_id:
        return None
    identifiers = extract_identifiers(raw)
    severity = extract_severity(raw)
    return VulnerabilityRecord(
        cve_id=str(cve_id),
        description=extract_description(raw),
        vendors=identifiers.vendors,
        products=identifiers.products,
        cvss_score=severity.score,
        severity=severity.severity,
        cvss_vector=severity.vector,
        published_at=cve.get("published"),
        last_modified_at=cve.get("lastModified"),
        references=extract_references(raw),
        collected_at=collected_at or utc_now_iso(),
        vuln_status=cve.get("vulnStatus"),
    )


def process_record(
    conn, raw: dict[str, Any], critical_score: float = 9.0
) -> ProcessResult:
    cve_id = (raw.get("cve") or {}).get("id")
    if not cve_id or vulnerability_exists(conn, cve_id):
        return ProcessResult(created=False, critical=False, record=None)
    record = build_record(raw)
    if record is None:
        return ProcessResult(created=False, critical=False, record=None)
    if not insert_vulnerability(conn, record):
        return ProcessResult(created=False, critical=False, record=None)
    return ProcessResult(
        created=True,
        critical=is_critical(record, critical_score),
        record=record,
    )


def collect(
    conn,
    client: FeedClient,
    config: CollectionConfig,
    window_days: int,
    offset_days: int = 0,
    subscriber_id: str | None = None,
    timeout_seconds: float | None = None,
    now: datetime | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> CollectionResult:
    logger = logging.getLogger("cvealert.collector")
    deadline = _Deadline(timeout_seconds, clock)
    terms = resolve_vendor_terms(conn, subscriber_id)
    log_event(
        logger,
        logging.INFO,
        "collection_started",
        window_days=window_days,
        offset_days=offset_days,
        subscriber_id=subscriber_id or "all",
        vendor_terms=len(terms),
    )

    unique: dict[str, dict[str, Any]] = {}
    if terms:
        start, end = collection_window(window_days, offset_days, now)
        for term in terms:
            deadline.check("fetch")
            records = client.fetch_keyword(term, start, end)
            log_event(logger, logging.DEBUG, "vendor_fetched", vendor=term, count=len(records))
            for raw in records:
                cve_id = (raw.get("cve") or {}).get("id")
                if cve_id:
                    unique[cve_id] = raw

    kept = [raw for raw in unique.values() if not _is_rejected(raw)]
    rejected = len(unique) - len(kept)

    new_count = 0
    skipped = 0
    errors = 0
    critical: list[VulnerabilityRecord] = []
    for raw in kept:
        deadline.check("store")
        try:
            result = process_record(conn, raw, config.critical_score)
        except Exception as exc:  # noqa: BLE001
            errors += 1
            log_event(
                logger,
                logging.ERROR,
                "record_store_failed",
                cve_id=(raw.get("cve") or {}).get("id"),
                error=exc,
            )
            continue
        if not result.created:
            skipped += 1
            continue
        new_count += 1
        if result.critical and result.record is not None:
            critical.append(result.record)

    deadline.check("audit")
    insert_audit(
        conn,
        "cve_collection_completed",
        {
            "new_count": new_count,
            "critical_count": len(critical),
            "total_fetched": len(unique),
            "valid_count": len(kept),
            "rejected": rejected,
            "skipped": skipped,
            "errors": errors,
        },
        subscriber_id=subscriber_id,
    )
    log_event(
        logger,
        logging.INFO,
        "collection_completed",
        fetched=len(unique),
        rejected=rejected,
        skipped=skipped,
        new=new_count,
        critical=len(critical),
        errors=errors,
    )
    return CollectionResult(
        new_count=new_count,
        critical_count=len(critical),
        critical_records=tuple(critical),
        total_fetched=len(unique),
        kept=len(kept),
        rejected=rejected,
        skipped=skipped,
        errors=errors,
        vendor_terms=terms,
    )


def plan_chunks(months: int, chunk_days: int = 120) -> list[tuple[int, int]]:
    """Split ``months * 30`` days into ``(offset_days, window_days)`` chunks, newest first."""
    total_days = months * DAYS_PER_MONTH
    if total_days <= 0 or chunk_days <= 0:
        return []
    chunks = []
    for index in range(math.ceil(total_days / chunk_days)):
        offset = index * chunk_days
        days = min((index + 1) * chunk_days, total_days) - offset
        chunks.append((offset, days))
    return chunks


def load_historical(
    conn,
    client: FeedClient,
    config: CollectionConfig,
    months: int,
    subscriber_id: str | None = None,
    timeout_seconds: float | None = None,
    now: datetime | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> HistoricalResult:
    logger = logging.getLogger("cvealert.collector")
    deadline = _Deadline(timeout_seconds, clock)
    chunks = plan_chunks(months, config.max_window_days)
    now = now or utc_now()
    total_new = 0
    total_critical = 0
    critical: list[VulnerabilityRecord] = []
    for index, (offset, days) in enumerate(chunks, start=1):
        deadline.check("backfill")
        log_event(
            logger,
            logging.INFO,
            "backfill_chunk_started",
            chunk=index,
            chunks=len(chunks),
            offset_days=offset,
            window_days=days,
        )
        result = collect(
            conn,
            client,
            config,
            window_days=days,
            offset_days=offset,
            subscriber_id=subscriber_id,
            timeout_seconds=deadline.remaining(),
            now=now,
            clock=clock,
        )
        total_new += result.new_count
        total_critical += result.critical_count
        critical.extend(result.critical_records)
    log_event(
        logger,
        logging.INFO,
        "backfill_completed",
        months=months,
        chunks=len(chunks),
        new=total_new,
        critical=total_critical,
    )
    return HistoricalResult(
        total_new_count=total_new,
        total_critical_count=total_critical,
        months_loaded=months,
        chunks_processed=len(chunks),
        critical_records=tuple(critical),
    )


def reprocess_existing(
    conn,
    client: FeedClient,
    config: CollectionConfig,
    now: datetime | None = None,
) -> ReprocessResult:
    """Re-derive vendors/products for stored records; never creates new ones."""
    logger = logging.getLogger("cvealert.collector")
    start, end = collection_window(config.reprocess_days_back, 0, now)
    params = client.build_params(start, end)
    fetched = 0
    updated = 0
    for raw in client.fetch_all(params):
        fetched += 1
        cve_id = (raw.get("cve") or {}).get("id")
        if not cve_id or not vulnerability_exists(conn, cve_id):
            continue
        identifiers = extract_identifiers(raw)
        if update_vulnerability_identifiers(
            conn,
            cve_id,
            identifiers.vendors,
            identifiers.products,
            reprocessed_at=utc_now_iso(),
        ):
            updated += 1
            log_event(
                logger,
                logging.DEBUG,
                "record_reprocessed",
                cve_id=cve_id,
                vendors=len(identifiers.vendors),
                products=len(identifiers.products),
            )
    insert_audit(
        conn,
        "cve_reprocess_completed",
        {"fetched": fetched, "updated": updated},
    )
    log_event(logger, logging.INFO, "reprocess_completed", fetched=fetched, updated=updated)
    return ReprocessResult(fetched=fetched, updated=updated)


def _is_rejected(raw: dict[str, Any]) -> bool:
    status = (raw.get("cve") or {}).get("vulnStatus")
    return isinstance(status, str) and status.strip().lower() == REJECTED_STATUS
