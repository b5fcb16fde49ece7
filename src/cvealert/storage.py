from __future__ import annotations

import hashlib
import json
import uuid
from typing import Any, Iterable

from .db import connect_db
from .models import Job, Reference, Severity, Subscriber, VulnerabilityRecord, WatchEntry
from .utils import json_dumps, json_loads_list, utc_now_iso, utc_now_iso_offset

_VULNERABILITY_COLUMNS = """
    cve_id, description, vendors_json, products_json, cvss_score, severity, cvss_vector,
    published_at, last_modified_at, references_json, vuln_status, collected_at, reprocessed_at
"""

_JOB_COLUMNS = """
    id, job_type, status, payload_json, result_json, requested_at, started_at,
    finished_at, locked_by, locked_at, error
"""


def init_db(path: str):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def vulnerability_exists(conn: Any, cve_id: str) -> bool:
    cursor = conn.execute("SELECT 1 FROM vulnerabilities WHERE cve_id = ?", (cve_id,))
    return cursor.fetchone() is not None


def insert_vulnerability(conn: Any, record: VulnerabilityRecord) -> bool:
    """Create the record if its id is absent; returns False when it already existed."""
    cursor = conn.execute(
        f"""
        INSERT INTO vulnerabilities ({_VULNERABILITY_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(cve_id) DO NOTHING
        """,
        (
            record.cve_id,
            record.description,
            json_dumps(sorted(record.vendors)),
            json_dumps(sorted(record.products)),
            float(record.cvss_score),
            record.severity.value,
            record.cvss_vector,
            record.published_at,
            record.last_modified_at,
            json_dumps([{"url": ref.url, "source": ref.source} for ref in record.references]),
            record.vuln_status,
            record.collected_at or utc_now_iso(),
            None,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def update_vulnerability_identifiers(
    conn: Any,
    cve_id: str,
    vendors: Iterable[str],
    products: Iterable[str],
    reprocessed_at: str | None = None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE vulnerabilities
        SET vendors_json = ?, products_json = ?, reprocessed_at = ?
        WHERE cve_id = ?
        """,
        (
            json_dumps(sorted(vendors)),
            json_dumps(sorted(products)),
            reprocessed_at or utc_now_iso(),
            cve_id,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_vulnerability(conn: Any, cve_id: str) -> VulnerabilityRecord | None:
    cursor = conn.execute(
        f"SELECT {_VULNERABILITY_COLUMNS} FROM vulnerabilities WHERE cve_id = ?",
        (cve_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_vulnerability(row)


def list_vulnerabilities(
    conn: Any, limit: int = 200, severity: str | None = None
) -> list[VulnerabilityRecord]:
    params: list[object] = []
    where = ""
    if severity:
        where = "WHERE severity = ?"
        params.append(severity.strip().upper())
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {_VULNERABILITY_COLUMNS}
        FROM vulnerabilities
        {where}
        ORDER BY published_at DESC, cve_id
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_vulnerability(row) for row in cursor.fetchall()]


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def upsert_subscriber(
    conn: Any,
    subscriber_id: str,
    email: str | None = None,
    display_name: str | None = None,
    notifications_enabled: bool = False,
    token: str | None = None,
) -> Subscriber:
    now = utc_now_iso()
    token_hash = hash_token(token) if token else None
    conn.execute(
        """
        INSERT INTO subscribers
            (id, email, display_name, notifications_enabled, token_hash, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            email = excluded.email,
            display_name = excluded.display_name,
            notifications_enabled = excluded.notifications_enabled,
            token_hash = COALESCE(excluded.token_hash, subscribers.token_hash),
            updated_at = excluded.updated_at
        """,
        (
            subscriber_id,
            email,
            display_name,
            1 if notifications_enabled else 0,
            token_hash,
            now,
            now,
        ),
    )
    conn.commit()
    return Subscriber(
        id=subscriber_id,
        email=email,
        display_name=display_name,
        notifications_enabled=notifications_enabled,
    )


def get_subscriber_by_token(conn: Any, token: str) -> Subscriber | None:
    if not token:
        return None
    cursor = conn.execute(
        """
        SELECT id, email, display_name, notifications_enabled
        FROM subscribers
        WHERE token_hash = ?
        """,
        (hash_token(token),),
    )
    row = cursor.fetchone()
    return _row_to_subscriber(row) if row else None


def list_subscribers(conn: Any, notifications_only: bool = False) -> list[Subscriber]:
    where = "WHERE notifications_enabled = 1" if notifications_only else ""
    cursor = conn.execute(
        f"""
        SELECT id, email, display_name, notifications_enabled
        FROM subscribers
        {where}
        ORDER BY id
        """
    )
    return [_row_to_subscriber(row) for row in cursor.fetchall()]


def add_watch_entry(conn: Any, subscriber_id: str, entry: WatchEntry) -> str:
    entry_id = f"we_{uuid.uuid4().hex}"
    conn.execute(
        """
        INSERT INTO watch_entries (id, subscriber_id, vendor, product, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (entry_id, subscriber_id, entry.vendor, entry.product, utc_now_iso()),
    )
    conn.commit()
    return entry_id


def delete_watch_entries(conn: Any, subscriber_id: str) -> int:
    cursor = conn.execute(
        "DELETE FROM watch_entries WHERE subscriber_id = ?",
        (subscriber_id,),
    )
    conn.commit()
    return cursor.rowcount


def list_watch_entries(conn: Any, subscriber_id: str) -> list[WatchEntry]:
    cursor = conn.execute(
        """
        SELECT vendor, product
        FROM watch_entries
        WHERE subscriber_id = ?
        ORDER BY created_at, id
        """,
        (subscriber_id,),
    )
    return [WatchEntry.create(row[0], row[1]) for row in cursor.fetchall()]


def list_all_watch_entries(conn: Any) -> list[WatchEntry]:
    cursor = conn.execute(
        """
        SELECT vendor, product
        FROM watch_entries
        ORDER BY subscriber_id, created_at, id
        """
    )
    return [WatchEntry.create(row[0], row[1]) for row in cursor.fetchall()]


def insert_notification(
    conn: Any,
    subscriber_id: str,
    notification_type: str,
    cve_ids: list[str],
) -> str:
    notification_id = f"nt_{uuid.uuid4().hex}"
    conn.execute(
        """
        INSERT INTO notifications
            (id, subscriber_id, notification_type, cve_ids_json, cve_count, is_read, created_at)
        VALUES (?, ?, ?, ?, ?, 0, ?)
        """,
        (
            notification_id,
            subscriber_id,
            notification_type,
            json_dumps(list(cve_ids)),
            len(cve_ids),
            utc_now_iso(),
        ),
    )
    conn.commit()
    return notification_id


def list_notifications(conn: Any, subscriber_id: str | None = None) -> list[dict[str, object]]:
    params: tuple = ()
    where = ""
    if subscriber_id:
        where = "WHERE subscriber_id = ?"
        params = (subscriber_id,)
    cursor = conn.execute(
        f"""
        SELECT id, subscriber_id, notification_type, cve_ids_json, cve_count, is_read, created_at
        FROM notifications
        {where}
        ORDER BY created_at, id
        """,
        params,
    )
    return [
        {
            "id": row[0],
            "subscriber_id": row[1],
            "type": row[2],
            "cve_ids": json_loads_list(row[3]),
            "count": int(row[4]),
            "read": bool(row[5]),
            "created_at": row[6],
        }
        for row in cursor.fetchall()
    ]


def insert_audit(
    conn: Any,
    action: str,
    details: dict[str, object] | None = None,
    subscriber_id: str | None = None,
) -> str:
    audit_id = f"au_{uuid.uuid4().hex}"
    conn.execute(
        """
        INSERT INTO audit_log (id, action, subscriber_id, details_json, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            audit_id,
            action,
            subscriber_id,
            json_dumps(details) if details else None,
            utc_now_iso(),
        ),
    )
    conn.commit()
    return audit_id


def list_audit(conn: Any, action: str | None = None, limit: int = 50) -> list[dict[str, object]]:
    params: list[object] = []
    where = ""
    if action:
        where = "WHERE action = ?"
        params.append(action)
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT id, action, subscriber_id, details_json, created_at
        FROM audit_log
        {where}
        ORDER BY created_at DESC, id
        LIMIT ?
        """,
        tuple(params),
    )
    rows = []
    for row in cursor.fetchall():
        try:
            details = json.loads(row[3]) if row[3] else {}
        except json.JSONDecodeError:
            details = {}
        rows.append(
            {
                "id": row[0],
                "action": row[1],
                "subscriber_id": row[2],
                "details": details,
                "created_at": row[4],
            }
        )
    return rows


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    debounce: bool = False,
) -> str:
    if debounce and _has_pending_job(conn, job_type):
        return _get_latest_job_id(conn, job_type)
    job_id = _new_job_id()
    conn.execute(
        f"""
        INSERT INTO jobs ({_JOB_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            "queued",
            json_dumps(payload) if payload else None,
            None,
            utc_now_iso(),
            None,
            None,
            None,
            None,
            None,
        ),
    )
    conn.commit()
    return job_id


def list_jobs(conn: Any, limit: int = 50) -> list[Job]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM jobs
        ORDER BY requested_at DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def get_job(conn: Any, job_id: str) -> Job | None:
    cursor = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    if lock_timeout_seconds is not None:
        cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
        conn.execute(
            """
            UPDATE jobs
            SET status = 'queued',
                locked_by = NULL,
                locked_at = NULL,
                started_at = NULL,
                error = 'stale_lock_requeued'
            WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
            """,
            (cutoff,),
        )
        conn.commit()
    params: list[object] = []
    type_clause = ""
    if allowed_types:
        placeholders = ",".join(["?"] * len(allowed_types))
        type_clause = f" AND job_type IN ({placeholders})"
        params.extend(allowed_types)
    for _ in range(20):
        cursor = conn.execute(
            f"""
            SELECT id
            FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL {type_clause}
            ORDER BY requested_at ASC
            LIMIT 1
            """,
            tuple(params),
        )
        row = cursor.fetchone()
        if not row:
            return None
        job_id = row[0]
        now = utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, job_id),
        )
        conn.commit()
        if cursor.rowcount == 1:
            return get_job(conn, job_id)
    return None


def complete_job(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def _has_pending_job(conn: Any, job_type: str) -> bool:
    cursor = conn.execute(
        """
        SELECT 1 FROM jobs
        WHERE job_type = ? AND status IN ('queued', 'running')
        LIMIT 1
        """,
        (job_type,),
    )
    return cursor.fetchone() is not None


def _get_latest_job_id(conn: Any, job_type: str) -> str:
    cursor = conn.execute(
        """
        SELECT id FROM jobs
        WHERE job_type = ? AND status IN ('queued', 'running')
        ORDER BY requested_at DESC
        LIMIT 1
        """,
        (job_type,),
    )
    row = cursor.fetchone()
    return row[0] if row else ""


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def _row_to_vulnerability(row: tuple) -> VulnerabilityRecord:
    references = tuple(
        Reference(url=str(item.get("url") or ""), source=item.get("source"))
        for item in json_loads_list(row[9])
        if isinstance(item, dict)
    )
    return VulnerabilityRecord(
        cve_id=row[0],
        description=row[1],
        vendors=frozenset(json_loads_list(row[2])),
        products=frozenset(json_loads_list(row[3])),
        cvss_score=float(row[4] or 0.0),
        severity=Severity.parse(row[5]),
        cvss_vector=row[6],
        published_at=row[7],
        last_modified_at=row[8],
        references=references,
        vuln_status=row[10],
        collected_at=row[11],
        reprocessed_at=row[12],
    )


def _row_to_subscriber(row: tuple) -> Subscriber:
    return Subscriber(
        id=row[0],
        email=row[1],
        display_name=row[2],
        notifications_enabled=bool(row[3]),
    )


def _row_to_job(row: tuple) -> Job:
    payload_json = row[3]
    result_json = row[4]
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    try:
        result = json.loads(result_json) if result_json else None
    except json.JSONDecodeError:
        result = None
    return Job(
        id=row[0],
        job_type=row[1],
        status=row[2],
        payload=payload,
        result=result,
        requested_at=row[5],
        started_at=row[6],
        finished_at=row[7],
        locked_by=row[8],
        locked_at=row[9],
        error=row[10],
    )
