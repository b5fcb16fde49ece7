from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> None:
    # Statements must stay valid on both sqlite and PostgreSQL.
    logger = logging.getLogger("cvealert.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                """
                INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)
                ON CONFLICT(version) DO NOTHING
                """,
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS vulnerabilities (
            cve_id TEXT PRIMARY KEY,
            description TEXT NOT NULL,
            vendors_json TEXT NOT NULL,
            products_json TEXT NOT NULL,
            cvss_score DOUBLE PRECISION NOT NULL DEFAULT 0,
            severity TEXT NOT NULL,
            cvss_vector TEXT NULL,
            published_at TEXT NULL,
            last_modified_at TEXT NULL,
            references_json TEXT NOT NULL,
            vuln_status TEXT NULL,
            collected_at TEXT NOT NULL,
            reprocessed_at TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_vulnerabilities_published
        ON vulnerabilities(published_at)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS subscribers (
            id TEXT PRIMARY KEY,
            email TEXT NULL,
            display_name TEXT NULL,
            notifications_enabled INTEGER NOT NULL DEFAULT 0,
            token_hash TEXT NULL UNIQUE,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS watch_entries (
            id TEXT PRIMARY KEY,
            subscriber_id TEXT NOT NULL REFERENCES subscribers(id),
            vendor TEXT NOT NULL,
            product TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_watch_entries_subscriber
        ON watch_entries(subscriber_id)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            subscriber_id TEXT NOT NULL,
            notification_type TEXT NOT NULL,
            cve_ids_json TEXT NOT NULL,
            cve_count INTEGER NOT NULL,
            is_read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id TEXT PRIMARY KEY,
            action TEXT NOT NULL,
            subscriber_id TEXT NULL,
            details_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            requested_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_status_requested
        ON jobs(status, requested_at)
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
    ]
