from __future__ import annotations

import logging
from typing import Sequence

from .matcher import match_quality
from .models import VulnerabilityRecord
from .storage import insert_audit, insert_notification, list_subscribers, list_watch_entries
from .utils import log_event

NOTIFICATION_TYPE = "critical_cve_alert"


def dispatch(conn, critical_records: Sequence[VulnerabilityRecord]) -> int:
    """Write one notification per subscriber whose watch list matches any critical record."""
    logger = logging.getLogger("cvealert.alerts")
    if not critical_records:
        return 0
    subscribers = list_subscribers(conn, notifications_only=True)
    if not subscribers:
        log_event(logger, logging.INFO, "alerts_no_subscribers")
        return 0
    sent = 0
    for subscriber in subscribers:
        entries = list_watch_entries(conn, subscriber.id)
        if not entries:
            continue
        matched = [
            record.cve_id
            for record in critical_records
            if match_quality(record, entries) is not None
        ]
        if not matched:
            continue
        insert_notification(conn, subscriber.id, NOTIFICATION_TYPE, matched)
        insert_audit(
            conn,
            "critical_alert_created",
            {"cve_count": len(matched)},
            subscriber_id=subscriber.id,
        )
        sent += 1
        log_event(
            logger,
            logging.INFO,
            "alert_created",
            subscriber_id=subscriber.id,
            cve_count=len(matched),
        )
    return sent
