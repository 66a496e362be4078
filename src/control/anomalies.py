"""Periodic anomaly scan over the audit log."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.control.alerts import raise_alert
from src.core.config import get_settings
from src.core.logger import get_logger
from src.storage.models import AuditEntry


logger = get_logger("arena.control.anomalies")


def detect_anomalies(
    session: Session,
    *,
    lookback_minutes: Optional[int] = None,
    threshold: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Raise one deduplicated critical alert per action type whose volume crossed the threshold.

    Returns the number of alerts inserted. The caller owns the transaction.
    """

    settings = get_settings()
    lookback = max(int(lookback_minutes or settings.anomaly_scan_lookback_minutes), 1)
    minimum = int(threshold or settings.anomaly_scan_threshold)
    current = now or datetime.now(timezone.utc)
    since = current - timedelta(minutes=lookback)

    rows = session.execute(
        select(AuditEntry.action_type, func.count(AuditEntry.id))
        .where(AuditEntry.created_at >= since)
        .group_by(AuditEntry.action_type)
        .having(func.count(AuditEntry.id) >= minimum)
    ).all()

    inserted = 0
    for action_type, observed in rows:
        alert = raise_alert(
            session,
            event_type="admin_action_spike_scan",
            severity="critical",
            source="anomaly_scan",
            subject_type="action_type",
            subject_id=action_type,
            details={
                "action_type": action_type,
                "observed_count": int(observed),
                "lookback_minutes": lookback,
                "threshold": minimum,
            },
            dedup_key=action_type,
            dedup_window_minutes=lookback,
            now=current,
        )
        if alert is not None:
            inserted += 1

    logger.info(
        "anomaly_scan_completed",
        lookback_minutes=lookback,
        threshold=minimum,
        flagged_action_types=len(rows),
        alerts_inserted=inserted,
    )
    return inserted
