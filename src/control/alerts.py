"""Monitoring alerts with per event-type/subject deduplication."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from src.core.errors import BattleError
from src.core.logger import get_logger
from src.core.metrics import record_monitoring_alert
from src.storage.models import MonitoringAlert


VALID_SEVERITIES = {"info", "warning", "critical"}

logger = get_logger("arena.control.alerts")


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_severity(value: str | None) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in VALID_SEVERITIES:
        return normalized
    return "warning"


def raise_alert(
    session: Session,
    *,
    event_type: str,
    severity: str,
    source: str,
    subject_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    dedup_key: Optional[str] = None,
    dedup_window_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[MonitoringAlert]:
    """Insert an alert unless one with the same event type and dedup key is inside the window.

    Returns the new alert, or None when the insert was suppressed as a duplicate.
    The caller owns the transaction.
    """

    current = now or _now_utc()
    normalized_severity = normalize_severity(severity)

    if dedup_key and dedup_window_minutes:
        since = current - timedelta(minutes=max(int(dedup_window_minutes), 1))
        existing_id = session.scalar(
            select(MonitoringAlert.id)
            .where(
                MonitoringAlert.event_type == event_type,
                MonitoringAlert.dedup_key == dedup_key,
                MonitoringAlert.created_at >= since,
            )
            .limit(1)
        )
        if existing_id is not None:
            logger.info(
                "monitoring_alert_deduplicated",
                event_type=event_type,
                dedup_key=dedup_key,
                existing_alert_id=existing_id,
            )
            return None

    alert = MonitoringAlert(
        event_type=event_type,
        severity=normalized_severity,
        source=source,
        subject_type=subject_type,
        subject_id=subject_id,
        dedup_key=dedup_key,
        details_json=_json_dumps(details or {}),
        created_at=current,
    )
    session.add(alert)
    session.flush()

    record_monitoring_alert(event_type=event_type, severity=normalized_severity)
    log_method = logger.error if normalized_severity == "critical" else logger.warning
    log_method(
        "monitoring_alert_raised",
        alert_id=alert.id,
        event_type=event_type,
        severity=normalized_severity,
        source=source,
        subject_type=subject_type,
        subject_id=subject_id,
    )
    return alert


def resolve_alert(
    session: Session,
    *,
    alert_id: str,
    resolved_by: Optional[str],
    now: Optional[datetime] = None,
) -> MonitoringAlert:
    alert = session.get(MonitoringAlert, alert_id)
    if alert is None:
        raise BattleError("alert_not_found")
    if alert.resolved_at is None:
        alert.resolved_at = now or _now_utc()
        alert.resolved_by = resolved_by
        session.flush()
    return alert


def list_alerts(
    session: Session,
    *,
    unresolved_only: bool = False,
    severity: Optional[str] = None,
    limit: int = 100,
) -> List[MonitoringAlert]:
    statement = select(MonitoringAlert)
    if unresolved_only:
        statement = statement.where(MonitoringAlert.resolved_at.is_(None))
    if severity:
        statement = statement.where(MonitoringAlert.severity == normalize_severity(severity))
    statement = statement.order_by(desc(MonitoringAlert.created_at)).limit(max(1, min(int(limit), 500)))
    return list(session.scalars(statement).all())
