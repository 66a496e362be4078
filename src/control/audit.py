"""Centralized audit log for privileged operations and executed moderation actions."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from src.control.alerts import raise_alert
from src.core.config import get_settings
from src.core.logger import get_logger
from src.storage.models import AuditEntry, ModerationAction


VALID_SOURCES = {"rpc", "moderation_actions", "scheduler"}

logger = get_logger("arena.control.audit")


@dataclass(frozen=True)
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def _json_load_dict(payload: str) -> Dict[str, Any]:
    try:
        loaded = json.loads(payload)
    except (TypeError, ValueError):
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def log_audit_entry(
    session: Session,
    *,
    actor_id: Optional[str],
    action_type: str,
    subject_type: str,
    subject_id: Optional[str],
    source: str = "rpc",
    source_action_id: Optional[str] = None,
    request_context: Optional[RequestContext] = None,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
    error_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AuditEntry:
    """Append one audit entry and run the on-insert monitoring checks.

    Entries carrying a ``source_action_id`` are idempotent: replaying the same
    source event returns the existing row. The caller owns the transaction.
    """

    if source_action_id:
        existing = session.scalar(select(AuditEntry).where(AuditEntry.source_action_id == source_action_id))
        if existing is not None:
            return existing

    current = now or _now_utc()
    context_payload: Dict[str, Any] = {
        "runtime": (request_context or RequestContext()).as_dict(),
        "custom": dict(context or {}),
    }
    entry = AuditEntry(
        actor_id=actor_id,
        action_type=action_type,
        subject_type=subject_type,
        subject_id=subject_id,
        source=source if source in VALID_SOURCES else "rpc",
        source_action_id=source_action_id,
        context_json=_json_dumps(context_payload),
        details_json=_json_dumps(details or {}),
        success=bool(success),
        error_code=error_code,
        created_at=current,
    )
    session.add(entry)
    session.flush()

    logger.info(
        "audit_entry_logged",
        audit_entry_id=entry.id,
        action_type=action_type,
        subject_type=subject_type,
        subject_id=subject_id,
        success=entry.success,
        error_code=error_code,
    )

    if not entry.success:
        raise_alert(
            session,
            event_type="admin_action_failed",
            severity="warning",
            source="audit_entries",
            subject_type=subject_type,
            subject_id=subject_id,
            details={
                "audit_entry_id": entry.id,
                "action_type": action_type,
                "actor_id": actor_id,
                "error_code": error_code,
            },
            now=current,
        )
    check_action_spike(session, action_type=action_type, now=current)
    return entry


def check_action_spike(session: Session, *, action_type: str, now: Optional[datetime] = None) -> bool:
    settings = get_settings()
    current = now or _now_utc()
    window_minutes = settings.anomaly_spike_window_minutes
    since = current - timedelta(minutes=window_minutes)
    observed = int(
        session.scalar(
            select(func.count(AuditEntry.id)).where(
                AuditEntry.action_type == action_type,
                AuditEntry.created_at >= since,
            )
        )
        or 0
    )
    if observed < settings.anomaly_spike_threshold:
        return False

    alert = raise_alert(
        session,
        event_type="admin_action_spike",
        severity="critical",
        source="audit_entries",
        subject_type="action_type",
        subject_id=action_type,
        details={
            "action_type": action_type,
            "observed_count": observed,
            "window_minutes": window_minutes,
            "threshold": settings.anomaly_spike_threshold,
        },
        dedup_key=action_type,
        dedup_window_minutes=window_minutes,
        now=current,
    )
    return alert is not None


def sync_moderation_action(
    session: Session,
    action: ModerationAction,
    *,
    now: Optional[datetime] = None,
) -> Optional[AuditEntry]:
    """Mirror an executed moderation action into the audit log exactly once."""

    if action.status != "executed":
        return None

    decision = _json_load_dict(action.decision_json)
    return log_audit_entry(
        session,
        actor_id=action.executed_by,
        action_type=action.action_type,
        subject_type=action.subject_type,
        subject_id=action.subject_id,
        source="moderation_actions",
        source_action_id=action.id,
        context={"reason": action.reason, "reversible": action.reversible},
        details={
            "decision": decision,
            "confidence_score": action.confidence_score,
            "human_override": action.human_override,
            "executed_at": action.executed_at,
        },
        success=action.error is None,
        error_code=action.error,
        now=now,
    )


def list_audit_entries(
    session: Session,
    *,
    action_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    success: Optional[bool] = None,
    limit: int = 100,
) -> List[AuditEntry]:
    statement = select(AuditEntry)
    if action_type:
        statement = statement.where(AuditEntry.action_type == action_type)
    if subject_id:
        statement = statement.where(AuditEntry.subject_id == subject_id)
    if success is not None:
        statement = statement.where(AuditEntry.success.is_(success))
    statement = statement.order_by(desc(AuditEntry.created_at)).limit(max(1, min(int(limit), 500)))
    return list(session.scalars(statement).all())


def entry_context(entry: AuditEntry) -> Dict[str, Any]:
    return _json_load_dict(entry.context_json)


def entry_details(entry: AuditEntry) -> Dict[str, Any]:
    return _json_load_dict(entry.details_json)
