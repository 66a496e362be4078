from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from src.control.alerts import list_alerts, raise_alert, resolve_alert
from src.control.anomalies import detect_anomalies
from src.control.audit import RequestContext, entry_context, list_audit_entries, log_audit_entry, sync_moderation_action
from src.core.config import get_settings
from src.core.errors import BattleError
from src.storage.models import AuditEntry, ModerationAction, MonitoringAlert
from tests.conftest import BASE_NOW, as_utc, build_sqlite_session_factory


def _alert_count(session, event_type: str) -> int:
    return int(
        session.scalar(select(func.count(MonitoringAlert.id)).where(MonitoringAlert.event_type == event_type)) or 0
    )


def test_audit_entry_keeps_request_and_custom_context() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        entry = log_audit_entry(
            session,
            actor_id="admin-1",
            action_type="admin_validate_battle",
            subject_type="battle",
            subject_id="battle-1",
            request_context=RequestContext(ip="203.0.113.9", user_agent="pytest", request_id="req-1"),
            context={"is_service": False},
            source="unknown-source",
            now=BASE_NOW,
        )
        session.commit()

        context = entry_context(entry)
        assert context["runtime"] == {"ip": "203.0.113.9", "user_agent": "pytest", "request_id": "req-1"}
        assert context["custom"] == {"is_service": False}
        assert entry.source == "rpc"
        assert [item.id for item in list_audit_entries(session, subject_id="battle-1")] == [entry.id]


def test_failed_entry_raises_admin_action_failed_alert() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        log_audit_entry(
            session,
            actor_id="admin-1",
            action_type="admin_cancel_battle",
            subject_type="battle",
            subject_id="battle-1",
            success=False,
            error_code="cannot_cancel_completed_battle",
            now=BASE_NOW,
        )
        session.commit()

        alert = session.scalar(select(MonitoringAlert).where(MonitoringAlert.event_type == "admin_action_failed"))
        assert alert.severity == "warning"
        assert alert.subject_id == "battle-1"


def test_sync_moderation_action_is_idempotent_and_skips_proposed() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        executed = ModerationAction(
            action_type="comment_moderation",
            subject_type="comment",
            subject_id="comment-1",
            decision_json='{"classification": "spam"}',
            confidence_score=0.97,
            status="executed",
            executed_at=BASE_NOW,
        )
        proposed = ModerationAction(
            action_type="comment_moderation",
            subject_type="comment",
            subject_id="comment-2",
            status="proposed",
        )
        session.add_all([executed, proposed])
        session.flush()

        first = sync_moderation_action(session, executed, now=BASE_NOW)
        second = sync_moderation_action(session, executed, now=BASE_NOW)
        assert first.id == second.id
        assert first.source == "moderation_actions"
        assert sync_moderation_action(session, proposed, now=BASE_NOW) is None

        session.commit()
        assert session.scalar(select(func.count(AuditEntry.id))) == 1


def test_action_spike_raises_one_deduplicated_alert(monkeypatch) -> None:
    monkeypatch.setenv("ANOMALY_SPIKE_THRESHOLD", "3")
    get_settings.cache_clear()
    session_factory = build_sqlite_session_factory()
    try:
        with session_factory() as session:
            for offset in range(5):
                log_audit_entry(
                    session,
                    actor_id="admin-1",
                    action_type="admin_extend_battle_duration",
                    subject_type="battle",
                    subject_id=f"battle-{offset}",
                    now=BASE_NOW + timedelta(seconds=offset),
                )
            session.commit()

            alerts = session.scalars(
                select(MonitoringAlert).where(MonitoringAlert.event_type == "admin_action_spike")
            ).all()
            assert len(alerts) == 1
            assert alerts[0].severity == "critical"
            assert alerts[0].dedup_key == "admin_extend_battle_duration"
    finally:
        get_settings.cache_clear()


def test_detect_anomalies_flags_busy_action_types_once() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        for offset in range(4):
            log_audit_entry(
                session,
                actor_id="admin-1",
                action_type="admin_cancel_battle",
                subject_type="battle",
                subject_id=f"battle-{offset}",
                now=BASE_NOW - timedelta(minutes=offset),
            )
        log_audit_entry(
            session,
            actor_id="admin-1",
            action_type="admin_validate_battle",
            subject_type="battle",
            subject_id="battle-x",
            now=BASE_NOW,
        )
        session.commit()

        assert detect_anomalies(session, lookback_minutes=15, threshold=3, now=BASE_NOW) == 1
        assert detect_anomalies(session, lookback_minutes=15, threshold=3, now=BASE_NOW + timedelta(minutes=1)) == 0
        session.commit()

        alert = session.scalar(select(MonitoringAlert).where(MonitoringAlert.event_type == "admin_action_spike_scan"))
        assert alert.subject_id == "admin_cancel_battle"
        assert _alert_count(session, "admin_action_spike_scan") == 1


def test_raise_alert_normalizes_severity_and_dedups_by_window() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        first = raise_alert(
            session,
            event_type="custom",
            severity="LOUD",
            source="tests",
            dedup_key="k",
            dedup_window_minutes=5,
            now=BASE_NOW,
        )
        assert first.severity == "warning"
        assert (
            raise_alert(
                session,
                event_type="custom",
                severity="info",
                source="tests",
                dedup_key="k",
                dedup_window_minutes=5,
                now=BASE_NOW + timedelta(minutes=4),
            )
            is None
        )
        assert (
            raise_alert(
                session,
                event_type="custom",
                severity="info",
                source="tests",
                dedup_key="k",
                dedup_window_minutes=5,
                now=BASE_NOW + timedelta(minutes=6),
            )
            is not None
        )
        session.commit()
        assert _alert_count(session, "custom") == 2


def test_resolve_alert_is_sticky_and_filters_unresolved() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        alert = raise_alert(session, event_type="custom", severity="critical", source="tests", now=BASE_NOW)
        other = raise_alert(session, event_type="custom", severity="info", source="tests", now=BASE_NOW)
        session.commit()

        resolve_alert(session, alert_id=alert.id, resolved_by="admin-1", now=BASE_NOW + timedelta(minutes=1))
        resolve_alert(session, alert_id=alert.id, resolved_by="admin-2", now=BASE_NOW + timedelta(minutes=2))
        session.commit()

        assert alert.resolved_by == "admin-1"
        assert as_utc(alert.resolved_at) == BASE_NOW + timedelta(minutes=1)
        assert [item.id for item in list_alerts(session, unresolved_only=True)] == [other.id]
        assert [item.id for item in list_alerts(session, severity="critical")] == [alert.id]

        with pytest.raises(BattleError) as missing:
            resolve_alert(session, alert_id="missing", resolved_by="admin-1")
        assert missing.value.code == "alert_not_found"
