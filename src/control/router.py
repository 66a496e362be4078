"""Administrative control plane: audit trail, alerts, settings and rate-limit rules."""

from __future__ import annotations

import json
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.auth.dependencies import get_actor, get_identity_oracle
from src.control.alerts import list_alerts, resolve_alert
from src.control.anomalies import detect_anomalies
from src.control.app_settings import get_setting_record, put_setting
from src.control.audit import entry_context, entry_details, list_audit_entries
from src.control.privileged import (
    ACCESS_ADMIN,
    ACCESS_ADMIN_OR_SERVICE,
    Actor,
    PrivilegedOutcome,
    authorize,
    run_privileged,
)
from src.control.rate_limiter import list_rules, upsert_rule
from src.identity.oracle import DatabaseIdentityOracle
from src.schemas.control import (
    AlertResponse,
    AnomalyScanRequest,
    AnomalyScanResponse,
    AuditEntryResponse,
    RateLimitRuleListResponse,
    RateLimitRuleRequest,
    RateLimitRuleResponse,
    SettingPutRequest,
    SettingResponse,
)
from src.storage.db import get_session
from src.storage.models import AppSetting, AuditEntry, MonitoringAlert


router = APIRouter(prefix="/admin", tags=["admin"])


def _load(payload: Optional[str]) -> dict:
    try:
        loaded = json.loads(payload or "{}")
    except ValueError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _audit_response(entry: AuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        actor_id=entry.actor_id,
        action_type=entry.action_type,
        subject_type=entry.subject_type,
        subject_id=entry.subject_id,
        source=entry.source,
        source_action_id=entry.source_action_id,
        context=entry_context(entry),
        details=entry_details(entry),
        success=bool(entry.success),
        error_code=entry.error_code,
        created_at=entry.created_at,
    )


def _alert_response(alert: MonitoringAlert) -> AlertResponse:
    return AlertResponse(
        id=alert.id,
        event_type=alert.event_type,
        severity=alert.severity,
        source=alert.source,
        subject_type=alert.subject_type,
        subject_id=alert.subject_id,
        details=_load(alert.details_json),
        created_at=alert.created_at,
        resolved_at=alert.resolved_at,
        resolved_by=alert.resolved_by,
    )


def _setting_response(record: AppSetting) -> SettingResponse:
    return SettingResponse(
        key=record.key,
        value=_load(record.value_json),
        version=int(record.version),
        updated_by=record.updated_by,
        updated_at=record.updated_at,
    )


@router.get("/audit", response_model=List[AuditEntryResponse])
def list_audit_endpoint(
    action_type: Optional[str] = Query(default=None),
    subject_id: Optional[str] = Query(default=None),
    success: Optional[bool] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> List[AuditEntryResponse]:
    authorize(actor, oracle, ACCESS_ADMIN)
    entries = list_audit_entries(
        session,
        action_type=action_type,
        subject_id=subject_id,
        success=success,
        limit=limit,
    )
    return [_audit_response(entry) for entry in entries]


@router.get("/alerts", response_model=List[AlertResponse])
def list_alerts_endpoint(
    unresolved_only: bool = Query(default=False),
    severity: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> List[AlertResponse]:
    authorize(actor, oracle, ACCESS_ADMIN)
    alerts = list_alerts(session, unresolved_only=unresolved_only, severity=severity, limit=limit)
    return [_alert_response(alert) for alert in alerts]


@router.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
def resolve_alert_endpoint(
    alert_id: str,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> AlertResponse:
    def operation(outcome: PrivilegedOutcome) -> MonitoringAlert:
        alert = resolve_alert(session, alert_id=alert_id, resolved_by=actor.user_id)
        outcome.details.update({"event_type": alert.event_type, "severity": alert.severity})
        return alert

    alert = run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_resolve_alert",
        subject_type="monitoring_alert",
        subject_id=alert_id,
        access=ACCESS_ADMIN,
        operation=operation,
    )
    return _alert_response(alert)


@router.post("/anomalies/scan", response_model=AnomalyScanResponse)
def scan_anomalies_endpoint(
    payload: AnomalyScanRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> AnomalyScanResponse:
    def operation(outcome: PrivilegedOutcome) -> int:
        inserted = detect_anomalies(session, lookback_minutes=payload.lookback_minutes)
        outcome.details.update({"lookback_minutes": payload.lookback_minutes, "alerts_inserted": inserted})
        return inserted

    inserted = run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="detect_admin_anomalies",
        subject_type="audit_log",
        subject_id=None,
        access=ACCESS_ADMIN_OR_SERVICE,
        operation=operation,
    )
    return AnomalyScanResponse(lookback_minutes=payload.lookback_minutes, alerts_inserted=inserted)


@router.get("/settings/{key}", response_model=SettingResponse)
def get_setting_endpoint(
    key: str,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> SettingResponse:
    authorize(actor, oracle, ACCESS_ADMIN)
    return _setting_response(get_setting_record(session, key))


@router.put("/settings/{key}", response_model=SettingResponse)
def put_setting_endpoint(
    key: str,
    payload: SettingPutRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> SettingResponse:
    def operation(outcome: PrivilegedOutcome) -> AppSetting:
        record = put_setting(session, key=key, document=payload.value, updated_by=actor.user_id)
        outcome.details.update({"key": record.key, "version": record.version, "value": payload.value})
        return record

    record = run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_update_setting",
        subject_type="app_setting",
        subject_id=key,
        access=ACCESS_ADMIN,
        operation=operation,
    )
    return _setting_response(record)


@router.get("/rate-limit-rules", response_model=RateLimitRuleListResponse)
def list_rate_limit_rules_endpoint(
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> RateLimitRuleListResponse:
    authorize(actor, oracle, ACCESS_ADMIN)
    return RateLimitRuleListResponse(
        rules=[RateLimitRuleResponse.model_validate(rule) for rule in list_rules(session)]
    )


@router.put("/rate-limit-rules", response_model=RateLimitRuleResponse)
def upsert_rate_limit_rule_endpoint(
    payload: RateLimitRuleRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> RateLimitRuleResponse:
    def operation(outcome: PrivilegedOutcome):
        rule = upsert_rule(
            session,
            procedure=payload.procedure,
            scope=payload.scope,
            allowed_per_minute=payload.allowed_per_minute,
            enabled=payload.enabled,
        )
        outcome.details.update(
            {
                "scope": rule.scope,
                "allowed_per_minute": rule.allowed_per_minute,
                "enabled": rule.enabled,
            }
        )
        return rule

    rule = run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_update_rate_limit_rule",
        subject_type="rate_limit_rule",
        subject_id=payload.procedure,
        access=ACCESS_ADMIN,
        operation=operation,
    )
    return RateLimitRuleResponse.model_validate(rule)
