"""Per-procedure, per-minute call budgets backed by the rate_limit_* tables."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from src.control.alerts import raise_alert
from src.core.config import get_settings
from src.core.errors import BattleError
from src.core.logger import get_logger
from src.core.metrics import record_rate_limit_block
from src.core.runtime import RULE_SCOPES, load_rate_limit_defaults
from src.storage.models import RateLimitCounter, RateLimitRule, RateLimitViolation


GLOBAL_SCOPE_KEY = "global"
ANONYMOUS_SCOPE_KEY = "anonymous"
WINDOW_SECONDS = 60

logger = get_logger("arena.control.rate_limiter")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    procedure: str
    scope_key: str
    limit: Optional[int]
    observed: int
    reset_seconds: int

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.observed, 0)


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def window_start(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0)


def scope_key_for(rule: RateLimitRule, actor_id: Optional[str]) -> str:
    if rule.scope == "global":
        return GLOBAL_SCOPE_KEY
    return actor_id or ANONYMOUS_SCOPE_KEY


def _increment_counter(
    session: Session,
    *,
    procedure: str,
    scope_key: str,
    window_started_at: datetime,
    now: datetime,
) -> int:
    dialect = session.get_bind().dialect.name
    values = {
        "procedure": procedure,
        "scope_key": scope_key,
        "window_started_at": window_started_at,
        "request_count": 1,
        "updated_at": now,
    }

    if dialect in {"postgresql", "sqlite"}:
        insert_factory = postgresql_insert if dialect == "postgresql" else sqlite_insert
        statement = insert_factory(RateLimitCounter).values(**values)
        statement = statement.on_conflict_do_update(
            index_elements=["procedure", "scope_key", "window_started_at"],
            set_={
                "request_count": RateLimitCounter.request_count + 1,
                "updated_at": now,
            },
        ).returning(RateLimitCounter.request_count)
        return int(session.execute(statement).scalar_one())

    counter = session.scalar(
        select(RateLimitCounter)
        .where(
            RateLimitCounter.procedure == procedure,
            RateLimitCounter.scope_key == scope_key,
            RateLimitCounter.window_started_at == window_started_at,
        )
        .with_for_update()
    )
    if counter is None:
        counter = RateLimitCounter(**values)
        session.add(counter)
    else:
        counter.request_count = int(counter.request_count) + 1
        counter.updated_at = now
    session.flush()
    return int(counter.request_count)


def check_and_consume(
    session: Session,
    *,
    actor_id: Optional[str],
    procedure: str,
    context: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> RateLimitDecision:
    """Count one call against the procedure's budget for the current minute.

    Rules are read on every call so edits to the rule table apply immediately.
    The caller owns the transaction and decides when to commit.
    """

    current = now or _now_utc()
    window = window_start(current)
    reset_seconds = WINDOW_SECONDS - current.second

    rule = session.get(RateLimitRule, procedure)
    if rule is None or not rule.enabled:
        return RateLimitDecision(
            allowed=True,
            procedure=procedure,
            scope_key=actor_id or ANONYMOUS_SCOPE_KEY,
            limit=None,
            observed=0,
            reset_seconds=reset_seconds,
        )

    scope_key = scope_key_for(rule, actor_id)
    observed = _increment_counter(
        session,
        procedure=procedure,
        scope_key=scope_key,
        window_started_at=window,
        now=current,
    )
    limit = int(rule.allowed_per_minute)
    if observed <= limit:
        return RateLimitDecision(
            allowed=True,
            procedure=procedure,
            scope_key=scope_key,
            limit=limit,
            observed=observed,
            reset_seconds=reset_seconds,
        )

    record_violation(
        session,
        procedure=procedure,
        actor_id=actor_id,
        scope_key=scope_key,
        allowed_per_minute=limit,
        observed_count=observed,
        window_started_at=window,
        context=context,
        now=current,
    )
    record_rate_limit_block(procedure=procedure)
    logger.warning(
        "rate_limit_denied",
        procedure=procedure,
        scope_key=scope_key,
        limit=limit,
        observed=observed,
    )
    return RateLimitDecision(
        allowed=False,
        procedure=procedure,
        scope_key=scope_key,
        limit=limit,
        observed=observed,
        reset_seconds=reset_seconds,
    )


def record_violation(
    session: Session,
    *,
    procedure: str,
    actor_id: Optional[str],
    scope_key: str,
    allowed_per_minute: int,
    observed_count: int,
    window_started_at: datetime,
    context: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> RateLimitViolation:
    current = now or _now_utc()
    violation = RateLimitViolation(
        procedure=procedure,
        actor_id=actor_id,
        scope_key=scope_key,
        allowed_per_minute=allowed_per_minute,
        observed_count=observed_count,
        window_started_at=window_started_at,
        context_json=_json_dumps(context or {}),
        created_at=current,
    )
    session.add(violation)
    session.flush()

    severity = "critical" if observed_count >= allowed_per_minute * 2 else "warning"
    raise_alert(
        session,
        event_type="rpc_rate_limit_exceeded",
        severity=severity,
        source="rate_limit_violations",
        subject_type="procedure",
        subject_id=procedure,
        details={
            "violation_id": violation.id,
            "procedure": procedure,
            "actor_id": actor_id,
            "scope_key": scope_key,
            "allowed_per_minute": allowed_per_minute,
            "observed_count": observed_count,
        },
        dedup_key=f"{procedure}:{scope_key}",
        dedup_window_minutes=get_settings().rate_limit_alert_dedup_minutes,
        now=current,
    )
    return violation


def cleanup_counters(
    session: Session,
    *,
    keep_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    hours = keep_hours if keep_hours is not None else get_settings().rate_limit_counter_retention_hours
    cutoff = (now or _now_utc()) - timedelta(hours=max(int(hours), 1))
    result = session.execute(delete(RateLimitCounter).where(RateLimitCounter.window_started_at < cutoff))
    deleted = int(result.rowcount or 0)
    logger.info("rate_limit_counters_cleaned", deleted=deleted, keep_hours=hours)
    return deleted


def upsert_rule(
    session: Session,
    *,
    procedure: str,
    scope: str,
    allowed_per_minute: int,
    enabled: bool = True,
) -> RateLimitRule:
    normalized_procedure = procedure.strip()
    normalized_scope = scope.strip().lower().replace("-", "_")
    if not normalized_procedure or normalized_scope not in RULE_SCOPES or allowed_per_minute <= 0:
        raise BattleError("invalid_rate_limit_rule")

    rule = session.get(RateLimitRule, normalized_procedure)
    if rule is None:
        rule = RateLimitRule(procedure=normalized_procedure)
        session.add(rule)
    rule.scope = normalized_scope
    rule.allowed_per_minute = int(allowed_per_minute)
    rule.enabled = bool(enabled)
    rule.updated_at = _now_utc()
    session.flush()
    return rule


def seed_default_rules(session: Session) -> List[str]:
    """Insert the configured default rules that are not in the table yet."""

    inserted: List[str] = []
    for config in load_rate_limit_defaults().rules:
        if session.get(RateLimitRule, config.procedure) is not None:
            continue
        session.add(
            RateLimitRule(
                procedure=config.procedure,
                scope=config.scope,
                allowed_per_minute=config.allowed_per_minute,
                enabled=config.enabled,
            )
        )
        inserted.append(config.procedure)
    session.flush()
    if inserted:
        logger.info("rate_limit_rules_seeded", procedures=inserted)
    return inserted


def list_rules(session: Session) -> List[RateLimitRule]:
    return list(session.scalars(select(RateLimitRule).order_by(RateLimitRule.procedure)).all())
