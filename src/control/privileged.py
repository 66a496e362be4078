"""Authorization gate + rate limit + audit wrapper shared by every privileged operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.control.audit import RequestContext, log_audit_entry
from src.control.rate_limiter import check_and_consume
from src.core.errors import BattleError
from src.core.logger import get_logger
from src.core.metrics import record_privileged_failure
from src.core.observability import capture_exception
from src.identity.oracle import IdentityOracle


ACCESS_AUTHENTICATED = "authenticated"
ACCESS_ADMIN = "admin"
ACCESS_ADMIN_OR_SERVICE = "admin_or_service"

T = TypeVar("T")

logger = get_logger("arena.control.privileged")


@dataclass(frozen=True)
class Actor:
    """The identity a call runs as. ``is_service`` marks the finalization scheduler."""

    user_id: Optional[str]
    is_service: bool = False
    request_context: RequestContext = field(default_factory=RequestContext)

    @property
    def audit_source(self) -> str:
        return "scheduler" if self.is_service else "rpc"


@dataclass
class PrivilegedOutcome:
    """Mutable audit payload the operation fills in while it runs."""

    details: Dict[str, Any] = field(default_factory=dict)
    subject_id: Optional[str] = None


def authorize(actor: Actor, oracle: IdentityOracle, access: str) -> None:
    if access == ACCESS_ADMIN_OR_SERVICE and actor.is_service:
        return
    if not actor.user_id:
        raise BattleError("auth_required")
    if access == ACCESS_AUTHENTICATED:
        return
    if not oracle.is_administrator(actor.user_id):
        raise BattleError("admin_required")


def record_outcome(
    session: Session,
    *,
    actor: Actor,
    procedure: str,
    subject_type: str,
    subject_id: Optional[str],
    success: bool,
    error_code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> None:
    log_audit_entry(
        session,
        actor_id=actor.user_id,
        action_type=procedure,
        subject_type=subject_type,
        subject_id=subject_id,
        source=actor.audit_source,
        request_context=actor.request_context,
        context={"is_service": actor.is_service},
        details=details,
        success=success,
        error_code=error_code,
        now=now,
    )


def record_failure(
    session: Session,
    *,
    actor: Actor,
    procedure: str,
    subject_type: str,
    subject_id: Optional[str],
    error_code: str,
    details: Dict[str, Any],
    now: Optional[datetime],
) -> None:
    record_privileged_failure(procedure=procedure, code=error_code)
    try:
        record_outcome(
            session,
            actor=actor,
            procedure=procedure,
            subject_type=subject_type,
            subject_id=subject_id,
            success=False,
            error_code=error_code,
            details=details,
            now=now,
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(
            "audit_failure_write_failed",
            procedure=procedure,
            subject_id=subject_id,
            error_code=error_code,
            error=str(exc),
        )
        capture_exception(exc)


def run_privileged(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    procedure: str,
    subject_type: str,
    subject_id: Optional[str],
    access: str,
    operation: Callable[[PrivilegedOutcome], T],
    consume_rate_limit: bool = True,
    now: Optional[datetime] = None,
) -> T:
    """Run ``operation`` as one atomic privileged call.

    Order: authorization gate, rate-limit consumption (committed on its own so
    denied attempts still count), then the operation and its success audit in a
    single transaction. Any failure rolls the operation back, is audited with
    its error code in a fresh transaction, and is re-raised.
    """

    outcome = PrivilegedOutcome(subject_id=subject_id)
    try:
        authorize(actor, oracle, access)
        if consume_rate_limit:
            decision = check_and_consume(
                session,
                actor_id=actor.user_id,
                procedure=procedure,
                context={"subject_type": subject_type, "subject_id": subject_id},
                now=now,
            )
            session.commit()
            if not decision.allowed:
                raise BattleError(
                    "rate_limit_exceeded",
                    details={"limit": decision.limit, "reset_seconds": decision.reset_seconds},
                )

        result = operation(outcome)
        record_outcome(
            session,
            actor=actor,
            procedure=procedure,
            subject_type=subject_type,
            subject_id=outcome.subject_id,
            success=True,
            details=outcome.details,
            now=now,
        )
        session.commit()
        return result
    except BattleError as exc:
        session.rollback()
        logger.info(
            "privileged_call_rejected",
            procedure=procedure,
            subject_id=outcome.subject_id,
            actor_id=actor.user_id,
            error_code=exc.code,
        )
        record_failure(
            session,
            actor=actor,
            procedure=procedure,
            subject_type=subject_type,
            subject_id=outcome.subject_id,
            error_code=exc.code,
            details={**outcome.details, **exc.details},
            now=now,
        )
        raise
    except Exception as exc:
        session.rollback()
        logger.error(
            "privileged_call_failed",
            procedure=procedure,
            subject_id=outcome.subject_id,
            actor_id=actor.user_id,
            error=str(exc),
        )
        capture_exception(exc)
        record_failure(
            session,
            actor=actor,
            procedure=procedure,
            subject_type=subject_type,
            subject_id=outcome.subject_id,
            error_code="internal_error",
            details={},
            now=now,
        )
        raise
