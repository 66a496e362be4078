"""Sweep that finalizes active battles whose voting window has elapsed."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.battles.state_machine import finalize_locked, record_battle_decision
from src.battles.status import ACTIVE
from src.control.privileged import ACCESS_ADMIN_OR_SERVICE, Actor, PrivilegedOutcome, run_privileged
from src.core.config import get_settings
from src.core.errors import BattleError
from src.core.logger import get_logger
from src.identity.oracle import IdentityOracle
from src.storage.models import Battle


SWEEP_PROCEDURE = "finalize_expired_battles"
MIN_SWEEP_LIMIT = 1
MAX_SWEEP_LIMIT = 500

logger = get_logger("arena.battles.finalization")


@dataclass(frozen=True)
class SweepItem:
    battle_id: str
    status: str
    winner_id: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class SweepResult:
    limit: int
    candidates: int
    finalized: int
    noop: int
    failed: int
    items: List[SweepItem] = field(default_factory=list)


def clamp_sweep_limit(limit: Optional[int]) -> int:
    if limit is None:
        limit = get_settings().finalize_sweep_limit
    return max(MIN_SWEEP_LIMIT, min(int(limit), MAX_SWEEP_LIMIT))


def list_expired_battle_ids(session: Session, *, now: datetime, limit: int) -> List[str]:
    statement = (
        select(Battle.id)
        .where(
            Battle.status == ACTIVE,
            Battle.voting_ends_at.is_not(None),
            Battle.voting_ends_at <= now,
        )
        .order_by(Battle.voting_ends_at.asc())
        .limit(limit)
    )
    return [str(battle_id) for battle_id in session.scalars(statement).all()]


def finalize_expired_battles(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Finalize up to ``limit`` expired battles, oldest voting end first.

    Each battle is finalized and committed on its own so row locks stay short;
    a failing battle is recorded as a failed decision and the sweep moves on.
    Battles finalized concurrently by someone else come back as no-ops.
    """

    current = now or datetime.now(timezone.utc)
    safe_limit = clamp_sweep_limit(limit)

    def operation(outcome: PrivilegedOutcome) -> SweepResult:
        candidate_ids = list_expired_battle_ids(session, now=current, limit=safe_limit)
        session.commit()

        items: List[SweepItem] = []
        for battle_id in candidate_ids:
            try:
                result = finalize_locked(session, actor=actor, oracle=oracle, battle_id=battle_id, now=current)
                session.commit()
            except BattleError as exc:
                session.rollback()
                record_battle_decision(
                    session,
                    battle_id=battle_id,
                    action_type="battle_finalize",
                    actor_id=actor.user_id,
                    decision={"sweep": True, "error": exc.code},
                    reason="Automatic finalization failed.",
                    status="failed",
                    error=exc.code,
                    now=current,
                )
                session.commit()
                items.append(SweepItem(battle_id=battle_id, status="failed", error_code=exc.code))
                logger.warning("finalize_sweep_battle_failed", battle_id=battle_id, error_code=exc.code)
                continue
            items.append(
                SweepItem(
                    battle_id=battle_id,
                    status="noop" if result.noop else "finalized",
                    winner_id=result.winner_id,
                )
            )

        sweep = SweepResult(
            limit=safe_limit,
            candidates=len(candidate_ids),
            finalized=sum(1 for item in items if item.status == "finalized"),
            noop=sum(1 for item in items if item.status == "noop"),
            failed=sum(1 for item in items if item.status == "failed"),
            items=items,
        )
        outcome.details.update(
            {
                "limit": safe_limit,
                "candidates": sweep.candidates,
                "finalized": sweep.finalized,
                "noop": sweep.noop,
                "failed": sweep.failed,
                "finalized_battle_ids": [item.battle_id for item in items if item.status == "finalized"],
                "failures": {item.battle_id: item.error_code for item in items if item.status == "failed"},
            }
        )
        logger.info(
            "finalize_sweep_completed",
            limit=safe_limit,
            candidates=sweep.candidates,
            finalized=sweep.finalized,
            noop=sweep.noop,
            failed=sweep.failed,
        )
        return sweep

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure=SWEEP_PROCEDURE,
        subject_type="battle",
        subject_id=None,
        access=ACCESS_ADMIN_OR_SERVICE,
        operation=operation,
        now=current,
    )
