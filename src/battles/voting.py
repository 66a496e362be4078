"""Vote recording protocol: one vote per eligible voter per active battle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.battles.state_machine import lock_battle
from src.battles.status import ACTIVE
from src.control.privileged import Actor, record_failure
from src.control.rate_limiter import check_and_consume
from src.core.errors import INTEGRITY, BattleError
from src.core.logger import get_logger
from src.core.metrics import record_vote_recorded, record_vote_rejected
from src.identity.oracle import IdentityOracle
from src.storage.models import Battle, Vote


VOTE_PROCEDURE = "record_battle_vote"

logger = get_logger("arena.battles.voting")


@dataclass(frozen=True)
class VoteResult:
    vote_id: str
    battle_id: str
    voted_for_id: str
    votes_a: int
    votes_b: int


def has_voted(session: Session, *, battle_id: str, voter_id: str) -> bool:
    return (
        session.scalar(select(Vote.id).where(Vote.battle_id == battle_id, Vote.voter_id == voter_id).limit(1))
        is not None
    )


def is_participant(battle: Battle, user_id: str) -> bool:
    return user_id in (battle.participant_a_id, battle.participant_b_id)


def _check_rate_limit(session: Session, *, actor: Actor, battle_id: str, now: Optional[datetime]) -> None:
    decision = check_and_consume(
        session,
        actor_id=actor.user_id,
        procedure=VOTE_PROCEDURE,
        context={"battle_id": battle_id},
        now=now,
    )
    session.commit()
    if not decision.allowed:
        raise BattleError(
            "rate_limit_exceeded",
            details={"limit": decision.limit, "reset_seconds": decision.reset_seconds},
        )


def _cast_vote(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    voter_id: str,
    target_id: str,
    now: Optional[datetime],
) -> VoteResult:
    if not actor.user_id:
        raise BattleError("auth_required")
    if voter_id != actor.user_id:
        raise BattleError("vote_user_mismatch")
    if not oracle.is_contact_verified(voter_id):
        raise BattleError("vote_not_allowed_unverified_email")

    _check_rate_limit(session, actor=actor, battle_id=battle_id, now=now)

    battle = lock_battle(session, battle_id)
    if battle.status != ACTIVE:
        raise BattleError("battle_not_open_for_voting")
    if battle.participant_a_id is None or battle.participant_b_id is None:
        raise BattleError("battle_not_ready_for_voting")
    if target_id not in (battle.participant_a_id, battle.participant_b_id):
        raise BattleError("invalid_vote_target")
    if is_participant(battle, voter_id):
        raise BattleError("participants_cannot_vote")
    if target_id == voter_id:
        raise BattleError("self_vote_not_allowed")
    if has_voted(session, battle_id=battle_id, voter_id=voter_id):
        raise BattleError("already_voted")

    vote = Vote(battle_id=battle_id, voter_id=voter_id, voted_for_id=target_id)
    session.add(vote)
    try:
        session.flush()
    except IntegrityError as exc:
        # A concurrent call from the same voter won the unique (battle, voter) slot.
        raise BattleError("already_voted", category=INTEGRITY) from exc

    if target_id == battle.participant_a_id:
        battle.votes_a = int(battle.votes_a) + 1
    else:
        battle.votes_b = int(battle.votes_b) + 1
    session.flush()
    return VoteResult(
        vote_id=vote.id,
        battle_id=battle.id,
        voted_for_id=target_id,
        votes_a=int(battle.votes_a),
        votes_b=int(battle.votes_b),
    )


def _reject(
    session: Session,
    *,
    actor: Actor,
    battle_id: str,
    voter_id: str,
    target_id: str,
    error: BattleError,
    now: Optional[datetime],
) -> None:
    record_vote_rejected(code=error.code)
    logger.info("vote_rejected", battle_id=battle_id, voter_id=voter_id, error_code=error.code)
    record_failure(
        session,
        actor=actor,
        procedure=VOTE_PROCEDURE,
        subject_type="battle",
        subject_id=battle_id,
        error_code=error.code,
        details={"voter_id": voter_id, "target_id": target_id, **error.details},
        now=now,
    )


def cast_vote(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    voter_id: str,
    target_id: str,
    now: Optional[datetime] = None,
) -> VoteResult:
    """Record one vote and bump the matching tally under the battle row lock."""

    try:
        result = _cast_vote(
            session,
            actor=actor,
            oracle=oracle,
            battle_id=battle_id,
            voter_id=voter_id,
            target_id=target_id,
            now=now,
        )
        session.commit()
    except BattleError as exc:
        session.rollback()
        _reject(session, actor=actor, battle_id=battle_id, voter_id=voter_id, target_id=target_id, error=exc, now=now)
        raise
    except IntegrityError as exc:
        session.rollback()
        error = BattleError("already_voted", category=INTEGRITY)
        _reject(session, actor=actor, battle_id=battle_id, voter_id=voter_id, target_id=target_id, error=error, now=now)
        raise error from exc

    record_vote_recorded()
    logger.info(
        "vote_recorded",
        battle_id=battle_id,
        voter_id=voter_id,
        voted_for_id=target_id,
        votes_a=result.votes_a,
        votes_b=result.votes_b,
    )
    return result
