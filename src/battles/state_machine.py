"""Battle lifecycle transitions: propose, respond, validate, cancel, extend, finalize."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, or_, select
from sqlalchemy.orm import Session

from src.battles.engagement import record_completion, record_participation, record_refusal
from src.battles.status import (
    ACTIVE,
    AWAITING_ADMIN,
    CANCELLED,
    COMPLETED,
    PENDING_ACCEPTANCE,
    REJECTED,
)
from src.control.app_settings import MAX_DURATION_DAYS, resolve_default_duration_days
from src.control.audit import sync_moderation_action
from src.control.privileged import (
    ACCESS_ADMIN,
    ACCESS_ADMIN_OR_SERVICE,
    ACCESS_AUTHENTICATED,
    Actor,
    PrivilegedOutcome,
    run_privileged,
)
from src.core.config import get_settings
from src.core.errors import BattleError
from src.core.logger import get_logger
from src.core.metrics import record_battle_transition
from src.identity.oracle import IdentityOracle
from src.moderation.battle_evaluator import BattleRecommendation, BattleSnapshot, evaluate_battle
from src.storage.models import Battle, BattleEvent, CreatorProfile, ModerationAction


TITLE_MAX_CHARS = 140
_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")

logger = get_logger("arena.battles.state_machine")


@dataclass(frozen=True)
class FinalizeResult:
    battle_id: str
    status: str
    winner_id: Optional[str]
    noop: bool


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_dt(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def slugify(title: str) -> str:
    slug = _SLUG_PATTERN.sub("-", title.strip().lower()).strip("-")
    return slug or "battle"


def _unique_slug(session: Session, title: str) -> str:
    base = slugify(title)[:150]
    taken = set(session.scalars(select(Battle.slug).where(Battle.slug.like(f"{base}%"))).all())
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


def lock_battle(session: Session, battle_id: str) -> Battle:
    """Load the battle row under an exclusive lock held until commit/rollback."""

    battle = session.scalar(
        select(Battle)
        .where(Battle.id == battle_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if battle is None:
        raise BattleError("battle_not_found")
    return battle


def _record_event(
    session: Session,
    battle: Battle,
    *,
    event_type: str,
    from_status: Optional[str],
    actor_id: Optional[str],
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    session.add(
        BattleEvent(
            battle_id=battle.id,
            event_type=event_type,
            from_status=from_status,
            to_status=battle.status,
            actor_id=actor_id,
            payload_json=_json_dumps(payload or {}),
        )
    )
    if from_status != battle.status:
        record_battle_transition(from_status=from_status or "none", to_status=battle.status)
    logger.info(
        event_type,
        battle_id=battle.id,
        from_status=from_status,
        to_status=battle.status,
        actor_id=actor_id,
    )


def record_battle_decision(
    session: Session,
    *,
    battle_id: str,
    action_type: str,
    actor_id: Optional[str],
    decision: Dict[str, Any],
    reason: str,
    status: str = "executed",
    error: Optional[str] = None,
    confidence_score: float = 1.0,
    now: Optional[datetime] = None,
) -> ModerationAction:
    """Persist an administrative decision record about a battle and mirror it to the audit log."""

    current = now or _now_utc()
    action = ModerationAction(
        action_type=action_type,
        subject_type="battle",
        subject_id=battle_id,
        decision_json=_json_dumps(decision),
        confidence_score=confidence_score,
        reason=reason,
        status=status,
        human_override=False,
        reversible=status == "proposed",
        executed_at=current if status == "executed" else None,
        executed_by=None if status == "proposed" else actor_id,
        error=error,
    )
    session.add(action)
    session.flush()
    sync_moderation_action(session, action, now=current)
    return action


def propose_battle(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    opponent_id: str,
    submission_a_id: str,
    title: str,
    submission_b_id: Optional[str] = None,
    description: Optional[str] = None,
    custom_duration_days: Optional[int] = None,
    response_deadline: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Battle:
    def operation(outcome: PrivilegedOutcome) -> Battle:
        proposer_id = actor.user_id
        normalized_title = (title or "").strip()
        outcome.details.update({"opponent_id": opponent_id, "title": normalized_title})

        if not opponent_id or opponent_id == proposer_id:
            raise BattleError("invalid_proposal", details={"reason": "opponent_must_differ"})
        if not normalized_title or len(normalized_title) > TITLE_MAX_CHARS:
            raise BattleError("invalid_proposal", details={"reason": "invalid_title"})
        if custom_duration_days is not None and not 1 <= int(custom_duration_days) <= MAX_DURATION_DAYS:
            raise BattleError("invalid_proposal", details={"reason": "invalid_custom_duration"})
        if not oracle.is_eligible_competitor(proposer_id) or not oracle.is_eligible_competitor(opponent_id):
            raise BattleError("invalid_proposal", details={"reason": "participant_not_eligible"})
        if not oracle.owns_catalog_item(proposer_id, submission_a_id):
            raise BattleError("invalid_proposal", details={"reason": "submission_a_not_owned"})
        if submission_b_id is not None and not oracle.owns_catalog_item(opponent_id, submission_b_id):
            raise BattleError("invalid_proposal", details={"reason": "submission_b_not_owned"})

        battle = Battle(
            slug=_unique_slug(session, normalized_title),
            title=normalized_title,
            description=(description or "").strip() or None,
            participant_a_id=proposer_id,
            participant_b_id=opponent_id,
            submission_a_id=submission_a_id,
            submission_b_id=submission_b_id,
            status=PENDING_ACCEPTANCE,
            response_deadline=response_deadline,
            custom_duration_days=custom_duration_days,
            extension_count=0,
            votes_a=0,
            votes_b=0,
            winner_id=None,
        )
        session.add(battle)
        session.flush()
        outcome.subject_id = battle.id
        outcome.details["slug"] = battle.slug
        _record_event(session, battle, event_type="battle_proposed", from_status=None, actor_id=proposer_id)
        return battle

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="propose_battle",
        subject_type="battle",
        subject_id=None,
        access=ACCESS_AUTHENTICATED,
        operation=operation,
        now=now,
    )


def respond_to_battle(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    accept: bool,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Battle:
    def operation(outcome: PrivilegedOutcome) -> Battle:
        current = now or _now_utc()
        battle = lock_battle(session, battle_id)
        if battle.participant_b_id is None or battle.participant_b_id != actor.user_id:
            raise BattleError("only_invited_participant_can_respond")
        if battle.status != PENDING_ACCEPTANCE:
            raise BattleError("battle_not_waiting_for_response")
        if battle.accepted_at is not None or battle.rejected_at is not None:
            raise BattleError("response_already_recorded")

        previous = battle.status
        if accept:
            battle.status = AWAITING_ADMIN
            battle.accepted_at = current
            event_type = "battle_accepted"
        else:
            normalized_reason = (reason or "").strip()
            if not normalized_reason:
                raise BattleError("rejection_reason_required")
            battle.status = REJECTED
            battle.rejected_at = current
            battle.rejection_reason = normalized_reason
            event_type = "battle_rejected"
        battle.updated_at = current
        session.flush()

        if not accept:
            record_refusal(session, oracle, actor.user_id)

        outcome.details.update({"accepted": bool(accept), "status": battle.status})
        _record_event(session, battle, event_type=event_type, from_status=previous, actor_id=actor.user_id)
        return battle

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="respond_to_battle",
        subject_type="battle",
        subject_id=battle_id,
        access=ACCESS_AUTHENTICATED,
        operation=operation,
        now=now,
    )


def admin_validate_battle(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    now: Optional[datetime] = None,
) -> Battle:
    def operation(outcome: PrivilegedOutcome) -> Battle:
        current = now or _now_utc()
        battle = lock_battle(session, battle_id)
        if battle.status != AWAITING_ADMIN:
            raise BattleError("battle_not_waiting_admin_validation")

        if battle.custom_duration_days:
            duration_days, duration_source = int(battle.custom_duration_days), "custom"
        else:
            duration_days, duration_source = resolve_default_duration_days(session)
        duration_computed = battle.voting_ends_at is None

        previous = battle.status
        battle.status = ACTIVE
        battle.admin_validated_at = current
        if battle.starts_at is None:
            battle.starts_at = current
        if battle.voting_ends_at is None:
            battle.voting_ends_at = current + timedelta(days=duration_days)
        battle.updated_at = current
        session.flush()

        record_battle_decision(
            session,
            battle_id=battle.id,
            action_type="battle_validate_admin",
            actor_id=actor.user_id,
            decision={"from_status": previous, "to_status": ACTIVE},
            reason="Battle validated by administrator.",
            now=current,
        )
        if duration_computed:
            record_battle_decision(
                session,
                battle_id=battle.id,
                action_type="battle_duration_set",
                actor_id=actor.user_id,
                decision={
                    "duration_days": duration_days,
                    "source": duration_source,
                    "voting_ends_at": battle.voting_ends_at,
                },
                reason="Voting duration resolved at validation.",
                now=current,
            )
        record_participation(session, oracle, battle.participant_a_id, battle.participant_b_id)

        outcome.details.update(
            {
                "duration_days": duration_days,
                "duration_source": duration_source if duration_computed else "preset",
                "voting_ends_at": battle.voting_ends_at,
            }
        )
        _record_event(session, battle, event_type="battle_activated", from_status=previous, actor_id=actor.user_id)
        return battle

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_validate_battle",
        subject_type="battle",
        subject_id=battle_id,
        access=ACCESS_ADMIN,
        operation=operation,
        now=now,
    )


def admin_cancel_battle(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    now: Optional[datetime] = None,
) -> Battle:
    def operation(outcome: PrivilegedOutcome) -> Battle:
        current = now or _now_utc()
        battle = lock_battle(session, battle_id)
        if battle.status == COMPLETED:
            raise BattleError("cannot_cancel_completed_battle")

        previous = battle.status
        battle.status = CANCELLED
        battle.winner_id = None
        battle.updated_at = current
        session.flush()

        record_battle_decision(
            session,
            battle_id=battle.id,
            action_type="battle_cancel_admin",
            actor_id=actor.user_id,
            decision={"from_status": previous, "to_status": CANCELLED},
            reason="Battle cancelled by administrator.",
            now=current,
        )
        outcome.details.update({"from_status": previous})
        _record_event(session, battle, event_type="battle_cancelled", from_status=previous, actor_id=actor.user_id)
        return battle

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_cancel_battle",
        subject_type="battle",
        subject_id=battle_id,
        access=ACCESS_ADMIN,
        operation=operation,
        now=now,
    )


def admin_extend_battle_duration(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    days: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Battle:
    settings = get_settings()

    def operation(outcome: PrivilegedOutcome) -> Battle:
        current = now or _now_utc()
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= settings.battle_max_extension_days:
            raise BattleError("invalid_extension_days")

        battle = lock_battle(session, battle_id)
        if battle.status != ACTIVE:
            raise BattleError("battle_not_open_for_extension")
        if battle.voting_ends_at is None:
            raise BattleError("battle_has_no_voting_end")
        before = _normalize_dt(battle.voting_ends_at)
        if before <= current:
            raise BattleError("battle_already_expired")
        if int(battle.extension_count) >= settings.battle_max_extensions:
            raise BattleError("maximum_extensions_reached")
        after = before + timedelta(days=days)
        horizon_start = _normalize_dt(battle.starts_at) if battle.starts_at else current
        horizon = horizon_start + timedelta(days=settings.battle_extension_horizon_days)
        if after > horizon:
            raise BattleError("battle_extension_limit_exceeded", details={"max_voting_ends_at": horizon})

        battle.voting_ends_at = after
        battle.extension_count = int(battle.extension_count) + 1
        battle.updated_at = current
        session.flush()

        normalized_reason = (reason or "").strip() or None
        change = {
            "voting_ends_at_before": before,
            "voting_ends_at_after": after,
            "days": days,
            "extension_count": battle.extension_count,
            "reason": normalized_reason,
        }
        record_battle_decision(
            session,
            battle_id=battle.id,
            action_type="battle_duration_extended",
            actor_id=actor.user_id,
            decision=change,
            reason=normalized_reason or "Voting window extended by administrator.",
            now=current,
        )
        outcome.details.update(change)
        _record_event(
            session,
            battle,
            event_type="battle_extended",
            from_status=battle.status,
            actor_id=actor.user_id,
            payload={"voting_ends_at": after, "extension_count": battle.extension_count},
        )
        return battle

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_extend_battle_duration",
        subject_type="battle",
        subject_id=battle_id,
        access=ACCESS_ADMIN,
        operation=operation,
        now=now,
    )


def resolve_winner(battle: Battle) -> Optional[str]:
    votes_a = int(battle.votes_a or 0)
    votes_b = int(battle.votes_b or 0)
    if votes_a > votes_b:
        return battle.participant_a_id
    if votes_b > votes_a:
        return battle.participant_b_id
    return None


def finalize_locked(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    now: Optional[datetime] = None,
) -> FinalizeResult:
    """Finalize one battle inside the caller's transaction. Completed battles are a no-op."""

    current = now or _now_utc()
    battle = lock_battle(session, battle_id)
    if battle.status == CANCELLED:
        raise BattleError("battle_cancelled")
    if battle.status == COMPLETED:
        if not actor.is_service:
            record_battle_decision(
                session,
                battle_id=battle.id,
                action_type="battle_finalize_admin",
                actor_id=actor.user_id,
                decision={"noop": True, "winner_id": battle.winner_id},
                reason="Finalize requested on an already completed battle.",
                now=current,
            )
        return FinalizeResult(battle_id=battle.id, status=battle.status, winner_id=battle.winner_id, noop=True)
    if battle.status != ACTIVE:
        raise BattleError("battle_not_open_for_finalization")

    previous = battle.status
    winner_id = resolve_winner(battle)
    battle.status = COMPLETED
    battle.winner_id = winner_id
    if battle.voting_ends_at is None:
        battle.voting_ends_at = current
    battle.updated_at = current
    session.flush()

    record_completion(session, oracle, battle.participant_a_id, battle.participant_b_id)
    if not actor.is_service:
        record_battle_decision(
            session,
            battle_id=battle.id,
            action_type="battle_finalize_admin",
            actor_id=actor.user_id,
            decision={"noop": False, "winner_id": winner_id, "votes_a": battle.votes_a, "votes_b": battle.votes_b},
            reason="Battle finalized by administrator.",
            now=current,
        )
    _record_event(
        session,
        battle,
        event_type="battle_completed",
        from_status=previous,
        actor_id=actor.user_id,
        payload={"winner_id": winner_id, "votes_a": battle.votes_a, "votes_b": battle.votes_b},
    )
    return FinalizeResult(battle_id=battle.id, status=battle.status, winner_id=winner_id, noop=False)


def finalize_battle(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    now: Optional[datetime] = None,
) -> FinalizeResult:
    def operation(outcome: PrivilegedOutcome) -> FinalizeResult:
        result = finalize_locked(session, actor=actor, oracle=oracle, battle_id=battle_id, now=now)
        battle = session.get(Battle, battle_id)
        outcome.details.update(
            {
                "noop": result.noop,
                "winner_id": result.winner_id,
                "votes_a": battle.votes_a if battle else None,
                "votes_b": battle.votes_b if battle else None,
            }
        )
        return result

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="finalize_battle",
        subject_type="battle",
        subject_id=battle_id,
        access=ACCESS_ADMIN_OR_SERVICE,
        operation=operation,
        now=now,
    )


@dataclass(frozen=True)
class EvaluationResult:
    battle_id: str
    action_id: str
    recommendation: BattleRecommendation


def snapshot_battle(session: Session, battle: Battle) -> BattleSnapshot:
    opponent = session.get(CreatorProfile, battle.participant_b_id) if battle.participant_b_id else None
    return BattleSnapshot(
        id=battle.id,
        status=battle.status,
        participant_a_id=battle.participant_a_id,
        participant_b_id=battle.participant_b_id,
        submission_a_id=battle.submission_a_id,
        submission_b_id=battle.submission_b_id,
        opponent_refusal_count=opponent.battle_refusal_count if opponent else None,
        opponent_engagement_score=opponent.engagement_score if opponent else None,
    )


def admin_evaluate_battle(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    now: Optional[datetime] = None,
) -> EvaluationResult:
    """Store a rule-based validate/cancel recommendation as a proposed decision.

    Nothing about the battle changes; an administrator still has to run the
    recommended procedure.
    """

    def operation(outcome: PrivilegedOutcome) -> EvaluationResult:
        current = now or _now_utc()
        battle = session.get(Battle, battle_id)
        if battle is None:
            raise BattleError("battle_not_found")

        snapshot = snapshot_battle(session, battle)
        recommendation = evaluate_battle(snapshot)
        document = recommendation.to_document()
        document.update(
            {
                "battle_snapshot": snapshot.model_dump(),
                "evaluated_at": current.isoformat(),
                "evaluated_by": actor.user_id,
            }
        )
        action = record_battle_decision(
            session,
            battle_id=battle.id,
            action_type=recommendation.recommendation,
            actor_id=actor.user_id,
            decision=document,
            reason=",".join(recommendation.reasons) or "rule_based_evaluation",
            status="proposed",
            confidence_score=recommendation.confidence,
            now=current,
        )
        outcome.details.update(
            {
                "action_id": action.id,
                "recommendation": recommendation.recommendation,
                "confidence": recommendation.confidence,
                "auto_eligible": recommendation.auto_eligible,
            }
        )
        return EvaluationResult(battle_id=battle.id, action_id=action.id, recommendation=recommendation)

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_evaluate_battle",
        subject_type="battle",
        subject_id=battle_id,
        access=ACCESS_ADMIN,
        operation=operation,
        now=now,
    )


def get_battle(session: Session, id_or_slug: str) -> Battle:
    battle = session.scalar(select(Battle).where(or_(Battle.id == id_or_slug, Battle.slug == id_or_slug)))
    if battle is None:
        raise BattleError("battle_not_found")
    return battle


def list_battles(session: Session, *, status: Optional[str] = None, limit: int = 50) -> List[Battle]:
    statement = select(Battle)
    if status:
        statement = statement.where(Battle.status == status)
    statement = statement.order_by(desc(Battle.created_at)).limit(max(1, min(int(limit), 200)))
    return list(session.scalars(statement).all())
