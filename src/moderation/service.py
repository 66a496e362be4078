"""Comment lifecycle and the moderation hook that runs after every new comment."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import and_, desc, exists, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.battles.status import ACTIVE
from src.control.audit import sync_moderation_action
from src.control.privileged import ACCESS_ADMIN, Actor, PrivilegedOutcome, record_failure, run_privileged
from src.core.errors import BattleError
from src.core.logger import get_logger
from src.core.metrics import record_moderation_decision
from src.core.observability import capture_exception
from src.identity.oracle import IdentityOracle
from src.moderation.classifier import classify_comment
from src.storage.models import Battle, Comment, ModerationAction, ModerationFeedback


COMMENT_MAX_CHARS = 1000
COMMENTABLE_STATUSES = (ACTIVE,)
AUTO_HIDDEN_REASON = "auto_moderated"
OVERRIDE_DECISIONS = {"allow", "hide"}

CREATE_COMMENT_PROCEDURE = "create_battle_comment"
EDIT_COMMENT_PROCEDURE = "edit_battle_comment"
HIDE_OWN_COMMENT_PROCEDURE = "hide_own_comment"

logger = get_logger("arena.moderation.service")


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


@contextmanager
def _audited_rejection(
    session: Session,
    *,
    actor: Actor,
    procedure: str,
    subject_type: str,
    subject_id: Optional[str],
) -> Iterator[None]:
    try:
        yield
    except BattleError as exc:
        session.rollback()
        logger.info("comment_call_rejected", procedure=procedure, subject_id=subject_id, error_code=exc.code)
        record_failure(
            session,
            actor=actor,
            procedure=procedure,
            subject_type=subject_type,
            subject_id=subject_id,
            error_code=exc.code,
            details=exc.details,
            now=None,
        )
        raise


def _lock_comment(session: Session, comment_id: str) -> Comment:
    comment = session.scalar(
        select(Comment)
        .where(Comment.id == comment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if comment is None:
        raise BattleError("comment_not_found")
    return comment


def _normalize_content(content: str | None) -> str:
    normalized = (content or "").strip()
    if not normalized or len(normalized) > COMMENT_MAX_CHARS:
        raise BattleError("invalid_comment")
    return normalized


def on_comment_created(session: Session, comment: Comment, *, now: Optional[datetime] = None) -> ModerationAction:
    """Classify a comment, record the decision, and auto-hide high-confidence toxic/spam.

    Commits on success. Classification itself never fails; only the writes can.
    """

    current = now or _now_utc()
    decision = classify_comment(comment.content)
    document = decision.to_document()
    document["analyzed_at"] = current.isoformat()

    action = ModerationAction(
        action_type="comment_moderation",
        subject_type="comment",
        subject_id=comment.id,
        decision_json=_json_dumps(document),
        confidence_score=decision.score,
        reason=decision.reason,
        status="proposed",
        human_override=False,
        reversible=True,
    )
    session.add(action)
    session.flush()

    if decision.should_auto_hide:
        if not comment.is_hidden:
            comment.is_hidden = True
            comment.hidden_reason = AUTO_HIDDEN_REASON
            comment.updated_at = current
        document.update({"applied_action": "hide", "applied_hidden_reason": AUTO_HIDDEN_REASON})
        action.status = "executed"
        action.reason = "Auto-moderated by rule-based policy."
        action.executed_at = current
        action.decision_json = _json_dumps(document)
        session.flush()
        sync_moderation_action(session, action, now=current)

    session.commit()
    record_moderation_decision(classification=decision.classification, status=action.status)
    logger.info(
        "comment_moderated",
        comment_id=comment.id,
        battle_id=comment.battle_id,
        action_id=action.id,
        classification=decision.classification,
        score=decision.score,
        status=action.status,
    )
    return action


def _moderate_safely(session: Session, comment: Comment) -> Optional[ModerationAction]:
    try:
        return on_comment_created(session, comment)
    except SQLAlchemyError as exc:
        # The comment stays committed and unmoderated; the rescan job picks it up.
        session.rollback()
        logger.error("comment_moderation_failed", comment_id=comment.id, error=str(exc))
        capture_exception(exc)
        return None


def create_comment(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    battle_id: str,
    content: str,
    parent_id: Optional[str] = None,
) -> Comment:
    with _audited_rejection(
        session, actor=actor, procedure=CREATE_COMMENT_PROCEDURE, subject_type="battle", subject_id=battle_id
    ):
        if not actor.user_id:
            raise BattleError("auth_required")
        if not oracle.is_contact_verified(actor.user_id):
            raise BattleError("comment_not_allowed_unverified_email")
        normalized = _normalize_content(content)

        battle = session.get(Battle, battle_id)
        if battle is None:
            raise BattleError("battle_not_found")
        if battle.status not in COMMENTABLE_STATUSES:
            raise BattleError("battle_not_open_for_comments")
        if parent_id is not None:
            parent = session.get(Comment, parent_id)
            if parent is None or parent.battle_id != battle_id:
                raise BattleError("invalid_comment")

        comment = Comment(
            battle_id=battle_id,
            author_id=actor.user_id,
            parent_id=parent_id,
            content=normalized,
            is_hidden=False,
        )
        session.add(comment)
        session.commit()
    logger.info("comment_created", comment_id=comment.id, battle_id=battle_id, author_id=actor.user_id)

    _moderate_safely(session, comment)
    return comment


def edit_comment(session: Session, *, actor: Actor, comment_id: str, content: str) -> Comment:
    with _audited_rejection(
        session, actor=actor, procedure=EDIT_COMMENT_PROCEDURE, subject_type="comment", subject_id=comment_id
    ):
        normalized = _normalize_content(content)
        comment = _lock_comment(session, comment_id)
        if not actor.user_id or comment.author_id != actor.user_id:
            raise BattleError("comment_edit_forbidden")

        comment.content = normalized
        comment.updated_at = _now_utc()
        session.commit()
    logger.info("comment_edited", comment_id=comment.id, author_id=actor.user_id)

    _moderate_safely(session, comment)
    return comment


def set_own_comment_hidden(session: Session, *, actor: Actor, comment_id: str, hidden: bool) -> Comment:
    with _audited_rejection(
        session, actor=actor, procedure=HIDE_OWN_COMMENT_PROCEDURE, subject_type="comment", subject_id=comment_id
    ):
        comment = _lock_comment(session, comment_id)
        if not actor.user_id or comment.author_id != actor.user_id:
            raise BattleError("comment_edit_forbidden")

        comment.is_hidden = bool(hidden)
        comment.hidden_reason = "author_hidden" if hidden else None
        comment.updated_at = _now_utc()
        session.commit()
    return comment


def admin_moderate_comment(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    comment_id: str,
    hidden: bool,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Comment:
    def operation(outcome: PrivilegedOutcome) -> Comment:
        current = now or _now_utc()
        comment = _lock_comment(session, comment_id)
        before = {"is_hidden": comment.is_hidden, "hidden_reason": comment.hidden_reason}
        comment.is_hidden = bool(hidden)
        comment.hidden_reason = ((reason or "").strip() or "admin_moderated") if hidden else None
        comment.updated_at = current
        session.flush()

        action = ModerationAction(
            action_type="comment_admin_moderation",
            subject_type="comment",
            subject_id=comment.id,
            decision_json=_json_dumps({"is_hidden": comment.is_hidden, "hidden_reason": comment.hidden_reason}),
            confidence_score=1.0,
            reason=(reason or "").strip() or None,
            status="executed",
            human_override=True,
            reversible=True,
            executed_at=current,
            executed_by=actor.user_id,
        )
        session.add(action)
        session.flush()
        sync_moderation_action(session, action, now=current)

        outcome.details.update(
            {
                "before": before,
                "after": {"is_hidden": comment.is_hidden, "hidden_reason": comment.hidden_reason},
            }
        )
        return comment

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_moderate_comment",
        subject_type="comment",
        subject_id=comment_id,
        access=ACCESS_ADMIN,
        operation=operation,
        now=now,
    )


def override_moderation_action(
    session: Session,
    *,
    actor: Actor,
    oracle: IdentityOracle,
    action_id: str,
    decision: str,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ModerationAction:
    """Replace an automated outcome with a human one and keep the pair as labelled feedback."""

    normalized_decision = (decision or "").strip().lower()

    def operation(outcome: PrivilegedOutcome) -> ModerationAction:
        current = now or _now_utc()
        if normalized_decision not in OVERRIDE_DECISIONS:
            raise BattleError("invalid_override_decision")

        action = session.scalar(
            select(ModerationAction)
            .where(ModerationAction.id == action_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if action is None:
            raise BattleError("moderation_action_not_found")
        if action.subject_type != "comment":
            raise BattleError("invalid_override_decision")
        if action.status == "overridden":
            raise BattleError("moderation_action_already_overridden")

        comment = _lock_comment(session, action.subject_id)
        prediction = _json_load_dict(action.decision_json)
        previous_status = action.status

        hide = normalized_decision == "hide"
        comment.is_hidden = hide
        comment.hidden_reason = "admin_override" if hide else None
        comment.updated_at = current

        human_decision = {
            "decision": normalized_decision,
            "note": (note or "").strip() or None,
            "decided_by": actor.user_id,
            "decided_at": current.isoformat(),
        }
        prediction_with_override = dict(prediction)
        prediction_with_override["override"] = human_decision
        action.decision_json = _json_dumps(prediction_with_override)
        action.status = "overridden"
        action.human_override = True
        action.executed_by = actor.user_id
        action.updated_at = current

        session.add(
            ModerationFeedback(
                action_id=action.id,
                model_prediction_json=_json_dumps(prediction),
                human_decision_json=_json_dumps(human_decision),
                human_override=True,
                created_by=actor.user_id,
            )
        )
        session.flush()

        outcome.details.update(
            {
                "action_id": action.id,
                "previous_status": previous_status,
                "model_classification": prediction.get("classification"),
                "human_decision": normalized_decision,
            }
        )
        outcome.subject_id = comment.id
        logger.info(
            "moderation_action_overridden",
            action_id=action.id,
            comment_id=comment.id,
            model_classification=prediction.get("classification"),
            human_decision=normalized_decision,
        )
        return action

    return run_privileged(
        session,
        actor=actor,
        oracle=oracle,
        procedure="admin_override_moderation",
        subject_type="comment",
        subject_id=None,
        access=ACCESS_ADMIN,
        operation=operation,
        now=now,
    )


def rescan_unmoderated_comments(session: Session, *, limit: int = 200) -> int:
    """Run the moderation hook for comments that never got a decision recorded."""

    has_decision = exists().where(
        and_(
            ModerationAction.subject_type == "comment",
            ModerationAction.subject_id == Comment.id,
        )
    )
    comments = list(
        session.scalars(
            select(Comment).where(~has_decision).order_by(Comment.created_at.asc()).limit(max(1, int(limit)))
        ).all()
    )
    moderated = 0
    for comment in comments:
        if _moderate_safely(session, comment) is not None:
            moderated += 1
    logger.info("comment_rescan_completed", candidates=len(comments), moderated=moderated)
    return moderated


def list_comments(session: Session, *, battle_id: str, include_hidden: bool = False) -> List[Comment]:
    statement = select(Comment).where(Comment.battle_id == battle_id)
    if not include_hidden:
        statement = statement.where(Comment.is_hidden.is_(False))
    return list(session.scalars(statement.order_by(Comment.created_at.asc())).all())


def list_moderation_actions(
    session: Session,
    *,
    status: Optional[str] = None,
    subject_type: Optional[str] = None,
    limit: int = 100,
) -> List[ModerationAction]:
    statement = select(ModerationAction)
    if status:
        statement = statement.where(ModerationAction.status == status)
    if subject_type:
        statement = statement.where(ModerationAction.subject_type == subject_type)
    statement = statement.order_by(desc(ModerationAction.created_at)).limit(max(1, min(int(limit), 500)))
    return list(session.scalars(statement).all())
