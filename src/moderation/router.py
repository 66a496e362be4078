"""Comment editing and moderation review routes."""

from __future__ import annotations

import json
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.auth.dependencies import get_actor, get_identity_oracle
from src.control.privileged import ACCESS_ADMIN, Actor, authorize
from src.identity.oracle import DatabaseIdentityOracle
from src.moderation.service import (
    admin_moderate_comment,
    edit_comment,
    list_moderation_actions,
    override_moderation_action,
    set_own_comment_hidden,
)
from src.schemas.moderation import (
    AdminModerateCommentRequest,
    CommentResponse,
    EditCommentRequest,
    HideCommentRequest,
    ModerationActionResponse,
    OverrideModerationRequest,
)
from src.storage.db import get_session
from src.storage.models import ModerationAction


router = APIRouter(prefix="/comments", tags=["comments"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


def _action_response(action: ModerationAction) -> ModerationActionResponse:
    try:
        decision = json.loads(action.decision_json or "{}")
    except ValueError:
        decision = {}
    return ModerationActionResponse(
        id=action.id,
        action_type=action.action_type,
        subject_type=action.subject_type,
        subject_id=action.subject_id,
        decision=decision if isinstance(decision, dict) else {},
        confidence_score=action.confidence_score,
        reason=action.reason,
        status=action.status,
        human_override=bool(action.human_override),
        executed_at=action.executed_at,
        executed_by=action.executed_by,
    )


@router.patch("/{comment_id}", response_model=CommentResponse)
def edit_comment_endpoint(
    comment_id: str,
    payload: EditCommentRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
) -> CommentResponse:
    comment = edit_comment(session, actor=actor, comment_id=comment_id, content=payload.content)
    return CommentResponse.model_validate(comment)


@router.post("/{comment_id}/hide", response_model=CommentResponse)
def hide_own_comment_endpoint(
    comment_id: str,
    payload: HideCommentRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
) -> CommentResponse:
    comment = set_own_comment_hidden(session, actor=actor, comment_id=comment_id, hidden=payload.hidden)
    return CommentResponse.model_validate(comment)


@admin_router.post("/comments/{comment_id}/moderate", response_model=CommentResponse)
def admin_moderate_comment_endpoint(
    comment_id: str,
    payload: AdminModerateCommentRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> CommentResponse:
    comment = admin_moderate_comment(
        session,
        actor=actor,
        oracle=oracle,
        comment_id=comment_id,
        hidden=payload.hidden,
        reason=payload.reason,
    )
    return CommentResponse.model_validate(comment)


@admin_router.get("/moderation-actions", response_model=List[ModerationActionResponse])
def list_moderation_actions_endpoint(
    status: Optional[str] = Query(default=None),
    subject_type: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> List[ModerationActionResponse]:
    authorize(actor, oracle, ACCESS_ADMIN)
    actions = list_moderation_actions(session, status=status, subject_type=subject_type, limit=limit)
    return [_action_response(action) for action in actions]


@admin_router.post("/moderation-actions/{action_id}/override", response_model=ModerationActionResponse)
def override_moderation_endpoint(
    action_id: str,
    payload: OverrideModerationRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> ModerationActionResponse:
    action = override_moderation_action(
        session,
        actor=actor,
        oracle=oracle,
        action_id=action_id,
        decision=payload.decision,
        note=payload.note,
    )
    return _action_response(action)
