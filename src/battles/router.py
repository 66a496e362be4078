"""Battle lifecycle, voting and comment API routes."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.auth.dependencies import get_actor, get_identity_oracle
from src.battles.finalization import finalize_expired_battles
from src.battles.state_machine import (
    admin_cancel_battle,
    admin_evaluate_battle,
    admin_extend_battle_duration,
    admin_validate_battle,
    finalize_battle,
    get_battle,
    list_battles,
    propose_battle,
    respond_to_battle,
)
from src.battles.voting import cast_vote
from src.control.privileged import Actor
from src.identity.oracle import DatabaseIdentityOracle
from src.moderation.service import create_comment, list_comments
from src.schemas.battles import (
    BattleEvaluationResponse,
    BattleResponse,
    CastVoteRequest,
    ExtendBattleRequest,
    FinalizeExpiredRequest,
    FinalizeResponse,
    ProposeBattleRequest,
    RespondBattleRequest,
    SweepItemResponse,
    SweepResponse,
    VoteResponse,
)
from src.schemas.moderation import CommentResponse, CreateCommentRequest
from src.storage.db import get_session


router = APIRouter(prefix="/battles", tags=["battles"])
admin_router = APIRouter(prefix="/admin/battles", tags=["admin"])


@router.post("", response_model=BattleResponse, status_code=201)
def propose_battle_endpoint(
    payload: ProposeBattleRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> BattleResponse:
    battle = propose_battle(
        session,
        actor=actor,
        oracle=oracle,
        opponent_id=payload.opponent_id,
        submission_a_id=payload.submission_a_id,
        submission_b_id=payload.submission_b_id,
        title=payload.title,
        description=payload.description,
        custom_duration_days=payload.custom_duration_days,
        response_deadline=payload.response_deadline,
    )
    return BattleResponse.model_validate(battle)


@router.get("", response_model=List[BattleResponse])
def list_battles_endpoint(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
) -> List[BattleResponse]:
    return [BattleResponse.model_validate(battle) for battle in list_battles(session, status=status, limit=limit)]


@router.get("/{battle_ref}", response_model=BattleResponse)
def get_battle_endpoint(battle_ref: str, session: Session = Depends(get_session)) -> BattleResponse:
    return BattleResponse.model_validate(get_battle(session, battle_ref))


@router.post("/{battle_id}/respond", response_model=BattleResponse)
def respond_battle_endpoint(
    battle_id: str,
    payload: RespondBattleRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> BattleResponse:
    battle = respond_to_battle(
        session,
        actor=actor,
        oracle=oracle,
        battle_id=battle_id,
        accept=payload.accept,
        reason=payload.reason,
    )
    return BattleResponse.model_validate(battle)


@router.post("/{battle_id}/votes", response_model=VoteResponse, status_code=201)
def cast_vote_endpoint(
    battle_id: str,
    payload: CastVoteRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> VoteResponse:
    result = cast_vote(
        session,
        actor=actor,
        oracle=oracle,
        battle_id=battle_id,
        voter_id=payload.voter_id,
        target_id=payload.target_id,
    )
    return VoteResponse(
        vote_id=result.vote_id,
        battle_id=result.battle_id,
        voted_for_id=result.voted_for_id,
        votes_a=result.votes_a,
        votes_b=result.votes_b,
    )


@router.get("/{battle_id}/comments", response_model=List[CommentResponse])
def list_comments_endpoint(battle_id: str, session: Session = Depends(get_session)) -> List[CommentResponse]:
    return [CommentResponse.model_validate(comment) for comment in list_comments(session, battle_id=battle_id)]


@router.post("/{battle_id}/comments", response_model=CommentResponse, status_code=201)
def create_comment_endpoint(
    battle_id: str,
    payload: CreateCommentRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> CommentResponse:
    comment = create_comment(
        session,
        actor=actor,
        oracle=oracle,
        battle_id=battle_id,
        content=payload.content,
        parent_id=payload.parent_id,
    )
    return CommentResponse.model_validate(comment)


@admin_router.post("/finalize-expired", response_model=SweepResponse)
def finalize_expired_endpoint(
    payload: FinalizeExpiredRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> SweepResponse:
    result = finalize_expired_battles(session, actor=actor, oracle=oracle, limit=payload.limit)
    return SweepResponse(
        limit=result.limit,
        candidates=result.candidates,
        finalized=result.finalized,
        noop=result.noop,
        failed=result.failed,
        items=[
            SweepItemResponse(
                battle_id=item.battle_id,
                status=item.status,
                winner_id=item.winner_id,
                error_code=item.error_code,
            )
            for item in result.items
        ],
    )


@admin_router.post("/{battle_id}/validate", response_model=BattleResponse)
def validate_battle_endpoint(
    battle_id: str,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> BattleResponse:
    battle = admin_validate_battle(session, actor=actor, oracle=oracle, battle_id=battle_id)
    return BattleResponse.model_validate(battle)


@admin_router.post("/{battle_id}/cancel", response_model=BattleResponse)
def cancel_battle_endpoint(
    battle_id: str,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> BattleResponse:
    battle = admin_cancel_battle(session, actor=actor, oracle=oracle, battle_id=battle_id)
    return BattleResponse.model_validate(battle)


@admin_router.post("/{battle_id}/extend", response_model=BattleResponse)
def extend_battle_endpoint(
    battle_id: str,
    payload: ExtendBattleRequest,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> BattleResponse:
    battle = admin_extend_battle_duration(
        session,
        actor=actor,
        oracle=oracle,
        battle_id=battle_id,
        days=payload.days,
        reason=payload.reason,
    )
    return BattleResponse.model_validate(battle)


@admin_router.post("/{battle_id}/finalize", response_model=FinalizeResponse)
def finalize_battle_endpoint(
    battle_id: str,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> FinalizeResponse:
    result = finalize_battle(session, actor=actor, oracle=oracle, battle_id=battle_id)
    return FinalizeResponse(
        battle_id=result.battle_id,
        status=result.status,
        winner_id=result.winner_id,
        noop=result.noop,
    )


@admin_router.post("/{battle_id}/evaluate", response_model=BattleEvaluationResponse)
def evaluate_battle_endpoint(
    battle_id: str,
    actor: Actor = Depends(get_actor),
    oracle: DatabaseIdentityOracle = Depends(get_identity_oracle),
    session: Session = Depends(get_session),
) -> BattleEvaluationResponse:
    result = admin_evaluate_battle(session, actor=actor, oracle=oracle, battle_id=battle_id)
    recommendation = result.recommendation
    return BattleEvaluationResponse(
        battle_id=result.battle_id,
        action_id=result.action_id,
        model=recommendation.model,
        recommendation=recommendation.recommendation,
        recommended_procedure=recommendation.recommended_procedure,
        confidence=recommendation.confidence,
        auto_threshold=recommendation.auto_threshold,
        auto_eligible=recommendation.auto_eligible,
        reasons=recommendation.reasons,
    )
