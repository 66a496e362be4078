"""Schemas for battle lifecycle and voting endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProposeBattleRequest(BaseModel):
    opponent_id: str = Field(min_length=1, max_length=36)
    submission_a_id: str = Field(min_length=1, max_length=36)
    submission_b_id: Optional[str] = Field(default=None, max_length=36)
    title: str = Field(min_length=1, max_length=140)
    description: Optional[str] = Field(default=None, max_length=4000)
    custom_duration_days: Optional[int] = Field(default=None, ge=1, le=60)
    response_deadline: Optional[datetime] = None


class RespondBattleRequest(BaseModel):
    accept: bool
    reason: Optional[str] = Field(default=None, max_length=1000)


class ExtendBattleRequest(BaseModel):
    days: int
    reason: Optional[str] = Field(default=None, max_length=1000)


class CastVoteRequest(BaseModel):
    voter_id: str = Field(min_length=1, max_length=36)
    target_id: str = Field(min_length=1, max_length=36)


class FinalizeExpiredRequest(BaseModel):
    limit: Optional[int] = None


class BattleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    title: str
    description: Optional[str] = None
    participant_a_id: str
    participant_b_id: Optional[str] = None
    submission_a_id: Optional[str] = None
    submission_b_id: Optional[str] = None
    status: str
    response_deadline: Optional[datetime] = None
    starts_at: Optional[datetime] = None
    voting_ends_at: Optional[datetime] = None
    custom_duration_days: Optional[int] = None
    extension_count: int
    votes_a: int
    votes_b: int
    winner_id: Optional[str] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    admin_validated_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class VoteResponse(BaseModel):
    vote_id: str
    battle_id: str
    voted_for_id: str
    votes_a: int
    votes_b: int


class FinalizeResponse(BaseModel):
    battle_id: str
    status: str
    winner_id: Optional[str] = None
    noop: bool


class SweepItemResponse(BaseModel):
    battle_id: str
    status: str
    winner_id: Optional[str] = None
    error_code: Optional[str] = None


class SweepResponse(BaseModel):
    limit: int
    candidates: int
    finalized: int
    noop: int
    failed: int
    items: List[SweepItemResponse] = Field(default_factory=list)


class BattleEvaluationResponse(BaseModel):
    battle_id: str
    action_id: str
    model: str
    recommendation: str
    recommended_procedure: str
    confidence: float
    auto_threshold: float
    auto_eligible: bool
    reasons: List[str] = Field(default_factory=list)
