"""Schemas for comments and moderation endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateCommentRequest(BaseModel):
    content: str = Field(min_length=1, max_length=1000)
    parent_id: Optional[str] = Field(default=None, max_length=36)


class EditCommentRequest(BaseModel):
    content: str = Field(min_length=1, max_length=1000)


class HideCommentRequest(BaseModel):
    hidden: bool = True


class AdminModerateCommentRequest(BaseModel):
    hidden: bool
    reason: Optional[str] = Field(default=None, max_length=255)


class OverrideModerationRequest(BaseModel):
    decision: str = Field(pattern="^(allow|hide)$")
    note: Optional[str] = Field(default=None, max_length=1000)


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    battle_id: str
    author_id: str
    parent_id: Optional[str] = None
    content: str
    is_hidden: bool
    hidden_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class ModerationActionResponse(BaseModel):
    id: str
    action_type: str
    subject_type: str
    subject_id: str
    decision: Dict[str, Any] = Field(default_factory=dict)
    confidence_score: Optional[float] = None
    reason: Optional[str] = None
    status: str
    human_override: bool
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None
