"""Schemas for the administrative control plane."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditEntryResponse(BaseModel):
    id: str
    actor_id: Optional[str] = None
    action_type: str
    subject_type: str
    subject_id: Optional[str] = None
    source: str
    source_action_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    details: Dict[str, Any] = Field(default_factory=dict)
    success: bool
    error_code: Optional[str] = None
    created_at: Optional[datetime] = None


class AlertResponse(BaseModel):
    id: str
    event_type: str
    severity: str
    source: str
    subject_type: Optional[str] = None
    subject_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


class AnomalyScanRequest(BaseModel):
    lookback_minutes: int = Field(default=15, ge=1, le=1440)


class AnomalyScanResponse(BaseModel):
    lookback_minutes: int
    alerts_inserted: int


class SettingPutRequest(BaseModel):
    value: Dict[str, Any]


class SettingResponse(BaseModel):
    key: str
    value: Dict[str, Any] = Field(default_factory=dict)
    version: int
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class RateLimitRuleRequest(BaseModel):
    procedure: str = Field(min_length=1, max_length=120)
    scope: str = Field(pattern="^(per_actor|global)$")
    allowed_per_minute: int = Field(gt=0)
    enabled: bool = True


class RateLimitRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    procedure: str
    scope: str
    allowed_per_minute: int
    enabled: bool


class RateLimitRuleListResponse(BaseModel):
    rules: List[RateLimitRuleResponse] = Field(default_factory=list)
