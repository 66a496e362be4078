"""SQLAlchemy ORM models for the battle lifecycle engine and its control plane."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.storage.db import Base


BATTLE_STATUSES = (
    "pending_acceptance",
    "awaiting_admin",
    "active",
    "completed",
    "rejected",
    "cancelled",
)
LEGACY_BATTLE_STATUSES = ("pending", "approved", "voting")
TERMINAL_BATTLE_STATUSES = ("completed", "rejected", "cancelled")


def _uuid() -> str:
    return str(uuid.uuid4())


def _in_list(column: str, values: tuple[str, ...]) -> str:
    joined = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({joined})"


class CreatorProfile(Base):
    """Identity and eligibility record consulted by the identity oracle."""

    __tablename__ = "creator_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(24), nullable=False, default="user")
    email_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_competitor_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    battles_participated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    battles_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    battle_refusal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    engagement_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("role IN ('user', 'admin')", name="ck_creator_profiles_role"),
    )


class CatalogItem(Base):
    """Creative work owned by a creator; read-only from the engine's point of view."""

    __tablename__ = "catalog_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("creator_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_catalog_items_owner_id", "owner_id"),)


class Battle(Base):
    __tablename__ = "battles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    slug: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(140), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    participant_a_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("creator_profiles.id", ondelete="RESTRICT"),
        nullable=False,
    )
    participant_b_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("creator_profiles.id", ondelete="RESTRICT"),
        nullable=True,
    )
    submission_a_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("catalog_items.id", ondelete="SET NULL"),
        nullable=True,
    )
    submission_b_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("catalog_items.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_acceptance")
    response_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    voting_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    custom_duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    extension_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    votes_a: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    votes_b: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    winner_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("creator_profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "participant_b_id IS NULL OR participant_a_id <> participant_b_id",
            name="ck_battles_distinct_participants",
        ),
        CheckConstraint("votes_a >= 0 AND votes_b >= 0", name="ck_battles_votes_non_negative"),
        CheckConstraint(
            "accepted_at IS NULL OR rejected_at IS NULL",
            name="ck_battles_response_exclusive",
        ),
        CheckConstraint(
            "custom_duration_days IS NULL OR (custom_duration_days >= 1 AND custom_duration_days <= 60)",
            name="ck_battles_custom_duration_days",
        ),
        CheckConstraint("extension_count >= 0", name="ck_battles_extension_count"),
        CheckConstraint(
            _in_list("status", BATTLE_STATUSES + LEGACY_BATTLE_STATUSES),
            name="ck_battles_status",
        ),
        Index("ix_battles_status_voting_ends_at", "status", "voting_ends_at"),
        Index("ix_battles_participant_a_id", "participant_a_id"),
        Index("ix_battles_participant_b_id", "participant_b_id"),
    )


class Vote(Base):
    __tablename__ = "battle_votes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    battle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("battles.id", ondelete="CASCADE"),
        nullable=False,
    )
    voter_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("creator_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    voted_for_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("creator_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("battle_id", "voter_id", name="uq_battle_votes_battle_voter"),
        Index("ix_battle_votes_battle_id", "battle_id"),
    )


class Comment(Base):
    __tablename__ = "battle_comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    battle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("battles.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("creator_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("battle_comments.id", ondelete="CASCADE"),
        nullable=True,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hidden_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("length(content) <= 1000", name="ck_battle_comments_content_length"),
        Index("ix_battle_comments_battle_created_at", "battle_id", "created_at"),
    )


class ModerationAction(Base):
    """One automated (or administrator) decision about a subject, with its lifecycle."""

    __tablename__ = "moderation_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(36), nullable=False)
    decision_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="proposed")
    human_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reversible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    executed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('proposed', 'executed', 'failed', 'overridden')",
            name="ck_moderation_actions_status",
        ),
        CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_moderation_actions_confidence",
        ),
        Index("ix_moderation_actions_subject", "subject_type", "subject_id"),
        Index("ix_moderation_actions_status_created_at", "status", "created_at"),
    )


class ModerationFeedback(Base):
    __tablename__ = "moderation_feedback"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    action_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("moderation_actions.id", ondelete="CASCADE"),
        nullable=False,
    )
    model_prediction_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    human_decision_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    human_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_moderation_feedback_action_id", "action_id"),)


class AuditEntry(Base):
    __tablename__ = "audit_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    action_type: Mapped[str] = mapped_column(String(80), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="rpc")
    source_action_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)
    context_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    details_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "source IN ('rpc', 'moderation_actions', 'scheduler')",
            name="ck_audit_entries_source",
        ),
        Index("ix_audit_entries_action_type_created_at", "action_type", "created_at"),
        Index("ix_audit_entries_subject", "subject_type", "subject_id"),
        Index("ix_audit_entries_created_at", "created_at"),
    )


class RateLimitRule(Base):
    __tablename__ = "rate_limit_rules"

    procedure: Mapped[str] = mapped_column(String(120), primary_key=True)
    scope: Mapped[str] = mapped_column(String(16), nullable=False, default="per_actor")
    allowed_per_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("scope IN ('per_actor', 'global')", name="ck_rate_limit_rules_scope"),
        CheckConstraint("allowed_per_minute > 0", name="ck_rate_limit_rules_allowed_positive"),
    )


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"

    procedure: Mapped[str] = mapped_column(String(120), primary_key=True)
    scope_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_rate_limit_counters_window_started_at", "window_started_at"),)


class RateLimitViolation(Base):
    __tablename__ = "rate_limit_violations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    procedure: Mapped[str] = mapped_column(String(120), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    scope_key: Mapped[str] = mapped_column(String(64), nullable=False)
    allowed_per_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    observed_count: Mapped[int] = mapped_column(Integer, nullable=False)
    window_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    context_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_rate_limit_violations_procedure_created_at", "procedure", "created_at"),)


class MonitoringAlert(Base):
    __tablename__ = "monitoring_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="warning")
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    subject_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    dedup_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    details_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "severity IN ('info', 'warning', 'critical')",
            name="ck_monitoring_alerts_severity",
        ),
        Index("ix_monitoring_alerts_event_dedup_created_at", "event_type", "dedup_key", "created_at"),
        Index("ix_monitoring_alerts_unresolved", "resolved_at", "created_at"),
    )


class AppSetting(Base):
    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class BattleEvent(Base):
    """State-change trigger rows consumed by notification collaborators."""

    __tablename__ = "battle_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    battle_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("battles.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_battle_events_battle_created_at", "battle_id", "created_at"),)
