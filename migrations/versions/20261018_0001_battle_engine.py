"""battle lifecycle engine core schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


BATTLE_STATUS_CHECK = (
    "status IN ('pending_acceptance', 'awaiting_admin', 'active', 'completed', 'rejected', 'cancelled', "
    "'pending', 'approved', 'voting')"
)


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade() -> None:
    op.create_table(
        "creator_profiles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("username", sa.String(length=80), nullable=False),
        sa.Column("role", sa.String(length=24), nullable=False, server_default="user"),
        _timestamp("email_verified_at", nullable=True),
        sa.Column("is_competitor_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("battles_participated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("battles_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("battle_refusal_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("engagement_score", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username", name="uq_creator_profiles_username"),
        sa.CheckConstraint("role IN ('user', 'admin')", name="ck_creator_profiles_role"),
    )

    op.create_table(
        "catalog_items",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        _timestamp("deleted_at", nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["owner_id"], ["creator_profiles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_catalog_items_owner_id", "catalog_items", ["owner_id"], unique=False)

    op.create_table(
        "battles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("slug", sa.String(length=160), nullable=False),
        sa.Column("title", sa.String(length=140), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("participant_a_id", sa.String(length=36), nullable=False),
        sa.Column("participant_b_id", sa.String(length=36), nullable=True),
        sa.Column("submission_a_id", sa.String(length=36), nullable=True),
        sa.Column("submission_b_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending_acceptance"),
        _timestamp("response_deadline", nullable=True),
        _timestamp("starts_at", nullable=True),
        _timestamp("voting_ends_at", nullable=True),
        sa.Column("custom_duration_days", sa.Integer(), nullable=True),
        sa.Column("extension_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("votes_a", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("votes_b", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("winner_id", sa.String(length=36), nullable=True),
        _timestamp("accepted_at", nullable=True),
        _timestamp("rejected_at", nullable=True),
        _timestamp("admin_validated_at", nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["participant_a_id"], ["creator_profiles.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["participant_b_id"], ["creator_profiles.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["submission_a_id"], ["catalog_items.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["submission_b_id"], ["catalog_items.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["winner_id"], ["creator_profiles.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug", name="uq_battles_slug"),
        sa.CheckConstraint(
            "participant_b_id IS NULL OR participant_a_id <> participant_b_id",
            name="ck_battles_distinct_participants",
        ),
        sa.CheckConstraint("votes_a >= 0 AND votes_b >= 0", name="ck_battles_votes_non_negative"),
        sa.CheckConstraint("accepted_at IS NULL OR rejected_at IS NULL", name="ck_battles_response_exclusive"),
        sa.CheckConstraint(
            "custom_duration_days IS NULL OR (custom_duration_days >= 1 AND custom_duration_days <= 60)",
            name="ck_battles_custom_duration_days",
        ),
        sa.CheckConstraint("extension_count >= 0", name="ck_battles_extension_count"),
        sa.CheckConstraint(BATTLE_STATUS_CHECK, name="ck_battles_status"),
    )
    op.create_index("ix_battles_status_voting_ends_at", "battles", ["status", "voting_ends_at"], unique=False)
    op.create_index("ix_battles_participant_a_id", "battles", ["participant_a_id"], unique=False)
    op.create_index("ix_battles_participant_b_id", "battles", ["participant_b_id"], unique=False)

    op.create_table(
        "battle_votes",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("battle_id", sa.String(length=36), nullable=False),
        sa.Column("voter_id", sa.String(length=36), nullable=False),
        sa.Column("voted_for_id", sa.String(length=36), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["battle_id"], ["battles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["voter_id"], ["creator_profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["voted_for_id"], ["creator_profiles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("battle_id", "voter_id", name="uq_battle_votes_battle_voter"),
    )
    op.create_index("ix_battle_votes_battle_id", "battle_votes", ["battle_id"], unique=False)

    op.create_table(
        "battle_comments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("battle_id", sa.String(length=36), nullable=False),
        sa.Column("author_id", sa.String(length=36), nullable=False),
        sa.Column("parent_id", sa.String(length=36), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_hidden", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("hidden_reason", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["battle_id"], ["battles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["author_id"], ["creator_profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_id"], ["battle_comments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("length(content) <= 1000", name="ck_battle_comments_content_length"),
    )
    op.create_index(
        "ix_battle_comments_battle_created_at",
        "battle_comments",
        ["battle_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "moderation_actions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("subject_type", sa.String(length=32), nullable=False),
        sa.Column("subject_id", sa.String(length=36), nullable=False),
        sa.Column("decision_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="proposed"),
        sa.Column("human_override", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reversible", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("executed_at", nullable=True),
        sa.Column("executed_by", sa.String(length=36), nullable=True),
        sa.Column("error", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('proposed', 'executed', 'failed', 'overridden')",
            name="ck_moderation_actions_status",
        ),
        sa.CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)",
            name="ck_moderation_actions_confidence",
        ),
    )
    op.create_index(
        "ix_moderation_actions_subject",
        "moderation_actions",
        ["subject_type", "subject_id"],
        unique=False,
    )
    op.create_index(
        "ix_moderation_actions_status_created_at",
        "moderation_actions",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "moderation_feedback",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("action_id", sa.String(length=36), nullable=False),
        sa.Column("model_prediction_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("human_decision_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("human_override", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["action_id"], ["moderation_actions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_moderation_feedback_action_id", "moderation_feedback", ["action_id"], unique=False)

    op.create_table(
        "audit_entries",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("action_type", sa.String(length=80), nullable=False),
        sa.Column("subject_type", sa.String(length=32), nullable=False),
        sa.Column("subject_id", sa.String(length=120), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="rpc"),
        sa.Column("source_action_id", sa.String(length=36), nullable=True),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("details_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("error_code", sa.String(length=80), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_action_id", name="uq_audit_entries_source_action_id"),
        sa.CheckConstraint(
            "source IN ('rpc', 'moderation_actions', 'scheduler')",
            name="ck_audit_entries_source",
        ),
    )
    op.create_index(
        "ix_audit_entries_action_type_created_at",
        "audit_entries",
        ["action_type", "created_at"],
        unique=False,
    )
    op.create_index("ix_audit_entries_subject", "audit_entries", ["subject_type", "subject_id"], unique=False)
    op.create_index("ix_audit_entries_created_at", "audit_entries", ["created_at"], unique=False)

    op.create_table(
        "rate_limit_rules",
        sa.Column("procedure", sa.String(length=120), nullable=False),
        sa.Column("scope", sa.String(length=16), nullable=False, server_default="per_actor"),
        sa.Column("allowed_per_minute", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("procedure"),
        sa.CheckConstraint("scope IN ('per_actor', 'global')", name="ck_rate_limit_rules_scope"),
        sa.CheckConstraint("allowed_per_minute > 0", name="ck_rate_limit_rules_allowed_positive"),
    )

    op.create_table(
        "rate_limit_counters",
        sa.Column("procedure", sa.String(length=120), nullable=False),
        sa.Column("scope_key", sa.String(length=64), nullable=False),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("procedure", "scope_key", "window_started_at"),
    )
    op.create_index(
        "ix_rate_limit_counters_window_started_at",
        "rate_limit_counters",
        ["window_started_at"],
        unique=False,
    )

    op.create_table(
        "rate_limit_violations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("procedure", sa.String(length=120), nullable=False),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("scope_key", sa.String(length=64), nullable=False),
        sa.Column("allowed_per_minute", sa.Integer(), nullable=False),
        sa.Column("observed_count", sa.Integer(), nullable=False),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_rate_limit_violations_procedure_created_at",
        "rate_limit_violations",
        ["procedure", "created_at"],
        unique=False,
    )

    op.create_table(
        "monitoring_alerts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="warning"),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("subject_type", sa.String(length=32), nullable=True),
        sa.Column("subject_id", sa.String(length=120), nullable=True),
        sa.Column("dedup_key", sa.String(length=200), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=False, server_default="{}"),
        _timestamp("created_at"),
        _timestamp("resolved_at", nullable=True),
        sa.Column("resolved_by", sa.String(length=36), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("severity IN ('info', 'warning', 'critical')", name="ck_monitoring_alerts_severity"),
    )
    op.create_index(
        "ix_monitoring_alerts_event_dedup_created_at",
        "monitoring_alerts",
        ["event_type", "dedup_key", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_monitoring_alerts_unresolved",
        "monitoring_alerts",
        ["resolved_at", "created_at"],
        unique=False,
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=120), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_by", sa.String(length=36), nullable=True),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "battle_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("battle_id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["battle_id"], ["battles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_battle_events_battle_created_at",
        "battle_events",
        ["battle_id", "created_at"],
        unique=False,
    )

    if _is_postgresql():
        # Database-level twin of the ORM legacy status guard for writers that bypass the mapper.
        op.execute(
            """
            CREATE OR REPLACE FUNCTION prevent_legacy_battle_status_assignments()
            RETURNS trigger
            LANGUAGE plpgsql
            AS $$
            BEGIN
              IF TG_OP = 'INSERT' AND NEW.status IN ('pending', 'approved', 'voting') THEN
                RAISE EXCEPTION 'legacy_battle_status_forbidden';
              END IF;
              IF TG_OP = 'UPDATE'
                 AND NEW.status IS DISTINCT FROM OLD.status
                 AND NEW.status IN ('pending', 'approved', 'voting') THEN
                RAISE EXCEPTION 'legacy_battle_status_transition_forbidden';
              END IF;
              RETURN NEW;
            END;
            $$;
            """
        )
        op.execute(
            """
            CREATE TRIGGER battles_legacy_status_guard
            BEFORE INSERT OR UPDATE OF status ON battles
            FOR EACH ROW EXECUTE FUNCTION prevent_legacy_battle_status_assignments();
            """
        )


def downgrade() -> None:
    if _is_postgresql():
        op.execute("DROP TRIGGER IF EXISTS battles_legacy_status_guard ON battles;")
        op.execute("DROP FUNCTION IF EXISTS prevent_legacy_battle_status_assignments();")

    op.drop_index("ix_battle_events_battle_created_at", table_name="battle_events")
    op.drop_table("battle_events")
    op.drop_table("app_settings")
    op.drop_index("ix_monitoring_alerts_unresolved", table_name="monitoring_alerts")
    op.drop_index("ix_monitoring_alerts_event_dedup_created_at", table_name="monitoring_alerts")
    op.drop_table("monitoring_alerts")
    op.drop_index("ix_rate_limit_violations_procedure_created_at", table_name="rate_limit_violations")
    op.drop_table("rate_limit_violations")
    op.drop_index("ix_rate_limit_counters_window_started_at", table_name="rate_limit_counters")
    op.drop_table("rate_limit_counters")
    op.drop_table("rate_limit_rules")
    op.drop_index("ix_audit_entries_created_at", table_name="audit_entries")
    op.drop_index("ix_audit_entries_subject", table_name="audit_entries")
    op.drop_index("ix_audit_entries_action_type_created_at", table_name="audit_entries")
    op.drop_table("audit_entries")
    op.drop_index("ix_moderation_feedback_action_id", table_name="moderation_feedback")
    op.drop_table("moderation_feedback")
    op.drop_index("ix_moderation_actions_status_created_at", table_name="moderation_actions")
    op.drop_index("ix_moderation_actions_subject", table_name="moderation_actions")
    op.drop_table("moderation_actions")
    op.drop_index("ix_battle_comments_battle_created_at", table_name="battle_comments")
    op.drop_table("battle_comments")
    op.drop_index("ix_battle_votes_battle_id", table_name="battle_votes")
    op.drop_table("battle_votes")
    op.drop_index("ix_battles_participant_b_id", table_name="battles")
    op.drop_index("ix_battles_participant_a_id", table_name="battles")
    op.drop_index("ix_battles_status_voting_ends_at", table_name="battles")
    op.drop_table("battles")
    op.drop_index("ix_catalog_items_owner_id", table_name="catalog_items")
    op.drop_table("catalog_items")
    op.drop_table("creator_profiles")
