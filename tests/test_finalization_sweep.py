from __future__ import annotations

from datetime import timedelta
import json

import pytest
from sqlalchemy import select

from src.battles.finalization import SWEEP_PROCEDURE, clamp_sweep_limit, finalize_expired_battles
from src.battles.state_machine import admin_extend_battle_duration, finalize_battle
from src.battles.voting import cast_vote
from src.core.errors import BattleError
from src.identity.oracle import DatabaseIdentityOracle
from src.storage.models import AuditEntry, Battle, ModerationAction
from tests.conftest import (
    BASE_NOW,
    actor,
    as_utc,
    create_active_battle,
    create_arena_context,
    create_pending_battle,
    service_actor,
)


def test_clamp_sweep_limit_bounds() -> None:
    assert clamp_sweep_limit(0) == 1
    assert clamp_sweep_limit(-5) == 1
    assert clamp_sweep_limit(25) == 25
    assert clamp_sweep_limit(10_000) == 500
    assert clamp_sweep_limit(None) == 100


def test_sweep_finalizes_only_expired_active_battles_oldest_first() -> None:
    context = create_arena_context(voters=1)
    with context.session_factory() as session:
        oracle = DatabaseIdentityOracle(session)
        early_id = create_active_battle(session, context, title="Early", custom_duration_days=1)
        late_id = create_active_battle(session, context, title="Late", custom_duration_days=2)
        open_id = create_active_battle(session, context, title="Still open", custom_duration_days=10)
        pending_id = create_pending_battle(session, context, title="Pending")

        cast_vote(
            session,
            actor=actor(context.voter_ids[0]),
            oracle=oracle,
            battle_id=late_id,
            voter_id=context.voter_ids[0],
            target_id=context.bob_id,
            now=BASE_NOW + timedelta(hours=2),
        )

        result = finalize_expired_battles(
            session,
            actor=service_actor(),
            oracle=oracle,
            limit=10,
            now=BASE_NOW + timedelta(days=3),
        )

        assert result.candidates == 2
        assert result.finalized == 2
        assert result.failed == 0
        assert [item.battle_id for item in result.items] == [early_id, late_id]
        assert result.items[0].winner_id is None
        assert result.items[1].winner_id == context.bob_id

        assert session.get(Battle, open_id).status == "active"
        assert session.get(Battle, pending_id).status == "pending_acceptance"

        summary = session.scalar(select(AuditEntry).where(AuditEntry.action_type == SWEEP_PROCEDURE))
        assert summary.source == "scheduler"
        assert summary.success is True
        details = json.loads(summary.details_json)
        assert details["finalized_battle_ids"] == [early_id, late_id]

        # Service finalization writes no administrator decision rows.
        finalize_rows = session.scalars(
            select(ModerationAction).where(ModerationAction.action_type == "battle_finalize_admin")
        ).all()
        assert finalize_rows == []


def test_sweep_respects_the_limit_and_second_run_picks_up_the_rest() -> None:
    context = create_arena_context()
    with context.session_factory() as session:
        oracle = DatabaseIdentityOracle(session)
        battle_ids = [
            create_active_battle(session, context, title=f"Round {index}", custom_duration_days=1)
            for index in range(3)
        ]
        later = BASE_NOW + timedelta(days=2)

        first = finalize_expired_battles(session, actor=service_actor(), oracle=oracle, limit=2, now=later)
        assert first.limit == 2
        assert first.finalized == 2

        second = finalize_expired_battles(session, actor=service_actor(), oracle=oracle, limit=2, now=later)
        assert second.candidates == 1
        assert second.finalized == 1

        third = finalize_expired_battles(session, actor=service_actor(), oracle=oracle, limit=2, now=later)
        assert third.candidates == 0

        statuses = {session.get(Battle, battle_id).status for battle_id in battle_ids}
        assert statuses == {"completed"}


def test_sweep_requires_admin_or_service() -> None:
    context = create_arena_context()
    with context.session_factory() as session:
        oracle = DatabaseIdentityOracle(session)

        with pytest.raises(BattleError) as exc_info:
            finalize_expired_battles(session, actor=actor(context.alice_id), oracle=oracle, now=BASE_NOW)
        assert exc_info.value.code == "admin_required"

        result = finalize_expired_battles(session, actor=actor(context.admin_id), oracle=oracle, now=BASE_NOW)
        assert result.candidates == 0


def test_service_finalize_of_completed_battle_is_a_silent_noop() -> None:
    context = create_arena_context()
    with context.session_factory() as session:
        oracle = DatabaseIdentityOracle(session)
        battle_id = create_active_battle(session, context)
        finalize_battle(session, actor=service_actor(), oracle=oracle, battle_id=battle_id, now=BASE_NOW)

        again = finalize_battle(session, actor=service_actor(), oracle=oracle, battle_id=battle_id, now=BASE_NOW)
        assert again.noop is True

        decisions = session.scalars(
            select(ModerationAction).where(
                ModerationAction.subject_id == battle_id,
                ModerationAction.action_type == "battle_finalize_admin",
            )
        ).all()
        assert decisions == []


def test_extended_battle_is_swept_only_after_its_new_end() -> None:
    context = create_arena_context(voters=1)
    with context.session_factory() as session:
        oracle = DatabaseIdentityOracle(session)
        battle_id = create_active_battle(session, context, title="Scenario")
        battle = session.get(Battle, battle_id)
        assert as_utc(battle.voting_ends_at) == BASE_NOW + timedelta(days=5)

        vote = cast_vote(
            session,
            actor=actor(context.voter_ids[0]),
            oracle=oracle,
            battle_id=battle_id,
            voter_id=context.voter_ids[0],
            target_id=context.alice_id,
            now=BASE_NOW + timedelta(hours=1),
        )
        assert vote.votes_a == 1

        extended = admin_extend_battle_duration(
            session,
            actor=actor(context.admin_id),
            oracle=oracle,
            battle_id=battle_id,
            days=2,
            now=BASE_NOW + timedelta(days=1),
        )
        assert as_utc(extended.voting_ends_at) == BASE_NOW + timedelta(days=7)
        assert extended.extension_count == 1

        too_early = finalize_expired_battles(
            session, actor=service_actor(), oracle=oracle, now=BASE_NOW + timedelta(days=6)
        )
        assert too_early.candidates == 0

        swept = finalize_expired_battles(
            session, actor=service_actor(), oracle=oracle, now=BASE_NOW + timedelta(days=7)
        )
        assert swept.finalized == 1
        finished = session.get(Battle, battle_id)
        assert finished.status == "completed"
        assert finished.winner_id == context.alice_id
