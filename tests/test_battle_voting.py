from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from src.battles import voting
from src.battles.voting import VOTE_PROCEDURE, cast_vote
from src.control.rate_limiter import upsert_rule
from src.core.errors import BattleError
from src.identity.oracle import DatabaseIdentityOracle
from src.storage.models import AuditEntry, Battle, MonitoringAlert, Vote
from tests.conftest import BASE_NOW, actor, create_active_battle, create_arena_context, create_pending_battle


def _vote(session, context, battle_id, voter_id, target_id, *, acting_as=None, now=BASE_NOW):
    return cast_vote(
        session,
        actor=actor(acting_as if acting_as is not None else voter_id),
        oracle=DatabaseIdentityOracle(session),
        battle_id=battle_id,
        voter_id=voter_id,
        target_id=target_id,
        now=now,
    )


def test_vote_increments_the_matching_tally() -> None:
    context = create_arena_context(voters=2)
    with context.session_factory() as session:
        battle_id = create_active_battle(session, context)

        first = _vote(session, context, battle_id, context.voter_ids[0], context.bob_id)
        assert (first.votes_a, first.votes_b) == (0, 1)

        second = _vote(session, context, battle_id, context.voter_ids[1], context.alice_id)
        assert (second.votes_a, second.votes_b) == (1, 1)

        battle = session.get(Battle, battle_id)
        assert (battle.votes_a, battle.votes_b) == (1, 1)
        assert session.scalar(select(func.count(Vote.id)).where(Vote.battle_id == battle_id)) == 2


def test_vote_preconditions_fail_with_stable_codes() -> None:
    context = create_arena_context(voters=2)
    with context.session_factory() as session:
        battle_id = create_active_battle(session, context)
        voter_id = context.voter_ids[0]

        cases = [
            (dict(voter_id=voter_id, target_id=context.alice_id, acting_as=context.voter_ids[1]), "vote_user_mismatch"),
            (dict(voter_id=context.unverified_id, target_id=context.alice_id), "vote_not_allowed_unverified_email"),
            (dict(voter_id=voter_id, target_id=context.carol_id), "invalid_vote_target"),
            (dict(voter_id=context.alice_id, target_id=context.bob_id), "participants_cannot_vote"),
        ]
        for kwargs, expected_code in cases:
            with pytest.raises(BattleError) as exc_info:
                _vote(session, context, battle_id, **kwargs)
            assert exc_info.value.code == expected_code

        with pytest.raises(BattleError) as anonymous:
            cast_vote(
                session,
                actor=actor(None),
                oracle=DatabaseIdentityOracle(session),
                battle_id=battle_id,
                voter_id=voter_id,
                target_id=context.alice_id,
            )
        assert anonymous.value.code == "auth_required"

        _vote(session, context, battle_id, voter_id, context.alice_id)
        with pytest.raises(BattleError) as duplicate:
            _vote(session, context, battle_id, voter_id, context.bob_id)
        assert duplicate.value.code == "already_voted"

        battle = session.get(Battle, battle_id)
        assert (battle.votes_a, battle.votes_b) == (1, 0)


def test_vote_requires_an_active_battle() -> None:
    context = create_arena_context(voters=1)
    with context.session_factory() as session:
        battle_id = create_pending_battle(session, context)

        with pytest.raises(BattleError) as exc_info:
            _vote(session, context, battle_id, context.voter_ids[0], context.alice_id)
        assert exc_info.value.code == "battle_not_open_for_voting"

        with pytest.raises(BattleError) as missing:
            _vote(session, context, "missing-battle", context.voter_ids[0], context.alice_id)
        assert missing.value.code == "battle_not_found"


def test_concurrent_duplicate_vote_surfaces_as_already_voted(monkeypatch) -> None:
    context = create_arena_context(voters=1)
    with context.session_factory() as session:
        battle_id = create_active_battle(session, context)
        voter_id = context.voter_ids[0]
        _vote(session, context, battle_id, voter_id, context.alice_id)

        # Simulate the losing side of a race: the pre-check misses the committed row.
        monkeypatch.setattr(voting, "has_voted", lambda *args, **kwargs: False)

        with pytest.raises(BattleError) as exc_info:
            _vote(session, context, battle_id, voter_id, context.bob_id)
        assert exc_info.value.code == "already_voted"
        assert exc_info.value.category == "integrity"
        assert exc_info.value.http_status == 409

        battle = session.get(Battle, battle_id)
        assert (battle.votes_a, battle.votes_b) == (1, 0)


def test_vote_rate_limit_denial_is_audited() -> None:
    context = create_arena_context(voters=1)
    with context.session_factory() as session:
        battle_id = create_active_battle(session, context)
        other_id = create_active_battle(session, context, title="Rematch")
        upsert_rule(session, procedure=VOTE_PROCEDURE, scope="per_actor", allowed_per_minute=1)
        session.commit()

        voter_id = context.voter_ids[0]
        vote_at = BASE_NOW + timedelta(minutes=5)
        _vote(session, context, battle_id, voter_id, context.alice_id, now=vote_at)

        with pytest.raises(BattleError) as exc_info:
            _vote(session, context, other_id, voter_id, context.alice_id, now=vote_at)
        assert exc_info.value.code == "rate_limit_exceeded"
        assert exc_info.value.http_status == 429

        entries = list(
            session.scalars(select(AuditEntry).where(AuditEntry.action_type == VOTE_PROCEDURE)).all()
        )
        assert len(entries) == 1
        assert entries[0].success is False
        assert entries[0].error_code == "rate_limit_exceeded"
        assert entries[0].subject_id == other_id

        # The next minute opens a fresh budget.
        _vote(session, context, other_id, voter_id, context.alice_id, now=vote_at + timedelta(minutes=1))
        assert session.get(Battle, other_id).votes_a == 1


def test_rejected_votes_are_audited_with_their_codes() -> None:
    context = create_arena_context(voters=1)
    with context.session_factory() as session:
        battle_id = create_active_battle(session, context)
        voter_id = context.voter_ids[0]

        with pytest.raises(BattleError):
            _vote(session, context, battle_id, context.alice_id, context.bob_id)
        _vote(session, context, battle_id, voter_id, context.alice_id)
        with pytest.raises(BattleError):
            _vote(session, context, battle_id, voter_id, context.bob_id)

        entries = list(
            session.scalars(
                select(AuditEntry).where(AuditEntry.action_type == VOTE_PROCEDURE).order_by(AuditEntry.created_at)
            ).all()
        )
        assert sorted(entry.error_code for entry in entries) == ["already_voted", "participants_cannot_vote"]
        assert all(entry.success is False for entry in entries)
        assert all(entry.subject_id == battle_id for entry in entries)
        assert all(entry.source == "rpc" for entry in entries)

        failed_alerts = session.scalar(
            select(func.count(MonitoringAlert.id)).where(
                MonitoringAlert.event_type == "admin_action_failed",
                MonitoringAlert.subject_id == battle_id,
            )
        )
        assert failed_alerts == 2

        battle = session.get(Battle, battle_id)
        assert (battle.votes_a, battle.votes_b) == (1, 0)


def test_vote_needs_both_participant_slots() -> None:
    context = create_arena_context(voters=1)
    with context.session_factory() as session:
        battle_id = create_active_battle(session, context)
        battle = session.get(Battle, battle_id)
        battle.participant_b_id = None
        session.commit()

        with pytest.raises(BattleError) as exc_info:
            _vote(session, context, battle_id, context.voter_ids[0], context.alice_id)
        assert exc_info.value.code == "battle_not_ready_for_voting"


def test_self_vote_guard_holds_when_participant_check_misses(monkeypatch) -> None:
    context = create_arena_context(voters=1)
    with context.session_factory() as session:
        battle_id = create_active_battle(session, context)
        monkeypatch.setattr(voting, "is_participant", lambda *args, **kwargs: False)

        with pytest.raises(BattleError) as exc_info:
            _vote(session, context, battle_id, context.alice_id, context.alice_id)
        assert exc_info.value.code == "self_vote_not_allowed"
        assert session.scalar(select(func.count(Vote.id)).where(Vote.battle_id == battle_id)) == 0
