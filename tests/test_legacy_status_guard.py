from __future__ import annotations

import uuid

import pytest

from src.battles.state_machine import admin_cancel_battle
from src.battles.status import is_legacy_status
from src.core.errors import BattleError
from src.identity.oracle import DatabaseIdentityOracle
from src.moderation.service import create_comment
from src.storage.models import Battle
from tests.conftest import actor, create_active_battle, create_arena_context


def _insert_grandfathered_battle(session, context, *, status: str = "voting") -> str:
    battle_id = str(uuid.uuid4())
    session.connection().execute(
        Battle.__table__.insert().values(
            id=battle_id,
            slug=f"legacy-{battle_id[:8]}",
            title="Legacy battle",
            participant_a_id=context.alice_id,
            participant_b_id=context.bob_id,
            status=status,
        )
    )
    session.commit()
    return battle_id


def test_is_legacy_status() -> None:
    assert is_legacy_status("voting")
    assert is_legacy_status(" Approved ")
    assert not is_legacy_status("active")
    assert not is_legacy_status(None)


def test_grandfathered_rows_stay_readable_and_editable_but_closed() -> None:
    context = create_arena_context()
    with context.session_factory() as session:
        battle_id = _insert_grandfathered_battle(session, context)

        battle = session.get(Battle, battle_id)
        assert battle.status == "voting"
        battle.title = "Legacy battle (renamed)"
        session.commit()

        with pytest.raises(BattleError) as exc_info:
            create_comment(
                session,
                actor=actor(context.voter_ids[0]),
                oracle=DatabaseIdentityOracle(session),
                battle_id=battle_id,
                content="Still listening to this one",
            )
        assert exc_info.value.code == "battle_not_open_for_comments"
        assert session.get(Battle, battle_id).title == "Legacy battle (renamed)"


def test_transition_out_of_legacy_status_is_allowed() -> None:
    context = create_arena_context()
    with context.session_factory() as session:
        battle_id = _insert_grandfathered_battle(session, context, status="approved")

        admin_cancel_battle(
            session,
            actor=actor(context.admin_id),
            oracle=DatabaseIdentityOracle(session),
            battle_id=battle_id,
        )
        assert session.get(Battle, battle_id).status == "cancelled"


def test_transition_into_legacy_status_is_refused() -> None:
    context = create_arena_context()
    with context.session_factory() as session:
        battle_id = create_active_battle(session, context)
        battle = session.get(Battle, battle_id)
        battle.status = "voting"

        with pytest.raises(BattleError) as exc_info:
            session.flush()
        assert exc_info.value.code == "legacy_battle_status_transition_forbidden"
        session.rollback()

        assert session.get(Battle, battle_id).status == "active"


def test_new_rows_cannot_use_legacy_status() -> None:
    context = create_arena_context()
    with context.session_factory() as session:
        session.add(
            Battle(
                slug="fresh-legacy",
                title="Fresh legacy",
                participant_a_id=context.alice_id,
                participant_b_id=context.bob_id,
                status="pending",
            )
        )
        with pytest.raises(BattleError) as exc_info:
            session.flush()
        assert exc_info.value.code == "legacy_battle_status_forbidden"
        session.rollback()
