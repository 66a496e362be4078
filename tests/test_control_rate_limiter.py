from __future__ import annotations

from datetime import timedelta
import json

import pytest
from sqlalchemy import func, select

from src.battles.state_machine import admin_cancel_battle
from src.control.rate_limiter import check_and_consume, cleanup_counters, upsert_rule, window_start
from src.core.errors import BattleError
from src.identity.oracle import DatabaseIdentityOracle
from src.storage.models import AuditEntry, MonitoringAlert, RateLimitCounter, RateLimitViolation
from tests.conftest import BASE_NOW, actor, build_sqlite_session_factory, create_arena_context, create_pending_battle


def test_window_start_truncates_to_minute() -> None:
    assert window_start(BASE_NOW) == BASE_NOW.replace(second=0)


def test_procedure_without_rule_is_unlimited() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        for _ in range(50):
            decision = check_and_consume(session, actor_id="user-1", procedure="unlisted", now=BASE_NOW)
            assert decision.allowed is True
            assert decision.limit is None
        assert session.scalar(select(func.count()).select_from(RateLimitCounter)) == 0


def test_per_actor_budget_boundary_and_next_window() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        upsert_rule(session, procedure="admin_validate_battle", scope="per_actor", allowed_per_minute=2)
        session.commit()

        first = check_and_consume(session, actor_id="admin-1", procedure="admin_validate_battle", now=BASE_NOW)
        second = check_and_consume(session, actor_id="admin-1", procedure="admin_validate_battle", now=BASE_NOW)
        assert (first.allowed, second.allowed) == (True, True)
        assert second.remaining == 0
        assert second.reset_seconds == 30

        other_actor = check_and_consume(session, actor_id="admin-2", procedure="admin_validate_battle", now=BASE_NOW)
        assert other_actor.allowed is True

        denied = check_and_consume(session, actor_id="admin-1", procedure="admin_validate_battle", now=BASE_NOW)
        assert denied.allowed is False
        assert denied.observed == 3

        next_minute = BASE_NOW + timedelta(minutes=1)
        fresh = check_and_consume(session, actor_id="admin-1", procedure="admin_validate_battle", now=next_minute)
        assert fresh.allowed is True
        assert fresh.observed == 1


def test_global_scope_shares_one_budget() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        upsert_rule(session, procedure="finalize_expired_battles", scope="global", allowed_per_minute=1)
        session.commit()

        assert check_and_consume(session, actor_id=None, procedure="finalize_expired_battles", now=BASE_NOW).allowed
        denied = check_and_consume(session, actor_id="admin-1", procedure="finalize_expired_battles", now=BASE_NOW)
        assert denied.allowed is False
        assert denied.scope_key == "global"


def test_violations_are_recorded_and_alerts_deduplicated() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        upsert_rule(session, procedure="admin_cancel_battle", scope="per_actor", allowed_per_minute=1)
        session.commit()

        for _ in range(4):
            check_and_consume(session, actor_id="admin-1", procedure="admin_cancel_battle", now=BASE_NOW)
        session.commit()

        violations = session.scalars(select(RateLimitViolation)).all()
        assert sorted(violation.observed_count for violation in violations) == [2, 3, 4]

        alerts = session.scalars(
            select(MonitoringAlert).where(MonitoringAlert.event_type == "rpc_rate_limit_exceeded")
        ).all()
        assert len(alerts) == 1
        assert alerts[0].severity == "critical"
        assert alerts[0].dedup_key == "admin_cancel_battle:admin-1"

        later = BASE_NOW + timedelta(minutes=3)
        check_and_consume(session, actor_id="admin-1", procedure="admin_cancel_battle", now=later)
        check_and_consume(session, actor_id="admin-1", procedure="admin_cancel_battle", now=later)
        session.commit()
        assert session.scalar(
            select(func.count(MonitoringAlert.id)).where(MonitoringAlert.event_type == "rpc_rate_limit_exceeded")
        ) == 2


def test_disabled_rule_and_invalid_rule_inputs() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        upsert_rule(session, procedure="finalize_battle", scope="per_actor", allowed_per_minute=1, enabled=False)
        session.commit()
        for _ in range(3):
            assert check_and_consume(session, actor_id="admin-1", procedure="finalize_battle", now=BASE_NOW).allowed

        with pytest.raises(BattleError) as bad_scope:
            upsert_rule(session, procedure="finalize_battle", scope="per_region", allowed_per_minute=5)
        assert bad_scope.value.code == "invalid_rate_limit_rule"

        with pytest.raises(BattleError):
            upsert_rule(session, procedure="finalize_battle", scope="global", allowed_per_minute=0)


def test_cleanup_keeps_recent_windows() -> None:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        upsert_rule(session, procedure="admin_validate_battle", scope="per_actor", allowed_per_minute=5)
        check_and_consume(session, actor_id="admin-1", procedure="admin_validate_battle", now=BASE_NOW - timedelta(hours=50))
        check_and_consume(session, actor_id="admin-1", procedure="admin_validate_battle", now=BASE_NOW - timedelta(hours=1))
        session.commit()

        assert cleanup_counters(session, keep_hours=48, now=BASE_NOW) == 1
        session.commit()
        assert session.scalar(select(func.count()).select_from(RateLimitCounter)) == 1


def test_privileged_denial_is_audited_and_blocks_the_operation() -> None:
    context = create_arena_context()
    with context.session_factory() as session:
        oracle = DatabaseIdentityOracle(session)
        first_id = create_pending_battle(session, context, title="First")
        second_id = create_pending_battle(session, context, title="Second")
        upsert_rule(session, procedure="admin_cancel_battle", scope="per_actor", allowed_per_minute=1)
        session.commit()

        admin_cancel_battle(session, actor=actor(context.admin_id), oracle=oracle, battle_id=first_id, now=BASE_NOW)
        with pytest.raises(BattleError) as exc_info:
            admin_cancel_battle(session, actor=actor(context.admin_id), oracle=oracle, battle_id=second_id, now=BASE_NOW)

        assert exc_info.value.code == "rate_limit_exceeded"
        assert exc_info.value.details["limit"] == 1

        denied_entry = session.scalar(
            select(AuditEntry).where(
                AuditEntry.action_type == "admin_cancel_battle",
                AuditEntry.success.is_(False),
            )
        )
        assert denied_entry.error_code == "rate_limit_exceeded"
        assert denied_entry.subject_id == second_id
        assert json.loads(denied_entry.details_json)["limit"] == 1

        assert session.scalar(select(func.count()).select_from(RateLimitViolation)) == 1
