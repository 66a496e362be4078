from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import src.api.main as api_main
from src.auth.jwt import AuthContext, create_access_token
from src.auth.middleware import SCHEDULER_KEY_HEADER
from src.core.config import get_settings
from src.storage.db import get_session
from tests.conftest import create_arena_context


SCHEDULER_KEY = "scheduler-test-key"


@pytest.fixture
def arena(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "arena-test-secret-key-with-enough-length")
    monkeypatch.setenv("SCHEDULER_INTERNAL_KEY", SCHEDULER_KEY)
    get_settings.cache_clear()

    context = create_arena_context(voters=2)

    def _session_override():
        session = context.session_factory()
        try:
            yield session
        finally:
            session.close()

    api_main.app.dependency_overrides[get_session] = _session_override
    try:
        yield context, TestClient(api_main.app)
    finally:
        api_main.app.dependency_overrides.clear()
        get_settings.cache_clear()


def _auth(user_id: str) -> dict[str, str]:
    token, _ = create_access_token(AuthContext(user_id=user_id))
    return {"Authorization": f"Bearer {token}"}


def _propose(client, context, *, title: str = "Street Cypher") -> dict:
    response = client.post(
        "/battles",
        json={
            "opponent_id": context.bob_id,
            "submission_a_id": context.alice_item_id,
            "submission_b_id": context.bob_item_id,
            "title": title,
        },
        headers=_auth(context.alice_id),
    )
    assert response.status_code == 201
    return response.json()


def _activate(client, context, *, title: str = "Street Cypher") -> dict:
    battle = _propose(client, context, title=title)
    accepted = client.post(f"/battles/{battle['id']}/respond", json={"accept": True}, headers=_auth(context.bob_id))
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "awaiting_admin"

    validated = client.post(f"/admin/battles/{battle['id']}/validate", headers=_auth(context.admin_id))
    assert validated.status_code == 200
    return validated.json()


def test_battle_flow_over_http(arena) -> None:
    context, client = arena
    battle = _activate(client, context)
    assert battle["status"] == "active"
    assert battle["voting_ends_at"] is not None

    vote = client.post(
        f"/battles/{battle['id']}/votes",
        json={"voter_id": context.voter_ids[0], "target_id": context.alice_id},
        headers=_auth(context.voter_ids[0]),
    )
    assert vote.status_code == 201
    assert vote.json()["votes_a"] == 1

    fetched = client.get(f"/battles/{battle['slug']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == battle["id"]

    listed = client.get("/battles", params={"status": "active"})
    assert [item["id"] for item in listed.json()] == [battle["id"]]

    finalized = client.post(f"/admin/battles/{battle['id']}/finalize", headers=_auth(context.admin_id))
    assert finalized.status_code == 200
    assert finalized.json() == {
        "battle_id": battle["id"],
        "status": "completed",
        "winner_id": context.alice_id,
        "noop": False,
    }

    again = client.post(f"/admin/battles/{battle['id']}/finalize", headers=_auth(context.admin_id))
    assert again.json()["noop"] is True


def test_errors_map_to_stable_payloads(arena) -> None:
    context, client = arena

    anonymous = client.post(
        "/battles",
        json={"opponent_id": context.bob_id, "submission_a_id": context.alice_item_id, "title": "Nope"},
    )
    assert anonymous.status_code == 401
    assert anonymous.json() == {"error": "auth_required", "category": "authorization"}

    battle = _propose(client, context)
    not_admin = client.post(f"/admin/battles/{battle['id']}/validate", headers=_auth(context.alice_id))
    assert not_admin.status_code == 403
    assert not_admin.json()["error"] == "admin_required"

    wrong_state = client.post(f"/admin/battles/{battle['id']}/validate", headers=_auth(context.admin_id))
    assert wrong_state.status_code == 409
    assert wrong_state.json() == {"error": "battle_not_waiting_admin_validation", "category": "precondition"}

    missing = client.get("/battles/does-not-exist")
    assert missing.status_code == 404
    assert missing.json()["error"] == "battle_not_found"

    active = _activate(client, context, title="Second Round")
    bad_extension = client.post(
        f"/admin/battles/{active['id']}/extend",
        json={"days": 0},
        headers=_auth(context.admin_id),
    )
    assert bad_extension.status_code == 422
    assert bad_extension.json()["error"] == "invalid_extension_days"

    voter_headers = _auth(context.voter_ids[0])
    vote_payload = {"voter_id": context.voter_ids[0], "target_id": context.bob_id}
    assert client.post(f"/battles/{active['id']}/votes", json=vote_payload, headers=voter_headers).status_code == 201
    duplicate = client.post(f"/battles/{active['id']}/votes", json=vote_payload, headers=voter_headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "already_voted"


def test_scheduler_key_authorizes_the_sweep(arena) -> None:
    _, client = arena

    rejected = client.post("/admin/battles/finalize-expired", json={}, headers={SCHEDULER_KEY_HEADER: "wrong"})
    assert rejected.status_code == 403
    assert rejected.json()["error"] == "service_key_invalid"

    anonymous = client.post("/admin/battles/finalize-expired", json={})
    assert anonymous.status_code == 401

    accepted = client.post(
        "/admin/battles/finalize-expired",
        json={"limit": 5000},
        headers={SCHEDULER_KEY_HEADER: SCHEDULER_KEY},
    )
    assert accepted.status_code == 200
    assert accepted.json()["limit"] == 500
    assert accepted.json()["candidates"] == 0


def test_comments_are_moderated_over_http(arena) -> None:
    context, client = arena
    battle = _activate(client, context)

    safe = client.post(
        f"/battles/{battle['id']}/comments",
        json={"content": "Great flow on the second verse"},
        headers=_auth(context.voter_ids[0]),
    )
    spam = client.post(
        f"/battles/{battle['id']}/comments",
        json={"content": "free money dm me"},
        headers=_auth(context.voter_ids[1]),
    )
    assert safe.status_code == 201
    assert spam.status_code == 201

    visible = client.get(f"/battles/{battle['id']}/comments")
    assert [item["id"] for item in visible.json()] == [safe.json()["id"]]

    actions = client.get("/admin/moderation-actions", params={"status": "executed"}, headers=_auth(context.admin_id))
    assert actions.status_code == 200
    executed = [item for item in actions.json() if item["subject_id"] == spam.json()["id"]]
    assert len(executed) == 1

    override = client.post(
        f"/admin/moderation-actions/{executed[0]['id']}/override",
        json={"decision": "allow", "note": "false positive"},
        headers=_auth(context.admin_id),
    )
    assert override.status_code == 200
    assert override.json()["status"] == "overridden"

    visible_after = client.get(f"/battles/{battle['id']}/comments")
    assert {item["id"] for item in visible_after.json()} == {safe.json()["id"], spam.json()["id"]}


def test_admin_control_plane_endpoints(arena) -> None:
    context, client = arena
    admin = _auth(context.admin_id)

    stored = client.put(
        "/admin/settings/battle_default_duration_days",
        json={"value": {"days": 8}},
        headers=admin,
    )
    assert stored.status_code == 200
    assert stored.json()["version"] == 1

    fetched = client.get("/admin/settings/battle_default_duration_days", headers=admin)
    assert fetched.json()["value"] == {"days": 8}

    invalid = client.put("/admin/settings/battle_default_duration_days", json={"value": {"days": 90}}, headers=admin)
    assert invalid.status_code == 422
    assert invalid.json()["error"] == "invalid_setting"

    battle = _activate(client, context)
    audit = client.get(
        "/admin/audit",
        params={"action_type": "admin_validate_battle", "subject_id": battle["id"]},
        headers=admin,
    )
    assert audit.status_code == 200
    entries = audit.json()
    assert len(entries) == 1
    assert entries[0]["details"]["duration_days"] == 8
    assert entries[0]["details"]["duration_source"] == "app_settings"

    rule = client.put(
        "/admin/rate-limit-rules",
        json={"procedure": "admin_validate_battle", "scope": "per_actor", "allowed_per_minute": 7},
        headers=admin,
    )
    assert rule.status_code == 200
    rules = client.get("/admin/rate-limit-rules", headers=admin).json()["rules"]
    assert rules == [{"procedure": "admin_validate_battle", "scope": "per_actor", "allowed_per_minute": 7, "enabled": True}]

    failed = client.get("/admin/settings/unknown_key", headers=admin)
    assert failed.status_code == 404

    alerts = client.get("/admin/alerts", params={"unresolved_only": True}, headers=admin)
    assert alerts.status_code == 200
    failed_setting = [item for item in alerts.json() if item["event_type"] == "admin_action_failed"]
    assert len(failed_setting) == 1
    assert failed_setting[0]["subject_type"] == "app_setting"

    resolved = client.post(f"/admin/alerts/{failed_setting[0]['id']}/resolve", headers=admin)
    assert resolved.status_code == 200
    assert resolved.json()["resolved_by"] == context.admin_id
    assert client.get("/admin/alerts", params={"unresolved_only": True}, headers=admin).json() == []

    forbidden = client.get("/admin/audit", headers=_auth(context.alice_id))
    assert forbidden.status_code == 403


def test_admin_can_request_a_battle_evaluation(arena) -> None:
    context, client = arena
    battle = _propose(client, context)
    accepted = client.post(f"/battles/{battle['id']}/respond", json={"accept": True}, headers=_auth(context.bob_id))
    assert accepted.status_code == 200

    evaluation = client.post(f"/admin/battles/{battle['id']}/evaluate", headers=_auth(context.admin_id))
    assert evaluation.status_code == 200
    body = evaluation.json()
    assert body["recommendation"] == "battle_validate"
    assert body["recommended_procedure"] == "admin_validate_battle"
    assert body["auto_eligible"] is False

    actions = client.get("/admin/moderation-actions", params={"status": "proposed"}, headers=_auth(context.admin_id))
    assert body["action_id"] in {item["id"] for item in actions.json()}

    forbidden = client.post(f"/admin/battles/{battle['id']}/evaluate", headers=_auth(context.alice_id))
    assert forbidden.status_code == 403
