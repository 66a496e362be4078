from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import uuid

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.battles.state_machine import admin_validate_battle, propose_battle, respond_to_battle
from src.control.privileged import Actor
from src.identity.oracle import DatabaseIdentityOracle
from src.storage.db import Base, load_models
from src.storage.models import CatalogItem, CreatorProfile


BASE_NOW = datetime(2026, 10, 18, 12, 0, 30, tzinfo=timezone.utc)


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def eval(self, script: str, numkeys: int, key: str, token: str):
        del script, numkeys
        if self._store.get(key) == token:
            self._store.pop(key, None)
            return 1
        return 0


@dataclass
class ArenaContext:
    session_factory: sessionmaker
    admin_id: str
    alice_id: str
    bob_id: str
    carol_id: str
    voter_ids: List[str] = field(default_factory=list)
    unverified_id: str = ""
    alice_item_id: str = ""
    bob_item_id: str = ""


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_sqlite_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def create_profile(
    session,
    *,
    username: str,
    role: str = "user",
    verified: bool = True,
    competitor: bool = False,
) -> str:
    profile = CreatorProfile(
        id=str(uuid.uuid4()),
        username=f"{username}-{uuid.uuid4().hex[:8]}",
        role=role,
        email_verified_at=BASE_NOW - timedelta(days=30) if verified else None,
        is_competitor_active=competitor,
    )
    session.add(profile)
    session.flush()
    return profile.id


def create_catalog_item(session, *, owner_id: str, title: str = "Night Drive") -> str:
    item = CatalogItem(id=str(uuid.uuid4()), owner_id=owner_id, title=title)
    session.add(item)
    session.flush()
    return item.id


def create_arena_context(*, voters: int = 3) -> ArenaContext:
    session_factory = build_sqlite_session_factory()
    with session_factory() as session:
        admin_id = create_profile(session, username="admin", role="admin")
        alice_id = create_profile(session, username="alice", competitor=True)
        bob_id = create_profile(session, username="bob", competitor=True)
        carol_id = create_profile(session, username="carol", competitor=True)
        voter_ids = [create_profile(session, username=f"voter{index}") for index in range(voters)]
        unverified_id = create_profile(session, username="ghost", verified=False)
        alice_item_id = create_catalog_item(session, owner_id=alice_id, title="Alice Beat")
        bob_item_id = create_catalog_item(session, owner_id=bob_id, title="Bob Beat")
        session.commit()

    return ArenaContext(
        session_factory=session_factory,
        admin_id=admin_id,
        alice_id=alice_id,
        bob_id=bob_id,
        carol_id=carol_id,
        voter_ids=voter_ids,
        unverified_id=unverified_id,
        alice_item_id=alice_item_id,
        bob_item_id=bob_item_id,
    )


def actor(user_id: Optional[str]) -> Actor:
    return Actor(user_id=user_id)


def service_actor() -> Actor:
    return Actor(user_id=None, is_service=True)


def create_pending_battle(
    session,
    context: ArenaContext,
    *,
    title: str = "Alice vs Bob",
    custom_duration_days: Optional[int] = None,
    now: datetime = BASE_NOW,
) -> str:
    battle = propose_battle(
        session,
        actor=actor(context.alice_id),
        oracle=DatabaseIdentityOracle(session),
        opponent_id=context.bob_id,
        submission_a_id=context.alice_item_id,
        submission_b_id=context.bob_item_id,
        title=title,
        custom_duration_days=custom_duration_days,
        now=now,
    )
    return battle.id


def create_active_battle(
    session,
    context: ArenaContext,
    *,
    title: str = "Alice vs Bob",
    custom_duration_days: Optional[int] = None,
    now: datetime = BASE_NOW,
) -> str:
    battle_id = create_pending_battle(
        session,
        context,
        title=title,
        custom_duration_days=custom_duration_days,
        now=now,
    )
    oracle = DatabaseIdentityOracle(session)
    respond_to_battle(session, actor=actor(context.bob_id), oracle=oracle, battle_id=battle_id, accept=True, now=now)
    admin_validate_battle(session, actor=actor(context.admin_id), oracle=oracle, battle_id=battle_id, now=now)
    return battle_id
