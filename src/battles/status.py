"""Battle status vocabulary and the mapper hooks that keep legacy values read-only."""

from __future__ import annotations

from typing import Any

from sqlalchemy import event, inspect

from src.core.errors import BattleError
from src.storage.models import (
    BATTLE_STATUSES,
    LEGACY_BATTLE_STATUSES,
    TERMINAL_BATTLE_STATUSES,
    Battle,
)


PENDING_ACCEPTANCE = "pending_acceptance"
AWAITING_ADMIN = "awaiting_admin"
ACTIVE = "active"
COMPLETED = "completed"
REJECTED = "rejected"
CANCELLED = "cancelled"

__all__ = [
    "ACTIVE",
    "AWAITING_ADMIN",
    "BATTLE_STATUSES",
    "CANCELLED",
    "COMPLETED",
    "LEGACY_BATTLE_STATUSES",
    "PENDING_ACCEPTANCE",
    "REJECTED",
    "TERMINAL_BATTLE_STATUSES",
    "is_legacy_status",
]


def is_legacy_status(value: str | None) -> bool:
    return (value or "").strip().lower() in LEGACY_BATTLE_STATUSES


@event.listens_for(Battle, "before_insert")
def _reject_legacy_status_on_insert(mapper: Any, connection: Any, target: Battle) -> None:
    del mapper, connection
    if is_legacy_status(target.status):
        raise BattleError("legacy_battle_status_forbidden")


@event.listens_for(Battle, "before_update")
def _reject_legacy_status_transition(mapper: Any, connection: Any, target: Battle) -> None:
    del mapper, connection
    history = inspect(target).attrs.status.history
    if not history.added:
        return
    # Rows already carrying a legacy value keep it; only a change into one is refused.
    if is_legacy_status(target.status):
        raise BattleError("legacy_battle_status_transition_forbidden")
