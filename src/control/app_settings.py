"""Versioned key -> JSON document store for hot-reloadable engine configuration."""

from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.errors import BattleError
from src.core.logger import get_logger
from src.storage.models import AppSetting


DEFAULT_DURATION_KEY = "battle_default_duration_days"
MAX_DURATION_DAYS = 60

logger = get_logger("arena.control.app_settings")


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _json_load_dict(payload: str) -> Dict[str, Any]:
    try:
        loaded = json.loads(payload)
    except (TypeError, ValueError):
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def get_setting(session: Session, key: str) -> Optional[Dict[str, Any]]:
    record = session.get(AppSetting, key)
    if record is None:
        return None
    return _json_load_dict(record.value_json)


def get_setting_record(session: Session, key: str) -> AppSetting:
    record = session.get(AppSetting, key)
    if record is None:
        raise BattleError("setting_not_found")
    return record


def _validate_document(key: str, document: Dict[str, Any]) -> None:
    if key == DEFAULT_DURATION_KEY:
        days = document.get("days")
        if isinstance(days, bool) or not isinstance(days, int) or days < 1 or days > MAX_DURATION_DAYS:
            raise BattleError("invalid_setting", details={"key": key})


def put_setting(
    session: Session,
    *,
    key: str,
    document: Dict[str, Any],
    updated_by: Optional[str],
) -> AppSetting:
    """Store a document under ``key`` and bump its version. The caller commits."""

    normalized_key = key.strip()
    if not normalized_key or not isinstance(document, dict):
        raise BattleError("invalid_setting")
    _validate_document(normalized_key, document)

    record = session.scalar(select(AppSetting).where(AppSetting.key == normalized_key).with_for_update())
    if record is None:
        record = AppSetting(key=normalized_key, version=1)
        session.add(record)
    else:
        record.version = int(record.version) + 1
    record.value_json = _json_dumps(document)
    record.updated_by = updated_by
    record.updated_at = datetime.now(timezone.utc)
    session.flush()

    logger.info("app_setting_updated", key=normalized_key, version=record.version, updated_by=updated_by)
    return record


def list_settings(session: Session) -> List[AppSetting]:
    return list(session.scalars(select(AppSetting).order_by(AppSetting.key)).all())


def resolve_default_duration_days(session: Session) -> Tuple[int, str]:
    """Return the global default voting duration and where it came from."""

    document = get_setting(session, DEFAULT_DURATION_KEY) or {}
    days = document.get("days")
    if isinstance(days, int) and not isinstance(days, bool) and 1 <= days <= MAX_DURATION_DAYS:
        return days, "app_settings"
    return get_settings().battle_default_duration_days, "fallback"
