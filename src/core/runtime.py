"""Rate-limit rule defaults loader (seed values for the rule table)."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field, field_validator

from src.core.config import get_settings


RULE_SCOPES = {"per_actor", "global"}


class RateLimitRuleConfig(BaseModel):
    procedure: str
    scope: str = "per_actor"
    allowed_per_minute: int = Field(gt=0)
    enabled: bool = True

    @field_validator("procedure", mode="before")
    @classmethod
    def _normalize_procedure(cls, value: Any) -> str:
        normalized = str(value or "").strip()
        if not normalized:
            raise ValueError("procedure must not be empty")
        return normalized

    @field_validator("scope", mode="before")
    @classmethod
    def _normalize_scope(cls, value: Any) -> str:
        normalized = str(value or "per_actor").strip().lower().replace("-", "_")
        if normalized not in RULE_SCOPES:
            raise ValueError("scope must be one of: per_actor, global")
        return normalized


def _builtin_rules() -> List[RateLimitRuleConfig]:
    return [
        RateLimitRuleConfig(procedure="admin_validate_battle", scope="per_actor", allowed_per_minute=20),
        RateLimitRuleConfig(procedure="admin_cancel_battle", scope="per_actor", allowed_per_minute=20),
        RateLimitRuleConfig(procedure="admin_extend_battle_duration", scope="per_actor", allowed_per_minute=12),
        RateLimitRuleConfig(procedure="finalize_battle", scope="per_actor", allowed_per_minute=30),
        RateLimitRuleConfig(procedure="finalize_expired_battles", scope="global", allowed_per_minute=24),
        RateLimitRuleConfig(procedure="admin_moderate_comment", scope="per_actor", allowed_per_minute=30),
        RateLimitRuleConfig(procedure="admin_override_moderation", scope="per_actor", allowed_per_minute=30),
    ]


class RateLimitDefaults(BaseModel):
    rules: List[RateLimitRuleConfig] = Field(default_factory=_builtin_rules)

    @field_validator("rules")
    @classmethod
    def _reject_duplicates(cls, value: List[RateLimitRuleConfig]) -> List[RateLimitRuleConfig]:
        seen: set[str] = set()
        for rule in value:
            if rule.procedure in seen:
                raise ValueError(f"duplicate rate limit rule: {rule.procedure}")
            seen.add(rule.procedure)
        return value


def _resolve_defaults_path() -> Path:
    settings = get_settings()
    configured = Path(settings.rate_limit_defaults_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


@lru_cache(maxsize=1)
def load_rate_limit_defaults() -> RateLimitDefaults:
    path = _resolve_defaults_path()
    if not path.exists():
        return RateLimitDefaults()

    content = path.read_text(encoding="utf-8")
    parsed = yaml.safe_load(content) or {}
    if not isinstance(parsed, dict):
        raise ValueError("Rate limit defaults must be a YAML object")

    data: Dict[str, Any] = dict(parsed)
    raw_rules = data.get("rules")
    if isinstance(raw_rules, dict):
        data["rules"] = [{"procedure": name, **(rule or {})} for name, rule in raw_rules.items()]
    return RateLimitDefaults.model_validate(data)


def reset_rate_limit_defaults_cache() -> None:
    load_rate_limit_defaults.cache_clear()
