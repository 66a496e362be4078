"""Domain error type carrying stable, client-facing error codes."""

from __future__ import annotations

from typing import Any, Dict, Optional


PRECONDITION = "precondition"
AUTHORIZATION = "authorization"
GOVERNANCE = "governance"
INTEGRITY = "integrity"
NOT_FOUND = "not_found"
VALIDATION = "validation"

CATEGORY_HTTP_STATUS: Dict[str, int] = {
    PRECONDITION: 409,
    AUTHORIZATION: 403,
    GOVERNANCE: 429,
    INTEGRITY: 409,
    NOT_FOUND: 404,
    VALIDATION: 422,
}

_AUTHORIZATION_CODES = {
    "auth_required",
    "admin_required",
    "vote_user_mismatch",
    "only_invited_participant_can_respond",
    "comment_edit_forbidden",
    "service_key_invalid",
}
_NOT_FOUND_CODES = {
    "battle_not_found",
    "comment_not_found",
    "moderation_action_not_found",
    "alert_not_found",
    "setting_not_found",
}
_VALIDATION_CODES = {
    "invalid_proposal",
    "invalid_extension_days",
    "invalid_vote_target",
    "rejection_reason_required",
    "invalid_comment",
    "invalid_override_decision",
    "invalid_setting",
    "invalid_rate_limit_rule",
}


def category_for_code(code: str) -> str:
    if code in _AUTHORIZATION_CODES:
        return AUTHORIZATION
    if code == "rate_limit_exceeded":
        return GOVERNANCE
    if code in _NOT_FOUND_CODES:
        return NOT_FOUND
    if code in _VALIDATION_CODES:
        return VALIDATION
    return PRECONDITION


class BattleError(RuntimeError):
    """A rejected battle-engine operation identified by a stable string code."""

    def __init__(
        self,
        code: str,
        *,
        category: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(code)
        self.code = code
        self.category = category or category_for_code(code)
        self.details = dict(details or {})

    @property
    def http_status(self) -> int:
        if self.code == "auth_required":
            return 401
        return CATEGORY_HTTP_STATUS.get(self.category, 400)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.code, "category": self.category}
