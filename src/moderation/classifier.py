"""Rule-based comment classifier (pure domain logic)."""

from __future__ import annotations

import re
from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field


MODEL_NAME = "rule-based-comment-v1"
AUTO_HIDE_THRESHOLD = 0.95
SHORT_LINK_MAX_CHARS = 40
VERY_SHORT_LINK_MAX_CHARS = 20

TOXIC_KEYWORDS: Tuple[str, ...] = (
    "kill yourself",
    "kys",
    "nazi",
    "racist",
    "slur",
    "fdp",
    "pute",
    "connard",
    "encule",
)
SPAM_KEYWORDS: Tuple[str, ...] = (
    "buy followers",
    "free money",
    "dm me",
    "telegram",
    "whatsapp",
    "crypto giveaway",
    "promo code",
)
BORDERLINE_KEYWORDS: Tuple[str, ...] = (
    "nul",
    "naze",
    "trash",
    "horrible",
    "hate",
    "stupid",
    "idiot",
)

_LINK_PATTERN = re.compile(r"https?://|www\.")


class ModerationSignals(BaseModel):
    model_config = ConfigDict(extra="forbid")

    toxic_hits: int = Field(default=0, ge=0)
    spam_hits: int = Field(default=0, ge=0)
    borderline_hits: int = Field(default=0, ge=0)
    has_link: bool = False


class ModerationDecision(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str = MODEL_NAME
    classification: str
    score: float = Field(ge=0, le=1)
    reason: str
    suggested_action: str
    flags: ModerationSignals = Field(default_factory=ModerationSignals)
    auto_threshold: float = AUTO_HIDE_THRESHOLD

    @property
    def should_auto_hide(self) -> bool:
        return self.classification in {"toxic", "spam"} and self.score >= self.auto_threshold

    def to_document(self) -> Dict[str, object]:
        return self.model_dump()


def _count_hits(text: str, keywords: Tuple[str, ...]) -> int:
    return sum(1 for keyword in keywords if keyword in text)


def _action_for(score: float) -> str:
    return "hide" if score >= AUTO_HIDE_THRESHOLD else "review"


def classify_comment(content: str | None) -> ModerationDecision:
    text = (content or "").lower()
    if not text.strip():
        return ModerationDecision(
            classification="spam",
            score=0.99,
            reason="empty_comment",
            suggested_action="hide",
        )

    signals = ModerationSignals(
        toxic_hits=_count_hits(text, TOXIC_KEYWORDS),
        spam_hits=_count_hits(text, SPAM_KEYWORDS),
        borderline_hits=_count_hits(text, BORDERLINE_KEYWORDS),
        has_link=_LINK_PATTERN.search(text) is not None,
    )

    if signals.toxic_hits > 0:
        score = min(1.0, round(0.94 + 0.03 * signals.toxic_hits, 4))
        return ModerationDecision(
            classification="toxic",
            score=score,
            reason="toxic_keyword_match",
            suggested_action=_action_for(score),
            flags=signals,
        )

    short_link = signals.has_link and len(text) <= SHORT_LINK_MAX_CHARS
    if signals.spam_hits > 0 or short_link:
        very_short_link = signals.has_link and len(text) <= VERY_SHORT_LINK_MAX_CHARS
        score = 0.97 if signals.spam_hits > 1 or very_short_link else 0.91
        return ModerationDecision(
            classification="spam",
            score=score,
            reason="spam_signal_match",
            suggested_action=_action_for(score),
            flags=signals,
        )

    if signals.borderline_hits > 0:
        score = min(0.89, round(0.62 + 0.07 * signals.borderline_hits, 4))
        return ModerationDecision(
            classification="borderline",
            score=score,
            reason="borderline_toxicity_signal",
            suggested_action="review",
            flags=signals,
        )

    return ModerationDecision(
        classification="safe",
        score=0.05,
        reason="no_signal",
        suggested_action="allow",
        flags=signals,
    )
