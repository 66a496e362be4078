"""Rule-based battle readiness evaluator (pure domain logic).

Recommends whether an administrator should validate or cancel a battle that is
waiting for review. The recommendation is advisory: it is stored as a
``proposed`` decision and never executed on its own.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


MODEL_NAME = "rule-based-battle-v1"
AUTO_EXECUTE_THRESHOLD = 0.98
HIGH_REFUSAL_COUNT = 8
LOW_ENGAGEMENT_SCORE = -5
STRONG_ENGAGEMENT_SCORE = 10

VALIDATE = "battle_validate"
CANCEL = "battle_cancel"

RECOMMENDED_PROCEDURES = {
    VALIDATE: "admin_validate_battle",
    CANCEL: "admin_cancel_battle",
}


class BattleSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    status: str
    participant_a_id: str
    participant_b_id: Optional[str] = None
    submission_a_id: Optional[str] = None
    submission_b_id: Optional[str] = None
    opponent_refusal_count: Optional[int] = None
    opponent_engagement_score: Optional[int] = None


class BattleRecommendation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str = MODEL_NAME
    recommendation: str
    recommended_procedure: str
    confidence: float = Field(ge=0, le=1)
    auto_threshold: float = AUTO_EXECUTE_THRESHOLD
    reasons: List[str] = Field(default_factory=list)

    @property
    def auto_eligible(self) -> bool:
        return self.confidence >= self.auto_threshold

    def to_document(self) -> Dict[str, object]:
        document = self.model_dump()
        document["auto_eligible"] = self.auto_eligible
        return document


def evaluate_battle(snapshot: BattleSnapshot) -> BattleRecommendation:
    reasons: List[str] = []
    recommendation = VALIDATE
    confidence = 0.84

    if snapshot.status != "awaiting_admin":
        recommendation = CANCEL
        confidence = 0.66
        reasons.append("status_not_awaiting_admin")

    if not snapshot.participant_b_id:
        recommendation = CANCEL
        confidence = 0.99
        reasons.append("missing_opponent")

    if not snapshot.submission_a_id or not snapshot.submission_b_id:
        recommendation = CANCEL
        confidence = max(confidence, 0.98)
        reasons.append("missing_submission")

    if snapshot.opponent_refusal_count is not None and snapshot.opponent_refusal_count >= HIGH_REFUSAL_COUNT:
        recommendation = CANCEL
        confidence = max(confidence, 0.79)
        reasons.append("high_refusal_history_opponent")

    if recommendation == VALIDATE:
        engagement = snapshot.opponent_engagement_score or 0
        if engagement < LOW_ENGAGEMENT_SCORE:
            confidence = 0.72
            reasons.append("low_engagement_score_opponent")
        elif engagement >= STRONG_ENGAGEMENT_SCORE:
            confidence = 0.90
            reasons.append("strong_engagement_score_opponent")
        else:
            confidence = 0.86
            reasons.append("battle_ready_default_validate")

    return BattleRecommendation(
        recommendation=recommendation,
        recommended_procedure=RECOMMENDED_PROCEDURES[recommendation],
        confidence=confidence,
        reasons=reasons,
    )
