"""Participation counters and the derived engagement score."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.core.logger import get_logger
from src.identity.oracle import EngagementInputs, IdentityOracle
from src.storage.models import CreatorProfile


COMPLETION_WEIGHT = 2
REFUSAL_WEIGHT = 1

logger = get_logger("arena.battles.engagement")


def engagement_score(inputs: EngagementInputs) -> int:
    return inputs.completions * COMPLETION_WEIGHT - inputs.refusals * REFUSAL_WEIGHT


def _locked_profile(session: Session, user_id: str) -> Optional[CreatorProfile]:
    return session.scalar(select(CreatorProfile).where(CreatorProfile.id == user_id).with_for_update())


def recalculate_engagement(session: Session, oracle: IdentityOracle, user_id: str) -> Optional[int]:
    profile = _locked_profile(session, user_id)
    if profile is None:
        logger.warning("engagement_profile_missing", user_id=user_id)
        return None
    score = engagement_score(oracle.current_engagement_inputs(user_id))
    profile.engagement_score = score
    profile.updated_at = datetime.now(timezone.utc)
    session.flush()
    return score


def _bump(
    session: Session,
    oracle: IdentityOracle,
    user_ids: Iterable[Optional[str]],
    *,
    counter: str,
) -> None:
    for user_id in user_ids:
        if not user_id:
            continue
        profile = _locked_profile(session, user_id)
        if profile is None:
            logger.warning("engagement_profile_missing", user_id=user_id, counter=counter)
            continue
        setattr(profile, counter, int(getattr(profile, counter) or 0) + 1)
        session.flush()
        recalculate_engagement(session, oracle, user_id)


def record_refusal(session: Session, oracle: IdentityOracle, user_id: str) -> None:
    _bump(session, oracle, [user_id], counter="battle_refusal_count")


def record_participation(session: Session, oracle: IdentityOracle, *user_ids: Optional[str]) -> None:
    _bump(session, oracle, user_ids, counter="battles_participated")


def record_completion(session: Session, oracle: IdentityOracle, *user_ids: Optional[str]) -> None:
    _bump(session, oracle, user_ids, counter="battles_completed")
