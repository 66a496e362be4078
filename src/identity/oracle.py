"""Identity/eligibility oracle backed by creator profiles and the catalog."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.logger import get_logger
from src.storage.models import CatalogItem, CreatorProfile


ADMIN_ROLE = "admin"

logger = get_logger("arena.identity.oracle")


@dataclass(frozen=True)
class EngagementInputs:
    completions: int
    refusals: int


class IdentityOracle(Protocol):
    def is_administrator(self, actor_id: Optional[str]) -> bool:
        """Return True when the actor may run administrator-only operations."""

    def is_contact_verified(self, actor_id: Optional[str]) -> bool:
        """Return True when the actor's contact (email) is verified."""

    def is_eligible_competitor(self, actor_id: Optional[str]) -> bool:
        """Return True when the actor may currently compete in battles."""

    def current_engagement_inputs(self, actor_id: Optional[str]) -> EngagementInputs:
        """Return completion/refusal counters feeding the engagement score."""

    def owns_catalog_item(self, owner_id: Optional[str], item_id: Optional[str]) -> bool:
        """Return True when ``item_id`` is a live catalog item owned by ``owner_id``."""


class DatabaseIdentityOracle:
    """Side-effect-free lookups; any failure answers "not eligible"."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def _profile(self, actor_id: Optional[str], *, check: str) -> Optional[CreatorProfile]:
        if not actor_id:
            return None
        try:
            return self._session.get(CreatorProfile, actor_id)
        except SQLAlchemyError as exc:
            logger.warning("identity_lookup_failed", check=check, actor_id=actor_id, error=str(exc))
            return None

    def is_administrator(self, actor_id: Optional[str]) -> bool:
        profile = self._profile(actor_id, check="is_administrator")
        return profile is not None and profile.role == ADMIN_ROLE

    def is_contact_verified(self, actor_id: Optional[str]) -> bool:
        profile = self._profile(actor_id, check="is_contact_verified")
        return profile is not None and profile.email_verified_at is not None

    def is_eligible_competitor(self, actor_id: Optional[str]) -> bool:
        profile = self._profile(actor_id, check="is_eligible_competitor")
        return profile is not None and bool(profile.is_competitor_active)

    def current_engagement_inputs(self, actor_id: Optional[str]) -> EngagementInputs:
        profile = self._profile(actor_id, check="current_engagement_inputs")
        if profile is None:
            return EngagementInputs(completions=0, refusals=0)
        return EngagementInputs(
            completions=int(profile.battles_completed or 0),
            refusals=int(profile.battle_refusal_count or 0),
        )

    def owns_catalog_item(self, owner_id: Optional[str], item_id: Optional[str]) -> bool:
        if not owner_id or not item_id:
            return False
        try:
            found = self._session.scalar(
                select(CatalogItem.id).where(
                    CatalogItem.id == item_id,
                    CatalogItem.owner_id == owner_id,
                    CatalogItem.deleted_at.is_(None),
                )
            )
        except SQLAlchemyError as exc:
            logger.warning("identity_lookup_failed", check="owns_catalog_item", actor_id=owner_id, error=str(exc))
            return False
        return found is not None
