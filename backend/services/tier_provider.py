"""Tier Provider - live subscription tier lookup.

The tier is read on every credit check, so upgrades and downgrades apply to
the next charge immediately. `credits_used` is never recomputed on a change.
"""
from typing import Optional
import logging

from database import database
from models.credits import (
    SubscriptionTier,
    TIER_PROJECT_LIMITS,
)

logger = logging.getLogger(__name__)


def resolve_tier(value: Optional[str]) -> SubscriptionTier:
    """Map a stored tier string to SubscriptionTier. Unknown/missing → free."""
    if not value:
        return SubscriptionTier.FREE
    try:
        return SubscriptionTier(value.strip().lower())
    except ValueError:
        logger.warning(f"Unknown subscription tier '{value}', treating as free")
        return SubscriptionTier.FREE


class TierProvider:
    """Reads `users.subscription_tier`."""

    def __init__(self):
        self.db = None

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    async def current_tier(self, owner_id: str) -> SubscriptionTier:
        db = self._get_db()
        user = await db.users.find_one(
            {"user_id": owner_id},
            {"_id": 0, "subscription_tier": 1},
        )
        if not user:
            return SubscriptionTier.FREE
        return resolve_tier(user.get("subscription_tier"))

    def project_limit(self, tier: SubscriptionTier) -> Optional[int]:
        return TIER_PROJECT_LIMITS.get(tier, TIER_PROJECT_LIMITS[SubscriptionTier.FREE])


# Singleton instance
tier_provider = TierProvider()
