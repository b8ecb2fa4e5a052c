"""Billing Portal - hands users off to Stripe to change their subscription.

Tier changes come back through `users.subscription_tier` and apply to the
next credit check; nothing here touches project credits.
"""
import stripe
import os
import logging
from typing import Optional

from database import database

logger = logging.getLogger(__name__)

stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


class BillingPortalError(Exception):
    """Portal session could not be created."""
    pass


class BillingPortal:
    """Stripe billing portal sessions."""

    def __init__(self):
        self.db = None

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    async def get_customer_id(self, owner_id: str) -> Optional[str]:
        user = await self._get_db().users.find_one(
            {"user_id": owner_id},
            {"_id": 0, "stripe_customer_id": 1},
        )
        return (user or {}).get("stripe_customer_id")

    async def create_portal_url(self, owner_id: str, return_url: Optional[str] = None) -> str:
        """Create a portal session and return its URL.

        Raises BillingPortalError when the user has no Stripe customer or
        Stripe rejects the request.
        """
        if not (stripe.api_key or "").strip():
            raise BillingPortalError("STRIPE_API_KEY is not set")

        customer_id = await self.get_customer_id(owner_id)
        if not customer_id:
            raise BillingPortalError("No billing account found for this user")

        try:
            portal_session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url or f"{FRONTEND_URL}/projects",
            )
        except stripe.error.StripeError as e:
            logger.error(f"Failed to create billing portal for {owner_id}: {e}")
            raise BillingPortalError("Failed to create billing portal session") from e

        logger.info(f"Created billing portal session for {owner_id}")
        return portal_session.url


# Singleton instance
billing_portal = BillingPortal()
