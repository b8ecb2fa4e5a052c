"""Billing Routes - subscription management handoff.

Endpoints:
- POST /api/billing/portal - Create Stripe billing portal session
"""
from fastapi import APIRouter, HTTPException, Depends, status
from pydantic import BaseModel
from typing import Optional
from middleware import require_auth
from services.billing_portal import billing_portal, BillingPortalError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class PortalRequest(BaseModel):
    """Where Stripe sends the user back to."""
    return_url: Optional[str] = None


@router.post("/portal")
async def create_billing_portal(body: PortalRequest = PortalRequest(), current_user: dict = Depends(require_auth)):
    """Create Stripe billing portal session for upgrading or downgrading the tier."""
    try:
        portal_url = await billing_portal.create_portal_url(current_user["sub"], body.return_url)
    except BillingPortalError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return {"portal_url": portal_url}
