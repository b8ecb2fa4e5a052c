"""Credit Metering Models

Credits are metered per project:
- limit comes from the owner's current subscription tier (read live)
- `credits_used` on the project counts every generation attempt charged to it
- `pro` is unbounded; its counter grows for display only

A PendingCharge is written together with the credit increment and cleared
once the generation attempt has finished. A pending charge that outlives the
completion timeout marks a crash between charge and output write.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


class SubscriptionTier(str, Enum):
    """Subscription tiers"""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"


# None = unbounded
TIER_CREDIT_LIMITS = {
    SubscriptionTier.FREE: 4,
    SubscriptionTier.STARTER: 10,
    SubscriptionTier.PRO: None,
}

TIER_PROJECT_LIMITS = {
    SubscriptionTier.FREE: 1,
    SubscriptionTier.STARTER: 5,
    SubscriptionTier.PRO: None,
}


class ConsumeFailureReason(str, Enum):
    OUT_OF_CREDITS = "OUT_OF_CREDITS"
    CONCURRENT_CONFLICT = "CONCURRENT_CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    STAGE_STATE_CHANGED = "STAGE_STATE_CHANGED"


class PendingCharge(BaseModel):
    """Open charge for one stage generation attempt."""
    charge_id: str = Field(default_factory=lambda: f"CHG-{uuid.uuid4().hex[:12].upper()}")
    stage: str
    action_tag: str
    charged_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}


class CreditTransaction(BaseModel):
    """Credit consume record (observability only, never read for decisions)."""
    transaction_id: str = Field(default_factory=lambda: f"CTX-{uuid.uuid4().hex[:12].upper()}")
    project_id: str
    owner_id: str
    charge_id: str
    stage: str
    action_tag: str
    tier: SubscriptionTier
    credits_used_after: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}


class CreditSummary(BaseModel):
    tier: SubscriptionTier
    limit: Optional[int] = None  # None = unbounded
    used: int
    remaining: Optional[int] = None  # None = unbounded
    can_consume: bool


class OrphanedCharge(BaseModel):
    """A charge whose generation never finished (process died mid-flight)."""
    charge_id: str
    stage: str
    action_tag: str
    charged_at: datetime
    stage_complete: bool


class CreditResetRequest(BaseModel):
    """Admin reset of a project's credit counter."""
    owner_id: str = Field(min_length=1)
    reason: Optional[str] = None
