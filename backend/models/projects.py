"""Project Data Models

A Project is one business idea being walked through the validation pipeline.
All stage outputs are embedded in the project document so that a single
version-checked write can move credits and stage output together.

Stage slots:
- idea                 -> free-text idea description
- competitors          -> ordered list of Competitor
- market_gap_analysis  -> ordered list of MarketGap (replaced as a whole)
- features             -> ordered list of Feature
- validation_steps     -> ordered list of ValidationStep
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime, timezone
from enum import Enum
import uuid

from models.credits import PendingCharge, SubscriptionTier


def new_item_id() -> str:
    return str(uuid.uuid4())


def new_ai_item_id() -> str:
    return f"ai-{uuid.uuid4().hex[:8]}"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class FeatureStatus(str, Enum):
    PLANNED = "Planned"
    IN_PROGRESS = "In Progress"
    DONE = "Done"


class Competitor(BaseModel):
    """A competitor entry. AI-suggested and user-authored entries share one list."""
    id: str = Field(default_factory=new_item_id)
    name: str
    website: str = ""
    description: str = ""
    is_ai_generated: bool = False

    model_config = {"extra": "ignore"}


class MarketGap(BaseModel):
    """One scored market gap from a market-gap analysis."""
    gap: str
    positioning_suggestion: str = ""
    score: int = Field(default=0, ge=0, le=10)
    rationale: str = ""

    model_config = {"extra": "ignore"}


class Feature(BaseModel):
    id: str = Field(default_factory=new_item_id)
    title: str
    description: str = ""
    status: FeatureStatus = FeatureStatus.PLANNED
    priority: Priority = Priority.MEDIUM
    is_ai_generated: bool = False

    model_config = {"extra": "ignore"}


class ValidationStep(BaseModel):
    id: str = Field(default_factory=new_item_id)
    title: str
    goal: str = ""
    method: str = ""
    priority: Priority = Priority.MEDIUM
    is_done: bool = False
    is_ai_generated: bool = False

    model_config = {"extra": "ignore"}


class Project(BaseModel):
    """Project record as stored in the `projects` collection.

    `credits_used` is written only by the credit ledger. `version` is bumped by
    every conditional write and is the optimistic-concurrency token.
    """
    project_id: str = Field(default_factory=lambda: f"PRJ-{uuid.uuid4().hex[:12].upper()}")
    owner_id: str
    title: str

    # Stage slots
    idea: str = ""
    competitors: List[Competitor] = Field(default_factory=list)
    market_gap_analysis: List[MarketGap] = Field(default_factory=list)
    selected_gap_index: Optional[int] = None
    features: List[Feature] = Field(default_factory=list)
    validation_steps: List[ValidationStep] = Field(default_factory=list)

    # Credit metering
    credits_used: int = Field(default=0, ge=0)
    subscription_tier_at_creation: SubscriptionTier = SubscriptionTier.FREE
    pending_charges: Dict[str, PendingCharge] = Field(default_factory=dict)

    version: int = 0

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}


# ============================================================================
# Request payloads for manual item edits
# ============================================================================

class ProjectCreate(BaseModel):
    title: str = Field(min_length=1)
    idea: Optional[str] = None


class CompetitorCreate(BaseModel):
    name: str = Field(min_length=1)
    website: str = ""
    description: str = ""


class CompetitorUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    website: Optional[str] = None
    description: Optional[str] = None


class FeatureCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    status: FeatureStatus = FeatureStatus.PLANNED
    priority: Priority = Priority.MEDIUM


class FeatureUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    status: Optional[FeatureStatus] = None
    priority: Optional[Priority] = None


class ValidationStepCreate(BaseModel):
    title: str = Field(min_length=1)
    goal: str = ""
    method: str = ""
    priority: Priority = Priority.MEDIUM


class ValidationStepUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    goal: Optional[str] = None
    method: Optional[str] = None
    priority: Optional[Priority] = None
    is_done: Optional[bool] = None


class GapSelection(BaseModel):
    index: int = Field(ge=0)
