"""Pipeline Models

Stage identifiers, derived pipeline states, business error codes and the
per-stage input payloads (one model per stage id).
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from enum import Enum

from models.credits import CreditSummary, OrphanedCharge


class StageId(str, Enum):
    """Pipeline stages in order."""
    IDEA = "idea"
    COMPETITORS = "competitors"
    MARKET_GAPS = "marketGaps"
    FEATURES = "features"
    VALIDATION_PLAN = "validationPlan"


class PipelineState(str, Enum):
    """Derived from which stage slots are filled (never stored)."""
    NOT_STARTED = "NotStarted"
    IDEA_CAPTURED = "IdeaCaptured"
    COMPETITORS_SET = "CompetitorsSet"
    MARKET_GAPS_SCORED = "MarketGapsScored"
    FEATURES_SET = "FeaturesSet"
    VALIDATION_PLAN_SET = "ValidationPlanSet"  # Terminal: ready for summary


class PipelineErrorCode(str, Enum):
    OUT_OF_ORDER = "OUT_OF_ORDER"
    MISSING_PRECONDITION = "MISSING_PRECONDITION"
    OUT_OF_CREDITS = "OUT_OF_CREDITS"
    CONCURRENT_CONFLICT = "CONCURRENT_CONFLICT"
    GENERATION_FAILED = "GENERATION_FAILED"
    ORPHANED_CHARGE = "ORPHANED_CHARGE"
    NOT_FOUND = "NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    PROJECT_LIMIT_REACHED = "PROJECT_LIMIT_REACHED"


class CompletionFailureReason(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    TIMEOUT = "TIMEOUT"


# ============================================================================
# Stage inputs
# ============================================================================

class IdeaInput(BaseModel):
    idea: str
    title: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("idea")
    @classmethod
    def idea_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("idea must not be empty")
        return v.strip()


class CompetitorsInput(BaseModel):
    model_config = {"extra": "ignore"}


class MarketGapsInput(BaseModel):
    model_config = {"extra": "ignore"}


class FeaturesInput(BaseModel):
    selected_gap_index: Optional[int] = Field(default=None, ge=0)

    model_config = {"extra": "ignore"}


class ValidationPlanInput(BaseModel):
    model_config = {"extra": "ignore"}


class StageRequest(BaseModel):
    """Body of a submit/rerun call: stage-specific fields live under `input`."""
    input: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# State views
# ============================================================================

class ProjectSummary(BaseModel):
    """Read-only recap once the pipeline reaches its terminal state."""
    title: str
    idea: str
    competitor_count: int
    positioning_gap: Optional[str] = None
    positioning_suggestion: Optional[str] = None
    positioning_score: Optional[int] = None
    features_by_status: Dict[str, int] = Field(default_factory=dict)
    validation_steps_total: int = 0
    validation_steps_done: int = 0


class ProjectStateView(BaseModel):
    project_id: str
    title: str
    state: PipelineState
    next_stage: Optional[StageId] = None
    stages: Dict[str, bool]
    credits: CreditSummary
    orphaned_charges: List[OrphanedCharge] = Field(default_factory=list)
    summary: Optional[ProjectSummary] = None
