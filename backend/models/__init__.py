"""Data Models"""

from .credits import (
    SubscriptionTier,
    TIER_CREDIT_LIMITS,
    TIER_PROJECT_LIMITS,
    ConsumeFailureReason,
    PendingCharge,
    CreditTransaction,
    CreditSummary,
    OrphanedCharge,
)
from .projects import (
    Project,
    Competitor,
    MarketGap,
    Feature,
    ValidationStep,
    FeatureStatus,
    Priority,
)
from .pipeline import (
    StageId,
    PipelineState,
    PipelineErrorCode,
    CompletionFailureReason,
    ProjectStateView,
    ProjectSummary,
)
from .audit import AuditAction, AuditLog

__all__ = [
    # Credits
    "SubscriptionTier",
    "TIER_CREDIT_LIMITS",
    "TIER_PROJECT_LIMITS",
    "ConsumeFailureReason",
    "PendingCharge",
    "CreditTransaction",
    "CreditSummary",
    "OrphanedCharge",
    # Projects
    "Project",
    "Competitor",
    "MarketGap",
    "Feature",
    "ValidationStep",
    "FeatureStatus",
    "Priority",
    # Pipeline
    "StageId",
    "PipelineState",
    "PipelineErrorCode",
    "CompletionFailureReason",
    "ProjectStateView",
    "ProjectSummary",
    # Audit
    "AuditAction",
    "AuditLog",
]
