"""
Pytest configuration and shared test helpers for backend tests.

The in-memory store implements the same version-checked write contract as
the MongoDB store and yields to the event loop between a read and the write
that follows it, so concurrent tasks genuinely interleave.
"""
import asyncio
import copy
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest

from models.credits import CreditTransaction, SubscriptionTier, TIER_PROJECT_LIMITS
from models.pipeline import CompletionFailureReason, StageId
from models.projects import (
    Competitor,
    Feature,
    MarketGap,
    Priority,
    Project,
    ValidationStep,
)
from services.completion_service import CompletionResult
from services.credit_ledger import CreditLedger
from services.pipeline_orchestrator import PipelineOrchestrator
from services.project_facade import ProjectFacade
from services.project_store import ProjectStore, apply_patch, to_document
from services.tier_provider import TierProvider

OWNER_ID = "user-1"
OTHER_OWNER_ID = "user-2"


class InMemoryProjectStore(ProjectStore):
    """ProjectStore with dict storage; `update_project_with_retry` is inherited."""

    def __init__(self):
        super().__init__()
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.transactions: List[CreditTransaction] = []
        self.write_count = 0

    async def insert_project(self, project: Project) -> Project:
        self.projects[project.project_id] = project.model_dump()
        return project

    async def read_project(self, project_id: str, owner_id: str) -> Optional[Project]:
        doc = self.projects.get(project_id)
        snapshot = copy.deepcopy(doc) if doc and doc["owner_id"] == owner_id else None
        await asyncio.sleep(0)
        return Project(**snapshot) if snapshot else None

    async def write_project_if_version(self, project_id, owner_id, expected_version, patch) -> bool:
        if "version" in patch:
            raise ValueError("version is managed by the store")
        doc = self.projects.get(project_id)
        if not doc or doc["owner_id"] != owner_id or doc["version"] != expected_version:
            return False
        self.projects[project_id] = apply_patch(Project(**doc), patch).model_dump()
        self.write_count += 1
        return True

    async def list_projects_for_owner(self, owner_id: str) -> List[Project]:
        docs = [d for d in self.projects.values() if d["owner_id"] == owner_id]
        return [Project(**copy.deepcopy(d)) for d in sorted(docs, key=lambda d: d["created_at"], reverse=True)]

    async def count_projects_for_owner(self, owner_id: str) -> int:
        return sum(1 for d in self.projects.values() if d["owner_id"] == owner_id)

    async def append_credit_transaction(self, transaction: CreditTransaction) -> None:
        self.transactions.append(transaction)

    async def list_credit_transactions(self, project_id, owner_id, limit=50, offset=0):
        rows = [
            to_document(t) for t in reversed(self.transactions)
            if t.project_id == project_id and t.owner_id == owner_id
        ]
        return rows[offset:offset + limit]

    def stored(self, project_id: str) -> Project:
        return Project(**copy.deepcopy(self.projects[project_id]))


class FakeTierProvider(TierProvider):
    def __init__(self, default: SubscriptionTier = SubscriptionTier.FREE):
        super().__init__()
        self.default = default
        self.tiers: Dict[str, SubscriptionTier] = {}

    async def current_tier(self, owner_id: str) -> SubscriptionTier:
        return self.tiers.get(owner_id, self.default)

    def project_limit(self, tier: SubscriptionTier) -> Optional[int]:
        return TIER_PROJECT_LIMITS[tier]


def sample_output(stage: StageId, tag: str = "") -> List[Any]:
    if stage == StageId.COMPETITORS:
        return [
            Competitor(id="ai-00000001", name=f"Acme{tag}", website="https://acme.example", is_ai_generated=True),
            Competitor(id="ai-00000002", name=f"Globex{tag}", website="https://globex.example", is_ai_generated=True),
        ]
    if stage == StageId.MARKET_GAPS:
        return [
            MarketGap(gap=f"Gap A{tag}", positioning_suggestion="Position A", score=6, rationale="ok"),
            MarketGap(gap=f"Gap B{tag}", positioning_suggestion="Position B", score=9, rationale="best"),
            MarketGap(gap=f"Gap C{tag}", positioning_suggestion="Position C", score=4, rationale="weak"),
        ]
    if stage == StageId.FEATURES:
        return [
            Feature(id=f"ai-f{i}", title=f"Feature {i}{tag}", priority=Priority.HIGH, is_ai_generated=True)
            for i in range(3)
        ]
    return [
        ValidationStep(id=f"ai-v{i}", title=f"Step {i}{tag}", goal="g", method="m", is_ai_generated=True)
        for i in range(3)
    ]


class FakeCompletionService:
    """Records calls; succeeds with sample output unless told to fail."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_with: Optional[CompletionFailureReason] = None
        self.tag = ""
        self.before_return = None

    async def generate(self, stage_id, context):
        stage_id = StageId(stage_id)
        self.calls.append((stage_id, context))
        if self.before_return:
            await self.before_return()
        await asyncio.sleep(0)
        if self.fail_with:
            return CompletionResult(ok=False, failure_reason=self.fail_with, error_message="upstream said no")
        return CompletionResult(ok=True, output=sample_output(stage_id, self.tag))


def build_project(filled: int = 0, owner_id: str = OWNER_ID, **overrides) -> Project:
    """Project with the first `filled` stage slots populated."""
    data: Dict[str, Any] = {"owner_id": owner_id, "title": "Dog walking marketplace"}
    if filled >= 1:
        data["idea"] = "An app that matches dog owners with vetted local walkers"
    if filled >= 2:
        data["competitors"] = sample_output(StageId.COMPETITORS)
    if filled >= 3:
        data["market_gap_analysis"] = sample_output(StageId.MARKET_GAPS)
    if filled >= 4:
        data["features"] = sample_output(StageId.FEATURES)
    if filled >= 5:
        data["validation_steps"] = sample_output(StageId.VALIDATION_PLAN)
    data.update(overrides)
    return Project(**data)


@pytest.fixture
def store():
    return InMemoryProjectStore()


@pytest.fixture
def tiers():
    return FakeTierProvider()


@pytest.fixture
def ledger(store, tiers):
    return CreditLedger(store=store, tiers=tiers)


@pytest.fixture
def completion():
    return FakeCompletionService()


@pytest.fixture
def orchestrator(store, ledger, completion):
    return PipelineOrchestrator(store=store, ledger=ledger, completion=completion)


@pytest.fixture
def facade(store, ledger, orchestrator, tiers):
    return ProjectFacade(store=store, ledger=ledger, orchestrator=orchestrator, tiers=tiers)


@pytest.fixture
def make_project(store):
    async def _make(filled: int = 0, **overrides) -> Project:
        project = build_project(filled, **overrides)
        await store.insert_project(project)
        return project
    return _make
