"""
Project Facade - the surface the routes call.

Composes the store, ledger, registry and orchestrator into:
- project lifecycle (create with per-tier project limit, list, state view)
- stage submit / rerun / reconcile
- gap selection
- manual item CRUD on competitors, features and validation steps

Manual edits never charge a credit. Every method returns a StageResult; only
infrastructure faults raise.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel

from models.audit import AuditAction
from models.pipeline import (
    PipelineErrorCode,
    PipelineState,
    ProjectStateView,
    ProjectSummary,
)
from models.projects import (
    Competitor,
    CompetitorCreate,
    CompetitorUpdate,
    Feature,
    FeatureCreate,
    FeatureUpdate,
    Project,
    ValidationStep,
    ValidationStepCreate,
    ValidationStepUpdate,
)
from services.credit_ledger import credit_ledger
from services.pipeline_orchestrator import StageResult, pipeline_orchestrator
from services.project_store import ConcurrentConflictError, project_store
from services.stage_registry import (
    derive_stage,
    is_stage_complete,
    next_stage,
    positioning_gap,
    stage_completion,
)
from services.tier_provider import tier_provider
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class _Rejected(Exception):
    """Raised from inside a mutate callback to abort the write."""
    def __init__(self, error_code: PipelineErrorCode, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(message)


def build_summary(project: Project) -> ProjectSummary:
    features_by_status: Dict[str, int] = {}
    for feature in project.features:
        features_by_status[feature.status.value] = features_by_status.get(feature.status.value, 0) + 1

    chosen = positioning_gap(project)
    gap = chosen[1] if chosen else None
    return ProjectSummary(
        title=project.title,
        idea=project.idea,
        competitor_count=len(project.competitors),
        positioning_gap=gap.gap if gap else None,
        positioning_suggestion=gap.positioning_suggestion if gap else None,
        positioning_score=gap.score if gap else None,
        features_by_status=features_by_status,
        validation_steps_total=len(project.validation_steps),
        validation_steps_done=sum(1 for s in project.validation_steps if s.is_done),
    )


class ProjectFacade:
    """Entry point for all project operations."""

    def __init__(self, store=None, ledger=None, orchestrator=None, tiers=None):
        self._store = store
        self._ledger = ledger
        self._orchestrator = orchestrator
        self._tiers = tiers

    @property
    def store(self):
        return self._store or project_store

    @property
    def ledger(self):
        return self._ledger or credit_ledger

    @property
    def orchestrator(self):
        return self._orchestrator or pipeline_orchestrator

    @property
    def tiers(self):
        return self._tiers or tier_provider

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(self, owner_id: str, title: str, idea: Optional[str] = None) -> StageResult:
        tier = await self.tiers.current_tier(owner_id)
        limit = self.tiers.project_limit(tier)
        if limit is not None:
            count = await self.store.count_projects_for_owner(owner_id)
            if count >= limit:
                logger.info(f"Project limit reached for owner {owner_id} ({count}/{limit}, {tier.value})")
                return StageResult.fail(
                    PipelineErrorCode.PROJECT_LIMIT_REACHED,
                    f"Your {tier.value} plan allows {limit} project(s). Upgrade to create more.",
                )

        project = Project(
            owner_id=owner_id,
            title=title.strip(),
            idea=(idea or "").strip(),
            subscription_tier_at_creation=tier,
        )
        project = await self.store.insert_project(project)
        await create_audit_log(
            action=AuditAction.PROJECT_CREATED,
            actor_id=owner_id,
            owner_id=owner_id,
            resource_type="project",
            resource_id=project.project_id,
            metadata={"tier": tier.value},
        )
        return StageResult(success=True, project=project)

    async def list_projects(self, owner_id: str) -> StageResult:
        projects = await self.store.list_projects_for_owner(owner_id)
        items = [
            {
                "project_id": p.project_id,
                "title": p.title,
                "state": derive_stage(p).value,
                "credits_used": p.credits_used,
                "created_at": p.created_at,
                "updated_at": p.updated_at,
            }
            for p in projects
        ]
        return StageResult(success=True, data=items)

    async def get_project_state(self, owner_id: str, project_id: str) -> StageResult:
        """Derived stage, per-stage completion flags and credit summary."""
        project = await self.store.read_project(project_id, owner_id)
        if project is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found")

        tier = await self.tiers.current_tier(owner_id)
        state = derive_stage(project)
        upcoming = next_stage(project)
        orphans = self.ledger.find_orphaned_charges(project, is_stage_complete)
        view = ProjectStateView(
            project_id=project.project_id,
            title=project.title,
            state=state,
            next_stage=upcoming.id if upcoming else None,
            stages=stage_completion(project),
            credits=self.ledger.summary(project, tier),
            orphaned_charges=orphans,
            summary=build_summary(project) if state == PipelineState.VALIDATION_PLAN_SET else None,
        )
        return StageResult(success=True, project=project, orphaned_charges=orphans, data=view)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def submit_stage(
        self, owner_id: str, project_id: str, stage_id: str, raw_input: Optional[Dict[str, Any]] = None
    ) -> StageResult:
        # Caller cancellation must not abort a charged generation
        return await asyncio.shield(
            self.orchestrator.submit_stage(owner_id, project_id, stage_id, raw_input)
        )

    async def rerun_stage(
        self, owner_id: str, project_id: str, stage_id: str, raw_input: Optional[Dict[str, Any]] = None
    ) -> StageResult:
        return await asyncio.shield(
            self.orchestrator.rerun_stage(owner_id, project_id, stage_id, raw_input)
        )

    async def reconcile(self, owner_id: str, project_id: str) -> StageResult:
        return await self.orchestrator.reconcile(owner_id, project_id)

    async def select_gap(self, owner_id: str, project_id: str, index: int) -> StageResult:
        def mutate(current: Project):
            if not 0 <= index < len(current.market_gap_analysis):
                raise _Rejected(PipelineErrorCode.INVALID_INPUT, f"Market gap {index} does not exist")
            if current.selected_gap_index == index:
                return None
            return {"selected_gap_index": index}

        return await self._update(owner_id, project_id, mutate)

    async def get_credit_history(self, owner_id: str, project_id: str, limit: int = 50, offset: int = 0) -> StageResult:
        project = await self.store.read_project(project_id, owner_id)
        if project is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found")
        history = await self.ledger.get_transaction_history(project, limit=limit, offset=offset)
        return StageResult(success=True, data=history)

    async def reset_credits(
        self, owner_id: str, project_id: str, actor_id: Optional[str] = None, reason: Optional[str] = None
    ) -> StageResult:
        """Admin reset of the project's credit counter (audited)."""
        before = await self.store.read_project(project_id, owner_id)
        if before is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found")
        try:
            updated = await self.ledger.reset_credits(project_id, owner_id)
        except ConcurrentConflictError as e:
            return StageResult.fail(PipelineErrorCode.CONCURRENT_CONFLICT, e.message)
        if updated is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found")

        await create_audit_log(
            action=AuditAction.CREDITS_RESET,
            actor_id=actor_id,
            actor_role="admin",
            owner_id=owner_id,
            resource_type="project",
            resource_id=project_id,
            before_state={"credits_used": before.credits_used},
            after_state={"credits_used": updated.credits_used},
            reason_code=reason,
        )
        return StageResult(success=True, project=updated)

    # ------------------------------------------------------------------
    # Manual item CRUD (no credit, no state re-derivation)
    # ------------------------------------------------------------------

    async def add_competitor(self, owner_id: str, project_id: str, payload: CompetitorCreate) -> StageResult:
        return await self._add_item(owner_id, project_id, "competitors", Competitor, payload)

    async def update_competitor(self, owner_id: str, project_id: str, item_id: str, payload: CompetitorUpdate) -> StageResult:
        return await self._update_item(owner_id, project_id, "competitors", item_id, payload)

    async def remove_competitor(self, owner_id: str, project_id: str, item_id: str) -> StageResult:
        return await self._remove_item(owner_id, project_id, "competitors", item_id)

    async def add_feature(self, owner_id: str, project_id: str, payload: FeatureCreate) -> StageResult:
        return await self._add_item(owner_id, project_id, "features", Feature, payload)

    async def update_feature(self, owner_id: str, project_id: str, item_id: str, payload: FeatureUpdate) -> StageResult:
        return await self._update_item(owner_id, project_id, "features", item_id, payload)

    async def remove_feature(self, owner_id: str, project_id: str, item_id: str) -> StageResult:
        return await self._remove_item(owner_id, project_id, "features", item_id)

    async def add_validation_step(self, owner_id: str, project_id: str, payload: ValidationStepCreate) -> StageResult:
        return await self._add_item(owner_id, project_id, "validation_steps", ValidationStep, payload)

    async def update_validation_step(
        self, owner_id: str, project_id: str, item_id: str, payload: ValidationStepUpdate
    ) -> StageResult:
        return await self._update_item(owner_id, project_id, "validation_steps", item_id, payload)

    async def remove_validation_step(self, owner_id: str, project_id: str, item_id: str) -> StageResult:
        return await self._remove_item(owner_id, project_id, "validation_steps", item_id)

    async def toggle_validation_step(self, owner_id: str, project_id: str, item_id: str) -> StageResult:
        def mutate(current: Project):
            steps = list(current.validation_steps)
            for i, step in enumerate(steps):
                if step.id == item_id:
                    steps[i] = step.model_copy(update={"is_done": not step.is_done})
                    return {"validation_steps": steps}
            raise _Rejected(PipelineErrorCode.NOT_FOUND, f"Validation step {item_id} not found")

        return await self._update(owner_id, project_id, mutate)

    async def _add_item(
        self, owner_id: str, project_id: str, slot: str, model_cls: Type[BaseModel], payload: BaseModel
    ) -> StageResult:
        item = model_cls(**payload.model_dump(), is_ai_generated=False)

        def mutate(current: Project):
            return {slot: list(getattr(current, slot)) + [item]}

        result = await self._update(owner_id, project_id, mutate)
        if result.success:
            result.data = item
            logger.info(f"Added {slot} item {item.id} to project {project_id}")
        return result

    async def _update_item(
        self, owner_id: str, project_id: str, slot: str, item_id: str, payload: BaseModel
    ) -> StageResult:
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)

        def mutate(current: Project):
            items = list(getattr(current, slot))
            for i, item in enumerate(items):
                if item.id == item_id:
                    if not changes:
                        return None
                    items[i] = item.model_copy(update=changes)
                    return {slot: items}
            raise _Rejected(PipelineErrorCode.NOT_FOUND, f"Item {item_id} not found")

        return await self._update(owner_id, project_id, mutate)

    async def _remove_item(self, owner_id: str, project_id: str, slot: str, item_id: str) -> StageResult:
        def mutate(current: Project):
            items = getattr(current, slot)
            remaining = [item for item in items if item.id != item_id]
            if len(remaining) == len(items):
                raise _Rejected(PipelineErrorCode.NOT_FOUND, f"Item {item_id} not found")
            return {slot: remaining}

        result = await self._update(owner_id, project_id, mutate)
        if result.success:
            logger.info(f"Removed {slot} item {item_id} from project {project_id}")
        return result

    async def _update(self, owner_id: str, project_id: str, mutate) -> StageResult:
        try:
            updated = await self.store.update_project_with_retry(project_id, owner_id, mutate)
        except _Rejected as e:
            return StageResult.fail(e.error_code, e.message)
        except ConcurrentConflictError as e:
            logger.warning(str(e))
            return StageResult.fail(PipelineErrorCode.CONCURRENT_CONFLICT, "The project changed; please try again")
        if updated is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found")
        return StageResult(success=True, project=updated)


# Singleton instance
project_facade = ProjectFacade()
