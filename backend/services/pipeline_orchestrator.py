"""
Pipeline Orchestrator - advances a project through the analysis stages.

FLOW (submit and rerun):
Stage input validated (tagged by stage id)
→ Project re-read (never cached between operations)
→ Order and precondition checks (submit: not yet complete, upstream context
  present, exactly the next stage; rerun: already complete, context present)
→ Credit consumed (or an orphaned charge for the same stage reclaimed)
  with the order check repeated against the re-read it is charged on
→ Completion service called with the context
→ Output written wholesale into the stage slot, pending charge cleared
  in the same conditional write
  (a submit whose stage was completed meanwhile is discarded as OUT_OF_ORDER)

CREDIT POLICY:
- A credit pays for the generation attempt, not for its success. A failed
  generation keeps its charge and the stage stays incomplete.
- `idea` is captured from user input and is never charged.
- A charge left behind by a crashed attempt (credit consumed, output never
  written) is reported as ORPHANED_CHARGE and reused by the next attempt on
  that stage instead of charging again.

Rerunning a stage never regenerates downstream stages; only the pointers
listed in the stage's `resets_on_rerun` are cleared.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from pydantic import BaseModel, ValidationError

from models.credits import ConsumeFailureReason, OrphanedCharge
from models.pipeline import CompletionFailureReason, PipelineErrorCode
from models.projects import Project
from services.completion_service import completion_service
from services.credit_ledger import credit_ledger
from services.project_store import ConcurrentConflictError, project_store
from services.stage_registry import (
    StageDefinition,
    derive_stage,
    get_stage,
    is_stage_complete,
    next_stage,
)

logger = logging.getLogger(__name__)


_CONSUME_FAILURES = {
    ConsumeFailureReason.OUT_OF_CREDITS: (
        PipelineErrorCode.OUT_OF_CREDITS,
        "No credits remaining on this project. Upgrade your plan to continue.",
    ),
    ConsumeFailureReason.CONCURRENT_CONFLICT: (
        PipelineErrorCode.CONCURRENT_CONFLICT,
        "This stage is already being generated. Please try again in a moment.",
    ),
    ConsumeFailureReason.NOT_FOUND: (
        PipelineErrorCode.NOT_FOUND,
        "Project not found",
    ),
    ConsumeFailureReason.STAGE_STATE_CHANGED: (
        PipelineErrorCode.OUT_OF_ORDER,
        "The project changed while this request was starting. Reload it and try again.",
    ),
}


class _StageChanged(Exception):
    """The stage was completed by another request before this output was written."""


def _stage_precondition(stage: StageDefinition, rerun: bool):
    """Order check re-applied to every re-read between the first read and the write."""
    if rerun:
        return stage.is_complete

    def still_next(current: Project) -> bool:
        upcoming = next_stage(current)
        return upcoming is not None and upcoming.id == stage.id
    return still_next


def _serialise(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_serialise(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialise(v) for k, v in value.items()}
    return value


@dataclass
class StageResult:
    """Discriminated result returned for every pipeline and project operation."""
    success: bool
    stage: Optional[str] = None
    error_code: Optional[PipelineErrorCode] = None
    message: Optional[str] = None
    failure_reason: Optional[CompletionFailureReason] = None
    project: Optional[Project] = None
    charged: bool = False
    orphaned_charges: List[OrphanedCharge] = field(default_factory=list)
    data: Any = None

    @classmethod
    def fail(cls, error_code: PipelineErrorCode, message: str, **kwargs) -> "StageResult":
        return cls(success=False, error_code=error_code, message=message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "stage": self.stage,
            "error_code": self.error_code.value if self.error_code else None,
            "message": self.message,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "charged": self.charged,
            "project": _serialise(self.project) if self.project else None,
            "orphaned_charges": _serialise(self.orphaned_charges),
        }
        if self.project is not None:
            result["state"] = derive_stage(self.project).value
        if self.data is not None:
            result["data"] = _serialise(self.data)
        return result


class PipelineOrchestrator:
    """State machine for the project analysis pipeline."""

    def __init__(self, store=None, ledger=None, completion=None):
        self._store = store
        self._ledger = ledger
        self._completion = completion

    @property
    def store(self):
        return self._store or project_store

    @property
    def ledger(self):
        return self._ledger or credit_ledger

    @property
    def completion(self):
        return self._completion or completion_service

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def submit_stage(
        self,
        owner_id: str,
        project_id: str,
        stage_id: str,
        raw_input: Optional[Dict[str, Any]] = None,
    ) -> StageResult:
        """Complete the next pending stage of a project."""
        stage, stage_input, error = self._parse(stage_id, raw_input)
        if error:
            return error

        project = await self.store.read_project(project_id, owner_id)
        if project is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found", stage=stage.id.value)

        if stage.is_complete(project):
            logger.info(f"Rejected submit of completed stage {stage.id.value} on project {project_id}")
            return StageResult.fail(
                PipelineErrorCode.OUT_OF_ORDER,
                f"Stage {stage.id.value} is already complete; use rerun to replace it",
                stage=stage.id.value,
                project=project,
            )

        is_valid, error_msg, context = stage.required_context(project, stage_input)
        if not is_valid:
            return StageResult.fail(
                PipelineErrorCode.MISSING_PRECONDITION, error_msg, stage=stage.id.value, project=project
            )

        expected = next_stage(project)
        if expected is None or expected.id != stage.id:
            logger.info(f"Rejected out-of-order submit of {stage.id.value} on project {project_id}")
            return StageResult.fail(
                PipelineErrorCode.OUT_OF_ORDER,
                f"Stage {stage.id.value} cannot run before {expected.id.value if expected else 'its predecessors'} is complete",
                stage=stage.id.value,
                project=project,
            )

        return await self._run_stage(project, stage, context, rerun=False)

    async def rerun_stage(
        self,
        owner_id: str,
        project_id: str,
        stage_id: str,
        raw_input: Optional[Dict[str, Any]] = None,
    ) -> StageResult:
        """Regenerate an already complete stage, replacing its output wholesale."""
        stage, stage_input, error = self._parse(stage_id, raw_input)
        if error:
            return error

        project = await self.store.read_project(project_id, owner_id)
        if project is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found", stage=stage.id.value)

        if not stage.is_complete(project):
            logger.info(f"Rejected rerun of incomplete stage {stage.id.value} on project {project_id}")
            return StageResult.fail(
                PipelineErrorCode.OUT_OF_ORDER,
                f"Stage {stage.id.value} has not been completed yet; submit it first",
                stage=stage.id.value,
                project=project,
            )

        is_valid, error_msg, context = stage.required_context(project, stage_input)
        if not is_valid:
            return StageResult.fail(
                PipelineErrorCode.MISSING_PRECONDITION, error_msg, stage=stage.id.value, project=project
            )

        return await self._run_stage(project, stage, context, rerun=True)

    async def reconcile(self, owner_id: str, project_id: str) -> StageResult:
        """Report charges whose generation never wrote its output."""
        project = await self.store.read_project(project_id, owner_id)
        if project is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found")

        orphans = self.ledger.find_orphaned_charges(project, is_stage_complete)
        if not orphans:
            return StageResult(success=True, project=project, message="No orphaned charges")

        for orphan in orphans:
            logger.warning(
                f"Orphaned charge {orphan.charge_id} for {orphan.stage} on project {project_id} "
                f"(charged {orphan.charged_at.isoformat()})"
            )
        stages = ", ".join(o.stage for o in orphans)
        return StageResult.fail(
            PipelineErrorCode.ORPHANED_CHARGE,
            f"Generation did not finish for: {stages}. Retrying will not use another credit.",
            project=project,
            orphaned_charges=orphans,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse(self, stage_id: str, raw_input: Optional[Dict[str, Any]]):
        stage = get_stage(stage_id)
        if stage is None:
            return None, None, StageResult.fail(
                PipelineErrorCode.INVALID_INPUT, f"Unknown stage: {stage_id}"
            )
        try:
            stage_input = stage.parse_input(raw_input)
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            return stage, None, StageResult.fail(
                PipelineErrorCode.INVALID_INPUT,
                f"Invalid input for {stage.id.value}: {errors}",
                stage=stage.id.value,
            )
        return stage, stage_input, None

    async def _run_stage(
        self,
        project: Project,
        stage: StageDefinition,
        context: Dict[str, Any],
        rerun: bool,
    ) -> StageResult:
        if not stage.generates:
            return await self._capture(project, stage, context, rerun)

        consume = await self._charge(project, stage, _stage_precondition(stage, rerun))
        if not consume.ok:
            error_code, message = _CONSUME_FAILURES[consume.reason]
            return StageResult.fail(error_code, message, stage=stage.id.value, project=project)

        charged = not consume.reused
        charge = consume.charge

        result = await self.completion.generate(stage.id, context)
        if not result.ok:
            settled = await self.ledger.settle_charge(consume.project, stage.id.value, charge.charge_id)
            logger.error(
                f"Generation failed for {stage.id.value} on project {project.project_id} "
                f"({result.failure_reason.value}); charge {charge.charge_id} kept"
            )
            return StageResult.fail(
                PipelineErrorCode.GENERATION_FAILED,
                result.error_message or "Generation failed",
                stage=stage.id.value,
                failure_reason=result.failure_reason,
                project=settled or consume.project,
                charged=charged,
            )

        def mutate(current: Project):
            if not rerun and stage.is_complete(current):
                raise _StageChanged(stage.id.value)
            patch = stage.output_patch(result.output)
            if rerun:
                patch.update(stage.resets_on_rerun)
            if "gap_index" in context:
                patch["selected_gap_index"] = context["gap_index"]
            open_charge = current.pending_charges.get(stage.id.value)
            if open_charge and open_charge.charge_id == charge.charge_id:
                patch["pending_charges"] = {
                    k: v for k, v in current.pending_charges.items() if k != stage.id.value
                }
            return patch

        try:
            updated = await self.store.update_project_with_retry(project.project_id, project.owner_id, mutate)
        except _StageChanged:
            settled = await self.ledger.settle_charge(consume.project, stage.id.value, charge.charge_id)
            logger.warning(
                f"Discarded {stage.id.value} output for project {project.project_id}: "
                f"stage was completed by another request"
            )
            return StageResult.fail(
                PipelineErrorCode.OUT_OF_ORDER,
                f"Stage {stage.id.value} is already complete; use rerun to replace it",
                stage=stage.id.value,
                project=settled,
                charged=charged,
            )
        except ConcurrentConflictError as e:
            # Charge stays pending and surfaces as an orphan; the retry is free
            logger.error(f"Could not persist {stage.id.value} output for project {project.project_id}: {e}")
            return StageResult.fail(
                PipelineErrorCode.CONCURRENT_CONFLICT,
                "The project changed while saving; please try again",
                stage=stage.id.value,
                charged=charged,
            )

        if updated is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found", stage=stage.id.value)

        action = "Reran" if rerun else "Completed"
        logger.info(
            f"{action} {stage.id.value} on project {updated.project_id} "
            f"({len(result.output)} items, credits used {updated.credits_used})"
        )
        return StageResult(success=True, stage=stage.id.value, project=updated, charged=charged)

    async def _charge(self, project: Project, stage: StageDefinition, precondition):
        stage_key = stage.id.value
        pending = project.pending_charges.get(stage_key)
        if pending and self.ledger.is_orphaned(pending):
            reclaimed = await self.ledger.reclaim_orphaned_charge(project, stage_key, precondition)
            # reason None: someone else reclaimed or settled it first, charge normally
            if reclaimed.ok or reclaimed.reason is not None:
                return reclaimed
        return await self.ledger.try_consume(project, stage.action_tag, stage_key, precondition)

    async def _capture(self, project: Project, stage: StageDefinition, context: Dict[str, Any], rerun: bool):
        """Store user-provided stage content (no generation, no charge)."""
        def mutate(current: Project):
            if not rerun and stage.is_complete(current):
                raise _StageChanged(stage.id.value)
            patch = stage.output_patch(context[stage.slot])
            if context.get("title"):
                patch["title"] = context["title"]
            if rerun:
                patch.update(stage.resets_on_rerun)
            return patch

        try:
            updated = await self.store.update_project_with_retry(project.project_id, project.owner_id, mutate)
        except _StageChanged:
            return StageResult.fail(
                PipelineErrorCode.OUT_OF_ORDER,
                f"Stage {stage.id.value} is already complete; use rerun to replace it",
                stage=stage.id.value,
            )
        except ConcurrentConflictError as e:
            logger.warning(f"Could not capture {stage.id.value} for project {project.project_id}: {e}")
            return StageResult.fail(
                PipelineErrorCode.CONCURRENT_CONFLICT,
                "The project changed while saving; please try again",
                stage=stage.id.value,
            )
        if updated is None:
            return StageResult.fail(PipelineErrorCode.NOT_FOUND, "Project not found", stage=stage.id.value)

        logger.info(f"Captured {stage.id.value} on project {updated.project_id}")
        return StageResult(success=True, stage=stage.id.value, project=updated)


# Singleton instance
pipeline_orchestrator = PipelineOrchestrator()
