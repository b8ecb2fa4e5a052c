"""
Project Routes - idea validation pipeline.

Endpoints:
- POST /api/projects - Create a project (per-tier project limit)
- GET /api/projects - List the caller's projects
- GET /api/projects/{project_id} - Derived state, completion flags, credits
- POST /api/projects/{project_id}/stages/{stage} - Submit the next stage
- POST /api/projects/{project_id}/stages/{stage}/rerun - Regenerate a complete stage
- GET /api/projects/{project_id}/reconcile - Orphaned charge report
- GET /api/projects/{project_id}/credits/history - Credit consume log
- POST /api/projects/{project_id}/gaps/select - Choose the positioning gap
- Item CRUD under /competitors, /features, /validation-steps

Business failures come back as the StageResult body with a mapped status code.
"""
from fastapi import APIRouter, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from middleware import require_auth
from models.pipeline import PipelineErrorCode, StageRequest
from models.projects import (
    CompetitorCreate,
    CompetitorUpdate,
    FeatureCreate,
    FeatureUpdate,
    GapSelection,
    ProjectCreate,
    ValidationStepCreate,
    ValidationStepUpdate,
)
from services.pipeline_orchestrator import StageResult
from services.project_facade import project_facade
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])


ERROR_STATUS = {
    PipelineErrorCode.OUT_OF_ORDER: status.HTTP_409_CONFLICT,
    PipelineErrorCode.MISSING_PRECONDITION: status.HTTP_400_BAD_REQUEST,
    PipelineErrorCode.INVALID_INPUT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PipelineErrorCode.OUT_OF_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    PipelineErrorCode.PROJECT_LIMIT_REACHED: status.HTTP_402_PAYMENT_REQUIRED,
    PipelineErrorCode.CONCURRENT_CONFLICT: status.HTTP_409_CONFLICT,
    PipelineErrorCode.GENERATION_FAILED: status.HTTP_502_BAD_GATEWAY,
    PipelineErrorCode.ORPHANED_CHARGE: status.HTTP_409_CONFLICT,
    PipelineErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


def respond(result: StageResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """Translate a StageResult into an HTTP response."""
    if result.success:
        code = success_status
    else:
        code = ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=code, content=jsonable_encoder(result.to_dict()))


# ============================================================================
# Projects
# ============================================================================

@router.post("")
async def create_project(data: ProjectCreate, current_user: dict = Depends(require_auth)):
    result = await project_facade.create_project(current_user["sub"], data.title, data.idea)
    return respond(result, status.HTTP_201_CREATED)


@router.get("")
async def list_projects(current_user: dict = Depends(require_auth)):
    return respond(await project_facade.list_projects(current_user["sub"]))


@router.get("/{project_id}")
async def get_project_state(project_id: str, current_user: dict = Depends(require_auth)):
    return respond(await project_facade.get_project_state(current_user["sub"], project_id))


# ============================================================================
# Pipeline
# ============================================================================

@router.post("/{project_id}/stages/{stage}")
async def submit_stage(
    project_id: str,
    stage: str,
    body: StageRequest = StageRequest(),
    current_user: dict = Depends(require_auth),
):
    """
    Complete the next pending stage.

    Generating stages consume one credit per attempt, including attempts
    that fail upstream (502 GENERATION_FAILED).
    """
    result = await project_facade.submit_stage(current_user["sub"], project_id, stage, body.input)
    return respond(result)


@router.post("/{project_id}/stages/{stage}/rerun")
async def rerun_stage(
    project_id: str,
    stage: str,
    body: StageRequest = StageRequest(),
    current_user: dict = Depends(require_auth),
):
    """Replace the output of an already complete stage (consumes a credit)."""
    result = await project_facade.rerun_stage(current_user["sub"], project_id, stage, body.input)
    return respond(result)


@router.get("/{project_id}/reconcile")
async def reconcile(project_id: str, current_user: dict = Depends(require_auth)):
    """Report charged stages whose output never arrived. Always 200 unless the project is missing."""
    result = await project_facade.reconcile(current_user["sub"], project_id)
    if result.error_code == PipelineErrorCode.NOT_FOUND:
        return respond(result)
    return JSONResponse(status_code=status.HTTP_200_OK, content=jsonable_encoder(result.to_dict()))


@router.get("/{project_id}/credits/history")
async def credit_history(
    project_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_auth),
):
    result = await project_facade.get_credit_history(current_user["sub"], project_id, limit, offset)
    return respond(result)


@router.post("/{project_id}/gaps/select")
async def select_gap(project_id: str, data: GapSelection, current_user: dict = Depends(require_auth)):
    return respond(await project_facade.select_gap(current_user["sub"], project_id, data.index))


# ============================================================================
# Manual items
# ============================================================================

@router.post("/{project_id}/competitors")
async def add_competitor(project_id: str, data: CompetitorCreate, current_user: dict = Depends(require_auth)):
    result = await project_facade.add_competitor(current_user["sub"], project_id, data)
    return respond(result, status.HTTP_201_CREATED)


@router.patch("/{project_id}/competitors/{item_id}")
async def update_competitor(
    project_id: str, item_id: str, data: CompetitorUpdate, current_user: dict = Depends(require_auth)
):
    return respond(await project_facade.update_competitor(current_user["sub"], project_id, item_id, data))


@router.delete("/{project_id}/competitors/{item_id}")
async def remove_competitor(project_id: str, item_id: str, current_user: dict = Depends(require_auth)):
    return respond(await project_facade.remove_competitor(current_user["sub"], project_id, item_id))


@router.post("/{project_id}/features")
async def add_feature(project_id: str, data: FeatureCreate, current_user: dict = Depends(require_auth)):
    result = await project_facade.add_feature(current_user["sub"], project_id, data)
    return respond(result, status.HTTP_201_CREATED)


@router.patch("/{project_id}/features/{item_id}")
async def update_feature(
    project_id: str, item_id: str, data: FeatureUpdate, current_user: dict = Depends(require_auth)
):
    return respond(await project_facade.update_feature(current_user["sub"], project_id, item_id, data))


@router.delete("/{project_id}/features/{item_id}")
async def remove_feature(project_id: str, item_id: str, current_user: dict = Depends(require_auth)):
    return respond(await project_facade.remove_feature(current_user["sub"], project_id, item_id))


@router.post("/{project_id}/validation-steps")
async def add_validation_step(
    project_id: str, data: ValidationStepCreate, current_user: dict = Depends(require_auth)
):
    result = await project_facade.add_validation_step(current_user["sub"], project_id, data)
    return respond(result, status.HTTP_201_CREATED)


@router.patch("/{project_id}/validation-steps/{item_id}")
async def update_validation_step(
    project_id: str, item_id: str, data: ValidationStepUpdate, current_user: dict = Depends(require_auth)
):
    return respond(
        await project_facade.update_validation_step(current_user["sub"], project_id, item_id, data)
    )


@router.post("/{project_id}/validation-steps/{item_id}/toggle")
async def toggle_validation_step(project_id: str, item_id: str, current_user: dict = Depends(require_auth)):
    return respond(await project_facade.toggle_validation_step(current_user["sub"], project_id, item_id))


@router.delete("/{project_id}/validation-steps/{item_id}")
async def remove_validation_step(project_id: str, item_id: str, current_user: dict = Depends(require_auth)):
    return respond(await project_facade.remove_validation_step(current_user["sub"], project_id, item_id))
