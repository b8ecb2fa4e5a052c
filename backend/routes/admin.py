"""Admin Routes - credit administration.

Endpoints:
- POST /api/admin/projects/{project_id}/credits/reset - Reset credits_used to 0
- GET /api/admin/projects/{project_id}/audit - Audit trail for a project
"""
from fastapi import APIRouter, Depends, Query
from middleware import require_admin
from models.credits import CreditResetRequest
from routes.projects import respond
from services.project_facade import project_facade
from utils.audit import get_audit_logs_for_resource
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/projects", tags=["admin"])


@router.post("/{project_id}/credits/reset")
async def reset_project_credits(
    project_id: str,
    body: CreditResetRequest,
    current_user: dict = Depends(require_admin),
):
    """Explicit admin reset; the only path that lowers credits_used."""
    logger.info(f"Admin {current_user['sub']} resetting credits on project {project_id}")
    result = await project_facade.reset_credits(
        body.owner_id, project_id, actor_id=current_user["sub"], reason=body.reason
    )
    return respond(result)


@router.get("/{project_id}/audit")
async def get_project_audit(
    project_id: str,
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_admin),
):
    logs = await get_audit_logs_for_resource("project", project_id, limit=limit)
    return {"project_id": project_id, "audit_logs": logs}
