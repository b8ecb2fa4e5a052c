from database import database
from models.audit import AuditLog, AuditAction
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Fields whose value differs between two flat state snapshots.

    Returns {"changed": {field: {"from": ..., "to": ...}}}, or {} when equal.
    """
    if not before or not after:
        return {}

    changed = {}
    for key in set(before.keys()) | set(after.keys()):
        if before.get(key) != after.get(key):
            changed[key] = {"from": before.get(key), "to": after.get(key)}
    return {"changed": changed} if changed else {}

async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    owner_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
) -> str:
    """Write an audit log entry; the diff of before/after goes into metadata.

    Audit failures are logged and never fail the caller.
    """
    try:
        db = database.get_db()

        enriched_metadata = metadata.copy() if metadata else {}
        diff = calculate_diff(before_state, after_state)
        if diff:
            enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_id=actor_id,
            actor_role=actor_role,
            owner_id=owner_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
            reason_code=reason_code,
        )

        doc = audit_log.model_dump()
        doc["timestamp"] = doc["timestamp"].isoformat() if isinstance(doc["timestamp"], datetime) else doc["timestamp"]

        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} on {resource_type} {resource_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        return ""

async def get_audit_logs_for_resource(
    resource_type: str,
    resource_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    db = database.get_db()
    cursor = db.audit_logs.find(
        {"resource_type": resource_type, "resource_id": resource_id},
        {"_id": 0}
    ).sort("timestamp", -1).limit(limit)
    return await cursor.to_list(length=limit)
