"""
Orphaned Charge Report
Lists projects holding a credit charge whose generation never wrote its output.

Cause: the process died between consuming the credit and persisting the stage
output. The charge is not refunded here; the next attempt on that stage by the
owner reuses it instead of charging again.
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
from models.projects import Project
from services.credit_ledger import credit_ledger
from services.stage_registry import is_stage_complete
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def find_projects_with_orphans(limit: int = 500):
    """Projects with at least one pending charge older than the orphan threshold."""
    db = database.get_db()

    cursor = db.projects.find(
        {"pending_charges": {"$exists": True, "$ne": {}}},
        {"_id": 0},
    ).limit(limit)

    report = []
    async for doc in cursor:
        project = Project(**doc)
        orphans = credit_ledger.find_orphaned_charges(project, is_stage_complete)
        if orphans:
            report.append({
                "project_id": project.project_id,
                "owner_id": project.owner_id,
                "credits_used": project.credits_used,
                "orphans": orphans,
            })
    return report


async def main():
    await database.connect()

    logger.info("=" * 80)
    logger.info("ORPHANED CHARGE REPORT")
    logger.info("=" * 80)

    try:
        report = await find_projects_with_orphans()
    finally:
        await database.close()

    if not report:
        logger.info("No orphaned charges found.")
        return

    logger.info(f"Found {len(report)} project(s) with orphaned charges:")
    for entry in report:
        logger.info(f"\nProject: {entry['project_id']} (owner {entry['owner_id']})")
        logger.info(f"  Credits used: {entry['credits_used']}")
        for orphan in entry["orphans"]:
            logger.info(
                f"  - {orphan.stage}: charge {orphan.charge_id} at {orphan.charged_at.isoformat()}"
                f" (stage complete: {orphan.stage_complete})"
            )


if __name__ == "__main__":
    asyncio.run(main())
