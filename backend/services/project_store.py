"""Project Store - record store adapter for project documents.

Every query carries `owner_id` in its filter; that is the access predicate.
Writes are conditional on the `version` the caller last read (optimistic
concurrency). Nothing here holds a project between calls.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

from pydantic import BaseModel

from database import database
from models.credits import CreditTransaction
from models.projects import Project

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


class ConcurrentConflictError(Exception):
    """Conditional write lost the race on every attempt."""
    def __init__(self, project_id: str, attempts: int):
        self.project_id = project_id
        self.attempts = attempts
        self.message = f"Project {project_id} changed concurrently; gave up after {attempts} attempts"
        super().__init__(self.message)


def to_document(value: Any) -> Any:
    """Convert pydantic models (and containers of them) to plain documents."""
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, list):
        return [to_document(v) for v in value]
    if isinstance(value, dict):
        return {k: to_document(v) for k, v in value.items()}
    return value


def apply_patch(project: Project, patch: Dict[str, Any]) -> Project:
    """Return the project as it looks after a successful conditional write."""
    data = project.model_dump()
    data.update(to_document(patch))
    data["version"] = project.version + 1
    return Project(**data)


class ProjectStore:
    """MongoDB-backed project records."""

    COLLECTION = "projects"
    TRANSACTIONS_COLLECTION = "credit_transactions"

    def __init__(self):
        self.db = None

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    def _collection(self):
        return self._get_db()[self.COLLECTION]

    async def insert_project(self, project: Project) -> Project:
        await self._collection().insert_one(project.model_dump())
        logger.info(f"Created project {project.project_id} for owner {project.owner_id}")
        return project

    async def read_project(self, project_id: str, owner_id: str) -> Optional[Project]:
        doc = await self._collection().find_one(
            {"project_id": project_id, "owner_id": owner_id},
            {"_id": 0},
        )
        if not doc:
            return None
        return Project(**doc)

    async def write_project_if_version(
        self,
        project_id: str,
        owner_id: str,
        expected_version: int,
        patch: Dict[str, Any],
    ) -> bool:
        """Apply `patch` only if the stored version still equals `expected_version`.

        Returns False on conflict (someone else wrote first, or the project is
        gone / not owned by `owner_id`).
        """
        if "version" in patch:
            raise ValueError("version is managed by the store")
        doc_patch = to_document(patch)
        doc_patch.setdefault("updated_at", datetime.now(timezone.utc))

        result = await self._collection().update_one(
            {"project_id": project_id, "owner_id": owner_id, "version": expected_version},
            {"$set": doc_patch, "$inc": {"version": 1}},
        )
        return result.matched_count == 1

    async def list_projects_for_owner(self, owner_id: str) -> List[Project]:
        cursor = self._collection().find({"owner_id": owner_id}, {"_id": 0}).sort("created_at", -1)
        return [Project(**doc) async for doc in cursor]

    async def count_projects_for_owner(self, owner_id: str) -> int:
        return await self._collection().count_documents({"owner_id": owner_id})

    async def append_credit_transaction(self, transaction: CreditTransaction) -> None:
        await self._get_db()[self.TRANSACTIONS_COLLECTION].insert_one(transaction.model_dump())

    async def list_credit_transactions(
        self,
        project_id: str,
        owner_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self._get_db()[self.TRANSACTIONS_COLLECTION].find(
            {"project_id": project_id, "owner_id": owner_id},
            {"_id": 0},
        ).sort("created_at", -1).skip(offset).limit(limit)
        return await cursor.to_list(limit)

    async def update_project_with_retry(
        self,
        project_id: str,
        owner_id: str,
        mutate: Callable[[Project], Optional[Dict[str, Any]]],
        attempts: int = MAX_WRITE_ATTEMPTS,
    ) -> Optional[Project]:
        """Read, compute a patch with `mutate`, write conditionally; retry on conflict.

        `mutate` may return None to signal "nothing to write" and may raise to
        abort. Returns the updated project, or None if it does not exist.
        Raises ConcurrentConflictError once `attempts` writes have lost.
        """
        for attempt in range(1, attempts + 1):
            project = await self.read_project(project_id, owner_id)
            if project is None:
                return None

            patch = mutate(project)
            if patch is None:
                return project

            patch = dict(patch)
            patch.setdefault("updated_at", datetime.now(timezone.utc))
            if await self.write_project_if_version(project_id, owner_id, project.version, patch):
                return apply_patch(project, patch)

            logger.info(f"Write conflict on project {project_id} (attempt {attempt}/{attempts})")

        raise ConcurrentConflictError(project_id, attempts)


# Global store instance
project_store = ProjectStore()
