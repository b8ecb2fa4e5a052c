"""Credit Ledger - per-project credit metering against the owner's tier.

Handles:
- Tier limits (free 4, starter 10, pro unbounded)
- Atomic reserve-and-consume via version-checked writes
- Pending charge bookkeeping for crash reconciliation
- Admin reset

`credits_used` on a project is written by this module and nowhere else.
"""
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Callable, Optional, List
import logging
import os

from models.credits import (
    ConsumeFailureReason,
    CreditSummary,
    CreditTransaction,
    OrphanedCharge,
    PendingCharge,
    SubscriptionTier,
    TIER_CREDIT_LIMITS,
)
from models.projects import Project
from services.project_store import ConcurrentConflictError, apply_patch, project_store
from services.tier_provider import tier_provider

logger = logging.getLogger(__name__)

MAX_CONSUME_ATTEMPTS = 3

# Must stay above COMPLETION_TIMEOUT_SECONDS so in-flight attempts are never reported
ORPHAN_CHARGE_AFTER_SECONDS = int(os.getenv("ORPHAN_CHARGE_AFTER_SECONDS", "180"))


@dataclass
class ConsumeResult:
    """Outcome of a consume (or orphan reclaim) attempt."""
    ok: bool
    project: Optional[Project] = None
    charge: Optional[PendingCharge] = None
    reason: Optional[ConsumeFailureReason] = None
    tier: Optional[SubscriptionTier] = None
    reused: bool = False


class CreditLedger:
    """Credit metering service."""

    def __init__(self, store=None, tiers=None):
        self._store = store
        self._tiers = tiers

    @property
    def store(self):
        return self._store or project_store

    @property
    def tiers(self):
        return self._tiers or tier_provider

    # ------------------------------------------------------------------
    # Pure calculations
    # ------------------------------------------------------------------

    def limit_for(self, tier: SubscriptionTier) -> Optional[int]:
        """Credit limit for a tier; None means unbounded."""
        return TIER_CREDIT_LIMITS.get(tier, TIER_CREDIT_LIMITS[SubscriptionTier.FREE])

    def remaining(self, project: Project, tier: SubscriptionTier) -> Optional[int]:
        limit = self.limit_for(tier)
        if limit is None:
            return None
        return max(0, limit - project.credits_used)

    def can_consume(self, project: Project, tier: SubscriptionTier) -> bool:
        limit = self.limit_for(tier)
        return limit is None or project.credits_used < limit

    def summary(self, project: Project, tier: SubscriptionTier) -> CreditSummary:
        return CreditSummary(
            tier=tier,
            limit=self.limit_for(tier),
            used=project.credits_used,
            remaining=self.remaining(project, tier),
            can_consume=self.can_consume(project, tier),
        )

    def is_orphaned(self, charge: PendingCharge, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        charged_at = charge.charged_at
        if charged_at.tzinfo is None:
            # Mongo hands back naive UTC datetimes
            charged_at = charged_at.replace(tzinfo=timezone.utc)
        return now - charged_at > timedelta(seconds=ORPHAN_CHARGE_AFTER_SECONDS)

    def find_orphaned_charges(
        self,
        project: Project,
        is_stage_complete=None,
        now: Optional[datetime] = None,
    ) -> List[OrphanedCharge]:
        """Pending charges whose attempt never finished.

        A finished attempt always clears its charge (on success and on
        GENERATION_FAILED), so a charge older than the completion timeout
        means the process died between charging and writing the output.
        """
        orphans = []
        for stage, charge in project.pending_charges.items():
            if not self.is_orphaned(charge, now):
                continue
            orphans.append(OrphanedCharge(
                charge_id=charge.charge_id,
                stage=stage,
                action_tag=charge.action_tag,
                charged_at=charge.charged_at,
                stage_complete=bool(is_stage_complete(stage, project)) if is_stage_complete else False,
            ))
        return orphans

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def try_consume(
        self,
        project: Project,
        action_tag: str,
        stage: str,
        precondition: Optional[Callable[[Project], bool]] = None,
    ) -> ConsumeResult:
        """Reserve and consume one credit for a generation attempt on `stage`.

        Re-reads the authoritative counter, checks it against the live tier
        limit and writes `credits_used + 1` conditionally on the version that
        was read. Retries the read-check-write cycle on conflict, then gives
        up with CONCURRENT_CONFLICT. `action_tag` is recorded, never checked.

        `precondition` is evaluated against every re-read; when it no longer
        holds the consume is refused with STAGE_STATE_CHANGED before any write.
        """
        tier = await self.tiers.current_tier(project.owner_id)
        limit = self.limit_for(tier)

        for attempt in range(1, MAX_CONSUME_ATTEMPTS + 1):
            current = await self.store.read_project(project.project_id, project.owner_id)
            if current is None:
                return ConsumeResult(ok=False, reason=ConsumeFailureReason.NOT_FOUND, tier=tier)

            if precondition is not None and not precondition(current):
                logger.info(f"Stage {stage} changed on project {current.project_id} before charging")
                return ConsumeResult(ok=False, reason=ConsumeFailureReason.STAGE_STATE_CHANGED, tier=tier)

            if limit is not None and current.credits_used >= limit:
                logger.warning(
                    f"Out of credits on project {current.project_id}: "
                    f"{current.credits_used}/{limit} ({tier.value})"
                )
                return ConsumeResult(ok=False, reason=ConsumeFailureReason.OUT_OF_CREDITS, tier=tier)

            in_flight = current.pending_charges.get(stage)
            if in_flight and not self.is_orphaned(in_flight):
                logger.warning(
                    f"Generation for {stage} already in flight on project {current.project_id} "
                    f"(charge {in_flight.charge_id})"
                )
                return ConsumeResult(ok=False, reason=ConsumeFailureReason.CONCURRENT_CONFLICT, tier=tier)

            charge = PendingCharge(stage=stage, action_tag=action_tag)
            pending = dict(current.pending_charges)
            pending[stage] = charge
            patch = {
                "credits_used": current.credits_used + 1,
                "pending_charges": pending,
            }

            if await self.store.write_project_if_version(
                current.project_id, current.owner_id, current.version, patch
            ):
                updated = apply_patch(current, patch)
                logger.info(
                    f"Credit consumed on project {updated.project_id} for {action_tag}: "
                    f"{updated.credits_used}/{limit if limit is not None else 'unlimited'}"
                )
                await self._record_transaction(updated, charge, tier)
                return ConsumeResult(ok=True, project=updated, charge=charge, tier=tier)

            logger.info(
                f"Credit consume conflict on project {current.project_id} "
                f"(attempt {attempt}/{MAX_CONSUME_ATTEMPTS})"
            )

        return ConsumeResult(ok=False, reason=ConsumeFailureReason.CONCURRENT_CONFLICT, tier=tier)

    async def reclaim_orphaned_charge(
        self,
        project: Project,
        stage: str,
        precondition: Optional[Callable[[Project], bool]] = None,
    ) -> ConsumeResult:
        """Take over an orphaned charge for `stage` so a retry is not billed again.

        The charge is restamped so that it counts as in flight; the counter is
        left untouched. Returns ok=False if there is nothing to reclaim.
        """
        tier = await self.tiers.current_tier(project.owner_id)
        reclaimed = {}

        def mutate(current: Project):
            reclaimed.pop("rejected", None)
            if precondition is not None and not precondition(current):
                reclaimed.pop("charge", None)
                reclaimed["rejected"] = True
                return None
            charge = current.pending_charges.get(stage)
            if charge is None or not self.is_orphaned(charge):
                reclaimed.pop("charge", None)
                return None
            restamped = charge.model_copy(update={"charged_at": datetime.now(timezone.utc)})
            reclaimed["charge"] = restamped
            pending = dict(current.pending_charges)
            pending[stage] = restamped
            return {"pending_charges": pending}

        try:
            updated = await self.store.update_project_with_retry(
                project.project_id, project.owner_id, mutate, attempts=MAX_CONSUME_ATTEMPTS
            )
        except ConcurrentConflictError:
            return ConsumeResult(ok=False, reason=ConsumeFailureReason.CONCURRENT_CONFLICT, tier=tier)

        if updated is None:
            return ConsumeResult(ok=False, reason=ConsumeFailureReason.NOT_FOUND, tier=tier)
        if reclaimed.get("rejected"):
            return ConsumeResult(ok=False, reason=ConsumeFailureReason.STAGE_STATE_CHANGED, tier=tier)
        charge = reclaimed.get("charge")
        if charge is None:
            return ConsumeResult(ok=False, tier=tier)

        logger.info(f"Reclaimed orphaned charge {charge.charge_id} for {stage} on project {updated.project_id}")
        return ConsumeResult(ok=True, project=updated, charge=charge, tier=tier, reused=True)

    async def settle_charge(self, project: Project, stage: str, charge_id: str) -> Optional[Project]:
        """Close the pending charge once its attempt has finished without output.

        A charge that cannot be cleared stays pending and will surface as an
        orphan, so a lost race here is logged rather than raised.
        """
        def mutate(current: Project):
            charge = current.pending_charges.get(stage)
            if charge is None or charge.charge_id != charge_id:
                return None
            pending = {k: v for k, v in current.pending_charges.items() if k != stage}
            return {"pending_charges": pending}

        try:
            return await self.store.update_project_with_retry(project.project_id, project.owner_id, mutate)
        except ConcurrentConflictError as e:
            logger.warning(f"Could not settle charge {charge_id} on project {project.project_id}: {e}")
            return None

    async def reset_credits(self, project_id: str, owner_id: str) -> Optional[Project]:
        """Explicit admin reset of `credits_used` to zero."""
        updated = await self.store.update_project_with_retry(
            project_id, owner_id, lambda current: {"credits_used": 0}
        )
        if updated:
            logger.info(f"Credits reset on project {project_id} by admin")
        return updated

    async def get_transaction_history(self, project: Project, limit: int = 50, offset: int = 0):
        return await self.store.list_credit_transactions(
            project.project_id, project.owner_id, limit=limit, offset=offset
        )

    async def _record_transaction(self, project: Project, charge: PendingCharge, tier: SubscriptionTier) -> None:
        transaction = CreditTransaction(
            project_id=project.project_id,
            owner_id=project.owner_id,
            charge_id=charge.charge_id,
            stage=charge.stage,
            action_tag=charge.action_tag,
            tier=tier,
            credits_used_after=project.credits_used,
        )
        try:
            await self.store.append_credit_transaction(transaction)
        except Exception as e:
            # The charge itself is already committed on the project
            logger.warning(f"Failed to record credit transaction for {charge.charge_id}: {e}")


# Global service instance
credit_ledger = CreditLedger()
