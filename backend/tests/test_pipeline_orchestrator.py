"""
Pipeline orchestrator tests.
Submit/rerun ordering, credit policy (charge per attempt, idea free),
rerun replacement semantics and orphaned-charge recovery.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from models.credits import PendingCharge, SubscriptionTier
from models.projects import CompetitorCreate
from models.pipeline import CompletionFailureReason, PipelineErrorCode, PipelineState, StageId
from services.stage_registry import derive_stage
from conftest import OWNER_ID, OTHER_OWNER_ID


STAGE_ORDER = ["idea", "competitors", "marketGaps", "features", "validationPlan"]
IDEA_INPUT = {"idea": "Subscription boxes for home-brewers", "title": "Brew Box"}


class TestSubmitStage:

    @pytest.mark.asyncio
    async def test_full_pipeline_charges_four_credits(self, orchestrator, store, completion, make_project):
        project = await make_project()

        for stage in STAGE_ORDER:
            raw = IDEA_INPUT if stage == "idea" else {}
            result = await orchestrator.submit_stage(OWNER_ID, project.project_id, stage, raw)
            assert result.success is True, result.message
            assert result.charged is (stage != "idea")

        stored = store.stored(project.project_id)
        assert stored.credits_used == 4
        assert derive_stage(stored) == PipelineState.VALIDATION_PLAN_SET
        assert stored.pending_charges == {}
        assert stored.title == "Brew Box"
        assert [c[0] for c in completion.calls] == [
            StageId.COMPETITORS, StageId.MARKET_GAPS, StageId.FEATURES, StageId.VALIDATION_PLAN,
        ]
        assert len(store.transactions) == 4

    @pytest.mark.asyncio
    async def test_missing_precondition_consumes_nothing(self, orchestrator, store, completion, make_project):
        project = await make_project(filled=1)
        writes_before = store.write_count

        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "marketGaps")

        assert result.success is False
        assert result.error_code == PipelineErrorCode.MISSING_PRECONDITION
        assert store.stored(project.project_id).credits_used == 0
        assert store.write_count == writes_before
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_resubmitting_completed_stage_is_out_of_order(self, orchestrator, store, make_project):
        project = await make_project(filled=1)

        first = await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors")
        second = await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors")

        assert first.success is True
        assert derive_stage(first.project) == PipelineState.COMPETITORS_SET
        assert second.error_code == PipelineErrorCode.OUT_OF_ORDER
        assert store.stored(project.project_id).credits_used == 1

    @pytest.mark.asyncio
    async def test_skipping_ahead_with_stale_data_is_out_of_order(self, orchestrator, store, make_project):
        # Gaps and features survive, competitors were removed by hand
        project = await make_project(filled=4, competitors=[], validation_steps=[])

        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "validationPlan")

        assert result.error_code == PipelineErrorCode.OUT_OF_ORDER
        assert store.stored(project.project_id).credits_used == 0

    @pytest.mark.asyncio
    async def test_out_of_credits_on_starter(self, orchestrator, store, tiers, completion, make_project):
        tiers.default = SubscriptionTier.STARTER
        project = await make_project(filled=2, credits_used=10)

        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "marketGaps")

        assert result.error_code == PipelineErrorCode.OUT_OF_CREDITS
        assert store.stored(project.project_id).credits_used == 10
        assert store.stored(project.project_id).market_gap_analysis == []
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_generation_failure_keeps_charge_and_leaves_stage_incomplete(
        self, orchestrator, store, completion, make_project
    ):
        project = await make_project(filled=1)
        completion.fail_with = CompletionFailureReason.TIMEOUT

        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors")

        assert result.error_code == PipelineErrorCode.GENERATION_FAILED
        assert result.failure_reason == CompletionFailureReason.TIMEOUT
        assert result.charged is True
        stored = store.stored(project.project_id)
        assert stored.credits_used == 1
        assert stored.competitors == []
        assert stored.pending_charges == {}

        completion.fail_with = None
        retry = await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors")
        assert retry.success is True
        assert store.stored(project.project_id).credits_used == 2

    @pytest.mark.asyncio
    async def test_idea_is_not_charged(self, orchestrator, store, completion, make_project):
        project = await make_project()
        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "idea", {"idea": "  Ferry app  "})

        assert result.success is True
        assert result.charged is False
        assert store.stored(project.project_id).idea == "Ferry app"
        assert store.stored(project.project_id).credits_used == 0
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_invalid_input(self, orchestrator, make_project):
        project = await make_project()
        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "idea", {"idea": ""})
        assert result.error_code == PipelineErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_unknown_stage(self, orchestrator, make_project):
        project = await make_project()
        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "summary")
        assert result.error_code == PipelineErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_other_owner_sees_not_found(self, orchestrator, make_project):
        project = await make_project(filled=1)
        result = await orchestrator.submit_stage(OTHER_OWNER_ID, project.project_id, "competitors")
        assert result.error_code == PipelineErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_features_records_the_gap_it_used(self, orchestrator, store, completion, make_project):
        project = await make_project(filled=3)

        result = await orchestrator.submit_stage(
            OWNER_ID, project.project_id, "features", {"selected_gap_index": 2}
        )

        assert result.success is True
        assert store.stored(project.project_id).selected_gap_index == 2
        assert completion.calls[0][1]["positioning_suggestion"] == "Position C"

    @pytest.mark.asyncio
    async def test_double_submit_charges_once(self, orchestrator, store, tiers, make_project):
        tiers.default = SubscriptionTier.PRO
        project = await make_project(filled=1)

        first, second = await asyncio.gather(
            orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors"),
            orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors"),
        )

        winners = [r for r in (first, second) if r.success]
        losers = [r for r in (first, second) if not r.success]
        assert len(winners) == 1
        assert losers[0].error_code == PipelineErrorCode.CONCURRENT_CONFLICT
        assert store.stored(project.project_id).credits_used == 1


class TestRerunStage:

    @pytest.mark.asyncio
    async def test_rerun_market_gaps_clears_selection_only(self, orchestrator, store, tiers, completion, make_project):
        tiers.default = SubscriptionTier.STARTER
        project = await make_project(filled=5, selected_gap_index=1, credits_used=4)
        before = store.stored(project.project_id)
        completion.tag = " v2"

        result = await orchestrator.rerun_stage(OWNER_ID, project.project_id, "marketGaps")

        assert result.success is True
        stored = store.stored(project.project_id)
        assert stored.selected_gap_index is None
        assert [g.gap for g in stored.market_gap_analysis] == ["Gap A v2", "Gap B v2", "Gap C v2"]
        assert [f.model_dump() for f in stored.features] == [f.model_dump() for f in before.features]
        assert [s.model_dump() for s in stored.validation_steps] == [
            s.model_dump() for s in before.validation_steps
        ]
        assert stored.credits_used == 5

    @pytest.mark.asyncio
    async def test_rerun_replaces_competitors_wholesale(self, orchestrator, store, completion, make_project):
        project = await make_project(filled=2)
        completion.tag = " v2"

        await orchestrator.rerun_stage(OWNER_ID, project.project_id, "competitors")

        names = [c.name for c in store.stored(project.project_id).competitors]
        assert names == ["Acme v2", "Globex v2"]

    @pytest.mark.asyncio
    async def test_rerun_incomplete_stage_is_out_of_order(self, orchestrator, store, make_project):
        project = await make_project(filled=2)
        result = await orchestrator.rerun_stage(OWNER_ID, project.project_id, "marketGaps")
        assert result.error_code == PipelineErrorCode.OUT_OF_ORDER
        assert store.stored(project.project_id).credits_used == 0

    @pytest.mark.asyncio
    async def test_rerun_out_of_credits(self, orchestrator, store, completion, make_project):
        project = await make_project(filled=3, credits_used=4)
        result = await orchestrator.rerun_stage(OWNER_ID, project.project_id, "competitors")
        assert result.error_code == PipelineErrorCode.OUT_OF_CREDITS
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_rerun_idea_requires_new_text_and_is_free(self, orchestrator, store, make_project):
        project = await make_project(filled=3)

        missing = await orchestrator.rerun_stage(OWNER_ID, project.project_id, "idea")
        assert missing.error_code == PipelineErrorCode.INVALID_INPUT

        result = await orchestrator.rerun_stage(OWNER_ID, project.project_id, "idea", {"idea": "Pivoted idea"})
        assert result.success is True
        stored = store.stored(project.project_id)
        assert stored.idea == "Pivoted idea"
        assert stored.credits_used == 0
        assert len(stored.market_gap_analysis) == 3


class TestConcurrentTabs:
    """A second request whose first read went stale while another one finished."""

    def _interleave_after_first_read(self, store, other_request):
        original_read = store.read_project

        async def read_then_run_other(project_id, owner_id):
            snapshot = await original_read(project_id, owner_id)
            store.read_project = original_read
            await other_request()
            return snapshot

        store.read_project = read_then_run_other

    @pytest.mark.asyncio
    async def test_submit_on_stage_completed_by_other_tab(self, orchestrator, store, completion, make_project):
        project = await make_project(filled=1)
        other_results = []

        async def other_tab():
            other_results.append(await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors"))

        self._interleave_after_first_read(store, other_tab)
        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors")

        assert other_results[0].success is True
        assert result.error_code == PipelineErrorCode.OUT_OF_ORDER
        assert result.charged is False
        assert store.stored(project.project_id).credits_used == 1
        assert len(completion.calls) == 1

    @pytest.mark.asyncio
    async def test_rerun_on_stage_emptied_by_other_tab(self, orchestrator, facade, store, completion, make_project):
        project = await make_project(filled=2)

        async def other_tab():
            for competitor in project.competitors:
                await facade.remove_competitor(OWNER_ID, project.project_id, competitor.id)

        self._interleave_after_first_read(store, other_tab)
        result = await orchestrator.rerun_stage(OWNER_ID, project.project_id, "competitors")

        assert result.error_code == PipelineErrorCode.OUT_OF_ORDER
        assert store.stored(project.project_id).credits_used == 0
        assert completion.calls == []

    @pytest.mark.asyncio
    async def test_output_not_written_over_stage_filled_during_generation(
        self, orchestrator, facade, store, completion, make_project
    ):
        project = await make_project(filled=1)

        async def manual_entry():
            await facade.add_competitor(OWNER_ID, project.project_id, CompetitorCreate(name="Wag"))

        completion.before_return = manual_entry
        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors")

        assert result.error_code == PipelineErrorCode.OUT_OF_ORDER
        assert result.charged is True
        stored = store.stored(project.project_id)
        assert [c.name for c in stored.competitors] == ["Wag"]
        assert stored.credits_used == 1
        assert stored.pending_charges == {}


class TestOrphanedCharges:

    def _orphan(self, stage: str) -> PendingCharge:
        return PendingCharge(
            stage=stage,
            action_tag=f"{stage}-generation",
            charged_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )

    @pytest.mark.asyncio
    async def test_reconcile_reports_orphan(self, orchestrator, make_project):
        project = await make_project(filled=1, credits_used=1, pending_charges={"competitors": self._orphan("competitors")})

        result = await orchestrator.reconcile(OWNER_ID, project.project_id)

        assert result.success is False
        assert result.error_code == PipelineErrorCode.ORPHANED_CHARGE
        assert [o.stage for o in result.orphaned_charges] == ["competitors"]
        assert result.orphaned_charges[0].stage_complete is False

    @pytest.mark.asyncio
    async def test_reconcile_clean_project(self, orchestrator, make_project):
        project = await make_project(filled=2)
        result = await orchestrator.reconcile(OWNER_ID, project.project_id)
        assert result.success is True
        assert result.orphaned_charges == []

    @pytest.mark.asyncio
    async def test_retry_after_crash_reuses_charge(self, orchestrator, store, make_project):
        orphan = self._orphan("competitors")
        project = await make_project(filled=1, credits_used=1, pending_charges={"competitors": orphan})

        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors")

        assert result.success is True
        assert result.charged is False
        stored = store.stored(project.project_id)
        assert stored.credits_used == 1
        assert stored.pending_charges == {}
        assert len(stored.competitors) == 2

    @pytest.mark.asyncio
    async def test_orphan_retry_allowed_even_at_limit(self, orchestrator, store, make_project):
        orphan = self._orphan("features")
        project = await make_project(filled=3, credits_used=4, pending_charges={"features": orphan})

        result = await orchestrator.submit_stage(OWNER_ID, project.project_id, "features")

        assert result.success is True
        assert store.stored(project.project_id).credits_used == 4

    @pytest.mark.asyncio
    async def test_crash_between_charge_and_write_leaves_orphan(self, orchestrator, store, completion, make_project):
        project = await make_project(filled=1)

        async def crash():
            raise RuntimeError("process died")

        completion.before_return = crash
        with pytest.raises(RuntimeError):
            await orchestrator.submit_stage(OWNER_ID, project.project_id, "competitors")

        stored = store.stored(project.project_id)
        assert stored.credits_used == 1
        assert "competitors" in stored.pending_charges
        assert stored.competitors == []
