"""
Project facade tests.
Project limits, state view, gap selection and manual item CRUD.
"""
import pytest
from unittest.mock import AsyncMock, patch

from models.audit import AuditAction
from models.credits import SubscriptionTier
from models.pipeline import PipelineErrorCode, PipelineState, StageId
from models.projects import (
    CompetitorCreate,
    CompetitorUpdate,
    FeatureCreate,
    FeatureStatus,
    FeatureUpdate,
    ValidationStepCreate,
    ValidationStepUpdate,
)
from conftest import OWNER_ID


@pytest.fixture(autouse=True)
def audit_log():
    with patch("services.project_facade.create_audit_log", new=AsyncMock(return_value="audit-1")) as mock:
        yield mock


class TestProjects:

    @pytest.mark.asyncio
    async def test_create_project_respects_free_limit(self, facade, store, audit_log):
        first = await facade.create_project(OWNER_ID, "  First  ", "An idea")
        second = await facade.create_project(OWNER_ID, "Second")

        assert first.success is True
        assert first.project.title == "First"
        assert first.project.idea == "An idea"
        assert second.error_code == PipelineErrorCode.PROJECT_LIMIT_REACHED
        assert len(store.projects) == 1
        assert audit_log.call_args.kwargs["action"] == AuditAction.PROJECT_CREATED

    @pytest.mark.asyncio
    async def test_pro_has_no_project_limit(self, facade, tiers):
        tiers.default = SubscriptionTier.PRO
        for i in range(7):
            assert (await facade.create_project(OWNER_ID, f"Project {i}")).success is True

    @pytest.mark.asyncio
    async def test_list_projects(self, facade, make_project):
        await make_project(filled=2)
        result = await facade.list_projects(OWNER_ID)
        assert result.success is True
        assert result.data[0]["state"] == PipelineState.COMPETITORS_SET.value

    @pytest.mark.asyncio
    async def test_state_view(self, facade, make_project):
        project = await make_project(filled=2, credits_used=1)

        result = await facade.get_project_state(OWNER_ID, project.project_id)

        view = result.data
        assert view.state == PipelineState.COMPETITORS_SET
        assert view.next_stage == StageId.MARKET_GAPS
        assert view.stages["competitors"] is True
        assert view.credits.remaining == 3
        assert view.summary is None

    @pytest.mark.asyncio
    async def test_terminal_state_has_summary(self, facade, make_project):
        project = await make_project(filled=5)

        view = (await facade.get_project_state(OWNER_ID, project.project_id)).data

        assert view.next_stage is None
        assert view.summary.competitor_count == 2
        assert view.summary.positioning_gap == "Gap B"
        assert view.summary.features_by_status == {"Planned": 3}
        assert view.summary.validation_steps_total == 3

    @pytest.mark.asyncio
    async def test_state_of_missing_project(self, facade):
        result = await facade.get_project_state(OWNER_ID, "PRJ-MISSING")
        assert result.error_code == PipelineErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_submit_goes_through_orchestrator(self, facade, store, make_project):
        project = await make_project(filled=1)
        result = await facade.submit_stage(OWNER_ID, project.project_id, "competitors")
        assert result.success is True
        assert store.stored(project.project_id).credits_used == 1

    @pytest.mark.asyncio
    async def test_reset_credits_is_audited(self, facade, store, make_project, audit_log):
        project = await make_project(filled=3, credits_used=4)

        result = await facade.reset_credits(OWNER_ID, project.project_id, actor_id="admin-1", reason="support")

        assert result.success is True
        assert store.stored(project.project_id).credits_used == 0
        kwargs = audit_log.call_args.kwargs
        assert kwargs["action"] == AuditAction.CREDITS_RESET
        assert kwargs["before_state"] == {"credits_used": 4}
        assert kwargs["after_state"] == {"credits_used": 0}

    @pytest.mark.asyncio
    async def test_credit_history(self, facade, make_project):
        project = await make_project(filled=1)
        await facade.submit_stage(OWNER_ID, project.project_id, "competitors")

        history = (await facade.get_credit_history(OWNER_ID, project.project_id)).data

        assert len(history) == 1
        assert history[0]["stage"] == "competitors"


class TestGapSelection:

    @pytest.mark.asyncio
    async def test_select_gap(self, facade, store, make_project):
        project = await make_project(filled=3)
        result = await facade.select_gap(OWNER_ID, project.project_id, 2)
        assert result.success is True
        assert store.stored(project.project_id).selected_gap_index == 2

    @pytest.mark.asyncio
    async def test_select_unknown_gap(self, facade, make_project):
        project = await make_project(filled=3)
        result = await facade.select_gap(OWNER_ID, project.project_id, 3)
        assert result.error_code == PipelineErrorCode.INVALID_INPUT


class TestManualItems:

    @pytest.mark.asyncio
    async def test_competitor_crud_is_free(self, facade, store, make_project):
        project = await make_project(filled=2)

        added = await facade.add_competitor(
            OWNER_ID, project.project_id, CompetitorCreate(name="Wag", website="https://wag.example")
        )
        item = added.data
        assert item.is_ai_generated is False
        assert [c.name for c in store.stored(project.project_id).competitors] == ["Acme", "Globex", "Wag"]

        await facade.update_competitor(OWNER_ID, project.project_id, item.id, CompetitorUpdate(description="On-demand"))
        assert store.stored(project.project_id).competitors[-1].description == "On-demand"

        await facade.remove_competitor(OWNER_ID, project.project_id, item.id)
        stored = store.stored(project.project_id)
        assert [c.name for c in stored.competitors] == ["Acme", "Globex"]
        assert stored.credits_used == 0

    @pytest.mark.asyncio
    async def test_removing_last_competitor_changes_derived_state(self, facade, store, make_project):
        project = await make_project(filled=2)
        for competitor in project.competitors:
            await facade.remove_competitor(OWNER_ID, project.project_id, competitor.id)

        view = (await facade.get_project_state(OWNER_ID, project.project_id)).data
        assert view.state == PipelineState.IDEA_CAPTURED

    @pytest.mark.asyncio
    async def test_feature_update_after_pipeline_moved_on(self, facade, store, make_project):
        project = await make_project(filled=5)
        feature_id = project.features[0].id

        result = await facade.update_feature(
            OWNER_ID, project.project_id, feature_id, FeatureUpdate(status=FeatureStatus.IN_PROGRESS)
        )

        assert result.success is True
        assert store.stored(project.project_id).features[0].status == FeatureStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_add_feature(self, facade, store, make_project):
        project = await make_project(filled=4)
        await facade.add_feature(OWNER_ID, project.project_id, FeatureCreate(title="Dark mode"))
        assert store.stored(project.project_id).features[-1].title == "Dark mode"

    @pytest.mark.asyncio
    async def test_validation_step_toggle(self, facade, store, make_project):
        project = await make_project(filled=4)
        added = await facade.add_validation_step(OWNER_ID, project.project_id, ValidationStepCreate(title="Survey"))
        step_id = added.data.id

        await facade.toggle_validation_step(OWNER_ID, project.project_id, step_id)
        assert store.stored(project.project_id).validation_steps[0].is_done is True

        await facade.update_validation_step(OWNER_ID, project.project_id, step_id, ValidationStepUpdate(is_done=False))
        assert store.stored(project.project_id).validation_steps[0].is_done is False

        await facade.remove_validation_step(OWNER_ID, project.project_id, step_id)
        assert store.stored(project.project_id).validation_steps == []

    @pytest.mark.asyncio
    async def test_unknown_item(self, facade, make_project):
        project = await make_project(filled=2)
        result = await facade.remove_feature(OWNER_ID, project.project_id, "nope")
        assert result.error_code == PipelineErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_item_on_missing_project(self, facade):
        result = await facade.add_feature(OWNER_ID, "PRJ-MISSING", FeatureCreate(title="x"))
        assert result.error_code == PipelineErrorCode.NOT_FOUND


class TestAuditDiff:

    def test_changed_fields_only(self):
        from utils.audit import calculate_diff
        diff = calculate_diff({"credits_used": 4, "title": "a"}, {"credits_used": 0, "title": "a"})
        assert diff == {"changed": {"credits_used": {"from": 4, "to": 0}}}

    def test_missing_snapshot(self):
        from utils.audit import calculate_diff
        assert calculate_diff(None, {"credits_used": 0}) == {}
