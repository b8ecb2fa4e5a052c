"""Stage Registry - static, ordered table of pipeline stage definitions.

Pure: nothing in here touches the database or the completion service.

Order:
    idea → competitors → marketGaps → features → validationPlan

Pipeline state is derived from the contiguous prefix of filled slots; it is
never stored. `derive_stage` is the one place that decides it.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

from models.pipeline import (
    CompetitorsInput,
    FeaturesInput,
    IdeaInput,
    MarketGapsInput,
    PipelineState,
    StageId,
    ValidationPlanInput,
)
from models.projects import MarketGap, Project


def positioning_gap(project: Project, selected_index: Optional[int] = None) -> Optional[Tuple[int, MarketGap]]:
    """Gap whose positioning drives feature and validation generation.

    Uses the explicitly selected gap; without a selection, the highest
    scoring gap (first one on ties).
    """
    gaps = project.market_gap_analysis
    if not gaps:
        return None
    index = selected_index if selected_index is not None else project.selected_gap_index
    if index is not None and 0 <= index < len(gaps):
        return index, gaps[index]
    best = max(range(len(gaps)), key=lambda i: (gaps[i].score, -i))
    return best, gaps[best]


def _competitor_context(project: Project) -> List[Dict[str, str]]:
    return [
        {"name": c.name, "website": c.website, "description": c.description}
        for c in project.competitors
    ]


# ============================================================================
# Context builders: (is_valid, error_message, context)
# ============================================================================

def _idea_context(project: Project, stage_input: BaseModel) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
    return True, "", {"idea": stage_input.idea, "title": stage_input.title}


def _competitors_context(project: Project, stage_input: BaseModel):
    if not project.idea.strip():
        return False, "Competitor discovery requires an idea", None
    return True, "", {"idea": project.idea}


def _market_gaps_context(project: Project, stage_input: BaseModel):
    if not project.idea.strip():
        return False, "Market gap analysis requires an idea", None
    if not project.competitors:
        return False, "Market gap analysis requires at least one competitor", None
    return True, "", {
        "idea": project.idea,
        "competitors": _competitor_context(project),
    }


def _features_context(project: Project, stage_input: BaseModel):
    if not project.idea.strip():
        return False, "Feature generation requires an idea", None
    selected = getattr(stage_input, "selected_gap_index", None)
    if selected is not None and selected >= len(project.market_gap_analysis):
        return False, f"Selected gap {selected} does not exist", None
    chosen = positioning_gap(project, selected)
    if chosen is None:
        return False, "Feature generation requires a market gap analysis", None
    index, gap = chosen
    return True, "", {
        "idea": project.idea,
        "competitors": _competitor_context(project),
        "gap_index": index,
        "gap": gap.gap,
        "positioning_suggestion": gap.positioning_suggestion,
    }


def _validation_plan_context(project: Project, stage_input: BaseModel):
    if not project.idea.strip():
        return False, "Validation plan requires an idea", None
    chosen = positioning_gap(project)
    if chosen is None:
        return False, "Validation plan requires a market gap analysis", None
    if not project.features:
        return False, "Validation plan requires at least one feature", None
    _, gap = chosen
    return True, "", {
        "idea": project.idea,
        "positioning_suggestion": gap.positioning_suggestion,
        "competitors": _competitor_context(project),
        "features": [{"title": f.title, "description": f.description} for f in project.features],
    }


@dataclass(frozen=True)
class StageDefinition:
    """Declarative description of one pipeline stage."""
    id: StageId
    preceding: Optional[StageId]
    slot: str
    generates: bool
    state: PipelineState
    input_model: Type[BaseModel]
    context_builder: Callable[[Project, BaseModel], Tuple[bool, str, Optional[Dict[str, Any]]]]
    # Fields reset to these values when this stage is rerun successfully
    resets_on_rerun: Dict[str, Any] = field(default_factory=dict)

    @property
    def action_tag(self) -> str:
        return f"{self.id.value}-generation"

    def is_complete(self, project: Project) -> bool:
        value = getattr(project, self.slot)
        if isinstance(value, str):
            return bool(value.strip())
        return bool(value)

    def parse_input(self, raw: Optional[Dict[str, Any]]) -> BaseModel:
        """Validate the raw payload against this stage's input model (raises ValidationError)."""
        return self.input_model(**(raw or {}))

    def required_context(self, project: Project, stage_input: Optional[BaseModel] = None):
        """Structured prompt context, or the reason it cannot be assembled.

        Returns (is_valid, error_message, context).
        """
        if stage_input is None:
            stage_input = self.input_model()
        return self.context_builder(project, stage_input)

    def output_patch(self, output: Any) -> Dict[str, Any]:
        """Project fields written when this stage's output is stored (wholesale replace)."""
        return {self.slot: output}


STAGES: List[StageDefinition] = [
    StageDefinition(
        id=StageId.IDEA,
        preceding=None,
        slot="idea",
        generates=False,
        state=PipelineState.IDEA_CAPTURED,
        input_model=IdeaInput,
        context_builder=_idea_context,
    ),
    StageDefinition(
        id=StageId.COMPETITORS,
        preceding=StageId.IDEA,
        slot="competitors",
        generates=True,
        state=PipelineState.COMPETITORS_SET,
        input_model=CompetitorsInput,
        context_builder=_competitors_context,
    ),
    StageDefinition(
        id=StageId.MARKET_GAPS,
        preceding=StageId.COMPETITORS,
        slot="market_gap_analysis",
        generates=True,
        state=PipelineState.MARKET_GAPS_SCORED,
        input_model=MarketGapsInput,
        context_builder=_market_gaps_context,
        resets_on_rerun={"selected_gap_index": None},
    ),
    StageDefinition(
        id=StageId.FEATURES,
        preceding=StageId.MARKET_GAPS,
        slot="features",
        generates=True,
        state=PipelineState.FEATURES_SET,
        input_model=FeaturesInput,
        context_builder=_features_context,
    ),
    StageDefinition(
        id=StageId.VALIDATION_PLAN,
        preceding=StageId.FEATURES,
        slot="validation_steps",
        generates=True,
        state=PipelineState.VALIDATION_PLAN_SET,
        input_model=ValidationPlanInput,
        context_builder=_validation_plan_context,
    ),
]

STAGES_BY_ID: Dict[StageId, StageDefinition] = {s.id: s for s in STAGES}


def get_stage(stage_id) -> Optional[StageDefinition]:
    """Look up a stage by StageId or its string value."""
    try:
        return STAGES_BY_ID[StageId(stage_id)]
    except ValueError:
        return None


def completed_prefix(project: Project) -> int:
    """Number of leading stages whose slots are filled."""
    count = 0
    for stage in STAGES:
        if not stage.is_complete(project):
            break
        count += 1
    return count


def derive_stage(project: Project) -> PipelineState:
    count = completed_prefix(project)
    if count == 0:
        return PipelineState.NOT_STARTED
    return STAGES[count - 1].state


def next_stage(project: Project) -> Optional[StageDefinition]:
    count = completed_prefix(project)
    if count >= len(STAGES):
        return None
    return STAGES[count]


def stage_completion(project: Project) -> Dict[str, bool]:
    return {stage.id.value: stage.is_complete(project) for stage in STAGES}


def is_stage_complete(stage_id: str, project: Project) -> bool:
    stage = get_stage(stage_id)
    return bool(stage and stage.is_complete(project))
