"""
Stage Prompt Registry - prompts for every generating pipeline stage.

Each prompt asks for JSON only; `output_key` names the top-level array the
completion service extracts. The `idea` stage is user input and has no prompt.
"""
from typing import Dict, List, Any, Optional
from dataclasses import dataclass
import json

from models.pipeline import StageId


@dataclass
class StagePrompt:
    """Definition of one stage prompt."""
    stage: StageId
    name: str
    system_prompt: str
    user_prompt_template: str
    output_key: str
    expected_items: Optional[int] = None
    temperature: float = 0.7


ANALYST_FRAMEWORK = """
ROLE:
You help founders validate early-stage business ideas.

RULES:
1. Only name real, verifiable companies and products
2. Do not use markdown, bullets or asterisks inside JSON string values
3. Avoid generic filler ("Competitor in the space", "Innovative solution")
4. Return only valid JSON matching the requested structure, no commentary
"""


COMPETITORS_PROMPT = StagePrompt(
    stage=StageId.COMPETITORS,
    name="Competitor Discovery",
    system_prompt=ANALYST_FRAMEWORK + """
You are a research assistant that provides accurate information about business competitors.
""",
    user_prompt_template="""
The idea is: "{idea}"

List the direct competitors of this idea. For each competitor give the company name,
its website URL and a brief, specific description of what it offers.

Respond with this exact JSON structure:
{{
  "competitors": [
    {{"name": "...", "website": "https://...", "description": "..."}}
  ]
}}
""",
    output_key="competitors",
)


MARKET_GAPS_PROMPT = StagePrompt(
    stage=StageId.MARKET_GAPS,
    name="Market Gap Scoring",
    system_prompt=ANALYST_FRAMEWORK + """
You are a business strategist and market analyst.
""",
    user_prompt_template="""
A user is considering the following idea: "{idea}"

These are the main competitors:
{competitors_text}

Step 1: Identify EXACTLY 3 unaddressed market gaps. Each gap should highlight a specific pain point or need that is currently underserved.
Step 2: For each market gap, recommend 1 unique positioning suggestion that aligns specifically with that gap.
Step 3: Score each market gap from 0-10 based on market potential, competitive whitespace, ease of building a solution and alignment with the core idea. Include a short rationale for each score.

Respond with this exact JSON structure:
{{
  "marketGaps": [
    {{"gap": "...", "positioningSuggestion": "...", "score": 8, "rationale": "..."}}
  ]
}}
""",
    output_key="marketGaps",
    expected_items=3,
)


FEATURES_PROMPT = StagePrompt(
    stage=StageId.FEATURES,
    name="Feature Generation",
    system_prompt=ANALYST_FRAMEWORK + """
You are a product strategist generating features for a new startup.
""",
    user_prompt_template="""
The startup idea is: "{idea}".
The market gap it targets is: "{gap}".
The market positioning they chose is: "{positioning_suggestion}".

Suggest exactly 3 product features the user should build based on the positioning above.
For each feature, provide:
- A short title (max 50 characters)
- A one-sentence description (max 150 characters)
- A priority label ("High", "Medium", or "Low") based on potential impact and feasibility.

Respond with this exact JSON structure:
{{
  "features": [
    {{"title": "...", "description": "...", "priority": "High"}}
  ]
}}
""",
    output_key="features",
    expected_items=3,
)


VALIDATION_PLAN_PROMPT = StagePrompt(
    stage=StageId.VALIDATION_PLAN,
    name="Validation Plan",
    system_prompt=ANALYST_FRAMEWORK + """
You are a product validation expert who helps startups test their assumptions efficiently.
""",
    user_prompt_template="""
Product Idea: "{idea}"
Market Positioning: "{positioning_suggestion}"
Planned Features: {features_text}

Generate EXACTLY 3 validation steps that align with this positioning and these features. For each step, return:
- "title": A brief title (4-6 words)
- "goal": The purpose of the step (1-2 sentences)
- "method": What tool, method, or resource would be used to carry out the step
- "priority": One of "High", "Medium", or "Low"

Focus on practical, actionable validation methods that test the core assumptions of this positioning.

Respond with this exact JSON structure:
{{
  "validationSteps": [
    {{"title": "...", "goal": "...", "method": "...", "priority": "High"}}
  ]
}}
""",
    output_key="validationSteps",
    expected_items=3,
)


STAGE_PROMPTS: Dict[StageId, StagePrompt] = {
    COMPETITORS_PROMPT.stage: COMPETITORS_PROMPT,
    MARKET_GAPS_PROMPT.stage: MARKET_GAPS_PROMPT,
    FEATURES_PROMPT.stage: FEATURES_PROMPT,
    VALIDATION_PLAN_PROMPT.stage: VALIDATION_PLAN_PROMPT,
}


def get_prompt_for_stage(stage: StageId) -> Optional[StagePrompt]:
    return STAGE_PROMPTS.get(stage)


def _format_competitors(competitors: List[Dict[str, Any]]) -> str:
    if not competitors:
        return "No competitors listed"
    return "\n".join(
        f"{c.get('name')} ({c.get('website') or 'no website'}): {c.get('description') or 'No description'}"
        for c in competitors
    )


def _format_features(features: List[Dict[str, Any]]) -> str:
    if not features:
        return "No specific features defined"
    return ", ".join(f"{f.get('title')}: {f.get('description')}" for f in features)


def build_user_prompt(prompt: StagePrompt, context: Dict[str, Any]) -> str:
    """Fill the stage template from the structured context."""
    values = {
        "idea": context.get("idea", ""),
        "gap": context.get("gap", ""),
        "positioning_suggestion": context.get("positioning_suggestion", ""),
        "competitors_text": _format_competitors(context.get("competitors", [])),
        "features_text": _format_features(context.get("features", [])),
        "context_json": json.dumps(context, default=str),
    }
    return prompt.user_prompt_template.format(**values)
