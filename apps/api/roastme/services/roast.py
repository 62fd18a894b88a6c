"""
Roast Service: title, roast text, punchline and figurine name
"""

import json

from pydantic import ValidationError
import structlog

from roastme.core.config import settings
from roastme.core.errors import AnalysisError, ErrorCode, RoastError
from roastme.models.dto import FeatureAnalysis, RoastContent
from roastme.services import gemini
from roastme.services.prompts import roast_prompts

logger = structlog.get_logger()


async def generate_roast(analysis: FeatureAnalysis) -> RoastContent:
    """
    Write roast copy for the analysed features.

    Never fails: any provider or parsing error yields fallback_roast().
    """
    try:
        if settings.ai_provider == "gemini":
            return await _roast_gemini(analysis)
        elif settings.ai_provider == "mock":
            return _roast_mock(analysis)
        else:
            raise ValueError(f"Unknown AI provider: {settings.ai_provider}")
    except (RoastError, ValueError) as e:
        logger.warning("Roast generation failed, using fallback", error=str(e))
        return fallback_roast(analysis)


async def _roast_gemini(analysis: FeatureAnalysis) -> RoastContent:
    system_prompt, user_prompt = roast_prompts(analysis)
    response = await gemini.generate_content(
        settings.roast_model,
        [gemini.text_part(user_prompt)],
        system_instruction=system_prompt,
        json_response=True,
    )
    raw_text = gemini.extract_text(response)
    try:
        return RoastContent.model_validate(gemini.loads_json(raw_text))
    except (json.JSONDecodeError, ValidationError) as e:
        raise AnalysisError(
            ErrorCode.ROAST_FAILED,
            f"Roast returned invalid JSON: {str(e)[:120]}",
            raw_output=raw_text[:500],
        )


def _roast_mock(analysis: FeatureAnalysis) -> RoastContent:
    feature = analysis.features[0].feature_name.lower()
    return RoastContent(
        title="Captain Obvious",
        roast_text=f"That {feature} walked into the room a full minute before you did. "
        "Sculptors asked for hazard pay.",
        punchline="Collect them all, if you can stand to look.",
        figurine_name=f"Sir {analysis.features[0].feature_name}-a-lot",
    )


def fallback_roast(analysis: FeatureAnalysis = None) -> RoastContent:
    feature = "face"
    if analysis and analysis.features:
        feature = analysis.features[0].feature_name
    return RoastContent(
        title="The Roastee",
        roast_text=f"Meet someone who's got character written all over their {feature}! "
        "Their distinctive features are so memorable, we had to immortalize them "
        "in collectible form.",
        punchline="Now that's what I call unforgettable!",
        figurine_name="Unique One",
    )
