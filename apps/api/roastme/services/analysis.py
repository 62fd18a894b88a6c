"""
Feature Analysis Service: find the roastable features in an uploaded photo
"""

import asyncio
import json
import re

from pydantic import ValidationError
import structlog

from roastme.core.config import settings
from roastme.core.errors import AnalysisError, ErrorCode
from roastme.models.dto import AIFeature, AgeRange, FeatureAnalysis, Gender
from roastme.services import gemini
from roastme.services.prompts import analysis_prompts

logger = structlog.get_logger()


async def analyze_features(image_bytes: bytes, mime_type: str) -> FeatureAnalysis:
    """
    Run vision analysis on the photo

    Supports: Gemini, Mock
    """
    if settings.ai_provider == "gemini":
        return await _analyze_gemini(image_bytes, mime_type)
    elif settings.ai_provider == "mock":
        return await _analyze_mock(image_bytes, mime_type)
    else:
        raise ValueError(f"Unknown AI provider: {settings.ai_provider}")


async def _analyze_gemini(image_bytes: bytes, mime_type: str) -> FeatureAnalysis:
    system_prompt, user_prompt = analysis_prompts()
    response = await gemini.generate_content(
        settings.analysis_model,
        [gemini.text_part(user_prompt), gemini.inline_image_part(image_bytes, mime_type)],
        system_instruction=system_prompt,
        json_response=True,
    )
    return parse_analysis(gemini.extract_text(response))


def _clamp(value, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return min(high, max(low, number))


def _enum_value(value, enum_cls, separator: str, default):
    if not isinstance(value, str):
        return default.value
    normalized = re.sub(r"[\s_-]+", separator, value.strip().lower())
    valid = {member.value for member in enum_cls}
    return normalized if normalized in valid else default.value


def normalize_analysis(data: dict) -> dict:
    """
    Bring model output into range before validation: at most 8 features,
    confidence clamped to 1-10, exaggeration to 1-9, and unknown
    gender / age range values mapped to "unknown".
    """
    features = []
    for feature in data.get("features") or []:
        if not isinstance(feature, dict):
            continue
        feature = dict(feature)
        feature["confidence"] = _clamp(feature.get("confidence"), 1, 10, 5)
        feature["exaggeration_factor"] = _clamp(feature.get("exaggeration_factor"), 1, 9, 5)
        for field, limit in (("feature_name", 60), ("feature_value", 300)):
            if isinstance(feature.get(field), str):
                feature[field] = feature[field].strip()[:limit]
        features.append(feature)
    data["features"] = features[:8]

    if "gender" in data:
        data["gender"] = _enum_value(data["gender"], Gender, "-", Gender.unknown)
    if "age_range" in data:
        data["age_range"] = _enum_value(data["age_range"], AgeRange, "_", AgeRange.unknown)
    return data


def parse_analysis(raw_text: str) -> FeatureAnalysis:
    """Validate the model's JSON against FeatureAnalysis"""
    try:
        data = gemini.loads_json(raw_text)
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        return FeatureAnalysis.model_validate(normalize_analysis(data))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.warning("Feature analysis JSON invalid", error=str(e)[:200])
        raise AnalysisError(
            ErrorCode.ANALYSIS_FAILED,
            f"Feature analysis returned invalid JSON: {str(e)[:120]}",
            raw_output=raw_text[:500] if raw_text else None,
        )


async def _analyze_mock(image_bytes: bytes, mime_type: str) -> FeatureAnalysis:
    """Mock analysis for testing"""
    await asyncio.sleep(0)
    return FeatureAnalysis(
        features=[
            AIFeature(
                feature_name="Eyebrows",
                feature_value="Bold, expressive eyebrows with a life of their own",
                confidence=9,
                exaggeration_factor=8,
            ),
            AIFeature(
                feature_name="Smile",
                feature_value="Wide grin showing plenty of teeth",
                confidence=8,
                exaggeration_factor=7,
            ),
            AIFeature(
                feature_name="Hair",
                feature_value="Voluminous hair defying gravity",
                confidence=7,
                exaggeration_factor=6,
            ),
        ],
        character_style="pixar",
        dominant_color="teal",
        personality_traits=["confident", "playful"],
        gender=Gender.unknown,
        age_range=AgeRange.young_adult,
    )


def fallback_analysis() -> FeatureAnalysis:
    """Generic analysis used when the vision model cannot be reached"""
    return FeatureAnalysis(
        features=[
            AIFeature(
                feature_name="Eyes",
                feature_value="Distinctive eyes perfect for comedic exaggeration",
                confidence=8,
                exaggeration_factor=7,
            ),
            AIFeature(
                feature_name="Nose",
                feature_value="Prominent nose ready for hilarious oversizing",
                confidence=9,
                exaggeration_factor=8,
            ),
            AIFeature(
                feature_name="Expression",
                feature_value="Unique facial expression perfect for caricature",
                confidence=8,
                exaggeration_factor=7,
            ),
        ],
        character_style="caricature",
        dominant_color="vibrant",
        personality_traits=["roastable", "comedic", "exaggerated"],
        gender=Gender.unknown,
        age_range=AgeRange.adult,
    )
