"""
Prompt rendering for the vision, roast and image models
"""

from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader

from roastme.models.dto import AgeRange, FeatureAnalysis, Gender, RoastContent

# Jinja2 environment for prompt templates
PROMPTS_DIR = Path(__file__).parent.parent / "prompts"
jinja_env = Environment(loader=FileSystemLoader(PROMPTS_DIR))

# Escalating image prompts used by user-triggered retries
RETRY_PROMPT_VARIANTS = [
    "character_image_retry_1.jinja2",
    "character_image_retry_2.jinja2",
    "character_image_retry_3.jinja2",
]

MAX_FEATURES = 8


def render_prompt(template_name: str, **kwargs) -> str:
    """Render a prompt template with given variables"""
    template = jinja_env.get_template(template_name)
    return template.render(**kwargs)


def describe_features(analysis: FeatureAnalysis, with_exaggeration: bool = True) -> str:
    if with_exaggeration:
        parts = [
            f"{f.feature_name}: {f.feature_value} with {f.exaggeration_factor:g}/10 exaggeration"
            for f in analysis.features
        ]
    else:
        parts = [f"{f.feature_name}: {f.feature_value}" for f in analysis.features]
    return ", ".join(parts)


def analysis_prompts() -> tuple[str, str]:
    system_prompt = render_prompt(
        "analyze_features.system.jinja2",
        genders=[g.value for g in Gender],
        age_ranges=[a.value for a in AgeRange],
    )
    user_prompt = render_prompt("analyze_features.user.jinja2", max_features=MAX_FEATURES)
    return system_prompt, user_prompt


def roast_prompts(analysis: FeatureAnalysis) -> tuple[str, str]:
    system_prompt = render_prompt("generate_roast.system.jinja2")
    user_prompt = render_prompt(
        "generate_roast.user.jinja2",
        analysis=analysis.model_dump(mode="json"),
        feature_list=describe_features(analysis, with_exaggeration=False),
    )
    return system_prompt, user_prompt


def prompt_variant_index(attempt: int) -> int:
    """Retry attempt 1 -> variant 0, 2 -> 1, 3 and later -> 2"""
    return min(max(attempt, 1) - 1, len(RETRY_PROMPT_VARIANTS) - 1)


def character_image_prompt(
    analysis: FeatureAnalysis,
    roast: Optional[RoastContent] = None,
    retry_attempt: int = 0,
) -> str:
    """
    Build the image prompt. retry_attempt 0 is the first generation; user
    retries (1, 2, 3...) pick progressively different compositions.
    """
    if retry_attempt > 0:
        template_name = RETRY_PROMPT_VARIANTS[prompt_variant_index(retry_attempt)]
    else:
        template_name = "character_image.jinja2"

    return render_prompt(
        template_name,
        analysis=analysis.model_dump(mode="json"),
        roast=roast.model_dump() if roast else None,
        feature_list=describe_features(analysis),
    )
