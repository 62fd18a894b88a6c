"""
Generation Orchestrator
Photo -> feature analysis -> roast -> figurine image -> stored variants

Runs in FastAPI BackgroundTasks or a Celery worker. Every status write
goes through the status state machine; failures end in failed /
retry_failed with the error kept in generation_params.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from roastme.core.config import settings
from roastme.core.errors import (
    ErrorCode,
    InvalidTransitionError,
    RoastError,
    classify_error,
    get_retry_delay,
    is_recoverable_error,
)
from roastme.models.db import Character
from roastme.models.dto import FeatureAnalysis, GeneratedImages, GenerationStatus, RoastContent
from roastme.services.analysis import analyze_features, fallback_analysis
from roastme.services.image import generate_image
from roastme.services.og import build_composite_og_url, create_seo_slug, generate_og_metadata
from roastme.services.prompts import character_image_prompt, prompt_variant_index
from roastme.services.roast import generate_roast
from roastme.services.status import (
    RETRYABLE_STATES,
    apply_transition,
    current_status,
    next_attempt,
    transition,
)
from roastme.services.storage import storage_service

logger = structlog.get_logger()

T = TypeVar("T")

STORAGE_MAX_ATTEMPTS = 2


def user_retry_delay(error: Exception, attempt: int) -> float:
    """User-triggered retries back off linearly: 2s, 4s, 6s..."""
    return 2 * attempt


# ==================== Retry Wrapper ====================


async def run_with_retry(
    character_id: str,
    step_name: str,
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 1,
    timeout_sec: Optional[float] = None,
    delay_fn: Callable[[Exception, int], float] = get_retry_delay,
) -> T:
    """
    Run one pipeline step with timeout and retries

    Args:
        character_id: character being generated (logging)
        step_name: step name (logging, error message)
        fn: async callable to run
        max_attempts: total attempts including the first
        timeout_sec: per-attempt timeout
        delay_fn: seconds to wait after failed attempt n

    Returns:
        fn result

    Raises:
        RoastError: non-recoverable error, or every attempt failed
    """
    timeout_sec = timeout_sec or settings.ai_timeout
    last_exc: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            result = await asyncio.wait_for(fn(), timeout=timeout_sec)
            logger.info(
                "Step completed", character_id=character_id, step=step_name, attempt=attempt
            )
            return result

        except asyncio.TimeoutError:
            last_exc = RoastError(
                ErrorCode.GENERATION_TIMEOUT,
                f"{step_name} timed out after {timeout_sec}s",
            )
            logger.warning(
                "Step timeout",
                character_id=character_id,
                step=step_name,
                attempt=attempt,
                timeout=timeout_sec,
            )

        except Exception as e:
            last_exc = e
            if not is_recoverable_error(e):
                logger.error(
                    "Non-recoverable error",
                    character_id=character_id,
                    step=step_name,
                    attempt=attempt,
                    error=str(e),
                )
                if isinstance(e, RoastError):
                    raise
                raise RoastError(ErrorCode.NON_RECOVERABLE, str(e)) from e

            logger.warning(
                "Step failed",
                character_id=character_id,
                step=step_name,
                attempt=attempt,
                error_code=classify_error(e).value,
                error=str(e),
            )

        if attempt < max_attempts:
            delay = delay_fn(last_exc, attempt)
            logger.info(
                "Retrying step",
                character_id=character_id,
                step=step_name,
                next_attempt=attempt + 1,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)

    message = last_exc.message if isinstance(last_exc, RoastError) else str(last_exc)
    raise RoastError(
        classify_error(last_exc),
        f"{step_name} failed after {max_attempts} attempts: {message}",
    ) from last_exc


# ==================== DB Helpers ====================


async def load_character(session: AsyncSession, character_id: str) -> Optional[Character]:
    result = await session.execute(select(Character).where(Character.id == character_id))
    return result.scalar_one_or_none()


async def start_generating(character_id: str) -> Optional[Character]:
    """pending -> generating. Returns None when the character should not run."""
    from roastme.core.database import AsyncSessionLocal

    async with AsyncSessionLocal() as session:
        character = await load_character(session, character_id)
        if character is None:
            logger.error("Character not found", character_id=character_id)
            return None

        status = current_status(character.generation_params)
        if status == GenerationStatus.pending:
            apply_transition(character, GenerationStatus.generating)
            await session.commit()
        elif status != GenerationStatus.generating:
            logger.info(
                "Character not awaiting generation, skipping",
                character_id=character_id,
                status=status.value,
            )
            return None
        return character


async def save_analysis(
    character_id: str, analysis: FeatureAnalysis, roast: RoastContent
) -> str:
    """Persist analysis, roast, slug and OG text. Returns the SEO slug."""
    from roastme.core.database import AsyncSessionLocal

    async with AsyncSessionLocal() as session:
        character = await load_character(session, character_id)
        if character is None:
            raise RoastError(ErrorCode.UNKNOWN, f"Character {character_id} disappeared")

        og = generate_og_metadata(analysis, roast)
        if not character.seo_slug:
            character.seo_slug = create_seo_slug(
                [f.feature_name for f in analysis.features], analysis.character_style
            )
        character.ai_features_json = analysis.model_dump(mode="json")
        character.og_title = og.title
        character.og_description = og.description
        character.og_image_alt = og.image_alt

        params = dict(character.generation_params or {})
        params["style"] = analysis.character_style
        params["roast_content"] = roast.model_dump()
        character.generation_params = params

        await session.commit()
        return character.seo_slug


async def mark_completed(
    character_id: str, images: GeneratedImages, og_image_url: str
) -> bool:
    """
    Store the generated images and move to completed.

    False when the row already left generation (the job monitor timed it
    out meanwhile); the uploaded images are then left unreferenced.
    """
    from roastme.core.database import AsyncSessionLocal

    async with AsyncSessionLocal() as session:
        character = await load_character(session, character_id)
        if character is None:
            return False

        try:
            apply_transition(character, GenerationStatus.completed)
        except InvalidTransitionError:
            logger.warning(
                "Generated image discarded, character no longer in progress",
                character_id=character_id,
                status=character.status,
                error=(character.generation_params or {}).get("error"),
                model_url=images.original,
            )
            return False
        character.model_url = images.original
        character.thumbnail_url = images.thumbnail
        character.medium_url = images.medium
        character.og_image_url = og_image_url
        await session.commit()

    logger.info("Character completed", character_id=character_id)
    return True


async def mark_failed(character_id: str, target: GenerationStatus, message: str):
    """Move to failed / retry_failed, keeping the error for the status endpoint"""
    from roastme.core.database import AsyncSessionLocal

    async with AsyncSessionLocal() as session:
        character = await load_character(session, character_id)
        if character is None:
            return

        try:
            apply_transition(character, target, error=message[:500])
        except InvalidTransitionError as e:
            # job monitor may have already failed it
            logger.warning("Failure not recorded", character_id=character_id, error=str(e))
            return
        await session.commit()

    logger.error("Character failed", character_id=character_id, status=target.value, message=message)


async def claim_retry(db: AsyncSession, character: Character) -> int:
    """
    failed | retry_failed -> retrying with a conditional UPDATE on the status
    column, so two concurrent retries cannot both start.

    Returns:
        the new attempt number

    Raises:
        InvalidTransitionError: not retryable, or another retry won the race
    """
    observed = current_status(character.generation_params)
    attempt = next_attempt(character.generation_params)
    params = transition(
        character.generation_params,
        GenerationStatus.retrying,
        attempt=attempt,
        prompt_variant=prompt_variant_index(attempt),
    )

    result = await db.execute(
        update(Character)
        .where(
            Character.id == character.id,
            Character.status == observed.value,
            Character.status.in_([s.value for s in RETRYABLE_STATES]),
        )
        .values(status=params["status"], generation_params=params)
    )
    if not result.rowcount:
        await db.rollback()
        raise InvalidTransitionError(
            observed.value, GenerationStatus.retrying.value, reason="retry already in progress"
        )

    await db.commit()
    await db.refresh(character)
    return attempt


# ==================== Pipeline Steps ====================


async def analyze_step(character_id: str, image_bytes: bytes, mime_type: str) -> FeatureAnalysis:
    try:
        return await run_with_retry(
            character_id,
            "analyze_features",
            lambda: analyze_features(image_bytes, mime_type),
            max_attempts=settings.analysis_max_attempts,
            timeout_sec=settings.ai_timeout * 2,
        )
    except RoastError as e:
        if not settings.analysis_fallback_enabled or e.code == ErrorCode.NON_RECOVERABLE:
            raise
        logger.warning("Analysis failed, using fallback", character_id=character_id, error=str(e))
        return fallback_analysis()


async def generate_and_store(
    character_id: str,
    prompt: str,
    reference_image: bytes,
    reference_mime_type: str,
    max_attempts: int,
    delay_fn: Callable[[Exception, int], float] = get_retry_delay,
) -> GeneratedImages:
    image_bytes, mime_type = await run_with_retry(
        character_id,
        "image generation",
        lambda: generate_image(prompt, reference_image, reference_mime_type),
        max_attempts=max_attempts,
        timeout_sec=settings.ai_timeout * 3,
        delay_fn=delay_fn,
    )
    return await run_with_retry(
        character_id,
        "upload_images",
        lambda: storage_service.upload_generated(character_id, image_bytes, mime_type),
        max_attempts=STORAGE_MAX_ATTEMPTS,
    )


def composite_og_url(
    original_url: str,
    images: GeneratedImages,
    analysis: FeatureAnalysis,
    roast: Optional[RoastContent],
) -> str:
    return build_composite_og_url(
        original_url,
        images.original,
        analysis.character_style,
        [f.feature_name for f in analysis.features],
        punchline=roast.punchline if roast else None,
    )


# ==================== Main Orchestrator ====================


async def run_generation(character_id: str):
    """Full first-time generation for a character in pending/generating"""
    logger.info("Starting generation", character_id=character_id)

    try:
        character = await start_generating(character_id)
        if character is None:
            return
        original_url = character.original_image_url

        image_bytes, mime_type = await run_with_retry(
            character_id,
            "fetch_original",
            lambda: storage_service.download(original_url),
            max_attempts=STORAGE_MAX_ATTEMPTS,
        )

        analysis = await analyze_step(character_id, image_bytes, mime_type)
        roast = await generate_roast(analysis)
        await save_analysis(character_id, analysis, roast)

        prompt = character_image_prompt(analysis, roast)
        images = await generate_and_store(
            character_id,
            prompt,
            image_bytes,
            mime_type,
            max_attempts=settings.generation_max_attempts,
        )

        await mark_completed(
            character_id, images, composite_og_url(original_url, images, analysis, roast)
        )

    except RoastError as e:
        await mark_failed(character_id, GenerationStatus.failed, e.message)

    except Exception as e:
        logger.exception("Unexpected error in generation", character_id=character_id)
        await mark_failed(character_id, GenerationStatus.failed, str(e) or type(e).__name__)


async def retry_generation(character_id: str, attempt: int):
    """
    Regenerate the image for a character already moved to retrying.
    Analysis and roast are reused; the prompt switches to the variant
    for this attempt.
    """
    logger.info("Starting retry", character_id=character_id, attempt=attempt)

    try:
        from roastme.core.database import AsyncSessionLocal

        async with AsyncSessionLocal() as session:
            character = await load_character(session, character_id)
        if character is None:
            logger.error("Character not found", character_id=character_id)
            return
        if current_status(character.generation_params) != GenerationStatus.retrying:
            logger.info("Character not retrying, skipping", character_id=character_id)
            return

        original_url = character.original_image_url
        params = character.generation_params or {}
        roast = (
            RoastContent.model_validate(params["roast_content"])
            if params.get("roast_content")
            else None
        )

        image_bytes, mime_type = await run_with_retry(
            character_id,
            "fetch_original",
            lambda: storage_service.download(original_url),
            max_attempts=STORAGE_MAX_ATTEMPTS,
        )

        if character.ai_features_json:
            analysis = FeatureAnalysis.model_validate(character.ai_features_json)
        else:
            # first run failed before analysis finished
            analysis = await analyze_step(character_id, image_bytes, mime_type)
            roast = await generate_roast(analysis)
            await save_analysis(character_id, analysis, roast)

        prompt = character_image_prompt(analysis, roast, retry_attempt=attempt)
        images = await generate_and_store(
            character_id,
            prompt,
            image_bytes,
            mime_type,
            max_attempts=settings.retry_max_attempts,
            delay_fn=user_retry_delay,
        )

        await mark_completed(
            character_id, images, composite_og_url(original_url, images, analysis, roast)
        )

    except RoastError as e:
        await mark_failed(character_id, GenerationStatus.retry_failed, e.message)

    except Exception as e:
        logger.exception("Unexpected error in retry", character_id=character_id)
        await mark_failed(character_id, GenerationStatus.retry_failed, str(e) or type(e).__name__)
