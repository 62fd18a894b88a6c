from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from typing import Optional
import uuid
import structlog

from roastme.core.config import settings
from roastme.core.database import get_db
from roastme.core.dependencies import (
    get_current_user,
    get_idempotency_key,
    get_optional_user_key,
    get_user_key,
)
from roastme.core.error_messages import format_error_for_toast
from roastme.core.errors import InvalidTransitionError, StorageError
from roastme.core.exceptions import (
    APIError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentRequiredError,
    UnprocessableError,
    ValidationError,
)
from roastme.models.db import Character, ImageUpload, User
from roastme.models.dto import (
    CharacterListResponse,
    CharacterResponse,
    CharacterStatusResponse,
    CharacterSummary,
    CreateCharacterResponse,
    FeatureAnalysis,
    GenerationStatus,
    LikeResponse,
    RetryResponse,
    RoastContent,
)
from roastme.services.credits import credits_service
from roastme.services.orchestrator import claim_retry, retry_generation, run_generation
from roastme.services.status import (
    FAILURE_STATES,
    RETRYABLE_STATES,
    apply_transition,
    current_attempt,
    current_status,
)
from roastme.services.storage import (
    check_url_allowed,
    key_from_url,
    sniff_image,
    storage_service,
)

logger = structlog.get_logger()

router = APIRouter()


def dispatch_generation(background_tasks: BackgroundTasks, character_id: str):
    """Start the pipeline (Celery or FastAPI BackgroundTasks)"""
    if settings.use_celery:
        from roastme.services.tasks import generate_character_task
        generate_character_task.delay(character_id)
    else:
        background_tasks.add_task(run_generation, character_id)


def dispatch_retry(background_tasks: BackgroundTasks, character_id: str, attempt: int):
    if settings.use_celery:
        from roastme.services.tasks import retry_character_task
        retry_character_task.delay(character_id, attempt)
    else:
        background_tasks.add_task(retry_generation, character_id, attempt)


def show_signup_prompt(user: User) -> bool:
    return user.is_anonymous and user.images_created >= settings.signup_prompt_threshold


async def get_character_or_404(db: AsyncSession, character_id: str) -> Character:
    result = await db.execute(select(Character).where(Character.id == character_id))
    character = result.scalar_one_or_none()
    if not character:
        raise NotFoundError("Character", character_id)
    return character


def roast_of(character: Character) -> Optional[RoastContent]:
    roast = (character.generation_params or {}).get("roast_content")
    return RoastContent.model_validate(roast) if roast else None


def to_response(character: Character) -> CharacterResponse:
    analysis = None
    if character.ai_features_json:
        analysis = FeatureAnalysis.model_validate(character.ai_features_json)

    return CharacterResponse(
        id=character.id,
        status=current_status(character.generation_params),
        seo_slug=character.seo_slug,
        original_image_url=character.original_image_url,
        model_url=character.model_url,
        thumbnail_url=character.thumbnail_url,
        medium_url=character.medium_url,
        og_image_url=character.og_image_url,
        og_title=character.og_title,
        og_description=character.og_description,
        og_image_alt=character.og_image_alt,
        analysis=analysis,
        roast=roast_of(character),
        is_public=character.is_public,
        view_count=character.view_count or 0,
        like_count=character.like_count or 0,
        created_at=character.created_at,
    )


def to_summary(character: Character) -> CharacterSummary:
    roast = roast_of(character)
    return CharacterSummary(
        id=character.id,
        status=current_status(character.generation_params),
        seo_slug=character.seo_slug,
        thumbnail_url=character.thumbnail_url,
        model_url=character.model_url,
        title=roast.title if roast else character.og_title,
        view_count=character.view_count or 0,
        like_count=character.like_count or 0,
        created_at=character.created_at,
    )


async def read_upload(file: UploadFile) -> tuple[bytes, str]:
    """Read and validate an uploaded photo. Returns (bytes, sniffed MIME type)."""
    if file.content_type and not file.content_type.startswith("image/"):
        raise ValidationError(
            f"Unsupported file type: {file.content_type}", toast_key="invalid_image"
        )

    data = await file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise APIError(
            status_code=413,
            error_code="IMAGE_TOO_LARGE",
            message=f"Image exceeds {settings.max_upload_bytes // (1024 * 1024)}MB",
            toast_key="image_too_large",
        )

    mime_type = sniff_image(data)
    if not mime_type:
        raise ValidationError("File is not a readable image", toast_key="invalid_image")
    return data, mime_type


@router.post("", response_model=CreateCharacterResponse, status_code=202)
async def create_character(
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    image_url: Optional[str] = Form(None),
    is_public: bool = Form(True),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
):
    """
    Upload a photo and start generation

    - Processed in the background; poll GET /v1/characters/{id}/status
    - Costs 1 credit on the free plan
    - A repeated X-Idempotency-Key returns the existing character
    """
    if idempotency_key:
        result = await db.execute(
            select(Character).where(
                Character.user_id == user.id,
                Character.idempotency_key == idempotency_key,
            )
        )
        existing = result.scalar_one_or_none()
        if existing:
            return CreateCharacterResponse(
                id=existing.id,
                status=current_status(existing.generation_params),
                credits_remaining=user.credits,
                show_signup_prompt=show_signup_prompt(user),
            )

    if not await credits_service.has_credits(db, user):
        raise PaymentRequiredError(details={"credits": user.credits})

    upload = None
    if file is not None:
        data, mime_type = await read_upload(file)
        try:
            original_url = await storage_service.upload_original(user.id, data, mime_type)
        except StorageError as e:
            logger.error("Original upload failed", user_id=user.id, error=str(e))
            raise APIError(
                status_code=502,
                error_code="STORAGE_ERROR",
                message="Failed to store the uploaded image",
            )
        upload = ImageUpload(
            id=str(uuid.uuid4()),
            user_id=user.id,
            file_url=original_url,
            file_name=(file.filename or "")[:255] or None,
            file_size=len(data),
            mime_type=mime_type,
        )
        db.add(upload)
    elif image_url:
        image_url = image_url.strip()
        if not image_url.startswith(("http://", "https://")):
            raise ValidationError("image_url must be an http(s) URL", toast_key="invalid_image")
        if key_from_url(image_url) is None and not await check_url_allowed(image_url):
            raise ValidationError("image_url host is not allowed", toast_key="invalid_image")
        original_url = image_url
    else:
        raise ValidationError("Either file or image_url is required", toast_key="invalid_image")

    character_id = str(uuid.uuid4())
    character = Character(
        id=character_id,
        user_id=user.id,
        upload_id=upload.id if upload else None,
        original_image_url=original_url,
        generation_params={"status": GenerationStatus.pending.value, "attempt": 0},
        status=GenerationStatus.pending.value,
        idempotency_key=idempotency_key,
        is_public=is_public,
        view_count=0,
        like_count=0,
    )
    apply_transition(character, GenerationStatus.generating)
    db.add(character)

    charged = await credits_service.charge_generation(
        db, user, reference_id=character_id, commit=False
    )
    if not charged:
        await db.rollback()
        raise PaymentRequiredError(details={"credits": 0})

    try:
        await db.commit()
    except IntegrityError:
        # same idempotency key raced in from another request
        await db.rollback()
        await db.refresh(user)
        result = await db.execute(
            select(Character).where(
                Character.user_id == user.id,
                Character.idempotency_key == idempotency_key,
            )
        )
        existing = result.scalar_one_or_none()
        if not existing:
            raise
        return CreateCharacterResponse(
            id=existing.id,
            status=current_status(existing.generation_params),
            credits_remaining=user.credits,
            show_signup_prompt=show_signup_prompt(user),
        )

    logger.info(
        "Character created",
        character_id=character_id,
        user_id=user.id[:8] + "...",
        credits_remaining=user.credits,
    )

    dispatch_generation(background_tasks, character_id)

    return CreateCharacterResponse(
        id=character_id,
        status=GenerationStatus.generating,
        credits_remaining=user.credits,
        show_signup_prompt=show_signup_prompt(user),
    )


@router.get("", response_model=CharacterListResponse)
async def list_my_characters(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user_key: str = Depends(get_user_key),
):
    """The caller's characters, newest first"""
    total = await db.scalar(
        select(func.count(Character.id)).where(Character.user_id == user_key)
    )
    result = await db.execute(
        select(Character)
        .where(Character.user_id == user_key)
        .order_by(Character.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return CharacterListResponse(
        characters=[to_summary(c) for c in result.scalars().all()],
        total=total or 0,
        limit=limit,
        offset=offset,
    )


@router.get("/by-slug/{slug}", response_model=CharacterResponse)
async def get_character_by_slug(
    slug: str,
    db: AsyncSession = Depends(get_db),
    user_key: Optional[str] = Depends(get_optional_user_key),
):
    """Character page data; counts a view"""
    result = await db.execute(select(Character).where(Character.seo_slug == slug))
    character = result.scalar_one_or_none()
    if not character or (not character.is_public and character.user_id != user_key):
        raise NotFoundError("Character", slug)

    await db.execute(
        update(Character)
        .where(Character.id == character.id)
        .values(view_count=Character.view_count + 1)
    )
    await db.commit()
    await db.refresh(character)
    return to_response(character)


@router.get("/{character_id}/status", response_model=CharacterStatusResponse)
async def get_character_status(
    character_id: str,
    db: AsyncSession = Depends(get_db),
):
    """
    Generation status for client polling

    Reads the row fresh; the pipeline writes from its own session.
    """
    result = await db.execute(
        select(Character)
        .where(Character.id == character_id)
        .execution_options(populate_existing=True)
    )
    character = result.scalar_one_or_none()
    if not character:
        raise NotFoundError("Character", character_id)

    params = character.generation_params or {}
    status = current_status(params)
    error = params.get("error") if status in FAILURE_STATES else None

    return CharacterStatusResponse(
        id=character.id,
        status=status,
        attempt=current_attempt(params),
        error=error,
        toast=format_error_for_toast(error) if error else None,
        seo_slug=character.seo_slug,
        model_url=character.model_url,
        thumbnail_url=character.thumbnail_url,
        medium_url=character.medium_url,
        og_image_url=character.og_image_url,
        updated_at=character.updated_at,
    )


@router.get("/{character_id}", response_model=CharacterResponse)
async def get_character(
    character_id: str,
    db: AsyncSession = Depends(get_db),
    user_key: Optional[str] = Depends(get_optional_user_key),
):
    character = await get_character_or_404(db, character_id)
    if not character.is_public and character.user_id != user_key:
        raise NotFoundError("Character", character_id)
    return to_response(character)


@router.post("/{character_id}/like", response_model=LikeResponse)
async def like_character(
    character_id: str,
    db: AsyncSession = Depends(get_db),
):
    character = await get_character_or_404(db, character_id)
    if not character.is_public:
        raise NotFoundError("Character", character_id)

    await db.execute(
        update(Character)
        .where(Character.id == character_id)
        .values(like_count=Character.like_count + 1)
    )
    await db.commit()
    await db.refresh(character)
    return LikeResponse(id=character.id, like_count=character.like_count)


@router.post("/{character_id}/retry", response_model=RetryResponse, status_code=202)
async def retry_character(
    character_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    user_key: str = Depends(get_user_key),
):
    """
    Regenerate a failed character with the next prompt variant

    - Only failed / retry_failed characters can be retried
    - Concurrent retries: the loser gets 409
    """
    character = await get_character_or_404(db, character_id)
    if character.user_id != user_key:
        raise AuthorizationError()

    status = current_status(character.generation_params)
    if status not in RETRYABLE_STATES:
        raise ConflictError(
            f"Character cannot be retried while {status.value}",
            details={"status": status.value},
        )
    if not (character.ai_features_json or {}).get("features"):
        raise UnprocessableError("Character missing AI features data")

    try:
        attempt = await claim_retry(db, character)
    except InvalidTransitionError as e:
        raise ConflictError(e.message, details=e.details)

    logger.info("Retry started", character_id=character_id, attempt=attempt)
    dispatch_retry(background_tasks, character_id, attempt)

    return RetryResponse(id=character_id, status=GenerationStatus.retrying, attempt=attempt)
