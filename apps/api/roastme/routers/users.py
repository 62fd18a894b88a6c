from fastapi import APIRouter, Cookie, Depends, Header, Response
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import uuid
import structlog

from roastme.core.config import settings
from roastme.core.database import get_db
from roastme.core.dependencies import (
    ANON_COOKIE_NAME,
    MAX_KEY_LENGTH,
    MIN_KEY_LENGTH,
    get_current_user,
)
from roastme.core.errors import ErrorCode, IdentityError
from roastme.core.exceptions import AuthenticationError, ConflictError, ValidationError
from roastme.core.identity import verify_identity_token
from roastme.models.db import User
from roastme.models.dto import (
    LinkAccountRequest,
    LinkAccountResponse,
    UserResponse,
    is_valid_email,
)
from roastme.services.credits import credits_service

logger = structlog.get_logger()

router = APIRouter()

COOKIE_MAX_AGE = 365 * 24 * 60 * 60


def set_session_cookie(response: Response, user_id: str):
    response.set_cookie(
        ANON_COOKIE_NAME,
        user_id,
        max_age=COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=not settings.debug,
    )


def to_user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        is_anonymous=user.is_anonymous,
        email=user.email,
        display_name=user.display_name,
        credits=user.credits,
        images_created=user.images_created,
        plan=user.plan,
    )


@router.post("/anonymous", response_model=UserResponse)
async def create_anonymous_user(
    response: Response,
    x_user_key: Optional[str] = Header(None),
    anon_user_id: Optional[str] = Cookie(None),
    db: AsyncSession = Depends(get_db),
):
    """Start (or resume) an anonymous session and set its cookie"""
    user_key = x_user_key or anon_user_id
    if not user_key or not MIN_KEY_LENGTH <= len(user_key) <= MAX_KEY_LENGTH:
        user_key = f"anon_{uuid.uuid4().hex}"

    user = await credits_service.get_or_create_user(db, user_key)
    set_session_cookie(response, user.id)
    return to_user_response(user)


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(get_current_user)):
    return to_user_response(user)


@router.post("/link", response_model=LinkAccountResponse)
async def link_account(
    request: LinkAccountRequest,
    response: Response,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Sign in: bind this session to the account the identity token proves,
    creating it on first sign-in, and move the anonymous session's
    characters and credits onto it.

    Without a token nothing is linked: 409 when the e-mail already has an
    account, 401 otherwise.
    """
    email = request.email.strip().lower()
    if not is_valid_email(email):
        raise ValidationError("Invalid email address")

    if not request.identity_token:
        if await credits_service.find_account(db, email=email):
            raise ConflictError(
                "An account already exists for this e-mail. Sign in to link it.",
                details={"code": ErrorCode.ACCOUNT_CONFLICT.value},
            )
        raise AuthenticationError("Verify your e-mail to link this session")

    try:
        identity = verify_identity_token(request.identity_token)
    except IdentityError as e:
        logger.warning("Identity token rejected", user_id=user.id, reason=e.message)
        raise AuthenticationError(e.message)

    if identity.email != email:
        raise ConflictError(
            "Identity token was issued for a different e-mail",
            details={"code": ErrorCode.ACCOUNT_CONFLICT.value},
        )

    try:
        account, migrated_characters, migrated_credits = await credits_service.link_account(
            db, user, identity, display_name=request.display_name
        )
    except IdentityError as e:
        raise ConflictError(e.message, details={"code": e.code.value})
    set_session_cookie(response, account.id)

    return LinkAccountResponse(
        user=to_user_response(account),
        migrated_characters=migrated_characters,
        migrated_credits=migrated_credits,
    )
