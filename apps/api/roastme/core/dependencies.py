"""Common FastAPI dependencies."""
from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from roastme.core.database import get_db

ANON_COOKIE_NAME = "anon_user_id"

# users.id is String(80)
MIN_KEY_LENGTH = 10
MAX_KEY_LENGTH = 80


def get_user_key(
    x_user_key: Optional[str] = Header(None, description="User identification key"),
    anon_user_id: Optional[str] = Cookie(None, description="Anonymous session cookie"),
) -> str:
    """
    Resolve the caller's key from the X-User-Key header, falling back to
    the anonymous session cookie.

    Raises:
        HTTPException: If neither is present or the key length is out of range
    """
    user_key = x_user_key or anon_user_id
    if not user_key or not MIN_KEY_LENGTH <= len(user_key) <= MAX_KEY_LENGTH:
        raise HTTPException(status_code=400, detail="Invalid X-User-Key header")
    return user_key


async def get_current_user(
    user_key: str = Depends(get_user_key),
    db: AsyncSession = Depends(get_db),
):
    """Load the caller, creating an anonymous user on first contact."""
    from roastme.services.credits import credits_service

    return await credits_service.get_or_create_user(db, user_key)


def get_optional_user_key(
    x_user_key: Optional[str] = Header(None),
    anon_user_id: Optional[str] = Cookie(None),
) -> Optional[str]:
    """Caller key for public endpoints that show more to the owner."""
    user_key = x_user_key or anon_user_id
    if user_key and MIN_KEY_LENGTH <= len(user_key) <= MAX_KEY_LENGTH:
        return user_key
    return None


def get_idempotency_key(x_idempotency_key: Optional[str] = Header(None)) -> Optional[str]:
    """Extract idempotency key from header"""
    if x_idempotency_key:
        return x_idempotency_key.strip()[:80] or None
    return None
