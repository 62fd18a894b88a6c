from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import structlog

from roastme.core.database import get_db
from roastme.core.exceptions import ConflictError, ValidationError
from roastme.models.db import WaitlistEntry
from roastme.models.dto import (
    WaitlistCountResponse,
    WaitlistRequest,
    WaitlistResponse,
    is_valid_email,
)

logger = structlog.get_logger()

router = APIRouter()


@router.post("", response_model=WaitlistResponse, status_code=201)
async def join_waitlist(
    request: WaitlistRequest,
    db: AsyncSession = Depends(get_db),
):
    if not is_valid_email(request.email):
        raise ValidationError("Please enter a valid email address")

    existing = await db.execute(
        select(WaitlistEntry.id).where(WaitlistEntry.email == request.email)
    )
    if existing.scalar_one_or_none() is not None:
        raise ConflictError("This email is already on the waitlist")

    entry = WaitlistEntry(email=request.email, source=request.source.value)
    db.add(entry)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("This email is already on the waitlist")

    logger.info("Waitlist signup", entry_id=entry.id, source=entry.source)
    return WaitlistResponse(id=entry.id)


@router.get("/count", response_model=WaitlistCountResponse)
async def waitlist_count(db: AsyncSession = Depends(get_db)):
    count = await db.scalar(select(func.count(WaitlistEntry.id)))
    return WaitlistCountResponse(count=count or 0)
