from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from roastme.core.database import get_db
from roastme.models.db import Character
from roastme.models.dto import CharacterListResponse, GenerationStatus
from roastme.routers.characters import to_summary

router = APIRouter()

RECENT_LIMIT = 12


def public_completed():
    return (
        Character.is_public.is_(True),
        Character.status == GenerationStatus.completed.value,
    )


@router.get("", response_model=CharacterListResponse)
async def list_gallery(
    limit: int = Query(24, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Public, finished characters, newest first"""
    total = await db.scalar(select(func.count(Character.id)).where(*public_completed()))
    result = await db.execute(
        select(Character)
        .where(*public_completed())
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


@router.get("/recent", response_model=CharacterListResponse)
async def recent_gallery(db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Character)
        .where(*public_completed(), Character.model_url.is_not(None))
        .order_by(Character.created_at.desc())
        .limit(RECENT_LIMIT)
    )
    characters = [to_summary(c) for c in result.scalars().all()]
    return CharacterListResponse(
        characters=characters, total=len(characters), limit=RECENT_LIMIT, offset=0
    )
