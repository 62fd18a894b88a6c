"""
OG image endpoint: BEFORE/AFTER social preview card
"""
from fastapi import APIRouter, Query
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool
from typing import Optional
import structlog

from roastme.core.errors import StorageError
from roastme.services.og import render_composite
from roastme.services.storage import storage_service

logger = structlog.get_logger()

router = APIRouter()

CACHE_CONTROL = "public, max-age=31536000, immutable"


async def fetch_panel(url: Optional[str]) -> Optional[bytes]:
    """Image bytes for a panel; None renders the placeholder"""
    if not url:
        return None
    try:
        data, _ = await storage_service.download(url)
        return data
    except StorageError as e:
        logger.warning("OG panel fetch failed", url=url[:100], error=str(e))
        return None


@router.get("", response_class=Response)
async def og_image(
    original: Optional[str] = Query(None, max_length=1000),
    generated: Optional[str] = Query(None, max_length=1000),
    title: str = Query("AI Character", max_length=100),
    features: str = Query("", max_length=300),
    punchline: Optional[str] = Query(None, max_length=300),
):
    """Render the 1200x630 composite PNG"""
    original_bytes = await fetch_panel(original)
    generated_bytes = await fetch_panel(generated)

    png = await run_in_threadpool(
        render_composite,
        original_bytes,
        generated_bytes,
        title,
        [f for f in features.split(",") if f.strip()],
        punchline,
    )
    return Response(
        content=png,
        media_type="image/png",
        headers={"Cache-Control": CACHE_CONTROL},
    )
