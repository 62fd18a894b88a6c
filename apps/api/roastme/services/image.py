"""
Image Generation Service: figurine images from the Gemini image model
"""

import asyncio
import io
from typing import Optional

from PIL import Image, ImageDraw
import structlog

from roastme.core.config import settings
from roastme.core.errors import ImageGenerationError, ErrorCode
from roastme.services import gemini

logger = structlog.get_logger()

# Bound concurrent calls to the image model from this process
_image_semaphore: Optional[asyncio.Semaphore] = None


def _get_semaphore() -> asyncio.Semaphore:
    global _image_semaphore
    if _image_semaphore is None:
        _image_semaphore = asyncio.Semaphore(settings.image_max_concurrent)
    return _image_semaphore


async def generate_image(
    prompt: str,
    reference_image: Optional[bytes] = None,
    reference_mime_type: str = "image/jpeg",
) -> tuple[bytes, str]:
    """
    Generate a figurine image

    Returns:
        (image bytes, mime type)
    """
    async with _get_semaphore():
        if settings.ai_provider == "gemini":
            return await _generate_gemini(prompt, reference_image, reference_mime_type)
        elif settings.ai_provider == "mock":
            return await _generate_mock(prompt)
        else:
            raise ValueError(f"Unknown AI provider: {settings.ai_provider}")


async def _generate_gemini(
    prompt: str, reference_image: Optional[bytes], reference_mime_type: str
) -> tuple[bytes, str]:
    parts = [gemini.text_part(prompt)]
    if reference_image:
        parts.append(gemini.inline_image_part(reference_image, reference_mime_type))

    try:
        response = await gemini.generate_content(settings.image_model, parts)
    except ImageGenerationError:
        raise
    except Exception as e:
        code = getattr(e, "code", ErrorCode.GENERATION_FAILED)
        raise ImageGenerationError(code, str(getattr(e, "message", e)))

    image = gemini.extract_image(response)
    if image is None:
        finish_reason = None
        candidates = response.get("candidates") or []
        if candidates:
            finish_reason = candidates[0].get("finishReason")
        logger.warning("No image data in Gemini response", finish_reason=finish_reason)
        if finish_reason in ("SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY"):
            raise ImageGenerationError(
                ErrorCode.NON_RECOVERABLE,
                f"Image blocked by content_policy ({finish_reason})",
            )
        raise ImageGenerationError(
            ErrorCode.NO_IMAGE_RETURNED, "No image data found in response"
        )
    return image


async def _generate_mock(prompt: str) -> tuple[bytes, str]:
    """Mock image generation for testing"""
    await asyncio.sleep(0)
    canvas = Image.new("RGB", (512, 512), (32, 160, 160))
    draw = ImageDraw.Draw(canvas)
    draw.ellipse((156, 96, 356, 296), fill=(250, 210, 170))
    draw.rectangle((196, 296, 316, 456), fill=(240, 120, 40))
    buffer = io.BytesIO()
    canvas.save(buffer, format="PNG")
    return buffer.getvalue(), "image/png"
