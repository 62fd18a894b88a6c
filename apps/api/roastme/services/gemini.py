"""
Gemini REST client shared by analysis, roast and image generation
"""

import base64
import json
from typing import Optional

import httpx
import structlog

from roastme.core.config import settings
from roastme.core.errors import ErrorCode, RoastError, is_recoverable_error

logger = structlog.get_logger()


def text_part(text: str) -> dict:
    return {"text": text}


def inline_image_part(data: bytes, mime_type: str) -> dict:
    return {
        "inlineData": {
            "mimeType": mime_type,
            "data": base64.b64encode(data).decode("ascii"),
        }
    }


def _error_code_for_status(status_code: int, body: str) -> ErrorCode:
    if status_code == 429:
        return ErrorCode.RATE_LIMITED
    if status_code in (502, 503, 504):
        return ErrorCode.UPSTREAM_UNAVAILABLE
    if status_code in (401, 403) or not is_recoverable_error(body):
        return ErrorCode.NON_RECOVERABLE
    return ErrorCode.GENERATION_FAILED


async def generate_content(
    model: str,
    parts: list[dict],
    system_instruction: Optional[str] = None,
    json_response: bool = False,
    timeout: Optional[float] = None,
) -> dict:
    """
    POST models/{model}:generateContent and return the decoded body

    Raises:
        RoastError: with a code the retry loop can classify
    """
    if not settings.gemini_api_key:
        raise RoastError(
            ErrorCode.NON_RECOVERABLE,
            "GEMINI_API_KEY is not set (invalid_api_key)",
        )

    payload: dict = {"contents": [{"role": "user", "parts": parts}]}
    if system_instruction:
        payload["systemInstruction"] = {"parts": [text_part(system_instruction)]}
    if json_response:
        payload["generationConfig"] = {"responseMimeType": "application/json"}

    url = f"{settings.gemini_base_url}/models/{model}:generateContent"
    try:
        async with httpx.AsyncClient(timeout=timeout or settings.ai_timeout) as client:
            response = await client.post(
                url,
                headers={
                    "x-goog-api-key": settings.gemini_api_key,
                    "Content-Type": "application/json",
                },
                json=payload,
            )
    except httpx.TimeoutException as e:
        raise RoastError(ErrorCode.GENERATION_TIMEOUT, f"Gemini request timeout: {e}")
    except httpx.HTTPError as e:
        raise RoastError(ErrorCode.GENERATION_FAILED, f"Gemini network error: {e}")

    if response.status_code != 200:
        body = response.text[:500]
        logger.error("Gemini API error", model=model, status=response.status_code, body=body)
        raise RoastError(
            _error_code_for_status(response.status_code, body),
            f"Gemini API error {response.status_code}: {body}",
        )

    return response.json()


def _parts(response: dict) -> list[dict]:
    candidates = response.get("candidates") or []
    if not candidates:
        return []
    return (candidates[0].get("content") or {}).get("parts") or []


def extract_text(response: dict) -> str:
    return "".join(part.get("text", "") for part in _parts(response))


def loads_json(text: str) -> dict:
    """Decode the JSON object a model returned as text (tolerates ``` fences)"""
    text = (text or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
    return json.loads(text)


def extract_image(response: dict) -> Optional[tuple[bytes, str]]:
    """Return (bytes, mime type) of the first inline image part, if any"""
    for part in _parts(response):
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return base64.b64decode(inline["data"]), mime_type
    return None
