import asyncio
import logging
from typing import Optional

import httpx

from illustrated_book.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

CAMERA_DIRECTIVES = (
    "Ask it to make the image photorealistic, taken from an odd angle, with a high dynamic range, "
    "very colourful. The photo should be taken with a Hasselblad H6D-400c medium format camera, "
    "using a Carl Zeiss Planar 80mm f/2.8 lens."
)

SYSTEM_PROMPT = (
    "You are an expert at creating detailed, artistic prompts for image generation. "
    "Your responses should be creative, descriptive, and optimized for AI image generation models."
)

USER_TEMPLATE = 'Using this text - "{text}", generate a prompt for the Flux Dev model. ' + CAMERA_DIRECTIVES

FALLBACK_TEMPLATE = (
    "A photorealistic image featuring {keywords}, with high dynamic range and vibrant colors, "
    "captured from an unusual angle using a Hasselblad H6D-400c medium format camera with a "
    "Carl Zeiss Planar 80mm f/2.8 lens."
)


class PromptServiceError(RuntimeError):
    pass


class PromptTransportError(PromptServiceError):
    """Network-level failure talking to the completion API; safe to retry."""


class PromptInputError(ValueError):
    pass


#----------prompt crafting---------------

def build_messages(text: str) -> list[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": USER_TEMPLATE.format(text=text)},
    ]


async def generate_image_prompt(
    text: str,
    *,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Ask the chat completion API to turn page text into an image prompt.
    Empty text is rejected before any request is made.
    """
    if not text or not text.strip():
        raise PromptInputError("Text input cannot be empty")

    cfg = settings or default_settings
    if not cfg.OPENAI_API_KEY:
        raise PromptServiceError("OPENAI_API_KEY is not configured")

    url = f"{cfg.OPENAI_BASE_URL.rstrip('/')}/chat/completions"
    payload = {
        "model": cfg.OPENAI_MODEL,
        "messages": build_messages(text.strip()),
        "max_tokens": cfg.PROMPT_MAX_TOKENS,
        "temperature": cfg.PROMPT_TEMPERATURE,
    }
    headers = {"Authorization": f"Bearer {cfg.OPENAI_API_KEY}"}

    try:
        async with httpx.AsyncClient(timeout=cfg.HTTP_TIMEOUT, transport=transport) as client:
            r = await client.post(url, json=payload, headers=headers)
    except httpx.TransportError as e:
        raise PromptTransportError(f"Completion request failed: {e}") from e

    if r.status_code >= 400:
        raise PromptServiceError(f"Completion API returned {r.status_code}: {r.text[:300]}")

    try:
        data = r.json()
    except ValueError as e:
        raise PromptServiceError("Completion API returned non-JSON body") from e

    try:
        content = (data or {}).get("choices", [])[0]["message"]["content"]
    except (AttributeError, IndexError, KeyError, TypeError) as e:
        raise PromptServiceError("Completion API response has no choices") from e

    out = (content or "").strip() if isinstance(content, str) else ""
    if not out:
        raise PromptServiceError("Empty response from completion API.")
    logger.debug("Generated image prompt (%d chars)", len(out))
    return out


#----------fallbacks------------

def extract_keywords(text: str, limit: int = 5) -> str:
    words = [w for w in (text or "").split() if len(w) > 3][:limit]
    return ", ".join(words) if words else "a beautiful scene"


def build_fallback_prompt(text: str) -> str:
    return FALLBACK_TEMPLATE.format(keywords=extract_keywords(text))


async def generate_prompt_with_retry(
    text: str,
    *,
    max_retries: Optional[int] = None,
    backoff: Optional[float] = None,
    fallback: bool = True,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Retry transport failures with exponential backoff; anything else is final.
    With ``fallback`` a keyword template is returned instead of raising.
    Empty input is never retried or replaced.
    """
    cfg = settings or default_settings
    attempts = max(1, max_retries if max_retries is not None else cfg.PROMPT_MAX_RETRIES)
    delay = cfg.PROMPT_RETRY_BACKOFF if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        try:
            return await generate_image_prompt(text, settings=cfg, transport=transport)
        except PromptTransportError as e:
            logger.warning("Prompt attempt %d/%d failed: %s", attempt, attempts, e)
            if attempt == attempts:
                if fallback:
                    return build_fallback_prompt(text)
                raise
            await asyncio.sleep(delay * (2 ** (attempt - 1)))
        except PromptServiceError as e:
            logger.warning("Non-retryable prompt error: %s", e)
            if fallback:
                return build_fallback_prompt(text)
            raise


async def check_prompt_service(*, settings: Optional[Settings] = None,
                               transport: Optional[httpx.AsyncBaseTransport] = None) -> bool:
    try:
        out = await generate_image_prompt("A beautiful sunset over mountains",
                                          settings=settings, transport=transport)
    except (PromptServiceError, PromptInputError):
        logger.exception("Prompt service check failed")
        return False
    return bool(out)
