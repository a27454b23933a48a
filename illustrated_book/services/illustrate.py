# illustrated_book/services/illustrate.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from illustrated_book.image_client import (
    ImageClient,
    ImageGenerationError,
    ImageGenerationFailed,
    ImageGenerationTimeout,
)
from illustrated_book.llm_client import PromptInputError, PromptServiceError, generate_prompt_with_retry
from illustrated_book.services import image_store
from illustrated_book.settings import Settings, settings as default_settings
from illustrated_book.utils import clean_page_text

logger = logging.getLogger(__name__)


@dataclass
class IllustrationResult:
    success: bool
    image_url: Optional[str] = None
    from_cache: bool = False
    prompt: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None  # input | prompt | failed | timeout | error | disabled

    def as_response(self) -> dict:
        return {
            "success": self.success,
            "imageUrl": self.image_url,
            "fromCache": self.from_cache,
            "prompt": self.prompt,
            "error": self.error,
            "errorKind": self.error_kind,
        }


def _failure(kind: str, message: str) -> IllustrationResult:
    return IllustrationResult(success=False, error=message, error_kind=kind)


async def cached_illustration(db: AsyncSession, book_id: int, chapter_id: int, page_id: int,
                              settings: Optional[Settings] = None) -> Optional[IllustrationResult]:
    existing = await image_store.get_existing_image(db, book_id, chapter_id, page_id)
    if existing is None:
        return None
    url = await image_store.resolve_image_url(existing, settings)
    if not url:
        logger.warning("Image %s has neither a local file nor a remote URL", existing.id)
        return None
    return IllustrationResult(success=True, image_url=url, from_cache=True, prompt=existing.prompt)


async def illustrate_page(
    db: AsyncSession,
    book_id: int,
    chapter_id: int,
    page_id: int,
    paragraphs: Optional[Sequence[str]],
    *,
    settings: Optional[Settings] = None,
    image_client: Optional[ImageClient] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> IllustrationResult:
    """Return the page's illustration, generating and storing one on a cache miss."""
    cfg = settings or default_settings
    if not cfg.IMAGES_GENERATE:
        return _failure("disabled", "Image generation is disabled")
    if not paragraphs:
        return _failure("input", "No page content found")

    cached = await cached_illustration(db, book_id, chapter_id, page_id, cfg)
    if cached:
        logger.info("Using existing image for book %s, chapter %s, page %s", book_id, chapter_id, page_id)
        return cached

    logger.info("No existing image, generating for book %s, chapter %s, page %s", book_id, chapter_id, page_id)
    text = clean_page_text(paragraphs)
    try:
        prompt = await generate_prompt_with_retry(
            text, fallback=cfg.PROMPT_FALLBACK_ENABLED, settings=cfg, transport=transport
        )
    except PromptInputError as e:
        return _failure("input", str(e))
    except PromptServiceError as e:
        logger.warning("Prompt generation failed: %s", e)
        return _failure("prompt", str(e))
    logger.info("Prompt: %s", prompt)

    client = image_client or ImageClient(settings=cfg, transport=transport)
    try:
        generated = await client.generate(prompt)
    except ImageGenerationTimeout as e:
        logger.warning("Image generation timed out: %s", e)
        return IllustrationResult(success=False, prompt=prompt, error=str(e), error_kind="timeout")
    except ImageGenerationFailed as e:
        logger.warning("Image generation failed (%s): %s", e.status, e.message)
        return IllustrationResult(success=False, prompt=prompt, error=e.message, error_kind="failed")
    except ImageGenerationError as e:
        logger.warning("Image generation error: %s", e)
        return IllustrationResult(success=False, prompt=prompt, error=str(e), error_kind="error")

    params = generated.params
    saved = await image_store.save_image(
        db,
        book_id=book_id,
        chapter_id=chapter_id,
        page_number=page_id,
        prompt=prompt,
        image_url=generated.url,
        model=generated.model,
        model_version=generated.model_version,
        width=params.width,
        height=params.height,
        inference_steps=params.num_inference_steps,
        guidance_scale=params.guidance_scale,
        negative_prompt=params.negative_prompt,
        download=False,
        settings=cfg,
    )
    if not saved:
        logger.warning("Failed to save image for book %s, chapter %s, page %s", book_id, chapter_id, page_id)

    # only a file written for this generation may stand in for the remote URL
    downloaded, path = await image_store.save_image_file(
        book_id, chapter_id, page_id, generated.url, settings=cfg, transport=transport
    )
    if not downloaded:
        logger.warning("Serving remote image for book %s, chapter %s, page %s", book_id, chapter_id, page_id)
        return IllustrationResult(success=True, image_url=generated.url, prompt=prompt)
    logger.info("Image file saved locally at %s", path)
    local_url = image_store.public_url(book_id, path.name, cfg)
    return IllustrationResult(success=True, image_url=local_url, prompt=prompt)
