# illustrated_book/services/image_store.py
"""Generated-image records and their local copies.

Rows live in ``images``; files live in ``{IMAGES_DIR}/{book_id}/`` named
``chapter-{chapter}_page-{page}.png``. Nothing here raises to the caller:
lookups degrade to None/[] and writes report a boolean.
"""
from __future__ import annotations

import io
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import quote

import httpx
from PIL import Image as PILImage, UnidentifiedImageError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from illustrated_book.background import run_sync
from illustrated_book.models import Image
from illustrated_book.schemas import ImageMetadata, parse_image_metadata
from illustrated_book.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ("png", "jpg", "jpeg", "webp")
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
# chapter-1_page-2.png, chapter-1_page-2_20250101T120000Z.jpg, ...
LEGACY_NAME_RE = re.compile(r"^chapter-(\d+)_page-(\d+).*\.(png|jpg|jpeg|webp)$", re.IGNORECASE)


def canonical_filename(chapter_id: int, page_number: int, ext: str = "png") -> str:
    return f"chapter-{chapter_id}_page-{page_number}.{ext}"


def book_images_dir(book_id: int, settings: Optional[Settings] = None) -> Path:
    cfg = settings or default_settings
    return Path(cfg.IMAGES_DIR) / str(book_id)


def public_url(book_id: int, filename: str, settings: Optional[Settings] = None) -> str:
    cfg = settings or default_settings
    return f"{cfg.IMAGES_URL_PREFIX.rstrip('/')}/{book_id}/{quote(filename)}"


# ---------- local files ----------

def find_local_image(folder: Path, chapter_id: int, page_number: int) -> Optional[Path]:
    """Canonical names first (png preferred), then legacy names with exact numbers."""
    if not folder.is_dir():
        return None
    for ext in IMAGE_EXTENSIONS:
        candidate = folder / canonical_filename(chapter_id, page_number, ext)
        if candidate.is_file():
            return candidate
    for path in sorted(folder.iterdir()):
        m = LEGACY_NAME_RE.match(path.name)
        if not m or not path.is_file():
            continue
        if int(m.group(1)) == chapter_id and int(m.group(2)) == page_number:
            return path
    return None


def resolve_local_image(book_id: int, chapter_id: int, page_number: int,
                        settings: Optional[Settings] = None) -> Tuple[Optional[Path], Optional[str]]:
    """(local path, public url) for a page's image file, or (None, None)."""
    try:
        path = find_local_image(book_images_dir(book_id, settings), chapter_id, page_number)
    except OSError:
        logger.exception("Error resolving local image for book %s ch %s p %s", book_id, chapter_id, page_number)
        return None, None
    if path is None:
        return None, None
    return path, public_url(book_id, path.name, settings)


async def resolve_image_url(image: Image, settings: Optional[Settings] = None) -> Optional[str]:
    """Local copy when present, otherwise the remote URL kept in the metadata."""
    _, url = await run_sync(resolve_local_image, image.book_id, image.chapter_id, image.page_number, settings)
    if url:
        return url
    return parse_image_metadata(image.meta).image_url


def _to_png(data: bytes) -> bytes:
    if data.startswith(PNG_SIGNATURE):
        return data
    try:
        with PILImage.open(io.BytesIO(data)) as im:
            buf = io.BytesIO()
            im.save(buf, format="PNG")
            return buf.getvalue()
    except (UnidentifiedImageError, OSError):
        logger.warning("Downloaded image could not be decoded; saving bytes unchanged")
        return data


def _write_image(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".part")
    tmp.write_bytes(_to_png(data))
    tmp.replace(path)


async def save_image_file(
    book_id: int,
    chapter_id: int,
    page_number: int,
    image_url: str,
    *,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Tuple[bool, Optional[Path]]:
    cfg = settings or default_settings
    target = book_images_dir(book_id, cfg) / canonical_filename(chapter_id, page_number)
    try:
        async with httpx.AsyncClient(timeout=cfg.HTTP_TIMEOUT, transport=transport,
                                     follow_redirects=True) as client:
            r = await client.get(image_url)
            r.raise_for_status()
        await run_sync(_write_image, target, r.content)
    except Exception:
        logger.exception("Error saving image file locally from %s", image_url)
        return False, None
    return True, target


# ---------- database rows ----------

async def get_existing_image(db: AsyncSession, book_id: int, chapter_id: int,
                             page_number: int) -> Optional[Image]:
    """Newest row for the page; duplicates are resolved here, not prevented."""
    try:
        return (
            await db.execute(
                select(Image)
                .where(
                    Image.book_id == book_id,
                    Image.chapter_id == chapter_id,
                    Image.page_number == page_number,
                )
                .order_by(Image.created_at.desc(), Image.id.desc())
                .limit(1)
            )
        ).scalars().first()
    except Exception:
        logger.exception("Error retrieving existing image for book %s ch %s p %s",
                         book_id, chapter_id, page_number)
        return None


async def save_image(
    db: AsyncSession,
    book_id: int,
    chapter_id: int,
    page_number: int,
    prompt: str,
    image_url: str,
    model: str,
    model_version: Optional[str] = None,
    width: int = 1024,
    height: int = 1024,
    inference_steps: int = 20,
    guidance_scale: float = 7.5,
    negative_prompt: Optional[str] = None,
    *,
    download: bool = True,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Insert a new row, then try to keep a local copy of the picture.

    A failed download is logged and leaves the row in place; the remote URL
    in the metadata keeps serving until a local copy exists.
    """
    meta = ImageMetadata(
        image_url=image_url,
        model=model,
        model_version=model_version,
        width=width,
        height=height,
        inference_steps=inference_steps,
        guidance_scale=guidance_scale,
        negative_prompt=negative_prompt,
        generated_at=datetime.now(timezone.utc),
    )
    try:
        db.add(Image(
            book_id=book_id,
            chapter_id=chapter_id,
            page_number=page_number,
            prompt=prompt,
            meta=meta.to_json(),
        ))
        await db.commit()
    except Exception:
        logger.exception("Error saving image row for book %s ch %s p %s", book_id, chapter_id, page_number)
        await db.rollback()
        return False

    if download and image_url:
        saved, path = await save_image_file(book_id, chapter_id, page_number, image_url,
                                            settings=settings, transport=transport)
        if saved:
            logger.info("Image file saved locally at %s", path)
        else:
            logger.warning("Failed to save image file locally for book %s ch %s p %s",
                           book_id, chapter_id, page_number)

    logger.info("Image saved for book %s, chapter %s, page %s", book_id, chapter_id, page_number)
    return True


async def get_images_for_book(db: AsyncSession, book_id: int) -> List[Image]:
    try:
        rows = await db.execute(
            select(Image).where(Image.book_id == book_id).order_by(Image.chapter_id, Image.page_number)
        )
        return list(rows.scalars().all())
    except Exception:
        logger.exception("Error retrieving images for book %s", book_id)
        return []


async def get_images_for_chapter(db: AsyncSession, book_id: int, chapter_id: int) -> List[Image]:
    try:
        rows = await db.execute(
            select(Image)
            .where(Image.book_id == book_id, Image.chapter_id == chapter_id)
            .order_by(Image.page_number)
        )
        return list(rows.scalars().all())
    except Exception:
        logger.exception("Error retrieving images for book %s chapter %s", book_id, chapter_id)
        return []


async def delete_image(db: AsyncSession, image_id: int) -> bool:
    """Remove one row. The local file is left alone; other rows may share it."""
    try:
        image = await db.get(Image, image_id)
        if image is None:
            return False
        await db.delete(image)
        await db.commit()
        return True
    except Exception:
        logger.exception("Error deleting image %s", image_id)
        await db.rollback()
        return False
