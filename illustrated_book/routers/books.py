from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from illustrated_book.database import get_db
from illustrated_book.models import Image
from illustrated_book.routers.deps import get_page_cache
from illustrated_book.schemas import BookRead, ImageRead, PageRead, parse_image_metadata
from illustrated_book.services import books as book_service
from illustrated_book.services import image_store
from illustrated_book.services.content import (
    PageContent,
    canonical_redirect,
    default_sources,
    parse_section_pages,
    resolve_page,
)
from illustrated_book.services.page_cache import TimedCache, page_cache_key
from illustrated_book.settings import Settings, get_settings
from illustrated_book.utils import page_url, slugify

logger = logging.getLogger(__name__)

router = APIRouter()


async def image_read(image: Image, settings: Settings) -> ImageRead:
    return ImageRead(
        id=image.id,
        book_id=image.book_id,
        chapter_id=image.chapter_id,
        page_number=image.page_number,
        prompt=image.prompt,
        created_at=image.created_at,
        image_url=await image_store.resolve_image_url(image, settings),
        metadata=parse_image_metadata(image.meta),
    )


async def load_page(db: AsyncSession, cache: TimedCache, settings: Settings, book_id: int,
                    chapter_id: int, page_id: int) -> tuple[Optional[PageContent], bool]:
    """Page content from the session cache, else from the content sources."""
    key = page_cache_key(book_id, chapter_id, page_id)
    cached = cache.get(key)
    if isinstance(cached, dict):
        try:
            return PageContent(**cached), True
        except TypeError:
            logger.warning("Discarding unreadable page cache entry %s", key)
            cache.delete(key)

    page = await resolve_page(default_sources(db, settings.BOOKS_DIR), book_id, chapter_id, page_id)
    if page is not None and page.found:
        cache.set(key, asdict(page))
    return page, False


# ----------------------
# Book listing / details
# ----------------------

@router.get("/api/books")
async def list_books(selected: Optional[str] = Query(default=None), db: AsyncSession = Depends(get_db)):
    books = await book_service.list_books(db)
    items = [
        BookRead.model_validate(b).model_copy(update={"slug": slugify(b.title)}).model_dump(mode="json")
        for b in books
    ]
    return JSONResponse({"books": items, "selected": selected})


@router.get("/api/books/{book_id}")
async def book_details(book_id: int, db: AsyncSession = Depends(get_db),
                       settings: Settings = Depends(get_settings)):
    doc = await book_service.load_book_document(book_id, settings.BOOKS_DIR)
    if doc:
        chapters = [
            {
                "id": i,
                "index": c.index,
                "title": c.title,
                "slug": slugify(c.title),
                "page_count": len(c.pages),
                "url": page_url(book_id, doc.title, i, c.title, 1),
            }
            for i, c in enumerate(doc.chapters, start=1)
        ]
        return {
            "id": book_id,
            "title": doc.title,
            "slug": slugify(doc.title),
            "published": doc.published.isoformat() if doc.published else None,
            "source": "json",
            "chapters": chapters,
        }

    book = await book_service.get_book(db, book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    sections = await book_service.get_book_sections(db, book_id)
    chapters = []
    for s in sections:
        if s.parent_id is not None:
            continue
        pages = parse_section_pages(s.content)
        chapters.append({
            "id": s.id,
            "index": s.id,
            "title": s.title,
            "slug": slugify(s.title),
            "page_count": len(pages) if pages else (1 if s.content else 0),
            "url": page_url(book_id, book.title, s.id, s.title, 1),
        })
    return {
        "id": book.id,
        "title": book.title,
        "slug": slugify(book.title),
        "author": book.author_name,
        "published": book.created_at.isoformat() if book.created_at else None,
        "source": "sections",
        "chapters": chapters,
    }


@router.get("/api/books/{book_id}/chapters/{chapter_index}")
async def chapter_details(book_id: int, chapter_index: int, settings: Settings = Depends(get_settings)):
    chapter = await book_service.get_chapter_by_index(book_id, chapter_index, settings.BOOKS_DIR)
    if not chapter:
        raise HTTPException(status_code=404, detail="Chapter not found")
    return {
        "book_id": book_id,
        "index": chapter.index,
        "title": chapter.title,
        "slug": slugify(chapter.title),
        "pages": chapter.pages,
    }


@router.get("/api/books/{book_id}/images")
async def book_images(book_id: int, chapter_id: Optional[int] = Query(default=None),
                      db: AsyncSession = Depends(get_db), settings: Settings = Depends(get_settings)):
    if chapter_id is None:
        images = await image_store.get_images_for_book(db, book_id)
    else:
        images = await image_store.get_images_for_chapter(db, book_id, chapter_id)
    return {"images": [(await image_read(i, settings)).model_dump(mode="json") for i in images]}


# ----------------------
# Page reader
# ----------------------

@router.get("/books/{book_id}/{book_slug}/{chapter_id}/{chapter_slug}/{page_id}", name="book_page")
async def book_page(
    book_id: int,
    book_slug: str,
    chapter_id: int,
    chapter_slug: str,
    page_id: int,
    db: AsyncSession = Depends(get_db),
    cache: TimedCache = Depends(get_page_cache),
    settings: Settings = Depends(get_settings),
):
    page, from_cache = await load_page(db, cache, settings, book_id, chapter_id, page_id)
    if page is None:
        raise HTTPException(status_code=404, detail="Book not found")

    target = canonical_redirect(page, book_slug, chapter_slug)
    if target:
        logger.info("Slug mismatch for %s/%s, redirecting to %s", book_slug, chapter_slug, target)
        return RedirectResponse(url=target, status_code=307)

    image = None
    if settings.IMAGES_GENERATE and page.paragraphs:
        existing = await image_store.get_existing_image(db, book_id, chapter_id, page_id)
        if existing:
            image = await image_read(existing, settings)

    return PageRead(
        book_id=book_id,
        book_title=page.book_title,
        chapter_id=chapter_id,
        chapter_title=page.chapter_title,
        page_id=page_id,
        page_count=page.page_count,
        paragraphs=page.paragraphs or [],
        url=page.url,
        image=image,
        from_cache=from_cache,
    ).model_dump(mode="json")
