from typing import Optional

import httpx
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from illustrated_book.database import get_db
from illustrated_book.routers.books import load_page
from illustrated_book.routers.deps import get_http_transport, get_page_cache
from illustrated_book.schemas import IllustrationResponse
from illustrated_book.services.illustrate import illustrate_page
from illustrated_book.services.page_cache import TimedCache
from illustrated_book.settings import Settings, get_settings

router = APIRouter(tags=["illustrations"])


@router.post("/books/{book_id}/{chapter_id}/{page_id}/illustration", response_model=IllustrationResponse)
async def generate_illustration(
    book_id: int,
    chapter_id: int,
    page_id: int,
    db: AsyncSession = Depends(get_db),
    cache: TimedCache = Depends(get_page_cache),
    settings: Settings = Depends(get_settings),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_http_transport),
):
    """Cached illustration for the page, generated first if there is none yet."""
    page, _ = await load_page(db, cache, settings, book_id, chapter_id, page_id)
    paragraphs = page.paragraphs if page else None
    result = await illustrate_page(
        db, book_id, chapter_id, page_id, paragraphs, settings=settings, transport=transport
    )
    return IllustrationResponse(**result.as_response())
