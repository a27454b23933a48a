from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from illustrated_book.database import get_db
from illustrated_book.image_client import ImageClient
from illustrated_book.llm_client import check_prompt_service
from illustrated_book.routers.deps import get_http_transport
from illustrated_book.schemas import BookCreate, BookRead, SectionContentUpdate, SectionCreate, SectionRead
from illustrated_book.services import books as book_service
from illustrated_book.services import image_store
from illustrated_book.settings import Settings, get_settings
from illustrated_book.utils import require_admin_token, slugify

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.delete("/images/{image_id}")
async def admin_delete_image(image_id: int, db: AsyncSession = Depends(get_db)):
    if not await image_store.delete_image(db, image_id):
        raise HTTPException(status_code=404, detail="Image not found")
    return {"ok": True, "deleted": image_id}


@router.post("/books", status_code=201)
async def admin_create_book(payload: BookCreate, db: AsyncSession = Depends(get_db)):
    book = await book_service.create_book(db, payload.title, payload.author_name, payload.author_id)
    return BookRead.model_validate(book).model_copy(update={"slug": slugify(book.title)})


@router.post("/books/{book_id}/sections", status_code=201)
async def admin_create_section(book_id: int, payload: SectionCreate, db: AsyncSession = Depends(get_db)):
    if not await book_service.get_book(db, book_id):
        raise HTTPException(status_code=404, detail="Book not found")
    section = await book_service.create_section(db, book_id, payload.title, payload.content, payload.parent_id)
    return SectionRead.model_validate(section)


@router.put("/sections/{section_id}/content")
async def admin_update_section(section_id: int, payload: SectionContentUpdate,
                               db: AsyncSession = Depends(get_db)):
    section = await book_service.get_section(db, section_id)
    if section is None:
        raise HTTPException(status_code=404, detail="Section not found")
    await book_service.update_section_content(db, section.id, payload.content)
    return SectionRead.model_validate(section)


@router.get("/health/services")
async def admin_service_health(
    settings: Settings = Depends(get_settings),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_http_transport),
):
    """Round-trips both external APIs. This spends real credits."""
    prompt_ok = await check_prompt_service(settings=settings, transport=transport)
    image_ok = await ImageClient(settings=settings, transport=transport).check()
    return {"prompt_service": prompt_ok, "image_service": image_ok}
