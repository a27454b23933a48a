# illustrated_book/services/books.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from illustrated_book.background import run_sync
from illustrated_book.models import Book, Section
from illustrated_book.schemas import BookDocument, ChapterDocument
from illustrated_book.settings import settings

logger = logging.getLogger(__name__)


# ---------- database books ----------

async def list_books(db: AsyncSession) -> List[Book]:
    rows = await db.execute(select(Book).order_by(Book.title))
    return list(rows.scalars().all())


async def get_book(db: AsyncSession, book_id: int) -> Optional[Book]:
    return (await db.execute(select(Book).where(Book.id == book_id))).scalars().first()


async def get_book_sections(db: AsyncSession, book_id: int) -> List[Section]:
    rows = await db.execute(select(Section).where(Section.book_id == book_id).order_by(Section.id))
    return list(rows.scalars().all())


async def get_section(db: AsyncSession, section_id: int) -> Optional[Section]:
    return await db.get(Section, section_id)


async def create_book(db: AsyncSession, title: str, author_name: Optional[str] = None,
                      author_id: Optional[int] = None) -> Book:
    book = Book(title=title, author_name=author_name, author_id=author_id)
    db.add(book)
    await db.commit()
    await db.refresh(book, ["author"])
    logger.info("Created book %s (%r)", book.id, title)
    return book


async def create_section(db: AsyncSession, book_id: int, title: str, content: Optional[str] = None,
                         parent_id: Optional[int] = None) -> Section:
    section = Section(book_id=book_id, title=title, content=content, parent_id=parent_id)
    db.add(section)
    await db.commit()
    await db.refresh(section)
    return section


async def update_section_content(db: AsyncSession, section_id: int, content: str) -> bool:
    section = await db.get(Section, section_id)
    if not section:
        return False
    section.content = content
    await db.commit()
    return True


# ---------- JSON book documents ----------

def _lower_keys(value: Any) -> Any:
    """Book files are hand written; accept Title/title/TITLE alike."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(v) for v in value]
    return value


def book_document_path(book_id: int | str, books_dir: Optional[str | Path] = None) -> Path:
    return Path(books_dir or settings.BOOKS_DIR) / f"{book_id}.json"


def _read_document(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")


async def load_book_document(book_id: int | str,
                             books_dir: Optional[str | Path] = None) -> Optional[BookDocument]:
    """Read ``{books_dir}/{book_id}.json``. Missing or malformed files give None."""
    path = book_document_path(book_id, books_dir)
    try:
        raw = await run_sync(_read_document, path)
    except OSError:
        logger.exception("Could not read book document %s", path)
        return None
    if raw is None:
        return None
    try:
        return BookDocument.model_validate(_lower_keys(json.loads(raw)))
    except (ValueError, ValidationError):
        logger.exception("Malformed book document %s; treating it as absent", path)
        return None


async def get_chapter_by_index(book_id: int | str, index: int,
                               books_dir: Optional[str | Path] = None) -> Optional[ChapterDocument]:
    """Chapter whose own ``index`` field equals ``index`` (not its list position)."""
    doc = await load_book_document(book_id, books_dir)
    if not doc:
        return None
    return next((c for c in doc.chapters if c.index == index), None)
