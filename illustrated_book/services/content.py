# illustrated_book/services/content.py
"""Page text resolution.

Chapters come from an ordered list of sources: the book's JSON document
first, then the legacy ``sections`` table. The first source that knows the
book answers, even when the requested chapter or page is out of range.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from illustrated_book.models import Book, Section
from illustrated_book.services.books import get_book, load_book_document
from illustrated_book.utils import page_url, route_slug

logger = logging.getLogger(__name__)


@dataclass
class ChapterData:
    title: Optional[str]
    pages: List[List[str]] = field(default_factory=list)
    book_title: Optional[str] = None
    found: bool = True
    # unparseable legacy content, served as a one-paragraph first page
    raw_content: Optional[str] = None
    source: str = ""

    @property
    def page_count(self) -> int:
        if self.pages:
            return len(self.pages)
        return 1 if self.raw_content else 0

    def page(self, page_number: int) -> Optional[List[str]]:
        if 1 <= page_number <= len(self.pages):
            return self.pages[page_number - 1]
        if self.raw_content and not self.pages and page_number == 1:
            return [self.raw_content]
        return None


@dataclass
class PageContent:
    book_id: int
    chapter_id: int
    page_id: int
    book_title: Optional[str] = None
    chapter_title: Optional[str] = None
    paragraphs: Optional[List[str]] = None
    page_count: int = 0
    source: str = ""

    @property
    def found(self) -> bool:
        return self.paragraphs is not None

    @property
    def url(self) -> str:
        return page_url(self.book_id, self.book_title, self.chapter_id, self.chapter_title, self.page_id)


class ChapterSource(Protocol):
    async def resolve_chapter(self, book_id: int, chapter_id: int) -> Optional[ChapterData]:
        """None means "this source does not have the book"; try the next one."""


class JsonChapterSource:
    def __init__(self, books_dir: Optional[str | Path] = None):
        self.books_dir = books_dir

    async def resolve_chapter(self, book_id: int, chapter_id: int) -> Optional[ChapterData]:
        doc = await load_book_document(book_id, self.books_dir)
        if doc is None:
            return None
        index = chapter_id - 1
        if not 0 <= index < len(doc.chapters):
            logger.info("Book %s has no chapter %s in its JSON document", book_id, chapter_id)
            return ChapterData(title=None, book_title=doc.title, found=False, source="json")
        chapter = doc.chapters[index]
        return ChapterData(title=chapter.title, pages=chapter.pages, book_title=doc.title, source="json")


def parse_section_pages(content: Optional[str]) -> Optional[List[List[str]]]:
    """Decode a section's content as a list of pages of paragraphs, or None."""
    if not content:
        return []
    try:
        pages = json.loads(content)
    except ValueError:
        return None
    if not isinstance(pages, list) or not all(isinstance(p, list) for p in pages):
        return None
    return [[str(para) for para in page] for page in pages]


class SectionChapterSource:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_chapter(self, book_id: int, chapter_id: int) -> Optional[ChapterData]:
        try:
            section: Optional[Section] = await self.db.get(Section, chapter_id)
            book: Optional[Book] = await get_book(self.db, book_id)
        except Exception:
            logger.exception("Section lookup failed for book %s chapter %s", book_id, chapter_id)
            return None
        if not section or section.book_id != book_id:
            if book is None:
                return None
            return ChapterData(title=None, book_title=book.title, found=False, source="sections")

        book_title = book.title if book else None
        pages = parse_section_pages(section.content)
        if pages is None:
            logger.warning("Section %s content is not a page list; using it as raw text", section.id)
            return ChapterData(title=section.title, book_title=book_title,
                               raw_content=section.content, source="sections")
        return ChapterData(title=section.title, pages=pages, book_title=book_title, source="sections")


def default_sources(db: AsyncSession, books_dir: Optional[str | Path] = None) -> List[ChapterSource]:
    return [JsonChapterSource(books_dir), SectionChapterSource(db)]


async def resolve_chapter(sources: Sequence[ChapterSource], book_id: int,
                          chapter_id: int) -> Optional[ChapterData]:
    for source in sources:
        chapter = await source.resolve_chapter(book_id, chapter_id)
        if chapter is not None:
            return chapter
    return None


async def resolve_page(sources: Sequence[ChapterSource], book_id: int, chapter_id: int,
                       page_id: int) -> Optional[PageContent]:
    """Resolve one page. None when no source knows the book at all."""
    chapter = await resolve_chapter(sources, book_id, chapter_id)
    if chapter is None:
        return None
    page = PageContent(
        book_id=book_id,
        chapter_id=chapter_id,
        page_id=page_id,
        book_title=chapter.book_title,
        chapter_title=chapter.title,
        page_count=chapter.page_count,
        source=chapter.source,
    )
    if chapter.found:
        page.paragraphs = chapter.page(page_id)
        if page.paragraphs is None:
            logger.info("Page %s is out of range for book %s chapter %s (%s pages)",
                        page_id, book_id, chapter_id, chapter.page_count)
    return page


def canonical_redirect(page: PageContent, book_slug: str, chapter_slug: str) -> Optional[str]:
    """Canonical URL when the slugs in the request do not match the titles."""
    if page.chapter_title is None:
        # unknown chapter, nothing canonical to point at
        return None
    if route_slug(page.book_title) == book_slug and route_slug(page.chapter_title) == chapter_slug:
        return None
    return page.url
