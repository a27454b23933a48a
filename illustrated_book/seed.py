import json
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Book, Section, User
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SEED_BOOK_TITLE = "My First Illustrated Book"
SEED_CHAPTER_TITLE = "Chapter 1: The Beginning"
SEED_PAGE_TITLES = ("Page 1", "Page 2", "Page 3")


async def seed_database(db: AsyncSession, settings: Optional[Settings] = None) -> bool:
    """Create the admin author and a starter book when no book exists yet.

    Returns True when rows were written.
    """
    cfg = settings or default_settings
    if (await db.execute(select(Book.id).limit(1))).first():
        return False

    user = (await db.execute(select(User).where(User.email == cfg.ADMIN_EMAIL))).scalars().first()
    if not user:
        user = User(
            name=cfg.ADMIN_NAME,
            email=cfg.ADMIN_EMAIL,
            username=cfg.ADMIN_USERNAME,
            is_active=True,
            is_admin="true",
        )
        db.add(user)
        await db.flush()  # get user.id

    book = Book(title=SEED_BOOK_TITLE, author_name=user.name, author_id=user.id)
    db.add(book)
    await db.flush()

    chapter = Section(
        title=SEED_CHAPTER_TITLE,
        book_id=book.id,
        content=json.dumps([[f"This is where {SEED_BOOK_TITLE.lower()} begins."]]),
    )
    db.add(chapter)
    await db.flush()

    for title in SEED_PAGE_TITLES:
        db.add(Section(title=title, book_id=book.id, parent_id=chapter.id))

    await db.commit()
    logger.info("Seeded book %s (%r) for %s", book.id, book.title, user.email)
    return True
