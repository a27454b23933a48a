from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .database import Base

# JSONB on postgres, plain JSON everywhere else (sqlite in dev/tests)
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------
# USERS / AUTHORS
# ---------------------------
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, default="")
    email = Column(String, index=True, nullable=False, default="")
    username = Column(String, index=True, nullable=False, default="")
    is_active = Column(Boolean, default=True, nullable=False)
    is_admin = Column(String, nullable=False, default="false")  # stored as text
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    books = relationship("Book", back_populates="author")

    def __repr__(self):
        return f"<User {self.username}>"


# ---------------------------
# BOOKS
# ---------------------------
class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=True)
    author_name = Column(String, nullable=True)
    author_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    author = relationship("User", back_populates="books", lazy="joined")

    def __repr__(self):
        return f"<Book {self.id} {self.title!r}>"


# ---------------------------
# SECTIONS (legacy chapter/page storage)
# ---------------------------
class Section(Base):
    __tablename__ = "sections"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, default="")
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("sections.id", ondelete="SET NULL"), nullable=True)
    # may hold a JSON encoded list of pages, each a list of paragraphs
    content = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    book = relationship("Book")
    parent = relationship("Section", remote_side=[id])


# ---------------------------
# GENERATED IMAGES
# ---------------------------
class Image(Base):
    __tablename__ = "images"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    chapter_id = Column(Integer, nullable=False)
    page_number = Column(Integer, nullable=False)  # 1-based
    prompt = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes, so the attribute is `meta`
    meta = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # no unique constraint: duplicates are allowed and the newest row wins
    __table_args__ = (
        Index("ix_images_book_chapter_page", "book_id", "chapter_id", "page_number", "created_at"),
    )

    def __repr__(self):
        return f"<Image {self.id} book={self.book_id} ch={self.chapter_id} p={self.page_number}>"
