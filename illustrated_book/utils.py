import html
import re
import secrets
from typing import Iterable, Optional

from fastapi import Depends, Header, HTTPException, status

from .settings import Settings, get_settings

_TAG_RE = re.compile(r"<[^>]*>")


def slugify(s: Optional[str]) -> str:
    """Lowercase, drop anything but [a-z0-9 space -], collapse runs to one hyphen."""
    s = (s or "").lower()
    s = re.sub(r"[^a-z0-9\s-]", "", s)
    s = re.sub(r"[\s-]+", "-", s)
    return s.strip("-")


def clean_page_text(paragraphs: Iterable[str]) -> str:
    """Join a page's paragraphs into plain text: entities decoded, markup removed."""
    text = " ".join(html.unescape(p or "") for p in paragraphs)
    text = _TAG_RE.sub("", text)
    return text.strip()


def route_slug(title: Optional[str]) -> str:
    # untitled things still need a non-empty path segment
    return slugify(title) or "-"


def page_url(book_id: int, book_title: Optional[str], chapter_id: int,
             chapter_title: Optional[str], page_id: int) -> str:
    return (
        f"/books/{book_id}/{route_slug(book_title)}"
        f"/{chapter_id}/{route_slug(chapter_title)}/{page_id}"
    )


async def require_admin_token(
    x_admin_token: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
):
    expected = (settings.ADMIN_TOKEN or "").strip()
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access is disabled")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")
    return True
