from typing import Optional

import httpx
from fastapi import Depends, Request

from illustrated_book.services.page_cache import TimedCache, cache_for_session
from illustrated_book.settings import Settings, get_settings


def get_http_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Outbound transport for the API clients; None means the real network."""
    return None


def get_page_cache(request: Request, settings: Settings = Depends(get_settings)) -> TimedCache:
    return cache_for_session(
        request.session,
        backend=settings.PAGE_CACHE_BACKEND,
        ttl_minutes=settings.PAGE_CACHE_TTL_MINUTES,
    )
