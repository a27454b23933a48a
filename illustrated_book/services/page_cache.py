# illustrated_book/services/page_cache.py
"""Short-lived per-session cache for resolved page text.

One ``TimedCache`` sits over either store: ``MemoryStore`` keeps entries in
process, bucketed by a session id; ``SessionCookieStore`` keeps them in the
signed session cookie the browser carries.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, MutableMapping, Optional, Protocol

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "page_cache_sid"


def page_cache_key(book_id: int, chapter_id: int, page_id: Optional[int] = None) -> str:
    key = f"book_{book_id}_chapter_{chapter_id}"
    if page_id is not None:
        key += f"_page_{page_id}"
    return key


def _is_stale(entry: Any, cutoff: float) -> bool:
    if not isinstance(entry, dict):
        return True
    try:
        return float(entry.get("cached_at")) < cutoff
    except (TypeError, ValueError):
        return True


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[dict]: ...

    def set(self, key: str, value: dict) -> None: ...

    def delete(self, key: str) -> None: ...

    def prune(self, cutoff: float) -> None: ...


class MemoryStore:
    """Server-side entries for one session, backed by a shared dict of buckets."""

    _lock = threading.Lock()

    def __init__(self, buckets: Dict[str, Dict[str, dict]], session_id: str):
        self._buckets = buckets
        self.session_id = session_id

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            return self._buckets.get(self.session_id, {}).get(key)

    def set(self, key: str, value: dict) -> None:
        with self._lock:
            self._buckets.setdefault(self.session_id, {})[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            bucket = self._buckets.get(self.session_id)
            if bucket:
                bucket.pop(key, None)

    def prune(self, cutoff: float) -> None:
        """Drop stale entries from every session, then the buckets left empty."""
        with self._lock:
            for sid in list(self._buckets):
                bucket = self._buckets[sid]
                for key in [k for k, v in bucket.items() if _is_stale(v, cutoff)]:
                    del bucket[key]
                if not bucket:
                    del self._buckets[sid]


class SessionCookieStore:
    """Client-side entries kept inside the request's session mapping."""

    def __init__(self, session: MutableMapping[str, Any], namespace: str = "page_cache"):
        self._session = session
        self._namespace = namespace

    def _bucket(self) -> dict:
        bucket = self._session.get(self._namespace)
        return bucket if isinstance(bucket, dict) else {}

    def get(self, key: str) -> Optional[dict]:
        return self._bucket().get(key)

    def set(self, key: str, value: dict) -> None:
        bucket = dict(self._bucket())
        bucket[key] = value
        # reassign so the session middleware sees the change
        self._session[self._namespace] = bucket

    def delete(self, key: str) -> None:
        bucket = dict(self._bucket())
        if bucket.pop(key, None) is not None:
            self._session[self._namespace] = bucket

    def prune(self, cutoff: float) -> None:
        bucket = self._bucket()
        fresh = {k: v for k, v in bucket.items() if not _is_stale(v, cutoff)}
        if len(fresh) != len(bucket):
            self._session[self._namespace] = fresh


class TimedCache:
    def __init__(self, store: CacheStore, ttl: timedelta = timedelta(minutes=30),
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.ttl = ttl
        self.clock = clock

    def get(self, key: str) -> Optional[Any]:
        try:
            entry = self.store.get(key)
        except Exception:
            logger.exception("Page cache read failed for %s", key)
            return None
        if not isinstance(entry, dict) or "cached_at" not in entry:
            return None
        try:
            age = self.clock() - float(entry["cached_at"])
        except (TypeError, ValueError):
            age = None
        if age is None or age > self.ttl.total_seconds():
            logger.debug("Page cache entry %s expired", key)
            self.delete(key)
            return None
        return entry.get("value")

    def set(self, key: str, value: Any) -> None:
        try:
            self.store.set(key, {"value": value, "cached_at": self.clock()})
        except Exception:
            logger.exception("Page cache write failed for %s", key)
        self.prune()

    def delete(self, key: str) -> None:
        try:
            self.store.delete(key)
        except Exception:
            logger.exception("Page cache delete failed for %s", key)

    def prune(self) -> None:
        """Evict everything older than the ttl, across all sessions the store holds."""
        try:
            self.store.prune(self.clock() - self.ttl.total_seconds())
        except Exception:
            logger.exception("Page cache prune failed")


# server-side buckets, one per browser session
_MEMORY_BUCKETS: Dict[str, Dict[str, dict]] = {}


def session_id_for(session: MutableMapping[str, Any]) -> str:
    sid = session.get(SESSION_ID_KEY)
    if not sid:
        sid = uuid.uuid4().hex
        session[SESSION_ID_KEY] = sid
    return sid


def cache_for_session(session: MutableMapping[str, Any], backend: str = "memory",
                      ttl_minutes: int = 30) -> TimedCache:
    if backend == "cookie":
        store: CacheStore = SessionCookieStore(session)
    else:
        store = MemoryStore(_MEMORY_BUCKETS, session_id_for(session))
    return TimedCache(store, ttl=timedelta(minutes=ttl_minutes))
