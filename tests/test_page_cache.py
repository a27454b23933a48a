import unittest
from datetime import timedelta

from illustrated_book.services import page_cache
from illustrated_book.services.page_cache import (
    MemoryStore,
    SessionCookieStore,
    TimedCache,
    cache_for_session,
    page_cache_key,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenStore:
    def get(self, key):
        raise RuntimeError("store offline")

    def set(self, key, value):
        raise RuntimeError("store offline")

    def delete(self, key):
        raise RuntimeError("store offline")

    def prune(self, cutoff):
        raise RuntimeError("store offline")


class TestPageCacheKey(unittest.TestCase):
    def test_key_format(self) -> None:
        self.assertEqual(page_cache_key(1, 2, 3), "book_1_chapter_2_page_3")
        self.assertEqual(page_cache_key(1, 2), "book_1_chapter_2")


class TimedCacheCases:
    """Shared behaviour, run against each store."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = self.make_store()
        self.cache = TimedCache(self.store, ttl=timedelta(minutes=30), clock=self.clock)

    def test_hit_within_ttl(self) -> None:
        self.cache.set("k", {"paragraphs": ["a"]})
        self.clock.now += 29 * 60

        self.assertEqual(self.cache.get("k"), {"paragraphs": ["a"]})

    def test_expired_entry_is_dropped(self) -> None:
        self.cache.set("k", {"paragraphs": ["a"]})
        self.clock.now += 30 * 60 + 1

        self.assertIsNone(self.cache.get("k"))
        self.assertIsNone(self.store.get("k"))

    def test_miss(self) -> None:
        self.assertIsNone(self.cache.get("missing"))

    def test_delete(self) -> None:
        self.cache.set("k", 1)
        self.cache.delete("k")

        self.assertIsNone(self.cache.get("k"))

    def test_overwrite_refreshes_timestamp(self) -> None:
        self.cache.set("k", "old")
        self.clock.now += 20 * 60
        self.cache.set("k", "new")
        self.clock.now += 20 * 60

        self.assertEqual(self.cache.get("k"), "new")


class TestMemoryStoreCache(TimedCacheCases, unittest.TestCase):
    def make_store(self):
        return MemoryStore({}, "session-a")

    def test_sessions_are_isolated(self) -> None:
        buckets = {}
        a = TimedCache(MemoryStore(buckets, "a"), clock=self.clock)
        b = TimedCache(MemoryStore(buckets, "b"), clock=self.clock)
        a.set("k", "from a")

        self.assertIsNone(b.get("k"))
        self.assertEqual(a.get("k"), "from a")

    def test_abandoned_sessions_are_collected(self) -> None:
        buckets = {}
        for i in range(1000):
            TimedCache(MemoryStore(buckets, f"gone-{i}"), clock=self.clock).set("k", i)
        self.assertEqual(len(buckets), 1000)

        self.clock.now += 10 * 24 * 3600
        TimedCache(MemoryStore(buckets, "fresh"), clock=self.clock).set("k", "new")

        self.assertEqual(list(buckets), ["fresh"])

    def test_prune_keeps_live_entries_of_other_sessions(self) -> None:
        buckets = {}
        TimedCache(MemoryStore(buckets, "old"), clock=self.clock).set("k", "old")
        self.clock.now += 20 * 60
        TimedCache(MemoryStore(buckets, "recent"), clock=self.clock).set("k", "recent")
        self.clock.now += 15 * 60
        TimedCache(MemoryStore(buckets, "third"), clock=self.clock).set("k", "third")

        self.assertEqual(sorted(buckets), ["recent", "third"])


class TestSessionCookieStoreCache(TimedCacheCases, unittest.TestCase):
    def make_store(self):
        self.session = {}
        return SessionCookieStore(self.session)

    def test_entries_live_in_the_session(self) -> None:
        self.cache.set("k", {"paragraphs": ["a"]})

        self.assertEqual(self.session["page_cache"]["k"]["value"], {"paragraphs": ["a"]})

    def test_garbage_entry_is_ignored(self) -> None:
        self.session["page_cache"] = {"k": "not an entry"}

        self.assertIsNone(self.cache.get("k"))

    def test_write_drops_expired_entries(self) -> None:
        self.cache.set("old", 1)
        self.clock.now += 31 * 60
        self.cache.set("new", 2)

        self.assertEqual(set(self.session["page_cache"]), {"new"})


class TestStoreFailures(unittest.TestCase):
    def test_store_errors_are_logged_not_raised(self) -> None:
        cache = TimedCache(BrokenStore())

        with self.assertLogs("illustrated_book.services.page_cache", level="ERROR"):
            cache.set("k", 1)
            self.assertIsNone(cache.get("k"))
            cache.delete("k")


class TestCacheForSession(unittest.TestCase):
    def tearDown(self) -> None:
        page_cache._MEMORY_BUCKETS.clear()

    def test_memory_backend_assigns_session_id(self) -> None:
        session = {}
        cache = cache_for_session(session, backend="memory", ttl_minutes=5)
        cache.set("k", 1)

        sid = session[page_cache.SESSION_ID_KEY]
        self.assertIn(sid, page_cache._MEMORY_BUCKETS)
        self.assertEqual(cache.ttl, timedelta(minutes=5))
        self.assertEqual(cache_for_session(session).get("k"), 1)

    def test_cookie_backend(self) -> None:
        session = {}
        cache = cache_for_session(session, backend="cookie")
        cache.set("k", 1)

        self.assertIn("page_cache", session)
        self.assertNotIn(page_cache.SESSION_ID_KEY, session)
