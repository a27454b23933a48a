import json
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

import httpx

from illustrated_book.database import get_db
from illustrated_book.main import app
from illustrated_book.models import Book, Section, User
from illustrated_book.routers.deps import get_http_transport
from illustrated_book.schemas import IllustrationResponse
from illustrated_book.services import page_cache
from illustrated_book.settings import get_settings
from tests.support import FakeApis, make_session_maker, make_settings, write_book

BOOK_ID = 7
ADMIN = {"X-Admin-Token": "admin-token"}


class RouteTestCase(unittest.IsolatedAsyncioTestCase):
    settings_overrides: dict = {}

    async def asyncSetUp(self) -> None:
        self.tmp = TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.settings = make_settings(self.root, **self.settings_overrides)
        self.engine, self.session_maker = await make_session_maker()
        self.apis = FakeApis()
        write_book(self.root / "Books", BOOK_ID, "The Lighthouse", [
            {"Index": 1, "Title": "Arrival", "Pages": [["The boat came in.", "Gulls."], ["Night fell."]]},
            {"Index": 2, "Title": "Storm", "Pages": [["Waves."]]},
        ])

        async def override_db():
            async with self.session_maker() as session:
                yield session

        app.dependency_overrides[get_db] = override_db
        app.dependency_overrides[get_settings] = lambda: self.settings
        app.dependency_overrides[get_http_transport] = lambda: self.apis.transport()
        self.client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")

    async def asyncTearDown(self) -> None:
        await self.client.aclose()
        app.dependency_overrides.clear()
        page_cache._MEMORY_BUCKETS.clear()
        await self.engine.dispose()
        self.tmp.cleanup()


class TestPageRoutes(RouteTestCase):
    async def test_page_payload_then_cached(self) -> None:
        r = await self.client.get(f"/books/{BOOK_ID}/the-lighthouse/1/arrival/1")

        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertEqual(body["paragraphs"], ["The boat came in.", "Gulls."])
        self.assertEqual(body["page_count"], 2)
        self.assertEqual(body["book_title"], "The Lighthouse")
        self.assertEqual(body["chapter_title"], "Arrival")
        self.assertEqual(body["url"], f"/books/{BOOK_ID}/the-lighthouse/1/arrival/1")
        self.assertIsNone(body["image"])
        self.assertFalse(body["from_cache"])

        again = await self.client.get(f"/books/{BOOK_ID}/the-lighthouse/1/arrival/1")

        self.assertTrue(again.json()["from_cache"])
        self.assertEqual(again.json()["paragraphs"], body["paragraphs"])

    async def test_slug_mismatch_redirects(self) -> None:
        r = await self.client.get(f"/books/{BOOK_ID}/wrong/1/also-wrong/2")

        self.assertEqual(r.status_code, 307)
        self.assertEqual(r.headers["location"], f"/books/{BOOK_ID}/the-lighthouse/1/arrival/2")

    async def test_out_of_range_page_is_empty(self) -> None:
        r = await self.client.get(f"/books/{BOOK_ID}/the-lighthouse/1/arrival/9")

        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["paragraphs"], [])

    async def test_unknown_chapter_is_empty(self) -> None:
        r = await self.client.get(f"/books/{BOOK_ID}/the-lighthouse/5/-/1")

        self.assertEqual(r.status_code, 200)
        self.assertIsNone(r.json()["chapter_title"])
        self.assertEqual(r.json()["paragraphs"], [])

    async def test_unknown_book(self) -> None:
        r = await self.client.get("/books/404/nothing/1/nothing/1")

        self.assertEqual(r.status_code, 404)

    async def test_database_book_page(self) -> None:
        async with self.session_maker() as db:
            book = Book(title="Sea Stories")
            db.add(book)
            await db.flush()
            section = Section(title="Tides", book_id=book.id, content=json.dumps([["High water."]]))
            db.add(section)
            await db.commit()
            book_id, section_id = book.id, section.id

        r = await self.client.get(f"/books/{book_id}/sea-stories/{section_id}/tides/1")

        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["paragraphs"], ["High water."])


class TestIllustrationRoute(RouteTestCase):
    async def test_generate_then_cached(self) -> None:
        r = await self.client.post(f"/books/{BOOK_ID}/1/1/illustration")

        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertTrue(body["success"])
        self.assertFalse(body["fromCache"])
        self.assertEqual(body["imageUrl"], f"/Images/{BOOK_ID}/chapter-1_page-1.png")
        self.assertEqual(set(body), {"success", "imageUrl", "fromCache", "prompt", "error", "errorKind"})

        again = (await self.client.post(f"/books/{BOOK_ID}/1/1/illustration")).json()

        self.assertTrue(again["fromCache"])
        self.assertEqual(again["imageUrl"], body["imageUrl"])
        self.assertEqual(self.apis.count("/predictions", method="POST"), 1)

        page = (await self.client.get(f"/books/{BOOK_ID}/the-lighthouse/1/arrival/1")).json()
        self.assertEqual(page["image"]["image_url"], body["imageUrl"])
        self.assertEqual(page["image"]["metadata"]["inference_steps"], 20)

        images = (await self.client.get(f"/api/books/{BOOK_ID}/images", params={"chapter_id": 1})).json()
        self.assertEqual(len(images["images"]), 1)

    async def test_missing_page_content(self) -> None:
        body = (await self.client.post(f"/books/{BOOK_ID}/1/9/illustration")).json()

        self.assertFalse(body["success"])
        self.assertEqual(body["errorKind"], "input")
        self.assertEqual(self.apis.requests, [])


class TestBookRoutes(RouteTestCase):
    async def test_list_includes_author(self) -> None:
        async with self.session_maker() as db:
            user = User(name="Ada Keeper", email="ada@example.com", username="ada")
            db.add(user)
            await db.flush()
            db.add_all([Book(title="Beacons", author_name=user.name, author_id=user.id), Book(title="Anonymous")])
            await db.commit()

        books = (await self.client.get("/api/books")).json()["books"]

        self.assertEqual([b["title"] for b in books], ["Anonymous", "Beacons"])
        self.assertIsNone(books[0]["author"])
        self.assertEqual(books[1]["author"]["username"], "ada")
        self.assertEqual(books[1]["slug"], "beacons")

    def test_illustration_route_declares_its_response(self) -> None:
        route = next(r for r in app.routes if getattr(r, "path", "").endswith("/illustration"))

        self.assertIs(route.response_model, IllustrationResponse)

    async def test_json_book_details(self) -> None:
        body = (await self.client.get(f"/api/books/{BOOK_ID}")).json()

        self.assertEqual(body["source"], "json")
        self.assertEqual([c["slug"] for c in body["chapters"]], ["arrival", "storm"])
        self.assertEqual(body["chapters"][0]["page_count"], 2)
        self.assertEqual(body["chapters"][1]["url"], f"/books/{BOOK_ID}/the-lighthouse/2/storm/1")

    async def test_chapter_by_index(self) -> None:
        r = await self.client.get(f"/api/books/{BOOK_ID}/chapters/2")

        self.assertEqual(r.json()["pages"], [["Waves."]])
        self.assertEqual((await self.client.get(f"/api/books/{BOOK_ID}/chapters/3")).status_code, 404)

    async def test_unknown_book_details(self) -> None:
        self.assertEqual((await self.client.get("/api/books/404")).status_code, 404)


class TestAdminRoutes(RouteTestCase):
    async def test_token_required(self) -> None:
        r = await self.client.post("/api/admin/books", json={"title": "Nope"})
        self.assertEqual(r.status_code, 401)

        r = await self.client.post("/api/admin/books", json={"title": "Nope"},
                                   headers={"X-Admin-Token": "wrong"})
        self.assertEqual(r.status_code, 401)

    async def test_create_book_section_and_list(self) -> None:
        r = await self.client.post("/api/admin/books", json={"title": "Sea Stories!"}, headers=ADMIN)
        self.assertEqual(r.status_code, 201)
        book = r.json()
        self.assertEqual(book["slug"], "sea-stories")

        r = await self.client.post(f"/api/admin/books/{book['id']}/sections",
                                   json={"title": "Tides"}, headers=ADMIN)
        self.assertEqual(r.status_code, 201)
        section = r.json()

        r = await self.client.put(f"/api/admin/sections/{section['id']}/content",
                                  json={"content": json.dumps([["One."], ["Two."]])}, headers=ADMIN)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["id"], section["id"])

        details = (await self.client.get(f"/api/books/{book['id']}")).json()
        self.assertEqual(details["source"], "sections")
        self.assertEqual(details["chapters"][0]["page_count"], 2)

        listing = (await self.client.get("/api/books", params={"selected": "sea-stories"})).json()
        self.assertEqual([b["title"] for b in listing["books"]], ["Sea Stories!"])
        self.assertEqual(listing["selected"], "sea-stories")

    async def test_missing_targets(self) -> None:
        r = await self.client.delete("/api/admin/images/123", headers=ADMIN)
        self.assertEqual(r.status_code, 404)

        r = await self.client.put("/api/admin/sections/123/content", json={"content": "x"}, headers=ADMIN)
        self.assertEqual(r.status_code, 404)

    async def test_service_health(self) -> None:
        r = await self.client.get("/api/admin/health/services", headers=ADMIN)

        self.assertEqual(r.json(), {"prompt_service": True, "image_service": True})


class TestAdminDisabled(RouteTestCase):
    settings_overrides = {"ADMIN_TOKEN": None}

    async def test_forbidden_without_configured_token(self) -> None:
        r = await self.client.post("/api/admin/books", json={"title": "Nope"}, headers=ADMIN)

        self.assertEqual(r.status_code, 403)
