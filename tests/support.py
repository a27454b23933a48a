import json
from pathlib import Path
from typing import Callable, Iterable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from illustrated_book import models  # noqa: F401
from illustrated_book.database import Base
from illustrated_book.settings import Settings

# 1x1 transparent PNG
PNG_BYTES = (
    b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01\x08\x06\x00\x00\x00\x1f\x15\xc4\x89"
    b"\x00\x00\x00\rIDATx\x9cc\xf8\x0f\x00\x00\x01\x01\x00\x05\x18\xd8N\x00\x00\x00\x00IEND\xaeB`\x82"
)


def make_settings(root: Path, **overrides) -> Settings:
    values = dict(
        DATABASE_URL="sqlite+aiosqlite://",
        BOOKS_DIR=str(root / "Books"),
        IMAGES_DIR=str(root / "Images"),
        IMAGES_URL_PREFIX="/Images",
        IMAGES_GENERATE=True,
        OPENAI_API_KEY="sk-test",
        REPLICATE_API_TOKEN="r8-test",
        IMAGE_POLL_INTERVAL=0,
        PROMPT_RETRY_BACKOFF=0,
        SESSION_SECRET="test-secret",
        ADMIN_TOKEN="admin-token",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def make_session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def write_book(books_dir: Path, book_id: int, title: str, chapters: Iterable[dict]) -> Path:
    books_dir.mkdir(parents=True, exist_ok=True)
    path = books_dir / f"{book_id}.json"
    payload = {"Title": title, "Published": "2024-01-01T00:00:00", "Chapters": list(chapters)}
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


class FakeApis:
    """MockTransport handler standing in for the completion, prediction and image hosts."""

    def __init__(
        self,
        prompt: str = "A lighthouse at dusk, seen from below",
        statuses: Optional[list] = None,
        output: Optional[list] = None,
        error: Optional[str] = None,
        image_bytes: bytes = PNG_BYTES,
        completion_handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ):
        self.prompt = prompt
        self.statuses = list(statuses or ["succeeded"])
        self.output = output if output is not None else ["https://cdn.example.com/out/img.png"]
        self.error = error
        self.image_bytes = image_bytes
        self.completion_handler = completion_handler
        self.requests: list[httpx.Request] = []

    def count(self, fragment: str, method: Optional[str] = None) -> int:
        return sum(
            1 for r in self.requests
            if fragment in str(r.url) and (method is None or r.method == method)
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.endswith("/chat/completions"):
            if self.completion_handler:
                return self.completion_handler(request)
            return httpx.Response(200, json={"choices": [{"message": {"content": f"  {self.prompt}\n"}}]})
        if request.method == "POST" and url.endswith("/predictions"):
            return httpx.Response(201, json={"id": "pred-123", "status": "starting"})
        if "/predictions/" in url:
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            body = {"id": "pred-123", "status": status, "output": None, "error": None}
            if status == "succeeded":
                body["output"] = self.output
            if status == "failed":
                body["error"] = self.error
            return httpx.Response(200, json=body)
        if url.startswith("https://cdn.example.com/"):
            return httpx.Response(200, content=self.image_bytes, headers={"content-type": "image/png"})
        return httpx.Response(404, json={"detail": "not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)
