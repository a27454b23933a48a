import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.sessions import SessionMiddleware

from .database import async_session_maker, init_db
from .routers import admin, books, illustrations
from .seed import seed_database
from .settings import settings

logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="Illustrated Book")

# Page-data cache rides on the session cookie (see services/page_cache.py)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SESSION_SECRET,
    session_cookie="illustrated_book_session",
    max_age=settings.PAGE_CACHE_TTL_MINUTES * 60,
    https_only=False,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Generated illustrations: {IMAGES_DIR}/{book_id}/chapter-N_page-M.png
app.mount(settings.IMAGES_URL_PREFIX, StaticFiles(directory=settings.IMAGES_DIR, check_dir=False), name="images")

# ----------------------
# Route Includes
# ----------------------
app.include_router(books.router)
app.include_router(illustrations.router)
app.include_router(admin.router)


# ----------------------
# Startup: schema + seed data
# ----------------------
async def _seed_startup():
    if not settings.SEED_ON_STARTUP:
        return
    try:
        async with async_session_maker() as db:
            if await seed_database(db, settings):
                logger.info("Seed data created")
            else:
                logger.info("Books already present; skipping seed")
    except Exception:
        logger.exception("Seeding failed")


@app.on_event("startup")
async def on_startup():
    os.makedirs(settings.IMAGES_DIR, exist_ok=True)
    await init_db()
    await _seed_startup()


@app.get("/")
async def root_redirect():
    return RedirectResponse(url="/api/books", status_code=303)
