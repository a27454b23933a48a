import re

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .settings import settings

_SYNC_POSTGRES_RE = re.compile(r"^(postgresql|postgres)(\+psycopg2?)?://")


def _async_url(raw_url: str) -> str:
    # plain or sync-driver postgres URLs are upgraded to asyncpg
    return _SYNC_POSTGRES_RE.sub("postgresql+asyncpg://", raw_url, count=1)


DATABASE_URL = _async_url(settings.DATABASE_URL)

engine = create_async_engine(DATABASE_URL, echo=False, future=True)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
Base = declarative_base()


async def get_db():
    async with async_session_maker() as session:
        yield session


async def init_db():
    # Alembic owns the schema in production; create_all is for dev and sqlite
    if settings.RUN_DB_CREATE_ALL:
        from . import models  # noqa: F401  registers the tables on Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
