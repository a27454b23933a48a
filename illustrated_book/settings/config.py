# illustrated_book/settings/config.py  (Pydantic v2)
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---------- Database ----------
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./illustrated_book.db")
    RUN_DB_CREATE_ALL: bool = True
    SEED_ON_STARTUP: bool = True

    # ---------- Content ----------
    BOOKS_DIR: str = "Books"
    IMAGES_DIR: str = "Images"
    IMAGES_URL_PREFIX: str = "/Images"
    IMAGES_GENERATE: bool = False

    # ---------- Text completion (prompt crafting) ----------
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    PROMPT_MAX_TOKENS: int = 500
    PROMPT_TEMPERATURE: float = 0.7
    PROMPT_MAX_RETRIES: int = 3
    PROMPT_RETRY_BACKOFF: float = 1.0
    PROMPT_FALLBACK_ENABLED: bool = True

    # ---------- Image generation ----------
    REPLICATE_API_TOKEN: Optional[str] = None
    REPLICATE_MODEL: str = "black-forest-labs/flux-schnell"
    REPLICATE_VERSION: str = "c221b2b8ef527988fb59bf24a8b97c4561f1c671f73bd389f866bfb27c061316"
    REPLICATE_BASE_URL: str = "https://api.replicate.com/v1"
    IMAGE_POLL_INTERVAL: float = 2.0
    IMAGE_POLL_ATTEMPTS: int = 30
    IMAGE_WIDTH: int = 1024
    IMAGE_HEIGHT: int = 1024
    IMAGE_STEPS: int = 20
    IMAGE_GUIDANCE_SCALE: float = 7.5
    IMAGE_NEGATIVE_PROMPT: str = "blurry, low quality, distorted, deformed"

    HTTP_TIMEOUT: float = 60.0

    # ---------- Sessions / page cache ----------
    SESSION_SECRET: str = "change-me"
    PAGE_CACHE_TTL_MINUTES: int = 30
    PAGE_CACHE_BACKEND: Literal["memory", "cookie"] = "memory"

    # ---------- Seed / admin ----------
    ADMIN_NAME: str = "Admin User"
    ADMIN_EMAIL: str = "admin@example.com"
    ADMIN_USERNAME: str = "admin"
    ADMIN_TOKEN: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    # ---------- pydantic-settings config ----------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()


def get_settings() -> Settings:
    return settings
