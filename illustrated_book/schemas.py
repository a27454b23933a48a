import json
import logging
from datetime import datetime
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

IMAGE_METADATA_VERSION = 2


# =========================
# BOOK DOCUMENTS (JSON files)
# =========================
class ChapterDocument(BaseModel):
    index: int = 0
    title: Optional[str] = None
    pages: List[List[str]] = []


class BookDocument(BaseModel):
    title: Optional[str] = None
    published: Optional[datetime] = None
    chapters: List[ChapterDocument] = []


# =========================
# IMAGE METADATA
# =========================
def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class ImageMetadata(BaseModel):
    """Typed view of the free-form ``images.metadata`` blob.

    Version 1 rows were written with camelCase keys (``imageUrl``,
    ``inferenceSteps`` ...), version 2 rows use snake_case plus
    ``schema_version``. Both read into the same model; anything missing
    keeps its default and unknown keys are dropped.
    """

    schema_version: int = Field(default=1, validation_alias=_alias("schema_version", "schemaVersion"))
    image_url: Optional[str] = Field(default=None, validation_alias=_alias("image_url", "imageUrl", "ImageUrl"))
    model: Optional[str] = Field(default=None, validation_alias=_alias("model", "Model"))
    model_version: Optional[str] = Field(
        default=None, validation_alias=_alias("model_version", "modelVersion", "ModelVersion")
    )
    width: Optional[int] = Field(default=None, validation_alias=_alias("width", "Width"))
    height: Optional[int] = Field(default=None, validation_alias=_alias("height", "Height"))
    inference_steps: Optional[int] = Field(
        default=None, validation_alias=_alias("inference_steps", "inferenceSteps", "InferenceSteps")
    )
    guidance_scale: Optional[float] = Field(
        default=None, validation_alias=_alias("guidance_scale", "guidanceScale", "GuidanceScale")
    )
    negative_prompt: Optional[str] = Field(
        default=None, validation_alias=_alias("negative_prompt", "negativePrompt", "NegativePrompt")
    )
    generated_at: Optional[datetime] = Field(
        default=None, validation_alias=_alias("generated_at", "generatedAt", "GeneratedAt")
    )

    model_config = {"extra": "ignore", "protected_namespaces": ()}

    def to_json(self) -> dict:
        data = self.model_dump(mode="json")
        data["schema_version"] = IMAGE_METADATA_VERSION
        return data


def parse_image_metadata(raw: Any) -> ImageMetadata:
    """Best-effort parse of a stored metadata value (dict, JSON text or None)."""
    if raw is None:
        return ImageMetadata()
    if isinstance(raw, (bytes, str)):
        if not raw.strip():
            return ImageMetadata()
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Image metadata is not valid JSON; ignoring it")
            return ImageMetadata()
    if not isinstance(raw, dict):
        return ImageMetadata()
    try:
        return ImageMetadata.model_validate(raw)
    except ValidationError as e:
        logger.warning("Image metadata has unexpected field types: %s", e.errors()[:3])
        url = next(
            (raw[k] for k in ("image_url", "imageUrl", "ImageUrl") if isinstance(raw.get(k), str)),
            None,
        )
        return ImageMetadata(image_url=url)


# =========================
# BOOK / SECTION SCHEMAS
# =========================
class AuthorRead(BaseModel):
    id: int
    name: Optional[str] = None
    username: Optional[str] = None

    class Config:
        from_attributes = True


class BookRead(BaseModel):
    id: int
    title: Optional[str] = None
    author_name: Optional[str] = None
    author: Optional[AuthorRead] = None
    created_at: datetime
    slug: str = ""

    class Config:
        from_attributes = True


class BookCreate(BaseModel):
    title: str
    author_name: Optional[str] = None
    author_id: Optional[int] = None


class SectionRead(BaseModel):
    id: int
    book_id: int
    title: str
    parent_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SectionCreate(BaseModel):
    title: str
    content: Optional[str] = None
    parent_id: Optional[int] = None


class SectionContentUpdate(BaseModel):
    content: str


# =========================
# IMAGE SCHEMAS
# =========================
class ImageRead(BaseModel):
    id: int
    book_id: int
    chapter_id: int
    page_number: int
    prompt: str
    created_at: datetime
    image_url: Optional[str] = None
    metadata: ImageMetadata = ImageMetadata()


class IllustrationResponse(BaseModel):
    success: bool
    imageUrl: Optional[str] = None
    fromCache: bool = False
    prompt: Optional[str] = None
    error: Optional[str] = None
    errorKind: Optional[str] = None


# =========================
# PAGE PAYLOAD
# =========================
class PageRead(BaseModel):
    book_id: int
    book_title: Optional[str] = None
    chapter_id: int
    chapter_title: Optional[str] = None
    page_id: int
    page_count: int = 0
    paragraphs: List[str] = []
    url: str
    image: Optional[ImageRead] = None
    from_cache: bool = False
