"""Data models for clip history."""

import hashlib
import json
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Coarse payload kinds stored in clips.content_type
CLIP_CONTENT_TYPES = ("text", "html", "rtf", "image", "files", "office")

# Fine classification produced by the detection collaborator
DETECTED_TYPES = (
    "url",
    "email",
    "color",
    "code",
    "json",
    "csv",
    "jwt",
    "timestamp",
    "secret",
    "path",
    "math",
    "phone",
    "date",
    "text",
)

# Content types that win over detected_type outright
PAYLOAD_CONTENT_TYPES = ("image", "files", "office")


class Clip(BaseModel):
    """One captured clipboard payload, as persisted in the clips table."""

    id: str
    content_type: str = "text"
    content_text: Optional[str] = None
    content_html: Optional[str] = None
    content_rtf: Optional[str] = None
    svg_path: Optional[str] = None
    pdf_path: Optional[str] = None
    image_path: Optional[str] = None
    attachment_path: Optional[str] = None
    attachment_type: Optional[str] = None
    file_paths: Optional[str] = None
    detected_type: str = "text"
    metadata: Optional[str] = None
    app_name: Optional[str] = None
    is_pinned: bool = False
    is_favorite: bool = False
    access_count: int = 0
    content_hash: Optional[str] = None
    created_at: int = Field(default_factory=lambda: int(time.time()))
    updated_at: int = Field(default_factory=lambda: int(time.time()))

    # Read-side only, never written back
    has_embedding: bool = False
    similarity_score: Optional[float] = None

    @field_validator("metadata", "file_paths", mode="before")
    @classmethod
    def _serialize_json(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return value

    @field_validator("detected_type", mode="before")
    @classmethod
    def _default_detected_type(cls, value: Any) -> Any:
        return value or "text"

    @staticmethod
    def compute_hash(content: str) -> str:
        """SHA-256 of the payload, used for duplicate lookup."""
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_id(content: str) -> str:
        data = f"{content}{time.time_ns()}"
        return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def from_text(
        cls,
        text: str,
        detected_type: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
        app_name: Optional[str] = None,
        content_type: str = "text",
        **payload: Any,
    ) -> "Clip":
        """Build a new, unsaved clip around a text payload."""
        now = int(time.time())
        return cls(
            id=cls.generate_id(text),
            content_type=content_type,
            content_text=text,
            detected_type=detected_type,
            metadata=metadata,
            app_name=app_name,
            content_hash=cls.compute_hash(text),
            created_at=now,
            updated_at=now,
            **payload,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Clip":
        return cls.model_validate({key: row[key] for key in row.keys()})

    def file_path_list(self) -> List[str]:
        """Decode file_paths; malformed JSON yields an empty list."""
        if not self.file_paths:
            return []
        try:
            paths = json.loads(self.file_paths)
        except (TypeError, ValueError):
            return []
        return [str(p) for p in paths] if isinstance(paths, list) else []


class Tag(BaseModel):
    id: int
    name: str
    color: Optional[str] = None
    created_at: int
    updated_at: int


class Collection(BaseModel):
    id: int
    name: str
    icon: Optional[str] = None
    description: Optional[str] = None
    created_at: int
    updated_at: int


class Embedding(BaseModel):
    """Stored vector for a clip."""

    id: int
    clip_id: str
    vector: List[float]
    model: str
    dimensions: int
    created_at: int
    updated_at: int


# -----------------------------------------------------------------------------
# Metadata: one closed variant per resolved content type
# -----------------------------------------------------------------------------


class BaseMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class TextMetadata(BaseMetadata):
    word_count: Optional[int] = None
    line_count: Optional[int] = None


class UrlMetadata(BaseMetadata):
    url: Optional[str] = None
    domain: Optional[str] = None
    protocol: Optional[str] = None


class EmailMetadata(BaseMetadata):
    email: Optional[str] = None
    domain: Optional[str] = None


class ColorMetadata(BaseMetadata):
    hex: Optional[str] = None
    value: Optional[str] = None
    format: Optional[str] = None


class CodeMetadata(BaseMetadata):
    language: Optional[str] = None
    score: Optional[float] = None
    line_count: Optional[int] = None


class CsvMetadata(BaseMetadata):
    delimiter: Optional[str] = None
    rows: Optional[int] = None
    columns: Optional[int] = None


class DateMetadata(BaseMetadata):
    iso: Optional[str] = None
    unit: Optional[str] = None
    value: Optional[Union[int, float, str]] = None


class FileEntry(BaseMetadata):
    path: str
    name: Optional[str] = None
    size: Optional[int] = None
    created: Optional[int] = None
    modified: Optional[int] = None
    error: Optional[str] = None


class FilesMetadata(BaseMetadata):
    count: Optional[int] = None
    files: List[FileEntry] = Field(default_factory=list)


class OfficeMetadata(BaseMetadata):
    source_app: Optional[str] = None
    svg: Optional[str] = None
    pdf: Optional[str] = None
    attachment_path: Optional[str] = None


class ImageMetadata(BaseMetadata):
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


ContentMetadata = Union[
    TextMetadata,
    UrlMetadata,
    EmailMetadata,
    ColorMetadata,
    CodeMetadata,
    CsvMetadata,
    DateMetadata,
    FilesMetadata,
    OfficeMetadata,
    ImageMetadata,
]

METADATA_MODELS: Dict[str, Type[BaseMetadata]] = {
    "url": UrlMetadata,
    "email": EmailMetadata,
    "color": ColorMetadata,
    "code": CodeMetadata,
    "csv": CsvMetadata,
    "date": DateMetadata,
    "timestamp": DateMetadata,
    "files": FilesMetadata,
    "office": OfficeMetadata,
    "image": ImageMetadata,
}


def metadata_model_for(content_type: str) -> Type[BaseMetadata]:
    return METADATA_MODELS.get(content_type, TextMetadata)


@dataclass(frozen=True)
class Content:
    """Typed, derived view of a clip. Never persisted."""

    type: str
    text: str
    metadata: ContentMetadata
    clip: Any


class ClipResponse(BaseModel):
    """Response for clip mutations."""

    id: str
    status: str
    message: Optional[str] = None
