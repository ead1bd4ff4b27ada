"""Turn a stored clip row into a typed Content value."""

import json
import logging
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from clip_history.core.errors import MetadataError
from clip_history.models.schemas import (
    DETECTED_TYPES,
    PAYLOAD_CONTENT_TYPES,
    BaseMetadata,
    Content,
    TextMetadata,
    metadata_model_for,
)

logger = logging.getLogger(__name__)

OFFICE_COLUMN_FIELDS = {
    "svg_path": "svg",
    "pdf_path": "pdf",
    "attachment_path": "attachment_path",
    "app_name": "source_app",
}


def clip_field(clip: Any, name: str) -> Any:
    """Read a field from a Clip model or a plain mapping."""
    if isinstance(clip, Mapping):
        return clip.get(name)
    return getattr(clip, name, None)


def _decode(raw: Any) -> dict:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str):
        raise MetadataError(f"metadata must be a JSON object, got {type(raw).__name__}")
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise MetadataError(f"metadata is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise MetadataError("metadata JSON is not an object")
    return value


def parse_metadata(raw: Any, content_type: str) -> BaseMetadata:
    """Parse metadata into the variant for content_type; empty variant on failure."""
    model = metadata_model_for(content_type)
    try:
        return model.model_validate(_decode(raw))
    except (MetadataError, ValidationError) as e:
        logger.debug(f"Ignoring malformed {content_type} metadata: {e}")
        return model()


def get_content_type(clip: Any) -> str:
    content_type = clip_field(clip, "content_type")
    if content_type in PAYLOAD_CONTENT_TYPES:
        return content_type

    detected: Optional[str] = clip_field(clip, "detected_type")
    if isinstance(detected, str) and detected.lower() in DETECTED_TYPES:
        return detected.lower()
    return "text"


def clip_to_content(clip: Any) -> Content:
    """Never raises: anything unusable becomes plain text with empty metadata."""
    try:
        content_type = get_content_type(clip)
        raw = clip_field(clip, "metadata")

        if content_type == "office":
            try:
                merged = _decode(raw)
            except MetadataError as e:
                logger.debug(f"Ignoring malformed office metadata: {e}")
                merged = {}
            for column, key in OFFICE_COLUMN_FIELDS.items():
                value = clip_field(clip, column)
                if value:
                    merged[key] = value
            raw = merged

        text = clip_field(clip, "content_text")
        return Content(
            type=content_type,
            text=text if isinstance(text, str) else "",
            metadata=parse_metadata(raw, content_type),
            clip=clip,
        )
    except Exception as e:
        logger.debug(f"Could not classify clip, treating as text: {e}")
        return Content(type="text", text="", metadata=TextMetadata(), clip=clip)
