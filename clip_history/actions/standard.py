"""Actions offered for (almost) every clip."""

import logging
from typing import List

from clip_history.actions.base import ActionContext, SmartAction, call, content_clip_id, meta
from clip_history.core.classifier import clip_field
from clip_history.models.schemas import Clip, Content

logger = logging.getLogger(__name__)

LANGUAGE_TO_EXTENSION = {
    "javascript": "js",
    "typescript": "ts",
    "python": "py",
    "rust": "rs",
    "html": "html",
    "css": "css",
    "json": "json",
    "markdown": "md",
    "sql": "sql",
    "xml": "xml",
    "yaml": "yaml",
    "bash": "sh",
    "shell": "sh",
    "bat": "bat",
    "c": "c",
    "cpp": "cpp",
    "java": "java",
    "go": "go",
    "ruby": "rb",
    "php": "php",
    "swift": "swift",
    "kotlin": "kt",
    "dart": "dart",
    "r": "r",
    "lua": "lua",
}


def editor_extension(content: Content) -> str:
    """File extension for opening a clip's text in an editor."""
    language = (meta(content, "language") or "").lower()
    if content.type == "code" and language:
        return LANGUAGE_TO_EXTENSION.get(language, language)
    if content.type in ("json", "csv"):
        return content.type
    if language:
        return LANGUAGE_TO_EXTENSION.get(language, "txt")
    return "txt"


def payload_paths(content: Content) -> List[str]:
    """Files backing an image or files clip."""
    if content.type == "image":
        path = clip_field(content.clip, "image_path")
        return [path] if path else []
    if content.type == "files":
        clip = content.clip
        if isinstance(clip, Clip):
            return clip.file_path_list()
        files = getattr(content.metadata, "files", None) or []
        return [entry.path for entry in files]
    return []


def standard_actions(ctx: ActionContext) -> List[SmartAction]:
    async def copy(content: Content):
        await ctx.copy_to_clipboard(content.text, content_clip_id(content))

    async def copy_html(content: Content):
        await ctx.copy_to_clipboard(clip_field(content.clip, "content_html"), None)

    async def open_in_editor(content: Content):
        if content.type in ("image", "files"):
            paths = payload_paths(content)
            if not paths:
                return False
            for path in paths:
                await ctx.open_path(path)
            return True
        await ctx.open_text_in_editor(content.text, editor_extension(content))

    async def generate_embedding(content: Content):
        await call(ctx.on_generate_embedding, content_clip_id(content))

    return [
        SmartAction("copy", "Copy", "core", lambda content: True, copy, shortcut="Ctrl+C"),
        SmartAction(
            "copy-html",
            "Copy HTML",
            "core",
            lambda content: bool(clip_field(content.clip, "content_html")),
            copy_html,
        ),
        SmartAction(
            "open-default-editor",
            "Open in Editor",
            "utility",
            lambda content: True,
            open_in_editor,
            shortcut="Ctrl+Shift+O",
        ),
        SmartAction(
            "generate-embedding",
            "Generate AI Embedding",
            "ai",
            lambda content: ctx.on_generate_embedding is not None
            and not clip_field(content.clip, "has_embedding"),
            generate_embedding,
        ),
    ]
