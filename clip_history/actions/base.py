"""Smart action primitives and the callbacks actions are executed against."""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from clip_history.core.classifier import clip_field
from clip_history.models.schemas import Content

logger = logging.getLogger(__name__)

ACTION_CATEGORIES = ("core", "transform", "dev", "ai", "external", "utility")

Callback = Callable[..., Any]


@dataclass(frozen=True)
class SmartAction:
    """A context-sensitive operation offered for a Content value.

    ``check`` is the only gate deciding whether the action is offered;
    ``is_active`` only reports a toggle's current state for display.
    ``execute`` may be sync or async; returning ``False`` means nothing
    was done.
    """

    id: str
    label: str
    category: str
    check: Callable[[Content], bool]
    execute: Callable[[Content], Any]
    group: str = ""
    is_active: Optional[Callable[[Content], bool]] = None
    shortcut: Optional[str] = None

    def applies(self, content: Content) -> bool:
        try:
            return bool(self.check(content))
        except Exception as e:
            logger.debug(f"Check for action {self.id} failed: {e}")
            return False

    def active(self, content: Content) -> Optional[bool]:
        if self.is_active is None:
            return None
        try:
            return bool(self.is_active(content))
        except Exception as e:
            logger.debug(f"is_active for action {self.id} failed: {e}")
            return None

    async def run(self, content: Content) -> bool:
        """Execute the action. Failures are logged and reported as False."""
        try:
            result = self.execute(content)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.error(f"Action {self.id} failed: {e}")
            return False
        return result is not False


@dataclass
class ActionContext:
    """Side effects available to actions.

    Optional callbacks left as None make the actions that need them
    unavailable (generate-embedding) or fail softly (the rest).
    """

    copy_to_clipboard: Callable[[str, Optional[str]], Awaitable[Any]]
    open_url: Callable[[str], Awaitable[Any]]
    open_path: Callable[[str], Awaitable[Any]]
    open_text_in_editor: Callable[[str, str], Awaitable[Any]]
    on_delete: Optional[Callback] = None
    on_toggle_pin: Optional[Callback] = None
    on_toggle_favorite: Optional[Callback] = None
    on_generate_embedding: Optional[Callback] = None
    on_reveal: Optional[Callback] = None

    @classmethod
    def for_service(cls, service: Any) -> "ActionContext":
        """Wire actions straight to a ClipService."""
        return cls(
            copy_to_clipboard=service.copy_to_clipboard,
            open_url=service.open_url,
            open_path=service.open_path,
            open_text_in_editor=service.open_text_in_editor,
            on_delete=service.delete_clip,
            on_toggle_pin=service.toggle_pin,
            on_toggle_favorite=service.toggle_favorite,
            on_generate_embedding=(
                service.generate_embedding if service.embedder is not None else None
            ),
            on_reveal=_log_reveal,
        )


def _log_reveal(clip_id: str):
    logger.info(f"Secret clip {clip_id} revealed")


def content_clip_id(content: Content) -> Optional[str]:
    return clip_field(content.clip, "id")


def meta(content: Content, name: str) -> Any:
    """Metadata field or None; variants only carry their own fields."""
    return getattr(content.metadata, name, None)


async def call(callback: Optional[Callback], *args: Any) -> Any:
    """Invoke a sync or async callback. A missing callback yields False."""
    if callback is None:
        return False
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
