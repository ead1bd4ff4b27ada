"""Favorite, pin and delete: always offered, act on the clip itself."""

from typing import List

from clip_history.actions.base import ActionContext, SmartAction, call, content_clip_id
from clip_history.core.classifier import clip_field


def meta_actions(ctx: ActionContext) -> List[SmartAction]:
    def forward(callback_name: str):
        async def execute(content):
            callback = getattr(ctx, callback_name)
            if callback is None:
                return False
            # A toggle's confirmed value is not a success flag
            await call(callback, content_clip_id(content))

        return execute

    return [
        SmartAction(
            "favorite",
            "Favorite",
            "core",
            lambda content: True,
            forward("on_toggle_favorite"),
            is_active=lambda content: bool(clip_field(content.clip, "is_favorite")),
            shortcut="Ctrl+F",
        ),
        SmartAction(
            "pin",
            "Pin / Unpin",
            "core",
            lambda content: True,
            forward("on_toggle_pin"),
            is_active=lambda content: bool(clip_field(content.clip, "is_pinned")),
        ),
        SmartAction(
            "delete",
            "Delete",
            "core",
            lambda content: True,
            forward("on_delete"),
            shortcut="Ctrl+Backspace",
        ),
    ]
