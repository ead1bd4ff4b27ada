"""Ordered action catalog and per-content resolution."""

import dataclasses
import logging
from typing import Dict, List, Optional, Union

from clip_history.actions.base import ActionContext, SmartAction
from clip_history.actions.meta import meta_actions
from clip_history.actions.standard import standard_actions
from clip_history.actions.type_specific import smart_actions
from clip_history.models.schemas import Content

logger = logging.getLogger(__name__)

ACTION_GROUPS = ("smart", "standard", "meta")


class ActionRegistry:
    """Catalog built once per registry; resolution is a pure ordered filter."""

    def __init__(self, context: ActionContext):
        self.context = context
        self.actions: List[SmartAction] = self._build_catalog()
        self._by_id: Dict[str, SmartAction] = {action.id: action for action in self.actions}

    def _build_catalog(self) -> List[SmartAction]:
        factories = {
            "smart": smart_actions,
            "standard": standard_actions,
            "meta": meta_actions,
        }
        catalog: List[SmartAction] = []
        for group in ACTION_GROUPS:
            catalog.extend(
                dataclasses.replace(action, group=group) for action in factories[group](self.context)
            )

        ids = [action.id for action in catalog]
        duplicates = {action_id for action_id in ids if ids.count(action_id) > 1}
        if duplicates:
            raise ValueError(f"Duplicate action ids: {', '.join(sorted(duplicates))}")
        return catalog

    def get(self, action_id: str) -> Optional[SmartAction]:
        return self._by_id.get(action_id)

    def resolve(self, content: Optional[Content]) -> List[SmartAction]:
        """Applicable actions, in catalog order."""
        if content is None:
            return []
        return [action for action in self.actions if action.applies(content)]

    def resolve_grouped(self, content: Optional[Content]) -> Dict[str, List[SmartAction]]:
        grouped: Dict[str, List[SmartAction]] = {group: [] for group in ACTION_GROUPS}
        for action in self.resolve(content):
            grouped[action.group].append(action)
        return grouped

    async def run(self, action: Union[str, SmartAction], content: Content) -> bool:
        """Run an action if it applies to content. Unknown ids raise KeyError."""
        if isinstance(action, str):
            found = self.get(action)
            if found is None:
                raise KeyError(f"Unknown action: {action}")
            action = found

        if not action.applies(content):
            logger.warning(f"Action {action.id} does not apply to {content.type} content")
            return False

        ok = await action.run(content)
        logger.debug(f"Action {action.id} finished (ok={ok})")
        return ok
