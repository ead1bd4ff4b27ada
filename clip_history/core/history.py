"""Client-side history cache: browse/search traversal with optimistic mutations."""

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from clip_history.core.service import ClipBackend
from clip_history.models.schemas import Clip

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    BROWSE = "browse"
    SEARCH = "search"


@dataclass(frozen=True)
class HistoryState:
    """One immutable snapshot of the store.

    ``offset`` counts rows fetched in the current mode, adjusted by live
    captures and deletes so the next page starts at the right row.
    """

    clips: Tuple[Clip, ...] = ()
    mode: Mode = Mode.BROWSE
    query: str = ""
    offset: int = 0
    has_more: bool = True
    loading: bool = False
    error: Optional[str] = None

    def get(self, clip_id: str) -> Optional[Clip]:
        for clip in self.clips:
            if clip.id == clip_id:
                return clip
        return None


StateListener = Callable[[HistoryState], None]


class HistoryStore:
    """Paginated view over a ClipBackend.

    State changes are synchronous replacements of ``state``; awaited
    backend calls re-enter through the same reducer. Every fetch carries the
    generation it was issued in, and a response from an earlier generation
    (before a mode switch or clear) is discarded. A response is also
    discarded when a delete or live capture moved the offset while it was in
    flight: the page was read against a different row numbering, so the
    caller fetches again from the adjusted offset.
    """

    def __init__(
        self,
        backend: ClipBackend,
        page_size: int = 50,
        use_semantic_search: bool = False,
        similarity_threshold: Optional[float] = None,
        filter_types: Optional[Sequence[str]] = None,
    ):
        self.backend = backend
        self.page_size = page_size
        self.use_semantic_search = use_semantic_search
        self.similarity_threshold = similarity_threshold
        self.filter_types = list(filter_types) if filter_types else None
        self.state = HistoryState()
        self._generation = 0
        self._shift = 0
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes):
        self.state = dataclasses.replace(self.state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception as e:
                logger.error(f"History listener failed: {e}")

    def _reset(self, mode: Mode, query: str):
        self._generation += 1
        self._set(
            clips=(),
            mode=mode,
            query=query,
            offset=0,
            has_more=True,
            loading=False,
            error=None,
        )

    def _update_clip(self, clip_id: str, **updates):
        if self.state.get(clip_id) is None:
            return
        self._set(
            clips=tuple(
                clip.model_copy(update=updates) if clip.id == clip_id else clip
                for clip in self.state.clips
            )
        )

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def load_more(self, limit: Optional[int] = None):
        """Fetch the next page. Dropped while a fetch is in flight or at the end."""
        limit = limit or self.page_size
        state = self.state
        if not state.has_more or state.loading:
            return

        generation = self._generation
        shift = self._shift
        self._set(loading=True, error=None)
        try:
            if state.mode is Mode.SEARCH:
                page = await self.backend.search_clips_paginated(
                    state.query,
                    filter_types=self.filter_types,
                    limit=limit,
                    offset=state.offset,
                    use_semantic_search=self.use_semantic_search,
                    similarity_threshold=self.similarity_threshold,
                )
            else:
                page = await self.backend.get_recent_clips_paginated(limit, state.offset)
        except Exception as e:
            if generation != self._generation:
                logger.debug(f"Discarding failure of a superseded fetch: {e}")
                return
            logger.warning(f"Failed to load clips: {e}")
            self._set(loading=False, error=str(e))
            return

        if generation != self._generation:
            logger.debug(f"Discarding {len(page)} rows from a superseded fetch")
            return

        if shift != self._shift:
            logger.debug(f"Discarding {len(page)} rows fetched before the offset moved")
            self._set(loading=False)
            return

        cached = {clip.id for clip in self.state.clips}
        fresh = tuple(clip for clip in page if clip.id not in cached)
        self._set(
            clips=self.state.clips + fresh,
            offset=self.state.offset + len(page),
            has_more=len(page) == limit,
            loading=False,
        )

    async def enter_search(self, query: str):
        """Switch to search mode for query and load its first page."""
        if not query or not query.strip():
            await self.exit_search()
            return

        self._reset(Mode.SEARCH, query)
        await self.load_more()

    async def exit_search(self):
        if self.state.mode is Mode.BROWSE:
            return

        self._reset(Mode.BROWSE, "")
        await self.load_more()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _toggle(self, clip_id: str, field: str, call) -> Optional[bool]:
        previous = self.state.get(clip_id)
        if previous is not None:
            self._update_clip(clip_id, **{field: not getattr(previous, field)})

        try:
            confirmed = bool(await call(clip_id))
        except Exception as e:
            logger.warning(f"Toggling {field} on {clip_id} failed: {e}")
            if previous is not None:
                self._update_clip(clip_id, **{field: getattr(previous, field)})
            self._set(error=str(e))
            return None

        self._update_clip(clip_id, **{field: confirmed})
        return confirmed

    async def toggle_favorite(self, clip_id: str) -> Optional[bool]:
        """Returns the confirmed flag, or None when the backend failed."""
        return await self._toggle(clip_id, "is_favorite", self.backend.toggle_favorite)

    async def toggle_pin(self, clip_id: str) -> Optional[bool]:
        return await self._toggle(clip_id, "is_pinned", self.backend.toggle_pin)

    async def delete(self, clip_id: str) -> bool:
        try:
            await self.backend.delete_clip(clip_id)
        except Exception as e:
            logger.warning(f"Deleting {clip_id} failed: {e}")
            self._set(error=str(e))
            return False

        if self.state.get(clip_id) is not None:
            self._set(
                clips=tuple(clip for clip in self.state.clips if clip.id != clip_id),
                offset=max(0, self.state.offset - 1),
            )
            self._shift += 1
        return True

    def add_new_clip(self, clip: Clip):
        """Merge a live capture.

        Browse mode: a recaptured clip moves to the front with its refreshed
        row, a new clip is prepended and counted in offset. Search mode: a
        cached clip is refreshed where it ranks, new clips are not spliced in.
        """
        known = self.state.get(clip.id) is not None
        if self.state.mode is Mode.BROWSE:
            if known:
                rest = tuple(c for c in self.state.clips if c.id != clip.id)
                self._set(clips=(clip,) + rest)
            else:
                self._set(clips=(clip,) + self.state.clips, offset=self.state.offset + 1)
                self._shift += 1
        elif known:
            self._set(clips=tuple(clip if c.id == clip.id else c for c in self.state.clips))

    def follow_captures(self) -> Callable[[], None]:
        """Merge every clipboard_changed event of the backend; returns the unsubscribe."""
        return self.backend.on_clip_changed(self.add_new_clip)

    async def clear_all(self) -> bool:
        try:
            await self.backend.clear_all_clips()
        except Exception as e:
            logger.warning(f"Clearing history failed: {e}")
            self._set(error=str(e))
            return False

        self._reset(self.state.mode, self.state.query)
        return True

    async def copy_to_clipboard(self, text: str, clip_id: Optional[str] = None) -> bool:
        try:
            await self.backend.copy_to_clipboard(text, clip_id)
        except Exception as e:
            logger.warning(f"Copy failed: {e}")
            self._set(error=str(e))
            return False
        return True

    async def paste_clip(self, text: str, clip_id: Optional[str] = None) -> bool:
        try:
            await self.backend.paste_clip(text, clip_id)
        except Exception as e:
            logger.warning(f"Paste failed: {e}")
            self._set(error=str(e))
            return False
        return True

    async def generate_embedding(self, clip_id: str) -> bool:
        try:
            await self.backend.generate_embedding(clip_id)
        except Exception as e:
            logger.warning(f"Embedding {clip_id} failed: {e}")
            self._set(error=str(e))
            return False

        self._update_clip(clip_id, has_embedding=True)
        return True
