"""Command backend: the operations the history store and MCP server call."""

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from clip_history.core.cache import ClipCache
from clip_history.core.clipboard import ClipboardBridge
from clip_history.core.config import Settings
from clip_history.core.errors import ClipHistoryError, EmbeddingUnavailableError, NotFoundError
from clip_history.core.intelligence import EmbeddingClient
from clip_history.core.ranking import blend_hybrid, rank_semantic
from clip_history.core.storage import ClipStorage
from clip_history.models.schemas import Clip, Collection, Embedding, Tag

logger = logging.getLogger(__name__)

ClipListener = Callable[[Clip], Any]


class ClipBackend(Protocol):
    """Commands the history store depends on."""

    async def get_recent_clips_paginated(
        self, limit: int, offset: int, favorites_only: bool = False, pinned_only: bool = False
    ) -> List[Clip]: ...

    async def search_clips_paginated(
        self,
        query: str,
        filter_types: Optional[Sequence[str]] = None,
        limit: int = 50,
        offset: int = 0,
        use_semantic_search: bool = False,
        similarity_threshold: Optional[float] = None,
        favorites_only: bool = False,
        pinned_only: bool = False,
    ) -> List[Clip]: ...

    async def delete_clip(self, clip_id: str) -> None: ...

    async def toggle_favorite(self, clip_id: str) -> bool: ...

    async def toggle_pin(self, clip_id: str) -> bool: ...

    async def clear_all_clips(self) -> None: ...

    async def copy_to_clipboard(self, text: str, clip_id: Optional[str] = None) -> None: ...

    async def paste_clip(self, text: str, clip_id: Optional[str] = None) -> None: ...

    async def generate_embedding(self, clip_id: str) -> Any: ...

    def on_clip_changed(self, listener: ClipListener) -> Callable[[], None]: ...


class ClipService:
    """Storage, embeddings and the OS bridge behind one command surface."""

    def __init__(
        self,
        storage: ClipStorage,
        embedder: Optional[EmbeddingClient] = None,
        clipboard: Optional[ClipboardBridge] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.storage = storage
        self.embedder = embedder
        self.clipboard = clipboard or ClipboardBridge(self.settings.paste_command)
        self._listeners: List[ClipListener] = []

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, with_embeddings: bool = True):
        settings = settings or Settings.from_env()
        embedder = None
        if with_embeddings:
            cache = ClipCache(settings.cache_backend, settings.redis_url)
            embedder = EmbeddingClient(settings, cache)
        return cls(ClipStorage(settings.db_path), embedder=embedder, settings=settings)

    def close(self):
        self.storage.close()

    # ------------------------------------------------------------------
    # Live capture
    # ------------------------------------------------------------------

    def on_clip_changed(self, listener: ClipListener) -> Callable[[], None]:
        """Register a clipboard_changed listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, clip: Clip):
        for listener in list(self._listeners):
            try:
                result = listener(clip)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"clipboard_changed listener failed: {e}")

    async def capture_clip(self, clip: Clip) -> Clip:
        """Persist a captured clip and emit it.

        Content already in history is not stored twice: the existing row is
        bumped (updated_at, access_count) and emitted instead.
        """
        if clip.content_hash is None and clip.content_text is not None:
            clip = clip.model_copy(update={"content_hash": Clip.compute_hash(clip.content_text)})

        existing = await self.storage.find_by_hash(clip.content_hash) if clip.content_hash else None
        if existing is not None:
            await self.storage.touch(existing.id)
            await self.storage.increment_access(existing.id)
            saved = await self.storage.get_clip(existing.id)
            logger.debug(f"Recaptured clip {existing.id}")
        else:
            saved = await self.storage.insert_clip(clip)
            logger.debug(f"Captured clip {saved.id}")

        await self._emit(saved)
        return saved

    async def capture_text(
        self,
        text: str,
        detected_type: str = "text",
        metadata: Optional[Dict[str, Any]] = None,
        app_name: Optional[str] = None,
    ) -> Clip:
        return await self.capture_clip(
            Clip.from_text(text, detected_type=detected_type, metadata=metadata, app_name=app_name)
        )

    # ------------------------------------------------------------------
    # Traversals
    # ------------------------------------------------------------------

    async def get_clip(self, clip_id: str) -> Optional[Clip]:
        return await self.storage.get_clip(clip_id)

    async def get_recent_clips_paginated(
        self, limit: int, offset: int, favorites_only: bool = False, pinned_only: bool = False
    ) -> List[Clip]:
        return await self.storage.get_recent_paginated(limit, offset, favorites_only, pinned_only)

    async def search_clips_paginated(
        self,
        query: str,
        filter_types: Optional[Sequence[str]] = None,
        limit: int = 50,
        offset: int = 0,
        use_semantic_search: bool = False,
        similarity_threshold: Optional[float] = None,
        favorites_only: bool = False,
        pinned_only: bool = False,
    ) -> List[Clip]:
        """Keyword, semantic or hybrid search depending on SEARCH_RANKING."""
        ranking = self.settings.search_ranking
        semantic = use_semantic_search and ranking != "keyword" and bool(query and query.strip())

        if semantic and self.embedder is None:
            logger.debug("No embedding client configured, using keyword search")
            semantic = False

        if not semantic:
            return await self.storage.search_paginated(
                query, filter_types, limit, offset, favorites_only, pinned_only
            )

        threshold = (
            self.settings.similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )
        query_embedding = await self.embedder.embed_query(query)
        embeddings = await self.storage.get_embeddings_with_filters(
            filter_types, favorites_only, pinned_only
        )
        scored = rank_semantic(
            embeddings, query_embedding.vector, threshold, model=query_embedding.model
        )
        similarity = dict(scored)

        if ranking == "hybrid":
            keyword_ids = await self.storage.search_ids(
                query,
                filter_types,
                self.settings.hybrid_candidate_limit,
                favorites_only,
                pinned_only,
            )
            ranked = blend_hybrid(scored, keyword_ids, self.settings.hybrid_semantic_weight)
        else:
            ranked = scored

        logger.debug(f"{ranking} search for {query!r}: {len(ranked)} candidates")
        page_ids = [clip_id for clip_id, _ in ranked[offset : offset + limit]]
        clips = await self.storage.get_clips_by_ids(page_ids)
        return [
            clip.model_copy(update={"similarity_score": similarity.get(clip.id)})
            for clip in clips
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def delete_clip(self, clip_id: str):
        await self.storage.delete_clip(clip_id)

    async def toggle_favorite(self, clip_id: str) -> bool:
        return await self.storage.toggle_favorite(clip_id)

    async def toggle_pin(self, clip_id: str) -> bool:
        return await self.storage.toggle_pin(clip_id)

    async def clear_all_clips(self):
        await self.storage.clear_all()

    async def _mark_used(self, clip_id: Optional[str]):
        if clip_id:
            await self.storage.touch(clip_id)
            await self.storage.increment_access(clip_id)

    async def copy_to_clipboard(self, text: str, clip_id: Optional[str] = None):
        """Write text to the clipboard; a given clip moves to the top of history."""
        await self.clipboard.copy(text)
        await self._mark_used(clip_id)

    async def paste_clip(self, text: str, clip_id: Optional[str] = None):
        await self.clipboard.copy(text)
        await self.clipboard.paste()
        await self._mark_used(clip_id)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def generate_embedding(self, clip_id: str) -> Embedding:
        if self.embedder is None:
            raise EmbeddingUnavailableError("No embedding client configured")

        clip = await self.storage.get_clip(clip_id)
        if clip is None:
            raise NotFoundError(f"Clip not found: {clip_id}")
        if not clip.content_text or not clip.content_text.strip():
            raise ClipHistoryError(f"Clip {clip_id} has no text to embed")

        result = await self.embedder.embed(clip.content_text)
        embedding = await self.storage.upsert_embedding(clip_id, result.vector, result.model)
        logger.info(f"Stored {embedding.dimensions}-d embedding for clip {clip_id} ({result.model})")
        return embedding

    async def refresh_stale_embeddings(self) -> Dict[str, Any]:
        """Recompute embeddings whose clip changed after they were stored."""
        stale = await self.storage.list_stale_embeddings()
        refreshed = 0
        failed: List[str] = []
        for clip_id in stale:
            try:
                await self.generate_embedding(clip_id)
                refreshed += 1
            except ClipHistoryError as e:
                logger.warning(f"Could not refresh embedding for {clip_id}: {e}")
                failed.append(clip_id)
        return {"stale": len(stale), "refreshed": refreshed, "failed": failed}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reindex(self) -> int:
        return await self.storage.reindex()

    async def check_index(self) -> Dict[str, int]:
        return await self.storage.check_index()

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.storage.get_stats()
        stats["search_ranking"] = self.settings.search_ranking
        stats["embedding_model"] = self.embedder.model if self.embedder else None
        return stats

    # ------------------------------------------------------------------
    # Tags and collections
    # ------------------------------------------------------------------

    async def create_tag(self, name: str, color: Optional[str] = None) -> Tag:
        return await self.storage.create_tag(name, color)

    async def get_all_tags(self) -> List[Tag]:
        return await self.storage.get_all_tags()

    async def delete_tag(self, tag_id: int):
        await self.storage.delete_tag(tag_id)

    async def add_tag_to_clip(self, clip_id: str, tag_id: int):
        await self.storage.add_tag_to_clip(clip_id, tag_id)

    async def remove_tag_from_clip(self, clip_id: str, tag_id: int):
        await self.storage.remove_tag_from_clip(clip_id, tag_id)

    async def get_tags_for_clip(self, clip_id: str) -> List[Tag]:
        return await self.storage.get_tags_for_clip(clip_id)

    async def create_collection(
        self, name: str, icon: Optional[str] = None, description: Optional[str] = None
    ) -> Collection:
        return await self.storage.create_collection(name, icon, description)

    async def get_all_collections(self) -> List[Collection]:
        return await self.storage.get_all_collections()

    async def delete_collection(self, collection_id: int):
        await self.storage.delete_collection(collection_id)

    async def add_clip_to_collection(self, clip_id: str, collection_id: int):
        await self.storage.add_clip_to_collection(clip_id, collection_id)

    async def remove_clip_from_collection(self, clip_id: str, collection_id: int):
        await self.storage.remove_clip_from_collection(clip_id, collection_id)

    async def get_collections_for_clip(self, clip_id: str) -> List[Collection]:
        return await self.storage.get_collections_for_clip(clip_id)

    # ------------------------------------------------------------------
    # System bridge
    # ------------------------------------------------------------------

    async def open_text_in_editor(self, text: str, extension: str = "txt") -> str:
        return await self.clipboard.open_text_in_editor(text, extension)

    async def open_path(self, path: str):
        await self.clipboard.open_path(path)

    async def open_url(self, url: str):
        await self.clipboard.open_url(url)
