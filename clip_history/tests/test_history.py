"""Tests for the history store state machine."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from clip_history.core.clipboard import ClipboardBridge
from clip_history.core.config import Settings
from clip_history.core.errors import NotFoundError, TransientIOError
from clip_history.core.history import HistoryState, HistoryStore, Mode
from clip_history.core.service import ClipService
from clip_history.core.storage import ClipStorage
from clip_history.models.schemas import Clip


def make_clips(count, prefix="clip"):
    return [Clip(id=f"{prefix}-{i}", content_text=f"{prefix} {i}") for i in range(count)]


class FakeBackend:
    """Serves pages out of in-memory lists."""

    def __init__(self, browse=None, search=None):
        self.browse = list(browse or [])
        self.search = list(search or [])
        self.get_recent_clips_paginated = AsyncMock(side_effect=self._recent)
        self.search_clips_paginated = AsyncMock(side_effect=self._search)
        self.toggle_favorite = AsyncMock(return_value=True)
        self.toggle_pin = AsyncMock(return_value=True)
        self.delete_clip = AsyncMock(side_effect=self._delete)
        self.clear_all_clips = AsyncMock()
        self.copy_to_clipboard = AsyncMock()
        self.paste_clip = AsyncMock()
        self.generate_embedding = AsyncMock()

    async def _recent(self, limit, offset, favorites_only=False, pinned_only=False):
        return self.browse[offset : offset + limit]

    async def _search(self, query, filter_types=None, limit=50, offset=0, **kwargs):
        return self.search[offset : offset + limit]

    async def _delete(self, clip_id):
        before = len(self.browse)
        self.browse = [c for c in self.browse if c.id != clip_id]
        if len(self.browse) == before:
            raise NotFoundError(f"Clip not found: {clip_id}")


class TestHistoryStore:
    @pytest.fixture
    def backend(self):
        return FakeBackend(browse=make_clips(7), search=make_clips(3, "hit"))

    @pytest.fixture
    def store(self, backend):
        return HistoryStore(backend, page_size=3)

    def test_initial_state(self, store):
        assert store.state == HistoryState()
        assert store.state.mode is Mode.BROWSE

    @pytest.mark.asyncio
    async def test_load_more_offset_accounting(self, store, backend):
        returned = []
        while store.state.has_more:
            before = len(store.state.clips)
            await store.load_more(3)
            returned.append(len(store.state.clips) - before)

        assert returned == [3, 3, 1]
        assert store.state.offset == sum(returned) == 7
        assert [c.id for c in store.state.clips] == [c.id for c in backend.browse]

        # Exhausted: further calls are no-ops
        await store.load_more(3)
        assert backend.get_recent_clips_paginated.await_count == 3

    @pytest.mark.asyncio
    async def test_exact_multiple_needs_one_empty_page(self, backend):
        backend.browse = make_clips(6)
        store = HistoryStore(backend, page_size=3)

        await store.load_more()
        await store.load_more()
        assert store.state.has_more is True

        await store.load_more()
        assert store.state.has_more is False
        assert store.state.offset == 6

    @pytest.mark.asyncio
    async def test_load_more_single_flight(self, backend):
        gate = asyncio.Event()

        async def slow(limit, offset, **kwargs):
            await gate.wait()
            return backend.browse[offset : offset + limit]

        backend.get_recent_clips_paginated = AsyncMock(side_effect=slow)
        store = HistoryStore(backend, page_size=3)

        first = asyncio.create_task(store.load_more())
        await asyncio.sleep(0)
        assert store.state.loading is True

        await store.load_more()  # dropped, not queued
        gate.set()
        await first

        assert backend.get_recent_clips_paginated.await_count == 1
        assert store.state.offset == 3

    @pytest.mark.asyncio
    async def test_load_more_does_not_duplicate_cached_ids(self, store, backend):
        await store.load_more()
        store.add_new_clip(backend.browse[3])
        await store.load_more()

        ids = [c.id for c in store.state.clips]
        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_cache(self, store, backend):
        await store.load_more()
        cached = store.state.clips
        backend.get_recent_clips_paginated.side_effect = TransientIOError("disk I/O error")

        await store.load_more()

        assert store.state.error == "disk I/O error"
        assert store.state.loading is False
        assert store.state.clips == cached
        assert store.state.offset == 3

    @pytest.mark.asyncio
    async def test_enter_search_is_idempotent(self, store):
        await store.load_more()

        await store.enter_search("hit")
        first = store.state
        await store.enter_search("hit")

        assert store.state == first
        assert store.state.mode is Mode.SEARCH
        assert [c.id for c in store.state.clips] == ["hit-0", "hit-1", "hit-2"]
        assert store.state.offset == 3

    @pytest.mark.asyncio
    async def test_blank_search_exits(self, store, backend):
        await store.enter_search("hit")

        await store.enter_search("   ")

        assert store.state.mode is Mode.BROWSE
        assert store.state.query == ""
        assert [c.id for c in store.state.clips] == [c.id for c in backend.browse[:3]]

    @pytest.mark.asyncio
    async def test_exit_search_noop_in_browse(self, store, backend):
        await store.load_more()
        before = store.state

        await store.exit_search()

        assert store.state is before
        assert backend.get_recent_clips_paginated.await_count == 1

    @pytest.mark.asyncio
    async def test_search_passes_options(self, backend):
        store = HistoryStore(
            backend, page_size=5, use_semantic_search=True, similarity_threshold=0.5, filter_types=["url"]
        )

        await store.enter_search("hit")

        backend.search_clips_paginated.assert_awaited_once_with(
            "hit",
            filter_types=["url"],
            limit=5,
            offset=0,
            use_semantic_search=True,
            similarity_threshold=0.5,
        )

    @pytest.mark.asyncio
    async def test_stale_response_is_discarded(self, backend):
        gate = asyncio.Event()

        async def slow(limit, offset, **kwargs):
            await gate.wait()
            return backend.browse[offset : offset + limit]

        backend.get_recent_clips_paginated = AsyncMock(side_effect=slow)
        store = HistoryStore(backend, page_size=3)

        browse_fetch = asyncio.create_task(store.load_more())
        await asyncio.sleep(0)
        await store.enter_search("hit")
        gate.set()
        await browse_fetch

        assert store.state.mode is Mode.SEARCH
        assert [c.id for c in store.state.clips] == ["hit-0", "hit-1", "hit-2"]
        assert store.state.offset == 3

    @pytest.mark.asyncio
    async def test_delete_decrements_offset(self, store, backend):
        await store.load_more()
        await store.load_more()
        assert store.state.offset == 6

        assert await store.delete("clip-1") is True

        assert [c.id for c in store.state.clips] == ["clip-0", "clip-2", "clip-3", "clip-4", "clip-5"]
        assert store.state.offset == 5

        await store.load_more()
        assert [c.id for c in store.state.clips][-1] == "clip-6"
        assert store.state.offset == 6

    @pytest.mark.asyncio
    async def test_delete_uncached_keeps_offset(self, store, backend):
        await store.load_more()

        assert await store.delete("clip-6") is True

        assert store.state.offset == 3
        assert len(store.state.clips) == 3

    @pytest.mark.asyncio
    async def test_delete_failure_surfaces_error(self, store):
        await store.load_more()
        cached = store.state.clips

        assert await store.delete("missing") is False

        assert store.state.clips == cached
        assert store.state.offset == 3
        assert "missing" in store.state.error

    @pytest.mark.asyncio
    async def test_toggle_favorite_confirms(self, store, backend):
        await store.load_more()

        assert await store.toggle_favorite("clip-1") is True

        assert store.state.get("clip-1").is_favorite is True
        backend.toggle_favorite.assert_awaited_once_with("clip-1")

    @pytest.mark.asyncio
    async def test_toggle_favorite_applies_optimistically(self, store, backend):
        await store.load_more()
        seen = []

        async def confirm(clip_id):
            seen.append(store.state.get(clip_id).is_favorite)
            return True

        backend.toggle_favorite.side_effect = confirm
        await store.toggle_favorite("clip-0")

        assert seen == [True]

    @pytest.mark.asyncio
    async def test_toggle_favorite_rolls_back(self, store, backend):
        await store.load_more()
        others = [c for c in store.state.clips if c.id != "clip-1"]
        backend.toggle_favorite.side_effect = TransientIOError("database is locked")

        assert await store.toggle_favorite("clip-1") is None

        assert store.state.get("clip-1").is_favorite is False
        assert [c for c in store.state.clips if c.id != "clip-1"] == others
        assert store.state.error == "database is locked"

    @pytest.mark.asyncio
    async def test_toggle_pin_unknown_id(self, store, backend):
        await store.load_more()
        cached = store.state.clips
        backend.toggle_pin.side_effect = NotFoundError("Clip not found: nope")

        assert await store.toggle_pin("nope") is None

        backend.toggle_pin.assert_awaited_once_with("nope")
        assert store.state.clips == cached
        assert store.state.error == "Clip not found: nope"

    @pytest.mark.asyncio
    async def test_add_new_clip_browse(self, store):
        await store.load_more()

        store.add_new_clip(Clip(id="fresh", content_text="fresh"))
        assert store.state.clips[0].id == "fresh"
        assert store.state.offset == 4

        refreshed = Clip(id="clip-2", content_text="clip 2", access_count=5)
        store.add_new_clip(refreshed)
        assert store.state.clips[0] == refreshed
        assert [c.id for c in store.state.clips].count("clip-2") == 1
        assert store.state.offset == 4

    @pytest.mark.asyncio
    async def test_add_new_clip_search(self, store):
        await store.enter_search("hit")

        store.add_new_clip(Clip(id="fresh", content_text="hit fresh"))
        assert store.state.get("fresh") is None
        assert store.state.offset == 3

        refreshed = Clip(id="hit-1", content_text="hit 1", access_count=2)
        store.add_new_clip(refreshed)
        assert store.state.clips[1] == refreshed

    @pytest.mark.asyncio
    async def test_clear_all(self, store, backend):
        await store.load_more()

        assert await store.clear_all() is True

        assert store.state.clips == ()
        assert store.state.offset == 0
        assert store.state.has_more is True
        backend.clear_all_clips.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_copy_paste_and_embedding(self, store, backend):
        await store.load_more()

        assert await store.copy_to_clipboard("clip 0", "clip-0") is True
        backend.copy_to_clipboard.assert_awaited_once_with("clip 0", "clip-0")
        assert await store.paste_clip("clip 0") is True
        backend.paste_clip.assert_awaited_once_with("clip 0", None)

        assert await store.generate_embedding("clip-0") is True
        assert store.state.get("clip-0").has_embedding is True

        backend.copy_to_clipboard.side_effect = TransientIOError("no display")
        assert await store.copy_to_clipboard("x") is False
        assert store.state.error == "no display"

    @pytest.mark.asyncio
    async def test_subscribe(self, store):
        listener = Mock()
        unsubscribe = store.subscribe(listener)

        await store.load_more()
        assert listener.call_count == 2  # loading, then page
        assert listener.call_args.args[0] is store.state

        unsubscribe()
        store.add_new_clip(Clip(id="late", content_text="late"))
        assert listener.call_count == 2

    @pytest.mark.asyncio
    async def test_delete_during_fetch_refetches_from_new_offset(self, store, backend):
        await store.load_more()
        gate = asyncio.Event()

        async def slow(limit, offset, **kwargs):
            await gate.wait()
            return backend.browse[offset : offset + limit]

        backend.get_recent_clips_paginated = AsyncMock(side_effect=slow)
        fetch = asyncio.create_task(store.load_more())
        await asyncio.sleep(0)

        assert await store.delete("clip-1") is True
        gate.set()
        await fetch

        # Page read against the old numbering is dropped
        assert [c.id for c in store.state.clips] == ["clip-0", "clip-2"]
        assert store.state.offset == 2
        assert store.state.loading is False
        assert store.state.has_more is True

        while store.state.has_more:
            await store.load_more()

        assert [c.id for c in store.state.clips] == [
            "clip-0", "clip-2", "clip-3", "clip-4", "clip-5", "clip-6"
        ]

    @pytest.mark.asyncio
    async def test_capture_during_fetch_refetches_from_new_offset(self, store, backend):
        await store.load_more()
        gate = asyncio.Event()

        async def slow(limit, offset, **kwargs):
            await gate.wait()
            return backend.browse[offset : offset + limit]

        backend.get_recent_clips_paginated = AsyncMock(side_effect=slow)
        fetch = asyncio.create_task(store.load_more())
        await asyncio.sleep(0)

        fresh = Clip(id="new", content_text="new")
        backend.browse.insert(0, fresh)
        store.add_new_clip(fresh)
        gate.set()
        await fetch

        assert [c.id for c in store.state.clips] == ["new", "clip-0", "clip-1", "clip-2"]
        assert store.state.offset == 4

        while store.state.has_more:
            await store.load_more()

        assert [c.id for c in store.state.clips] == [
            "new", "clip-0", "clip-1", "clip-2", "clip-3", "clip-4", "clip-5", "clip-6"
        ]
        assert store.state.offset == 8


class TestHistoryStoreWithService:
    """Captures flow from a real ClipService into the store."""

    @pytest.fixture
    def service(self, tmp_path):
        settings = Settings(db_path=str(tmp_path / "clips.db"))
        service = ClipService(
            ClipStorage(settings.db_path), clipboard=Mock(spec=ClipboardBridge), settings=settings
        )
        yield service
        service.close()

    @pytest.mark.asyncio
    async def test_captures_merge_into_browse_cache(self, service):
        oldest = await service.capture_clip(
            Clip.from_text("oldest").model_copy(update={"created_at": 10, "updated_at": 10})
        )
        middle = await service.capture_clip(
            Clip.from_text("middle").model_copy(update={"created_at": 20, "updated_at": 20})
        )
        newest = await service.capture_clip(
            Clip.from_text("newest").model_copy(update={"created_at": 30, "updated_at": 30})
        )
        store = HistoryStore(service, page_size=2)
        await store.load_more()
        assert [c.id for c in store.state.clips] == [newest.id, middle.id]
        unsubscribe = store.follow_captures()

        fresh = await service.capture_text("fresh")
        assert [c.id for c in store.state.clips] == [fresh.id, newest.id, middle.id]
        assert store.state.offset == 3

        again = await service.capture_text("middle")
        assert again.id == middle.id
        assert [c.id for c in store.state.clips] == [middle.id, fresh.id, newest.id]
        assert store.state.get(middle.id).access_count == 1
        assert store.state.offset == 3

        await store.load_more()
        ids = [c.id for c in store.state.clips]
        assert ids == [middle.id, fresh.id, newest.id, oldest.id]
        assert store.state.has_more is False

        unsubscribe()
        await service.capture_text("unseen")
        assert len(store.state.clips) == 4
