"""Tests for MCP server functionality."""

import json
from unittest.mock import AsyncMock, Mock

import pytest

from clip_history.core.clipboard import ClipboardBridge
from clip_history.core.config import Settings
from clip_history.core.errors import EmbeddingUnavailableError
from clip_history.core.service import ClipService
from clip_history.core.storage import ClipStorage
from clip_history.mcp_server import ClipHistoryMCPServer


class TestClipHistoryServer:
    """Test the MCP tool handlers against a real temporary database."""

    @pytest.fixture
    def server(self, tmp_path):
        settings = Settings(db_path=str(tmp_path / "clips.db"), search_ranking="keyword")
        clipboard = Mock(spec=ClipboardBridge)
        clipboard.copy = AsyncMock()
        clipboard.paste = AsyncMock()
        clipboard.open_url = AsyncMock()
        service = ClipService(ClipStorage(settings.db_path), clipboard=clipboard, settings=settings)
        server = ClipHistoryMCPServer(service=service)
        yield server
        service.close()

    def test_tool_names(self, server):
        names = [tool.name for tool in server.tools()]

        assert names == [
            "clip_add",
            "clip_list",
            "clip_search",
            "clip_remove",
            "clip_favorite",
            "clip_pin",
            "clip_clear",
            "clip_copy",
            "clip_embed",
            "clip_actions",
            "clip_run_action",
            "clip_reindex",
            "clip_stats",
        ]

    @pytest.mark.asyncio
    async def test_add_list_search_remove(self, server):
        added = await server._dispatch_tool_call("clip_add", {"content": "hello world"})
        assert added["status"] == "stored"

        listed = await server._dispatch_tool_call("clip_list", {"limit": 5})
        assert listed["count"] == 1
        assert listed["clips"][0]["id"] == added["id"]
        assert listed["has_more"] is False

        found = await server._dispatch_tool_call("clip_search", {"query": "world"})
        assert [r["id"] for r in found["results"]] == [added["id"]]

        removed = await server._dispatch_tool_call("clip_remove", {"clip_id": added["id"]})
        assert removed == {"id": added["id"], "status": "removed"}

        again = await server._dispatch_tool_call("clip_remove", {"clip_id": added["id"]})
        assert again["status"] == "not_found"

        found = await server._dispatch_tool_call("clip_search", {"query": "world"})
        assert found["count"] == 0

    @pytest.mark.asyncio
    async def test_add_duplicate_bumps(self, server):
        first = await server._dispatch_tool_call("clip_add", {"content": "dup"})
        second = await server._dispatch_tool_call("clip_add", {"content": "dup"})

        assert second["id"] == first["id"]
        assert second["access_count"] == 1

    @pytest.mark.asyncio
    async def test_toggles(self, server):
        added = await server._dispatch_tool_call("clip_add", {"content": "flag"})

        fav = await server._dispatch_tool_call("clip_favorite", {"clip_id": added["id"]})
        pin = await server._dispatch_tool_call("clip_pin", {"clip_id": added["id"]})

        assert fav["is_favorite"] is True
        assert pin["is_pinned"] is True
        favorites = await server._dispatch_tool_call("clip_list", {"favorites_only": True})
        assert favorites["count"] == 1

    @pytest.mark.asyncio
    async def test_clear_requires_confirm(self, server):
        await server._dispatch_tool_call("clip_add", {"content": "keep"})

        with pytest.raises(ValueError):
            await server._dispatch_tool_call("clip_clear", {})

        assert (await server._dispatch_tool_call("clip_clear", {"confirm": True}))["status"] == "cleared"
        assert (await server._dispatch_tool_call("clip_list", {}))["count"] == 0

    @pytest.mark.asyncio
    async def test_copy(self, server):
        added = await server._dispatch_tool_call("clip_add", {"content": "copy me"})

        result = await server._dispatch_tool_call("clip_copy", {"clip_id": added["id"]})

        assert result["status"] == "copied"
        server.service.clipboard.copy.assert_awaited_once_with("copy me")

    @pytest.mark.asyncio
    async def test_actions_and_run(self, server):
        added = await server._dispatch_tool_call(
            "clip_add",
            {
                "content": "https://example.com",
                "detected_type": "url",
                "metadata": {"url": "https://example.com", "domain": "example.com"},
            },
        )

        actions = await server._dispatch_tool_call("clip_actions", {"clip_id": added["id"]})
        assert actions["type"] == "url"
        assert [a["id"] for a in actions["actions"]["smart"]] == ["open-url", "search-url", "copy-domain"]
        # No embedding client configured
        assert "generate-embedding" not in [a["id"] for a in actions["actions"]["standard"]]

        ran = await server._dispatch_tool_call(
            "clip_run_action", {"clip_id": added["id"], "action_id": "open-url"}
        )
        assert ran["ok"] is True
        server.service.clipboard.open_url.assert_awaited_once_with("https://example.com")

    @pytest.mark.asyncio
    async def test_embed_without_client(self, server):
        added = await server._dispatch_tool_call("clip_add", {"content": "no vectors", "embed": True})
        assert "processing" not in added

        with pytest.raises(EmbeddingUnavailableError):
            await server._dispatch_tool_call("clip_embed", {"clip_id": added["id"]})

    @pytest.mark.asyncio
    async def test_reindex_and_stats(self, server):
        await server._dispatch_tool_call("clip_add", {"content": "indexed"})

        check = await server._dispatch_tool_call("clip_reindex", {"check_only": True})
        rebuilt = await server._dispatch_tool_call("clip_reindex", {})
        stats = await server._dispatch_tool_call("clip_stats", {})

        assert check["status"] == "consistent"
        assert rebuilt == {"status": "rebuilt", "indexed": 1}
        assert stats["total_clips"] == 1
        json.dumps(stats)

    @pytest.mark.asyncio
    async def test_unknown_tool(self, server):
        with pytest.raises(ValueError):
            await server._dispatch_tool_call("clip_fly", {})
