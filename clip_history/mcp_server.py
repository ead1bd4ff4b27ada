#!/usr/bin/env python3
"""Clip History MCP Server: clipboard history commands over stdio."""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Set

from mcp.server import Server
from mcp.server.lowlevel import NotificationOptions
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from clip_history.actions.base import ActionContext
from clip_history.actions.registry import ActionRegistry
from clip_history.core.classifier import clip_to_content
from clip_history.core.config import Settings
from clip_history.core.errors import ClipHistoryError, NotFoundError
from clip_history.core.service import ClipService
from clip_history.models.schemas import Clip, ClipResponse

logger = logging.getLogger(__name__)

SERVER_NAME = "clip-history"
SERVER_VERSION = "1.0.0"

_CLIP_ID = {"type": "string", "description": "Unique clip identifier"}
_FILTERS = {
    "favorites_only": {"type": "boolean", "default": False},
    "pinned_only": {"type": "boolean", "default": False},
}


class ClipHistoryMCPServer:
    """MCP server exposing the clip history commands as tools."""

    def __init__(self, service: Optional[ClipService] = None, settings: Optional[Settings] = None):
        self.settings = settings or (service.settings if service else Settings.from_env())
        self.service = service or ClipService.from_settings(self.settings)
        self.actions = ActionRegistry(ActionContext.for_service(self.service))
        self._background: Set[asyncio.Task] = set()

        self.app = Server(SERVER_NAME)
        self._register_handlers()

    def _register_handlers(self):
        """Register MCP protocol handlers."""

        @self.app.list_tools()
        async def list_tools() -> List[Tool]:
            return self.tools()

        @self.app.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
            """Handle MCP tool calls with structured output."""
            try:
                result = await self._dispatch_tool_call(name, arguments or {})
                return [
                    TextContent(
                        type="text",
                        text=json.dumps(result, indent=2, ensure_ascii=False, default=str),
                    )
                ]
            except Exception as e:
                logger.error(f"Tool {name} failed: {e}")
                error_result = {
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "tool": name,
                    "arguments": arguments,
                }
                return [TextContent(type="text", text=json.dumps(error_result, indent=2, default=str))]

    def tools(self) -> List[Tool]:
        return [
            Tool(
                name="clip_add",
                description="Capture content into clipboard history (identical content is bumped, not duplicated)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "content": {"type": "string", "description": "Text to store"},
                        "detected_type": {
                            "type": "string",
                            "description": "Classification, e.g. url, email, code, csv, date",
                            "default": "text",
                        },
                        "metadata": {
                            "type": "object",
                            "description": "Metadata for the detected type",
                        },
                        "app_name": {"type": "string", "description": "Source application"},
                        "embed": {
                            "type": "boolean",
                            "description": "Generate an embedding in the background",
                            "default": False,
                        },
                    },
                    "required": ["content"],
                },
            ),
            Tool(
                name="clip_list",
                description="List clipboard history, most recently used first",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "limit": {"type": "integer", "default": 10, "minimum": 1, "maximum": 100},
                        "offset": {"type": "integer", "default": 0, "minimum": 0},
                        **_FILTERS,
                    },
                },
            ),
            Tool(
                name="clip_search",
                description="Keyword, semantic or hybrid search through clipboard history",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Search text"},
                        "limit": {"type": "integer", "default": 10, "minimum": 1, "maximum": 100},
                        "offset": {"type": "integer", "default": 0, "minimum": 0},
                        "filter_types": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Only these detected types",
                        },
                        "semantic": {
                            "type": "boolean",
                            "description": "Use embeddings (per SEARCH_RANKING)",
                            "default": False,
                        },
                        "similarity_threshold": {"type": "number", "minimum": -1, "maximum": 1},
                        **_FILTERS,
                    },
                    "required": ["query"],
                },
            ),
            Tool(
                name="clip_remove",
                description="Remove clipboard entry by ID",
                inputSchema={
                    "type": "object",
                    "properties": {"clip_id": _CLIP_ID},
                    "required": ["clip_id"],
                },
            ),
            Tool(
                name="clip_favorite",
                description="Toggle the favorite flag of a clip",
                inputSchema={
                    "type": "object",
                    "properties": {"clip_id": _CLIP_ID},
                    "required": ["clip_id"],
                },
            ),
            Tool(
                name="clip_pin",
                description="Toggle the pinned flag of a clip",
                inputSchema={
                    "type": "object",
                    "properties": {"clip_id": _CLIP_ID},
                    "required": ["clip_id"],
                },
            ),
            Tool(
                name="clip_clear",
                description="Delete the whole clipboard history",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "confirm": {"type": "boolean", "description": "Must be true"},
                    },
                    "required": ["confirm"],
                },
            ),
            Tool(
                name="clip_copy",
                description="Put a clip back on the system clipboard (optionally paste it)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "clip_id": _CLIP_ID,
                        "paste": {"type": "boolean", "default": False},
                    },
                    "required": ["clip_id"],
                },
            ),
            Tool(
                name="clip_embed",
                description="Generate an embedding for a clip, or refresh all stale embeddings",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "clip_id": _CLIP_ID,
                        "stale": {
                            "type": "boolean",
                            "description": "Refresh every stale embedding instead",
                            "default": False,
                        },
                    },
                },
            ),
            Tool(
                name="clip_actions",
                description="List the smart actions available for a clip",
                inputSchema={
                    "type": "object",
                    "properties": {"clip_id": _CLIP_ID},
                    "required": ["clip_id"],
                },
            ),
            Tool(
                name="clip_run_action",
                description="Run a smart action on a clip",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "clip_id": _CLIP_ID,
                        "action_id": {"type": "string", "description": "e.g. copy, csv-to-json"},
                    },
                    "required": ["clip_id", "action_id"],
                },
            ),
            Tool(
                name="clip_reindex",
                description="Check the keyword index against stored clips, or rebuild it",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "check_only": {"type": "boolean", "default": False},
                    },
                },
            ),
            Tool(
                name="clip_stats",
                description="Get clipboard usage statistics",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]

    async def _dispatch_tool_call(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch tool calls to appropriate handlers."""
        handlers = {
            "clip_add": self._handle_clip_add,
            "clip_list": self._handle_clip_list,
            "clip_search": self._handle_clip_search,
            "clip_remove": self._handle_clip_remove,
            "clip_favorite": self._handle_clip_favorite,
            "clip_pin": self._handle_clip_pin,
            "clip_clear": self._handle_clip_clear,
            "clip_copy": self._handle_clip_copy,
            "clip_embed": self._handle_clip_embed,
            "clip_actions": self._handle_clip_actions,
            "clip_run_action": self._handle_clip_run_action,
            "clip_reindex": self._handle_clip_reindex,
            "clip_stats": self._handle_clip_stats,
        }

        handler = handlers.get(name)
        if not handler:
            raise ValueError(f"Unknown tool: {name}")

        return await handler(arguments)

    @staticmethod
    def _clip_dict(clip: Clip) -> Dict[str, Any]:
        return clip.model_dump(exclude_none=True)

    async def _require_clip(self, clip_id: str) -> Clip:
        clip = await self.service.get_clip(clip_id)
        if clip is None:
            raise NotFoundError(f"Clip not found: {clip_id}")
        return clip

    async def _handle_clip_add(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clip = await self.service.capture_text(
            args["content"],
            detected_type=args.get("detected_type") or "text",
            metadata=args.get("metadata"),
            app_name=args.get("app_name"),
        )

        response = ClipResponse(id=clip.id, status="stored", message=f"Content stored with ID {clip.id}")
        result = response.model_dump(exclude_none=True)
        result["access_count"] = clip.access_count
        if args.get("embed") and self.service.embedder is not None:
            task = asyncio.create_task(self._embed_background(clip.id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            result["processing"] = "background"
        return result

    async def _embed_background(self, clip_id: str):
        try:
            await self.service.generate_embedding(clip_id)
        except ClipHistoryError as e:
            logger.warning(f"Background embedding for {clip_id} failed: {e}")

    async def _handle_clip_list(self, args: Dict[str, Any]) -> Dict[str, Any]:
        limit = args.get("limit", 10)
        offset = args.get("offset", 0)
        clips = await self.service.get_recent_clips_paginated(
            limit,
            offset,
            favorites_only=args.get("favorites_only", False),
            pinned_only=args.get("pinned_only", False),
        )
        return {
            "clips": [self._clip_dict(clip) for clip in clips],
            "count": len(clips),
            "limit": limit,
            "offset": offset,
            "has_more": len(clips) == limit,
        }

    async def _handle_clip_search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = args["query"]
        limit = args.get("limit", 10)
        offset = args.get("offset", 0)
        clips = await self.service.search_clips_paginated(
            query,
            filter_types=args.get("filter_types"),
            limit=limit,
            offset=offset,
            use_semantic_search=args.get("semantic", False),
            similarity_threshold=args.get("similarity_threshold"),
            favorites_only=args.get("favorites_only", False),
            pinned_only=args.get("pinned_only", False),
        )
        return {
            "query": query,
            "results": [self._clip_dict(clip) for clip in clips],
            "count": len(clips),
            "offset": offset,
            "has_more": len(clips) == limit,
        }

    async def _handle_clip_remove(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clip_id = args["clip_id"]
        try:
            await self.service.delete_clip(clip_id)
        except NotFoundError:
            return {"id": clip_id, "status": "not_found"}
        return {"id": clip_id, "status": "removed"}

    async def _handle_clip_favorite(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clip_id = args["clip_id"]
        return {"id": clip_id, "is_favorite": await self.service.toggle_favorite(clip_id)}

    async def _handle_clip_pin(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clip_id = args["clip_id"]
        return {"id": clip_id, "is_pinned": await self.service.toggle_pin(clip_id)}

    async def _handle_clip_clear(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if args.get("confirm") is not True:
            raise ValueError("clip_clear requires confirm=true")
        await self.service.clear_all_clips()
        return {"status": "cleared"}

    async def _handle_clip_copy(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clip = await self._require_clip(args["clip_id"])
        text = clip.content_text or ""
        if args.get("paste"):
            await self.service.paste_clip(text, clip.id)
            return {"id": clip.id, "status": "pasted"}
        await self.service.copy_to_clipboard(text, clip.id)
        return {"id": clip.id, "status": "copied"}

    async def _handle_clip_embed(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if args.get("stale"):
            return await self.service.refresh_stale_embeddings()

        clip_id = args.get("clip_id")
        if not clip_id:
            raise ValueError("clip_embed requires clip_id unless stale=true")
        embedding = await self.service.generate_embedding(clip_id)
        return {
            "id": clip_id,
            "status": "embedded",
            "model": embedding.model,
            "dimensions": embedding.dimensions,
        }

    async def _handle_clip_actions(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clip = await self._require_clip(args["clip_id"])
        content = clip_to_content(clip)
        grouped = self.actions.resolve_grouped(content)
        return {
            "id": clip.id,
            "type": content.type,
            "actions": {
                group: [
                    {
                        "id": action.id,
                        "label": action.label,
                        "category": action.category,
                        "active": action.active(content),
                        "shortcut": action.shortcut,
                    }
                    for action in actions
                ]
                for group, actions in grouped.items()
            },
        }

    async def _handle_clip_run_action(self, args: Dict[str, Any]) -> Dict[str, Any]:
        clip = await self._require_clip(args["clip_id"])
        action_id = args["action_id"]
        ok = await self.actions.run(action_id, clip_to_content(clip))
        return {"id": clip.id, "action": action_id, "ok": ok}

    async def _handle_clip_reindex(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if args.get("check_only"):
            counts = await self.service.check_index()
            return {"status": "consistent", **counts}
        indexed = await self.service.reindex()
        return {"status": "rebuilt", "indexed": indexed}

    async def _handle_clip_stats(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self.service.get_stats()

    async def run(self):
        """Run MCP server over stdio."""
        async with stdio_server() as (read_stream, write_stream):
            await self.app.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name=SERVER_NAME,
                    server_version=SERVER_VERSION,
                    capabilities=self.app.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                ),
            )


async def async_main(settings: Settings):
    server = ClipHistoryMCPServer(settings=settings)
    try:
        await server.run()
    finally:
        server.service.close()


def main():
    """Synchronous entry point for console script."""
    settings = Settings.from_env()
    # stdout carries the MCP stream
    logging.basicConfig(
        level=settings.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(async_main(settings))
    except KeyboardInterrupt:
        logger.info("Clip History MCP Server stopped")


if __name__ == "__main__":
    main()
