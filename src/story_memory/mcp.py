"""MCP server for Story Memory.

Exposes stories, world state, classification, context assembly and chapter
memory through Model Context Protocol tools.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from story_memory.config import load_store_config_from_env
from story_memory.entities import new_id
from story_memory.llm import LanguageModel, model_from_env
from story_memory.models import LorebookInjection, MemoryConfig, Story
from story_memory.session import StorySession
from story_memory.store import StoryStore, world_to_dict

logger = logging.getLogger(__name__)

# Initialized on first tool call
_store: StoryStore | None = None
_model: LanguageModel | None = None
_model_loaded = False
_sessions: dict[str, StorySession] = {}


def configure(store: StoryStore, model: LanguageModel | None = None) -> None:
    """Use an existing store and model instead of the environment."""
    global _store, _model, _model_loaded
    for session in _sessions.values():
        session.close()
    _sessions.clear()
    _store = store
    _model = model
    _model_loaded = True


def shutdown() -> None:
    """Drain and close every open session, then forget the store and model."""
    global _store, _model, _model_loaded
    for session in _sessions.values():
        session.close()
    _sessions.clear()
    _store = None
    _model = None
    _model_loaded = False


def get_store() -> StoryStore:
    """Get or initialize the store from STORY_MEMORY_* variables."""
    global _store
    if _store is None:
        _store = StoryStore(load_store_config_from_env())
    return _store


def get_model() -> LanguageModel | None:
    global _model, _model_loaded
    if not _model_loaded:
        _model = model_from_env()
        _model_loaded = True
    return _model


def get_session(story_id: str) -> StorySession:
    """One session per story id, created on first use."""
    session = _sessions.get(story_id)
    if session is None:
        session = StorySession(get_store(), story_id, get_model())
        _sessions[story_id] = session
    return session


server = Server("story_memory")


# -------------------------------------------------------------------------
# Tool Definitions
# -------------------------------------------------------------------------

_STORY_ID = {"type": "string", "description": "Story id"}

TOOLS = [
    Tool(
        name="create_story",
        description="Create a story with its chapter memory settings",
        inputSchema={
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "mode": {"type": "string", "enum": ["adventure", "creative-writing"]},
                "genre": {"type": "string"},
                "description": {"type": "string"},
                "pov": {"type": "string", "enum": ["first", "second", "third"]},
                "tense": {"type": "string", "enum": ["past", "present"]},
                "memory_config": {
                    "type": "object",
                    "description": "chapter_threshold, chapter_buffer, auto_summarize, "
                    "enable_retrieval, max_chapters_per_retrieval",
                },
            },
            "required": ["title"],
        },
    ),
    Tool(
        name="list_stories",
        description="List stories, most recently updated first",
        inputSchema={"type": "object", "properties": {}},
    ),
    Tool(
        name="add_entry",
        description="Append a raw entry to a story without generating narration",
        inputSchema={
            "type": "object",
            "properties": {
                "story_id": _STORY_ID,
                "type": {"type": "string", "enum": ["user_action", "narration", "system"]},
                "content": {"type": "string"},
            },
            "required": ["story_id", "type", "content"],
        },
    ),
    Tool(
        name="submit_action",
        description="Run a full turn: retrieval, context, narration, background memory updates",
        inputSchema={
            "type": "object",
            "properties": {"story_id": _STORY_ID, "user_input": {"type": "string"}},
            "required": ["story_id", "user_input"],
        },
    ),
    Tool(
        name="get_world_state",
        description="Characters, locations, items, story beats and lorebook of a story",
        inputSchema={
            "type": "object",
            "properties": {"story_id": _STORY_ID},
            "required": ["story_id"],
        },
    ),
    Tool(
        name="add_lorebook_entry",
        description="Add a lorebook entry with an injection policy",
        inputSchema={
            "type": "object",
            "properties": {
                "story_id": _STORY_ID,
                "name": {"type": "string"},
                "type": {
                    "type": "string",
                    "enum": ["character", "location", "item", "faction", "concept", "event"],
                },
                "description": {"type": "string"},
                "hidden_info": {"type": "string"},
                "aliases": {"type": "array", "items": {"type": "string"}},
                "keywords": {"type": "array", "items": {"type": "string"}},
                "mode": {"type": "string", "enum": ["always", "keyword", "never"]},
                "priority": {"type": "integer"},
            },
            "required": ["story_id", "name"],
        },
    ),
    Tool(
        name="classify_turn",
        description="Extract entity changes from narrative text and apply them to the world",
        inputSchema={
            "type": "object",
            "properties": {
                "story_id": _STORY_ID,
                "narrative": {"type": "string"},
                "user_action": {"type": "string"},
            },
            "required": ["story_id", "narrative"],
        },
    ),
    Tool(
        name="build_context",
        description="Assemble the tiered world-state context for a player input",
        inputSchema={
            "type": "object",
            "properties": {"story_id": _STORY_ID, "user_input": {"type": "string"}},
            "required": ["story_id", "user_input"],
        },
    ),
    Tool(
        name="analyze_chapter",
        description="Run chapter analysis now and create a chapter if a break is found",
        inputSchema={
            "type": "object",
            "properties": {"story_id": _STORY_ID},
            "required": ["story_id"],
        },
    ),
    Tool(
        name="list_chapters",
        description="List a story's chapter summaries",
        inputSchema={
            "type": "object",
            "properties": {"story_id": _STORY_ID},
            "required": ["story_id"],
        },
    ),
    Tool(
        name="get_activation_data",
        description="Entity id to last-activated story position, used for context stickiness",
        inputSchema={
            "type": "object",
            "properties": {"story_id": _STORY_ID},
            "required": ["story_id"],
        },
    ),
    Tool(
        name="create_checkpoint",
        description="Save a named, restorable snapshot of a story",
        inputSchema={
            "type": "object",
            "properties": {"story_id": _STORY_ID, "name": {"type": "string"}},
            "required": ["story_id", "name"],
        },
    ),
    Tool(
        name="restore_checkpoint",
        description="Restore a story to a saved checkpoint",
        inputSchema={
            "type": "object",
            "properties": {"story_id": _STORY_ID, "checkpoint_id": {"type": "string"}},
            "required": ["story_id", "checkpoint_id"],
        },
    ),
]


# -------------------------------------------------------------------------
# MCP Handlers
# -------------------------------------------------------------------------


def _json(value: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(value, indent=2))]


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


def _context_items(items) -> list[dict]:
    return [
        {"kind": i.kind, "id": i.entity_id, "name": i.name, "tier": i.tier, "reason": i.reason}
        for i in items
    ]


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return TOOLS


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""
    try:
        return dispatch(name, arguments)
    except Exception as e:
        logger.warning("Tool %s failed: %s", name, e)
        return _text(f"Error: {e}")


def dispatch(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Route a tool call to the store or the story's session."""
    if name == "create_story":
        story = Story(
            id=new_id(),
            title=arguments["title"],
            mode=arguments.get("mode", "adventure"),
            genre=arguments.get("genre"),
            description=arguments.get("description"),
            pov=arguments.get("pov", "second"),
            tense=arguments.get("tense", "present"),
            memory_config=MemoryConfig.from_dict(arguments.get("memory_config")),
        )
        return _text(f"Created story: {get_store().create_story(story)}")

    if name == "list_stories":
        return _json(
            [
                {"id": s.id, "title": s.title, "mode": s.mode, "genre": s.genre, "updated_at": s.updated_at}
                for s in get_store().list_stories()
            ]
        )

    session = get_session(arguments["story_id"])

    if name == "add_entry":
        entry = session.add_entry(arguments["type"], arguments["content"])
        return _text(f"Added entry {entry.id} at position {entry.position}")

    if name == "submit_action":
        entry = session.submit_action(arguments["user_input"])
        return _text(entry.content)

    if name == "get_world_state":
        session.wait_for_background()
        return _json(world_to_dict(session.entities.world))

    if name == "add_lorebook_entry":
        session.wait_for_background()
        entry = session.entities.add_lorebook_entry(
            arguments["name"],
            type=arguments.get("type", "concept"),
            description=arguments.get("description"),
            hidden_info=arguments.get("hidden_info"),
            aliases=list(arguments.get("aliases") or []),
            injection=LorebookInjection(
                mode=arguments.get("mode", "keyword"),
                keywords=list(arguments.get("keywords") or []),
                priority=int(arguments.get("priority", 0)),
            ),
        )
        session.save_world()
        return _text(f"Added lorebook entry: {entry.id}")

    if name == "classify_turn":
        result = session.classify_text(arguments["narrative"], arguments.get("user_action", ""))
        return _json(result.model_dump())

    if name == "build_context":
        result = session.build_context(arguments["user_input"])
        return _json(
            {
                "tier1": _context_items(result.tier1),
                "tier2": _context_items(result.tier2),
                "tier3": _context_items(result.tier3),
                "context_block": result.context_block,
            }
        )

    if name == "analyze_chapter":
        session.wait_for_background()
        chapter = session.maybe_create_chapter()
        if chapter is None:
            return _text("No chapter created")
        return _json(asdict(chapter))

    if name == "list_chapters":
        session.wait_for_background()
        return _json([asdict(c) for c in session.chapters])

    if name == "get_activation_data":
        return _json(session.tracker.get_activation_data())

    if name == "create_checkpoint":
        checkpoint = session.create_checkpoint(arguments["name"])
        return _text(f"Created checkpoint: {checkpoint.id}")

    if name == "restore_checkpoint":
        session.restore_checkpoint(arguments["checkpoint_id"])
        return _text(f"Restored checkpoint: {arguments['checkpoint_id']}")

    return _text(f"Unknown tool: {name}")


# -------------------------------------------------------------------------
# Main Entry Point
# -------------------------------------------------------------------------


async def main():
    """Run the MCP server."""
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        shutdown()


def run() -> None:
    """Console script entry point."""
    import asyncio

    asyncio.run(main())


if __name__ == "__main__":
    run()
