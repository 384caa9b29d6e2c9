"""Tests for the MCP tool surface."""

import asyncio
import json

import pytest
from conftest import ScriptedModel

from story_memory import mcp


@pytest.fixture
def model():
    return ScriptedModel(default="{}")


@pytest.fixture
def server(store, model):
    mcp.configure(store, model)
    yield mcp
    mcp.shutdown()


def call(name, **arguments) -> str:
    [content] = asyncio.run(mcp.call_tool(name, arguments))
    return content.text


def create_story(**arguments) -> str:
    text = call("create_story", title="The Amulet", **arguments)
    assert text.startswith("Created story: ")
    return text.removeprefix("Created story: ")


def test_tools_are_listed():
    tools = asyncio.run(mcp.list_tools())
    names = {t.name for t in tools}

    assert len(tools) == 13
    assert {"create_story", "submit_action", "build_context", "restore_checkpoint"} <= names
    assert all(t.inputSchema["type"] == "object" for t in tools)


def test_create_and_list_stories(server, store):
    story_id = create_story(mode="creative-writing", memory_config={"chapter_threshold": 8})

    [listed] = json.loads(call("list_stories"))
    assert listed["id"] == story_id
    assert listed["mode"] == "creative-writing"
    assert store.get_story(story_id).memory_config.chapter_threshold == 8


def test_submit_action(server, model, store):
    story_id = create_story()
    model.queue("You enter the tavern.")

    assert call("submit_action", story_id=story_id, user_input="I enter") == "You enter the tavern."
    assert [e.content for e in store.get_entries(story_id)] == ["I enter", "You enter the tavern."]


def test_add_entry(server, store):
    story_id = create_story()
    assert call("add_entry", story_id=story_id, type="system", content="Prologue").endswith("at position 0")
    assert store.get_entries(story_id)[0].type == "system"


def test_lorebook_entry_reaches_context(server):
    story_id = create_story()
    added = call(
        "add_lorebook_entry",
        story_id=story_id,
        name="Silver Order",
        type="faction",
        description="Knights of the old king",
        aliases=["Silverblades"],
    )
    lore_id = added.removeprefix("Added lorebook entry: ")

    context = json.loads(call("build_context", story_id=story_id, user_input="The Silverblades ride in"))

    assert [i["id"] for i in context["tier2"]] == [lore_id]
    assert context["tier2"][0]["reason"] == "matched:Silverblades"
    assert "[WORLD LORE]\n- Silver Order (faction): Knights of the old king" in context["context_block"]
    assert json.loads(call("get_activation_data", story_id=story_id)) == {lore_id: 0}


def test_classify_turn_updates_world(server, model):
    story_id = create_story()
    model.queue({"newCharacters": [{"name": "Elena", "relationship": "ally"}]})

    result = json.loads(call("classify_turn", story_id=story_id, narrative="Elena waves at you."))
    world = json.loads(call("get_world_state", story_id=story_id))

    assert [c["name"] for c in result["new_characters"]] == ["Elena"]
    assert [c["name"] for c in world["characters"]] == ["Elena"]


def test_chapters_tools(server):
    story_id = create_story()
    assert call("analyze_chapter", story_id=story_id) == "No chapter created"
    assert json.loads(call("list_chapters", story_id=story_id)) == []


def test_checkpoints(server, model, store):
    story_id = create_story()
    model.queue("First narration.")
    call("submit_action", story_id=story_id, user_input="First")
    checkpoint_id = call("create_checkpoint", story_id=story_id, name="start").removeprefix(
        "Created checkpoint: "
    )

    model.queue("Second narration.")
    call("submit_action", story_id=story_id, user_input="Second")
    assert len(store.get_entries(story_id)) == 4

    call("restore_checkpoint", story_id=story_id, checkpoint_id=checkpoint_id)
    assert len(store.get_entries(story_id)) == 2


def test_errors_become_text(server):
    assert call("get_world_state", story_id="nope") == "Error: Story not found: nope"
    story_id = create_story()
    assert call("submit_action", story_id=story_id, user_input="  ").startswith("Error:")
    assert call("teleport", story_id=story_id) == "Unknown tool: teleport"
