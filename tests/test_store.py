"""Tests for StoryStore persistence."""

from dataclasses import replace

import pytest
from conftest import make_entries

from story_memory import MemoryConfig, Story
from story_memory.models import (
    Chapter,
    Character,
    Checkpoint,
    Item,
    Location,
    LorebookEntry,
    LorebookInjection,
    StoryBeat,
    StorySnapshot,
    WorldState,
)


def make_world(story_id="story-1") -> WorldState:
    return WorldState(
        characters=(
            Character(id="c1", story_id=story_id, name="Aria", relationship="self", traits=["brave"]),
            Character(id="c2", story_id=story_id, name="Elena", metadata={"age": 30}),
        ),
        locations=(
            Location(id="l1", story_id=story_id, name="Tavern", current=True, visited=True, connections=["l2"]),
            Location(id="l2", story_id=story_id, name="Forge"),
        ),
        items=(
            Item(id="i1", story_id=story_id, name="Amulet", equipped=True),
            Item(id="i2", story_id=story_id, name="Anvil", location="l2", quantity=2),
        ),
        story_beats=(StoryBeat(id="b1", story_id=story_id, title="Find the brother", type="quest"),),
        lorebook=(
            LorebookEntry(
                id="lb1",
                story_id=story_id,
                name="Silver Order",
                type="faction",
                hidden_info="They took the brother",
                aliases=["Silverblades"],
                injection=LorebookInjection(mode="keyword", keywords=["knights"], priority=2),
                first_mentioned=3,
                last_mentioned=7,
                mention_count=2,
                created_by="ai",
            ),
        ),
    )


def make_chapter(number, summary, story_id="story-1", **kwargs) -> Chapter:
    return Chapter(
        id=f"{story_id}-ch{number}",
        story_id=story_id,
        number=number,
        start_entry_id=f"e{(number - 1) * 2}",
        end_entry_id=f"e{number * 2 - 1}",
        entry_count=2,
        summary=summary,
        **kwargs,
    )


# -----------------------------------------------------------------------------
# Stories
# -----------------------------------------------------------------------------


def test_story_roundtrip(story, store):
    loaded = store.get_story(story.id)

    assert loaded.title == "The Amulet"
    assert loaded.genre == "fantasy"
    assert loaded.memory_config == MemoryConfig(chapter_threshold=4, chapter_buffer=2)


def test_update_memory_config(story, store):
    store.update_memory_config(story.id, MemoryConfig(auto_summarize=False))
    assert store.get_story(story.id).memory_config.auto_summarize is False

    with pytest.raises(ValueError):
        store.update_memory_config("missing", MemoryConfig())


def test_list_stories(store):
    store.create_story(Story(id="a", title="A", created_at=1.0, updated_at=1.0))
    store.create_story(Story(id="b", title="B", created_at=2.0, updated_at=2.0))
    assert [s.id for s in store.list_stories()] == ["b", "a"]


def test_delete_story_removes_everything(story, store):
    for entry in make_entries(3):
        store.add_entry(entry)
    store.save_world(story.id, make_world())
    store.save_chapter(make_chapter(1, "Something happened"))
    store.save_activation(story.id, {"c2": 1})

    store.delete_story(story.id)

    assert store.list_stories() == []
    assert store.get_entries(story.id) == []
    assert store.load_world(story.id) == WorldState()
    assert store.get_chapters(story.id) == []
    assert store.load_activation(story.id) == {}
    assert store.db.execute("SELECT COUNT(*) AS n FROM chapter_vec").fetchone()["n"] == 0


# -----------------------------------------------------------------------------
# Entries and world
# -----------------------------------------------------------------------------


def test_entries_in_position_order(story, store):
    entries = make_entries(6)
    for entry in reversed(entries):
        store.add_entry(entry)

    assert store.get_entries(story.id) == entries
    assert store.get_entries(story.id, limit=2) == entries[-2:]


def test_delete_entries_after(story, store):
    for entry in make_entries(5):
        store.add_entry(entry)

    assert store.delete_entries_after(story.id, 2) == 2
    assert [e.position for e in store.get_entries(story.id)] == [0, 1, 2]


def test_world_roundtrip(story, store):
    world = make_world()
    store.save_world(story.id, world)
    assert store.load_world(story.id) == world


def test_save_world_replaces(story, store):
    store.save_world(story.id, make_world())
    smaller = WorldState(characters=(Character(id="c9", story_id=story.id, name="Mira"),))
    store.save_world(story.id, smaller)
    assert store.load_world(story.id) == smaller


def test_world_is_scoped_by_story(story, store):
    store.create_story(Story(id="other", title="Other"))
    store.save_world(story.id, make_world())
    assert store.load_world("other") == WorldState()


# -----------------------------------------------------------------------------
# Chapters
# -----------------------------------------------------------------------------


def test_chapter_roundtrip_and_update(story, store):
    chapter = make_chapter(1, "Elena gives you the amulet", keywords=("amulet",), characters=("Elena",))
    store.save_chapter(chapter)
    assert store.get_chapters(story.id) == [chapter]

    revised = replace(chapter, summary="Elena begs for help")
    store.save_chapter(revised)
    assert store.get_chapters(story.id) == [revised]
    assert store.db.execute("SELECT COUNT(*) AS n FROM chapter_vec").fetchone()["n"] == 1


def test_similar_chapters_ranks_identical_text_first(story, store):
    chapters = [
        make_chapter(1, "A storm sinks the ship"),
        make_chapter(2, "Elena gives you the amulet"),
        make_chapter(3, "The forge burns down"),
    ]
    for chapter in chapters:
        store.save_chapter(chapter)

    ids = store.similar_chapters(story.id, "Elena gives you the amulet", limit=3)

    assert ids[0] == "story-1-ch2"
    assert sorted(ids) == sorted(c.id for c in chapters)
    assert len(store.similar_chapters(story.id, "anything", limit=1)) == 1


def test_similar_chapters_scoped_by_story(story, store):
    store.create_story(Story(id="other", title="Other"))
    store.save_chapter(make_chapter(1, "Mine"))
    store.save_chapter(make_chapter(1, "Theirs", story_id="other"))

    assert store.similar_chapters(story.id, "Theirs") == ["story-1-ch1"]
    assert store.similar_chapters("missing", "Theirs") == []


def test_similar_chapters_empty(story, store):
    assert store.similar_chapters(story.id, "anything") == []


# -----------------------------------------------------------------------------
# Settings, snapshots and checkpoints
# -----------------------------------------------------------------------------


def test_settings_roundtrip(story, store):
    assert store.get_setting(story.id, "theme", "dark") == "dark"
    store.set_setting(story.id, "theme", {"font": "serif"})
    store.set_setting(story.id, "theme", {"font": "mono"})
    assert store.get_setting(story.id, "theme") == {"font": "mono"}
    assert store.get_setting("", "theme") is None


def test_activation_roundtrip(story, store):
    store.save_activation(story.id, {"c2": 4})
    assert store.load_activation(story.id) == {"c2": 4}


def fill(store, story_id):
    for entry in make_entries(4):
        store.add_entry(entry)
    store.save_world(story_id, make_world())
    store.save_chapter(make_chapter(1, "Elena gives you the amulet"))
    store.save_activation(story_id, {"c2": 3})


def test_restore_snapshot(story, store):
    fill(store, story.id)
    before = store.load_snapshot(story.id)

    store.add_entry(make_entries(1, start=4)[0])
    store.save_world(story.id, WorldState())
    store.save_chapter(make_chapter(2, "The forge burns down"))
    store.save_activation(story.id, {})

    store.restore_snapshot(story.id, before)

    assert store.load_snapshot(story.id) == before
    assert store.similar_chapters(story.id, "Elena gives you the amulet") == ["story-1-ch1"]


def test_checkpoint_roundtrip(story, store):
    fill(store, story.id)
    snapshot = store.load_snapshot(story.id)
    checkpoint = Checkpoint(
        id="cp1",
        story_id=story.id,
        name="Before the forge",
        last_entry_id="e3",
        last_entry_preview="entry 3",
        entry_count=4,
        snapshot=snapshot,
        created_at=10.0,
    )
    store.save_checkpoint(checkpoint)

    loaded = store.get_checkpoint("cp1")
    assert loaded == checkpoint
    assert isinstance(loaded.snapshot, StorySnapshot)
    assert [c.id for c in store.list_checkpoints(story.id)] == ["cp1"]

    store.delete_checkpoint("cp1")
    assert store.list_checkpoints(story.id) == []
    with pytest.raises(ValueError, match="Checkpoint not found"):
        store.get_checkpoint("cp1")
