"""Tests for turn orchestration in StorySession."""

from concurrent.futures import wait

import pytest
from conftest import ScriptedModel

from story_memory import Story, StorySession
from story_memory.config import ContextConfig
from story_memory.errors import GenerationError, StoryMemoryError
from story_memory.models import ActionChoice

ELENA = {
    "newCharacters": [{"name": "Elena", "relationship": "ally"}],
    "newItems": [{"name": "Ancient Amulet"}],
    "newStoryBeats": [{"title": "Find Elena's brother", "type": "quest"}],
}

SUMMARY = {
    "title": "Arrival",
    "summary": "The hero arrives and meets Elena.",
    "characters": ["Elena"],
    "plotThreads": ["Missing brother"],
}


@pytest.fixture
def make_session(store, story):
    sessions = []

    def factory(model=None, story_id=None):
        # Tier 3 off keeps the scripted response order to one call per service
        session = StorySession(
            store,
            story_id or story.id,
            model,
            context_config=ContextConfig(tier3_max_items=0),
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


def play(session, *inputs):
    """Run turns, draining background work after each."""
    for user_input in inputs:
        session.submit_action(user_input)
        session.wait_for_background()


# -----------------------------------------------------------------------------
# Turns
# -----------------------------------------------------------------------------


def test_turn_appends_entries_and_classifies(make_session, store, story):
    model = ScriptedModel(
        "Elena hands you an ancient amulet.",
        ELENA,
        {"choices": [{"text": "Ask about her brother", "type": "dialogue"}, {"text": ""}]},
    )
    session = make_session(model)

    narration = session.submit_action("I enter the tavern")
    session.wait_for_background()

    assert narration.content == "Elena hands you an ancient amulet."
    assert [e.type for e in session.entries] == ["user_action", "narration"]
    assert [e.position for e in session.entries] == [0, 1]
    assert narration.parent_id == session.entries[0].id
    assert store.get_entries(story.id) == session.entries

    world = session.entities.world
    assert [c.name for c in world.characters] == ["Elena"]
    assert [i.name for i in world.inventory] == ["Ancient Amulet"]
    assert store.load_world(story.id) == world

    assert session.action_choices == [ActionChoice(text="Ask about her brother", type="dialogue")]


def test_narration_request_carries_history_and_context(make_session):
    model = ScriptedModel("You step inside.", default="{}")
    session = make_session(model)
    session.entities.add_location("Thornwood Tavern")
    session.save_world()

    session.submit_action("I look around")
    session.wait_for_background()

    request = model.requests[0]
    assert request.messages[0].role == "system"
    assert "[CURRENT LOCATION]\nThornwood Tavern" in request.messages[0].content
    assert [(m.role, m.content) for m in request.messages[1:]] == [("user", "I look around")]


def test_streaming_chunks(make_session):
    session = make_session(ScriptedModel("The door creaks open."))
    chunks = []
    entry = session.submit_action("I push the door", on_chunk=chunks.append)
    assert "".join(chunks).strip() == entry.content


def test_finished_background_tasks_are_released(make_session):
    session = make_session(ScriptedModel(default="The wind howls."))
    for action in ["North", "East", "South"]:
        session.submit_action(action)
        wait(list(session._pending))

    session.submit_action("West")

    # Only the tasks of the latest turn are still tracked
    assert len(session._pending) <= 3
    session.wait_for_background()


def test_blank_input_rejected(make_session):
    with pytest.raises(ValueError):
        make_session(ScriptedModel()).submit_action("   ")


def test_mentioned_character_is_activated(make_session, store, story):
    session = make_session(ScriptedModel("She nods."))
    elena = session.entities.add_character("Elena")
    session.save_world()

    session.submit_action("I greet Elena")
    session.wait_for_background()

    assert session.tracker.last_activated(elena.id) == 0
    assert store.load_activation(story.id) == {elena.id: 0}


# -----------------------------------------------------------------------------
# Failure and retry
# -----------------------------------------------------------------------------


def test_failed_generation_restores_state(make_session, store, story, network_error):
    model = ScriptedModel("It is quiet.")
    session = make_session(model)
    play(session, "I wait")
    before = session.snapshot()

    model.queue(network_error)
    with pytest.raises(GenerationError) as excinfo:
        session.submit_action("I attack the dragon")

    assert excinfo.value.user_input == "I attack the dragon"
    assert excinfo.value.retryable
    assert session.snapshot() == before
    assert store.get_entries(story.id) == list(before.entries)

    model.queue("The dragon roars.")
    entry = session.retry()
    session.wait_for_background()

    assert entry.content == "The dragon roars."
    assert [e.content for e in session.entries] == ["I wait", "It is quiet.", "I attack the dragon", "The dragon roars."]


def test_empty_narration_is_a_failure(make_session):
    session = make_session(ScriptedModel(""))
    with pytest.raises(GenerationError):
        session.submit_action("I wait")
    assert session.entries == []


def test_no_model_is_not_retryable(make_session):
    session = make_session(None)
    with pytest.raises(GenerationError) as excinfo:
        session.submit_action("I wait")
    assert not excinfo.value.retryable
    assert session.entries == []


def test_retry_regenerates_last_turn(make_session):
    model = ScriptedModel("First try.")
    session = make_session(model)
    play(session, "I sing")

    model.queue("Second try.")
    session.retry()
    session.wait_for_background()

    assert [e.content for e in session.entries] == ["I sing", "Second try."]


def test_nothing_to_retry(make_session):
    with pytest.raises(ValueError):
        make_session(ScriptedModel()).retry()


# -----------------------------------------------------------------------------
# Chapters
# -----------------------------------------------------------------------------


def test_auto_chapter_after_threshold(make_session, store, story):
    """Threshold 4 plus buffer 2: the third turn makes six entries and a chapter."""
    model = ScriptedModel(default="{}")
    session = make_session(model)
    for n in (1, 2):
        model.queue(f"Narration {n}.")
        play(session, f"Action {n}")
    assert session.chapters == []

    model.queue(
        "Narration 3.",
        {},  # classification
        {"shouldCreateChapter": True, "optimalEndIndex": 1},
        SUMMARY,
    )
    play(session, "Action 3")

    [chapter] = session.chapters
    assert chapter.number == 1
    assert chapter.title == "Arrival"
    assert chapter.start_entry_id == session.entries[0].id
    assert chapter.end_entry_id == session.entries[1].id
    assert chapter.entry_count == 2
    assert store.get_chapters(story.id) == [chapter]


def test_retrieved_chapters_reach_the_narrator(make_session):
    model = ScriptedModel(default="{}")
    session = make_session(model)
    session.update_memory_config(auto_summarize=False)
    for n in range(3):
        model.queue(f"Narration {n}.")
        play(session, f"Action {n}")
    model.queue(SUMMARY)
    chapter = session.create_chapter(2)

    model.queue({"relevantChapterIds": [chapter.id]}, "Elena smiles.")
    session.submit_action("I ask about the brother")
    session.wait_for_background()

    narration_request = next(r for r in model.requests if r.messages[-1].content == "I ask about the brother")
    system = narration_request.messages[0].content
    assert "[STORY MEMORY]" in system
    assert "The hero arrives and meets Elena." in system


def test_manual_chapter(make_session, store, story):
    model = ScriptedModel(default="{}")
    session = make_session(model)
    session.update_memory_config(auto_summarize=False)
    for n in range(3):
        model.queue(f"Narration {n}.")
        play(session, f"Action {n}")

    model.queue("not a summary")
    with pytest.raises(StoryMemoryError):
        session.create_chapter(100)
    assert session.chapters == []

    model.queue(SUMMARY)
    chapter = session.create_chapter(100, title="Manual")

    # Clamped to the buffer: six entries, buffer two
    assert chapter.entry_count == 4
    assert chapter.end_entry_id == session.entries[3].id
    with pytest.raises(ValueError):
        session.create_chapter(5)


def test_resummarize_chapter(make_session, store, story):
    model = ScriptedModel(default="{}")
    session = make_session(model)
    session.update_memory_config(auto_summarize=False)
    for n in range(3):
        model.queue(f"Narration {n}.")
        play(session, f"Action {n}")
    model.queue(SUMMARY)
    chapter = session.create_chapter(2)

    model.queue({**SUMMARY, "summary": "Elena asks for help."})
    updated = session.resummarize_chapter(chapter.id)

    assert updated.summary == "Elena asks for help."
    assert (updated.id, updated.entry_count) == (chapter.id, chapter.entry_count)
    assert store.get_chapters(story.id) == [updated]
    with pytest.raises(ValueError):
        session.resummarize_chapter("missing")


# -----------------------------------------------------------------------------
# Classification, checkpoints and isolation
# -----------------------------------------------------------------------------


def test_classify_text_applies_now(make_session, store, story):
    session = make_session(ScriptedModel(ELENA))
    result = session.classify_text("Elena hands you an amulet.")

    assert [c.name for c in result.new_characters] == ["Elena"]
    assert [c.name for c in store.load_world(story.id).characters] == ["Elena"]


def test_checkpoint_restore(make_session, store, story):
    model = ScriptedModel("Narration one.", ELENA)
    session = make_session(model)
    play(session, "Action one")
    checkpoint = session.create_checkpoint("After the tavern")

    assert checkpoint.entry_count == 2
    assert checkpoint.last_entry_preview == "Narration one."

    model.queue("Narration two.", {"newCharacters": [{"name": "Mira"}]})
    play(session, "Action two")
    assert len(session.entities.world.characters) == 2

    session.restore_checkpoint(checkpoint.id)

    assert session.snapshot() == checkpoint.snapshot
    assert [c.name for c in store.load_world(story.id).characters] == ["Elena"]
    assert len(store.get_entries(story.id)) == 2
    assert [c.id for c in session.list_checkpoints()] == [checkpoint.id]


def test_checkpoint_of_another_story(make_session, store):
    store.create_story(Story(id="story-2", title="Other"))
    other = make_session(ScriptedModel("Hi."), story_id="story-2")
    play(other, "Hello")
    checkpoint = other.create_checkpoint("theirs")

    with pytest.raises(ValueError):
        make_session(ScriptedModel()).restore_checkpoint(checkpoint.id)


def test_sessions_are_independent(make_session, store):
    store.create_story(Story(id="story-2", title="Other"))
    first = make_session(ScriptedModel("Elena waves.", ELENA))
    second = make_session(ScriptedModel("Nothing here."), story_id="story-2")

    play(first, "I enter")
    play(second, "I enter")

    assert [c.name for c in first.entities.world.characters] == ["Elena"]
    assert second.entities.world.characters == ()
    assert len(store.get_entries("story-2")) == 2


def test_session_reloads_from_store(make_session, store, story):
    session = make_session(ScriptedModel("Elena waves.", ELENA))
    play(session, "I enter")

    reopened = make_session()
    assert reopened.entries == session.entries
    assert reopened.entities.world == session.entities.world
