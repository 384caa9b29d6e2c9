"""Basic adventure loop with Story Memory.

This example demonstrates:
- Creating a story with chapter memory settings
- Seeding the world (protagonist, starting location, lorebook)
- Running turns with streamed narration
- Inspecting the world state the classifier builds in the background
- Checkpointing and restoring

Set OPENROUTER_API_KEY or OPENAI_API_KEY before running.
"""

import sys

from story_memory import MemoryConfig, Story, StorySession, StoryStore, StoreConfig
from story_memory.errors import GenerationError
from story_memory.llm import model_from_env
from story_memory.models import LorebookInjection


def main():
    model = model_from_env()
    if model is None:
        sys.exit("No model credentials found")

    store = StoryStore(StoreConfig(db_path="story.db", embedding_backend="hash"))
    story = Story(
        id="amulet",
        title="The Amulet",
        genre="fantasy",
        memory_config=MemoryConfig(chapter_threshold=20, chapter_buffer=6),
    )
    if story.id not in {s.id for s in store.list_stories()}:
        store.create_story(story)

    session = StorySession(store, story.id, model)
    try:
        # Seed the world once
        if not session.entities.world.characters:
            session.entities.add_character("Aria", relationship="self", description="A wandering sellsword")
            session.entities.add_location("Thornwood Tavern", description="Smoky and loud")
            session.entities.add_lorebook_entry(
                "The Silver Order",
                type="faction",
                description="Knights sworn to the old king",
                hidden_info="They took Elena's brother",
                aliases=["Silverblades"],
                injection=LorebookInjection(mode="keyword"),
            )
            session.save_world()

        checkpoint = session.create_checkpoint("Before the first turn")

        for action in ["I look around the tavern", "I ask the barkeep about the Silverblades"]:
            print(f"\n> {action}\n")
            try:
                session.submit_action(action, on_chunk=lambda c: print(c, end="", flush=True))
            except GenerationError as e:
                print(f"[generation failed: {e}]")
                session.retry()
            print()
            session.wait_for_background()

        world = session.entities.world
        print("\n--- World state ---")
        print(f"Characters: {[c.name for c in world.characters]}")
        print(f"Location: {world.current_location.name if world.current_location else None}")
        print(f"Threads: {[b.title for b in world.active_beats]}")
        print(f"Choices: {[c.text for c in session.action_choices]}")

        # Don't like how it went? Restore and play again
        session.restore_checkpoint(checkpoint.id)
        print(f"\nRestored to {len(session.entries)} entries")

    finally:
        session.close()
        store.close()


if __name__ == "__main__":
    main()
