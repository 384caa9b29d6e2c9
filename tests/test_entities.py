"""Tests for the entity store and classification merges."""

import itertools

import pytest

from story_memory.classifier import ClassificationResult
from story_memory.entities import EntityStore, apply_classification
from story_memory.models import INVENTORY, LorebookInjection, WorldState
from story_memory.names import mentions, name_tokens, names_match


@pytest.fixture
def entities():
    counter = itertools.count(1)
    return EntityStore("s", id_factory=lambda: f"id{next(counter)}", clock=lambda: 100.0)


def result(**data) -> ClassificationResult:
    return ClassificationResult.model_validate(data)


# -----------------------------------------------------------------------------
# Name matching
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    "a,b,expected",
    [
        ("Elena", "elena", True),
        ("Elena", "Elena, the blacksmith's daughter", True),
        ("The Thornwood Tavern", "thornwood tavern", True),
        ("John Smith", "John Doe", False),
        ("Ann", "Anna", False),
        ("", "Elena", False),
    ],
)
def test_names_match(a, b, expected):
    assert names_match(a, b) is expected


def test_mentions_is_whole_word():
    assert mentions("You speak with Elena.", "elena")
    assert not mentions("Elenas are rare", "Elena")
    assert mentions("the  Thornwood\nTavern", "Thornwood Tavern")


def test_name_tokens_skip_stopwords():
    assert name_tokens("Lord Varric of the North") == ["Varric"]
    assert name_tokens("Elena") == []


# -----------------------------------------------------------------------------
# Applying deltas
# -----------------------------------------------------------------------------


def test_apply_creates_entities(entities):
    world = entities.apply(
        result(
            newCharacters=[{"name": "Elena", "relationship": "ally"}],
            newLocations=[{"name": "Thornwood Tavern"}],
            newItems=[{"name": "Ancient Amulet"}],
            newStoryBeats=[{"title": "Find the brother", "type": "quest"}],
            newLoreEntries=[{"name": "The Silver Order", "type": "faction", "keywords": ["order"]}],
        ),
        position=4,
    )

    assert [c.name for c in world.characters] == ["Elena"]
    assert world.current_location.name == "Thornwood Tavern"
    assert world.current_location.visited
    assert world.items[0].location == INVENTORY
    assert world.story_beats[0].status == "active"

    lore = world.lorebook[0]
    assert lore.created_by == "ai"
    assert lore.injection.mode == "keyword"
    assert lore.injection.keywords == ["order"]
    assert (lore.first_mentioned, lore.last_mentioned, lore.mention_count) == (4, 4, 1)


def test_apply_does_not_mutate_input():
    world = WorldState()
    updated = apply_classification(world, result(newCharacters=[{"name": "Elena"}]), "s")
    assert world.characters == ()
    assert len(updated.characters) == 1


def test_scene_moves_single_current_location(entities):
    entities.add_location("Village Square")
    entities.add_location("Thornwood Tavern")
    assert entities.world.current_location.name == "Village Square"

    world = entities.apply(result(scene={"currentLocationName": "thornwood tavern"}))

    assert world.current_location.name == "Thornwood Tavern"
    assert sum(loc.current for loc in world.locations) == 1
    assert all(loc.visited for loc in world.locations)


def test_updates_change_existing_entities(entities):
    entities.add_character("Elena")
    entities.add_item("Torch", quantity=3)
    entities.add_story_beat("Find the brother", type="quest")

    world = entities.apply(
        result(
            characterUpdates=[{"name": "Elena", "changes": {"status": "deceased", "traits": ["brave"]}}],
            itemUpdates=[{"name": "torch", "changes": {"quantity": 1, "equipped": True}}],
            storyBeatUpdates=[{"title": "Find the brother", "changes": {"status": "completed"}}],
        )
    )

    assert world.characters[0].status == "deceased"
    assert world.characters[0].traits == ["brave"]
    assert (world.items[0].quantity, world.items[0].equipped) == (1, True)
    assert world.story_beats[0].status == "completed"
    assert world.story_beats[0].triggered_at == 100.0


def test_apply_is_idempotent(entities):
    delta = result(
        newCharacters=[{"name": "Elena"}],
        newItems=[{"name": "Amulet"}],
        newLoreEntries=[{"name": "The Silver Order"}],
    )
    first = entities.apply(delta, position=1)
    second = entities.apply(delta, position=1)
    assert first == second


def test_classification_never_reassigns_protagonist(entities):
    entities.add_character("Aria", relationship="self")
    world = entities.apply(
        result(characterUpdates=[{"name": "Aria", "changes": {"relationship": "enemy"}}])
    )
    assert world.protagonist.name == "Aria"


# -----------------------------------------------------------------------------
# User edits and invariants
# -----------------------------------------------------------------------------


def test_single_protagonist(entities):
    entities.add_character("Aria", relationship="self")
    with pytest.raises(ValueError):
        entities.add_character("Brann", relationship="self")


def test_set_protagonist_swaps(entities):
    aria = entities.add_character("Aria", relationship="self")
    brann = entities.add_character("Brann", relationship="rival")

    entities.set_protagonist(brann.id)

    assert entities.world.protagonist.id == brann.id
    assert entities.get("character", aria.id).relationship == "rival"


def test_cannot_unset_current_location(entities):
    square = entities.add_location("Village Square")
    with pytest.raises(ValueError):
        entities.update_location(square.id, current=False)


def test_deleting_current_location_reassigns(entities):
    square = entities.add_location("Village Square")
    entities.add_location("Tavern")
    entities.delete_location(square.id)
    assert entities.world.current_location.name == "Tavern"


def test_item_location_must_exist(entities):
    with pytest.raises(ValueError):
        entities.add_item("Chest", location="nowhere")
    square = entities.add_location("Village Square")
    assert entities.add_item("Chest", location=square.id).location == square.id


def test_invalid_enum_values_rejected(entities):
    with pytest.raises(ValueError):
        entities.add_story_beat("Beat", type="side-quest")
    with pytest.raises(ValueError):
        entities.add_lorebook_entry("Thing", type="weapon")
    with pytest.raises(ValueError):
        entities.update_character("missing", status="active")


def test_snapshot_is_isolated(entities):
    entities.add_character("Elena", traits=["kind"])
    snap = entities.snapshot()
    entities.update_character(entities.world.characters[0].id, traits=["kind", "tired"])
    assert snap.characters[0].traits == ["kind"]
    entities.restore(snap)
    assert entities.world.characters[0].traits == ["kind"]


def test_record_mentions(entities):
    order = entities.add_lorebook_entry(
        "The Silver Order",
        type="faction",
        aliases=["Silverblades"],
        injection=LorebookInjection(keywords=["silver knights"]),
    )
    entities.add_lorebook_entry("Dragonfire", type="concept")

    assert entities.record_mentions("The Silverblades ride out.", 3) == [order.id]
    assert entities.record_mentions("Silver knights everywhere.", 7) == [order.id]

    entry = entities.get("lorebook", order.id)
    assert (entry.first_mentioned, entry.last_mentioned, entry.mention_count) == (3, 7, 2)


def test_non_finite_quantity_update_is_ignored(entities):
    entities.add_item("Amulet", quantity=2)
    world = entities.apply(
        result(itemUpdates=[{"name": "Amulet", "changes": {"quantity": float("inf"), "equipped": True}}])
    )
    assert (world.items[0].quantity, world.items[0].equipped) == (2, True)


def test_new_lore_is_counted_once_per_position(entities):
    entities.apply(result(newLoreEntries=[{"name": "Silver Order"}]), position=5)
    entities.record_mentions("The Silver Order rides out.", 5)

    lore = entities.world.lorebook[0]
    assert (lore.first_mentioned, lore.last_mentioned, lore.mention_count) == (5, 5, 1)

    entities.record_mentions("The Silver Order returns.", 6)
    assert entities.world.lorebook[0].mention_count == 2


def test_deleting_location_moves_its_items(entities):
    square = entities.add_location("Village Square")
    forge = entities.add_location("Forge")
    anvil = entities.add_item("Anvil", location=forge.id)
    torch = entities.add_item("Torch")

    entities.delete_location(forge.id)

    assert entities.get("item", anvil.id).location == square.id
    assert entities.get("item", torch.id).location == INVENTORY


def test_deleting_last_location_moves_items_to_inventory(entities):
    forge = entities.add_location("Forge")
    anvil = entities.add_item("Anvil", location=forge.id)

    entities.delete_location(forge.id)

    assert entities.world.locations == ()
    assert entities.get("item", anvil.id).location == INVENTORY
