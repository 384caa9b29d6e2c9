"""World entity store: invariants, user edits and classification merges."""

from __future__ import annotations

import copy
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import fields, replace

from story_memory.classifier import ClassificationResult
from story_memory.models import (
    CHARACTER_STATUSES,
    CREATED_BY,
    INJECTION_MODES,
    INVENTORY,
    LOREBOOK_TYPES,
    PROTAGONIST_RELATIONSHIP,
    STORY_BEAT_STATUSES,
    STORY_BEAT_TYPES,
    Character,
    Item,
    Location,
    LorebookEntry,
    LorebookInjection,
    StoryBeat,
    WorldState,
)
from story_memory.names import find_by_name, find_index_by_name, match_reason
from story_memory.parsing import coerce_int

logger = logging.getLogger(__name__)

_COLLECTIONS = {
    "character": "characters",
    "location": "locations",
    "item": "items",
    "story_beat": "story_beats",
    "lorebook": "lorebook",
}


def new_id() -> str:
    return uuid.uuid4().hex


def validate_world(world: WorldState) -> None:
    """Raise ValueError if the single-protagonist or single-current-location invariant is broken."""
    protagonists = [c.name for c in world.characters if c.is_protagonist]
    if len(protagonists) > 1:
        raise ValueError(f"Only one protagonist allowed, found: {protagonists}")
    current = [loc.name for loc in world.locations if loc.current]
    if len(current) > 1:
        raise ValueError(f"Only one current location allowed, found: {current}")
    if world.locations and not current:
        raise ValueError("One location must be current once any location exists")


def _merge_strings(existing: list[str], extra: list[str]) -> list[str]:
    seen = {s.lower() for s in existing}
    merged = list(existing)
    for value in extra:
        if value.lower() not in seen:
            merged.append(value)
            seen.add(value.lower())
    return merged


def _ensure_current(locations: list[Location]) -> None:
    if locations and not any(loc.current for loc in locations):
        locations[0] = replace(locations[0], current=True, visited=True)


def _move_current(locations: list[Location], index: int) -> None:
    for i, loc in enumerate(locations):
        if i == index:
            locations[i] = replace(loc, current=True, visited=True)
        elif loc.current:
            locations[i] = replace(loc, current=False, visited=True)


def _character_changes(character: Character, changes: dict) -> Character:
    updates: dict = {}
    status = str(changes.get("status") or "").lower()
    if status in CHARACTER_STATUSES:
        updates["status"] = status
    relationship = changes.get("relationship")
    if (
        isinstance(relationship, str)
        and relationship.strip()
        and relationship.strip().lower() != PROTAGONIST_RELATIONSHIP
        and not character.is_protagonist
    ):
        updates["relationship"] = relationship.strip()
    description = changes.get("description")
    if isinstance(description, str) and description.strip():
        updates["description"] = description.strip()
    traits = changes.get("traits")
    if isinstance(traits, list):
        updates["traits"] = _merge_strings(
            character.traits, [str(t).strip() for t in traits if str(t).strip()]
        )
    return replace(character, **updates) if updates else character


def _item_changes(item: Item, changes: dict, locations: list[Location]) -> Item:
    updates: dict = {}
    quantity = coerce_int(changes.get("quantity"))
    if quantity is not None and quantity >= 0:
        updates["quantity"] = quantity
    if isinstance(changes.get("equipped"), bool):
        updates["equipped"] = changes["equipped"]
    target = changes.get("location")
    if isinstance(target, str) and target.strip():
        if target.strip().lower() == INVENTORY:
            updates["location"] = INVENTORY
        else:
            match = next((loc for loc in locations if loc.id == target), None)
            match = match or find_by_name(locations, target)
            if match is not None:
                updates["location"] = match.id
    description = changes.get("description")
    if isinstance(description, str) and description.strip():
        updates["description"] = description.strip()
    return replace(item, **updates) if updates else item


def _beat_changes(beat: StoryBeat, changes: dict, now: float) -> StoryBeat:
    updates: dict = {}
    status = str(changes.get("status") or "").lower()
    if status in STORY_BEAT_STATUSES and status != beat.status:
        updates["status"] = status
        if status in ("completed", "failed") and beat.triggered_at is None:
            updates["triggered_at"] = now
    description = changes.get("description")
    if isinstance(description, str) and description.strip():
        updates["description"] = description.strip()
    return replace(beat, **updates) if updates else beat


def apply_classification(
    world: WorldState,
    result: ClassificationResult,
    story_id: str,
    *,
    position: int | None = None,
    id_factory: Callable[[], str] = new_id,
    clock: Callable[[], float] = time.time,
) -> WorldState:
    """Return a new WorldState with the delta merged in; world is not modified.

    Merging is idempotent: applying the same result twice leaves the second
    application a no-op, because every "new" entity is first matched against
    existing names case-insensitively.
    """
    now = clock()

    characters = list(world.characters)
    for delta in result.new_characters:
        idx = find_index_by_name(characters, delta.name)
        if idx is None:
            characters.append(
                Character(
                    id=id_factory(),
                    story_id=story_id,
                    name=delta.name,
                    description=delta.description,
                    relationship=delta.relationship,
                    traits=list(delta.traits),
                    status=delta.status,
                )
            )
            continue
        existing = characters[idx]
        characters[idx] = replace(
            existing,
            description=existing.description or delta.description,
            relationship=existing.relationship or delta.relationship,
            traits=_merge_strings(existing.traits, delta.traits),
        )
    for update in result.character_updates:
        idx = find_index_by_name(characters, update.name)
        if idx is None:
            logger.debug("Ignoring update for unknown character %r", update.name)
            continue
        characters[idx] = _character_changes(characters[idx], update.changes)

    locations = list(world.locations)
    for delta in result.new_locations:
        idx = find_index_by_name(locations, delta.name)
        if idx is None:
            locations.append(
                Location(
                    id=id_factory(),
                    story_id=story_id,
                    name=delta.name,
                    description=delta.description,
                    visited=True,
                    connections=list(delta.connections),
                )
            )
            continue
        existing = locations[idx]
        locations[idx] = replace(
            existing,
            description=existing.description or delta.description,
            connections=_merge_strings(existing.connections, delta.connections),
        )
    if result.scene.current_location_name:
        idx = find_index_by_name(locations, result.scene.current_location_name)
        if idx is not None:
            _move_current(locations, idx)
    _ensure_current(locations)

    items = list(world.items)
    for delta in result.new_items:
        idx = find_index_by_name(items, delta.name)
        if idx is None:
            items.append(
                Item(
                    id=id_factory(),
                    story_id=story_id,
                    name=delta.name,
                    description=delta.description,
                    quantity=delta.quantity,
                )
            )
            continue
        existing = items[idx]
        items[idx] = replace(existing, description=existing.description or delta.description)
    for update in result.item_updates:
        idx = find_index_by_name(items, update.name)
        if idx is not None:
            items[idx] = _item_changes(items[idx], update.changes, locations)

    beats = list(world.story_beats)
    for delta in result.new_story_beats:
        idx = find_index_by_name(beats, delta.title, "title")
        if idx is None:
            beats.append(
                StoryBeat(
                    id=id_factory(),
                    story_id=story_id,
                    title=delta.title,
                    description=delta.description,
                    type=delta.type,
                    status=delta.status,
                    triggered_at=now if delta.status in ("completed", "failed") else None,
                )
            )
            continue
        existing = beats[idx]
        beats[idx] = replace(existing, description=existing.description or delta.description)
    for update in result.story_beat_updates:
        idx = find_index_by_name(beats, update.name, "title")
        if idx is not None:
            beats[idx] = _beat_changes(beats[idx], update.changes, now)

    lorebook = list(world.lorebook)
    for delta in result.new_lore_entries:
        idx = find_index_by_name(lorebook, delta.name)
        if idx is None:
            lorebook.append(
                LorebookEntry(
                    id=id_factory(),
                    story_id=story_id,
                    name=delta.name,
                    type=delta.type,
                    description=delta.description,
                    aliases=list(delta.aliases),
                    injection=LorebookInjection(mode="keyword", keywords=list(delta.keywords)),
                    first_mentioned=position,
                    last_mentioned=position,
                    mention_count=1 if position is not None else 0,
                    created_by="ai",
                    created_at=now,
                    updated_at=now,
                )
            )
            continue
        existing = lorebook[idx]
        lorebook[idx] = replace(
            existing,
            description=existing.description or delta.description,
            aliases=_merge_strings(existing.aliases, delta.aliases),
        )

    updated = WorldState(
        characters=tuple(characters),
        locations=tuple(locations),
        items=tuple(items),
        story_beats=tuple(beats),
        lorebook=tuple(lorebook),
    )
    validate_world(updated)
    return updated


class EntityStore:
    """Holds one story's world state.

    The state is an immutable WorldState snapshot; every operation builds a
    new snapshot and swaps it in, so a snapshot handed out earlier never
    changes underneath its reader.
    """

    def __init__(
        self,
        story_id: str,
        world: WorldState | None = None,
        id_factory: Callable[[], str] = new_id,
        clock: Callable[[], float] = time.time,
    ):
        self.story_id = story_id
        self._id_factory = id_factory
        self._clock = clock
        world = world or WorldState()
        validate_world(world)
        self._world = world

    @property
    def world(self) -> WorldState:
        return self._world

    def snapshot(self) -> WorldState:
        """A deep copy safe to keep across later edits."""
        return copy.deepcopy(self._world)

    def restore(self, world: WorldState) -> None:
        validate_world(world)
        self._world = copy.deepcopy(world)

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def apply(self, result: ClassificationResult, position: int | None = None) -> WorldState:
        """Merge a classification delta into the store."""
        if result.is_empty:
            return self._world
        self._world = apply_classification(
            self._world,
            result,
            self.story_id,
            position=position,
            id_factory=self._id_factory,
            clock=self._clock,
        )
        return self._world

    # -------------------------------------------------------------------------
    # Generic helpers
    # -------------------------------------------------------------------------

    def get(self, kind: str, entity_id: str):
        """Look up an entity by kind and id; raises ValueError if missing."""
        collection = getattr(self._world, self._collection(kind))
        entity = next((e for e in collection if e.id == entity_id), None)
        if entity is None:
            raise ValueError(f"{kind} not found: {entity_id}")
        return entity

    def _collection(self, kind: str) -> str:
        if kind not in _COLLECTIONS:
            raise ValueError(f"Unknown entity kind: {kind}")
        return _COLLECTIONS[kind]

    def _commit(self, **collections) -> None:
        world = replace(self._world, **{k: tuple(v) for k, v in collections.items()})
        validate_world(world)
        self._world = world

    def _add(self, kind: str, entity) -> None:
        name = self._collection(kind)
        self._commit(**{name: [*getattr(self._world, name), entity]})

    def _edited(self, kind: str, entity_id: str, changes: dict):
        entity = self.get(kind, entity_id)
        allowed = {f.name for f in fields(entity)} - {"id", "story_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown {kind} fields: {sorted(unknown)}")
        return replace(entity, **changes)

    def _swap(self, kind: str, entity) -> None:
        name = self._collection(kind)
        self._commit(
            **{name: [entity if e.id == entity.id else e for e in getattr(self._world, name)]}
        )

    def _remove(self, kind: str, entity_id: str) -> None:
        self.get(kind, entity_id)
        name = self._collection(kind)
        self._commit(**{name: [e for e in getattr(self._world, name) if e.id != entity_id]})

    @staticmethod
    def _check(field_name: str, value, allowed: tuple) -> None:
        if value not in allowed:
            raise ValueError(f"Invalid {field_name}: {value!r} (expected one of {allowed})")

    # -------------------------------------------------------------------------
    # Characters
    # -------------------------------------------------------------------------

    def add_character(self, name: str, **attrs) -> Character:
        character = Character(id=self._id_factory(), story_id=self.story_id, name=name, **attrs)
        self._check("status", character.status, CHARACTER_STATUSES)
        if character.is_protagonist and self._world.protagonist is not None:
            raise ValueError(
                f"Story already has a protagonist: {self._world.protagonist.name}; "
                "use set_protagonist to swap"
            )
        self._add("character", character)
        return character

    def update_character(self, character_id: str, **changes) -> Character:
        character = self._edited("character", character_id, changes)
        self._check("status", character.status, CHARACTER_STATUSES)
        current = self._world.protagonist
        if character.is_protagonist and current is not None and current.id != character_id:
            raise ValueError("Only one protagonist allowed; use set_protagonist to swap")
        self._swap("character", character)
        return character

    def delete_character(self, character_id: str) -> None:
        self._remove("character", character_id)

    def set_protagonist(self, character_id: str) -> Character:
        """Make character_id the protagonist in one step.

        The previous protagonist takes over the new one's former
        relationship; nothing is deleted.
        """
        target = self.get("character", character_id)
        if target.is_protagonist:
            return target
        previous = self._world.protagonist
        promoted = replace(target, relationship=PROTAGONIST_RELATIONSHIP)
        characters = []
        for c in self._world.characters:
            if c.id == character_id:
                characters.append(promoted)
            elif previous is not None and c.id == previous.id:
                characters.append(replace(c, relationship=target.relationship))
            else:
                characters.append(c)
        self._commit(characters=characters)
        return promoted

    # -------------------------------------------------------------------------
    # Locations
    # -------------------------------------------------------------------------

    def add_location(self, name: str, **attrs) -> Location:
        location = Location(id=self._id_factory(), story_id=self.story_id, name=name, **attrs)
        locations = [*self._world.locations, location]
        if location.current:
            _move_current(locations, len(locations) - 1)
        _ensure_current(locations)
        self._commit(locations=locations)
        return self.get("location", location.id)

    def update_location(self, location_id: str, **changes) -> Location:
        make_current = changes.pop("current", None)
        location = self._edited("location", location_id, changes)
        if make_current is False and location.current:
            raise ValueError("Cannot unset the current location; move to another one instead")
        self._swap("location", location)
        if make_current:
            return self.set_current_location(location_id)
        return location

    def set_current_location(self, location_id: str) -> Location:
        self.get("location", location_id)
        locations = list(self._world.locations)
        index = next(i for i, loc in enumerate(locations) if loc.id == location_id)
        _move_current(locations, index)
        self._commit(locations=locations)
        return locations[index]

    def delete_location(self, location_id: str) -> None:
        """Delete a location. Items left there move to the current location."""
        self.get("location", location_id)
        locations = [loc for loc in self._world.locations if loc.id != location_id]
        _ensure_current(locations)
        fallback = next((loc.id for loc in locations if loc.current), INVENTORY)
        items = [
            replace(item, location=fallback) if item.location == location_id else item
            for item in self._world.items
        ]
        self._commit(locations=locations, items=items)

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    def add_item(self, name: str, **attrs) -> Item:
        item = Item(id=self._id_factory(), story_id=self.story_id, name=name, **attrs)
        self._check_item_location(item.location)
        self._add("item", item)
        return item

    def update_item(self, item_id: str, **changes) -> Item:
        item = self._edited("item", item_id, changes)
        self._check_item_location(item.location)
        self._swap("item", item)
        return item

    def delete_item(self, item_id: str) -> None:
        self._remove("item", item_id)

    def _check_item_location(self, location: str) -> None:
        if location != INVENTORY and not any(loc.id == location for loc in self._world.locations):
            raise ValueError(f"Item location must be '{INVENTORY}' or a location id: {location}")

    # -------------------------------------------------------------------------
    # Story beats
    # -------------------------------------------------------------------------

    def add_story_beat(self, title: str, **attrs) -> StoryBeat:
        beat = StoryBeat(id=self._id_factory(), story_id=self.story_id, title=title, **attrs)
        self._check("type", beat.type, STORY_BEAT_TYPES)
        self._check("status", beat.status, STORY_BEAT_STATUSES)
        self._add("story_beat", beat)
        return beat

    def update_story_beat(self, beat_id: str, **changes) -> StoryBeat:
        beat = self._edited("story_beat", beat_id, changes)
        self._check("type", beat.type, STORY_BEAT_TYPES)
        self._check("status", beat.status, STORY_BEAT_STATUSES)
        if beat.status in ("completed", "failed") and beat.triggered_at is None:
            beat = replace(beat, triggered_at=self._clock())
        self._swap("story_beat", beat)
        return beat

    def delete_story_beat(self, beat_id: str) -> None:
        self._remove("story_beat", beat_id)

    # -------------------------------------------------------------------------
    # Lorebook
    # -------------------------------------------------------------------------

    def add_lorebook_entry(self, name: str, **attrs) -> LorebookEntry:
        now = self._clock()
        attrs.setdefault("created_at", now)
        attrs.setdefault("updated_at", now)
        if isinstance(attrs.get("injection"), dict):
            attrs["injection"] = LorebookInjection.from_dict(attrs["injection"])
        entry = LorebookEntry(id=self._id_factory(), story_id=self.story_id, name=name, **attrs)
        self._check_lorebook(entry)
        self._add("lorebook", entry)
        return entry

    def update_lorebook_entry(self, entry_id: str, **changes) -> LorebookEntry:
        if isinstance(changes.get("injection"), dict):
            changes["injection"] = LorebookInjection.from_dict(changes["injection"])
        changes.setdefault("updated_at", self._clock())
        entry = self._edited("lorebook", entry_id, changes)
        self._check_lorebook(entry)
        self._swap("lorebook", entry)
        return entry

    def delete_lorebook_entry(self, entry_id: str) -> None:
        self._remove("lorebook", entry_id)

    def _check_lorebook(self, entry: LorebookEntry) -> None:
        self._check("type", entry.type, LOREBOOK_TYPES)
        self._check("created_by", entry.created_by, CREATED_BY)
        self._check("injection mode", entry.injection.mode, INJECTION_MODES)

    def record_mentions(self, text: str, position: int) -> list[str]:
        """Update mention telemetry for lorebook entries named in text.

        An entry already counted at this position is not counted again. Returns
        the ids of the entries that were mentioned.
        """
        mentioned = []
        lorebook = []
        for entry in self._world.lorebook:
            if match_reason(text, entry.match_terms()) is None:
                lorebook.append(entry)
                continue
            mentioned.append(entry.id)
            if entry.last_mentioned == position:
                lorebook.append(entry)
                continue
            lorebook.append(
                replace(
                    entry,
                    first_mentioned=entry.first_mentioned if entry.first_mentioned is not None else position,
                    last_mentioned=position,
                    mention_count=entry.mention_count + 1,
                )
            )
        if mentioned:
            self._commit(lorebook=lorebook)
        return mentioned
