"""Classification of narrative text into world-state deltas."""

from __future__ import annotations

import json
import logging
import typing
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from story_memory.config import ServiceSettings, SystemServicesSettings
from story_memory.llm import LanguageModel, complete
from story_memory.models import (
    CHARACTER_STATUSES,
    LOREBOOK_TYPES,
    PROTAGONIST_RELATIONSHIP,
    STORY_BEAT_STATUSES,
    STORY_BEAT_TYPES,
    Character,
    Item,
    Location,
    LorebookEntry,
    StoryBeat,
    WorldState,
)
from story_memory.names import find_by_name, names_match
from story_memory.parsing import ParseError, coerce_int, decode_model, string_list, valid_items

logger = logging.getLogger(__name__)


class _Delta(BaseModel):
    """Lenient base: camelCase or snake_case keys, unknown keys ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)

    @field_validator("name", "title", mode="before", check_fields=False)
    @classmethod
    def _require_name(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("a non-empty name is required")
        return value.strip()

    @field_validator("description", mode="before", check_fields=False)
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("traits", "connections", "aliases", "keywords", mode="before", check_fields=False)
    @classmethod
    def _strings(cls, value: Any) -> list[str]:
        return string_list(value)


class CharacterDelta(_Delta):
    name: str
    description: str | None = None
    relationship: str | None = None
    traits: list[str] = Field(default_factory=list)
    status: str = "active"

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        value = str(value or "").strip().lower()
        return value if value in CHARACTER_STATUSES else "active"

    @field_validator("relationship", mode="before")
    @classmethod
    def _relationship(cls, value: Any) -> str | None:
        # The protagonist is never assigned by classification
        if not isinstance(value, str) or not value.strip():
            return None
        value = value.strip()
        return None if value.lower() == PROTAGONIST_RELATIONSHIP else value


class LocationDelta(_Delta):
    name: str
    description: str | None = None
    connections: list[str] = Field(default_factory=list)


class ItemDelta(_Delta):
    name: str
    description: str | None = None
    quantity: int = 1

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> int:
        number = coerce_int(value)
        return max(1, number) if number is not None else 1


class StoryBeatDelta(_Delta):
    title: str
    description: str | None = None
    type: str = "event"
    status: str = "active"

    @model_validator(mode="before")
    @classmethod
    def _name_as_title(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("title") and data.get("name"):
            data = {**data, "title": data["name"]}
        return data

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        value = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
        return value if value in STORY_BEAT_TYPES else "event"

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        value = str(value or "").strip().lower()
        return value if value in STORY_BEAT_STATUSES else "active"


class LoreDelta(_Delta):
    name: str
    type: str = "concept"
    description: str | None = None
    aliases: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        value = str(value or "").strip().lower()
        return value if value in LOREBOOK_TYPES else "concept"


class EntityUpdate(_Delta):
    """Field changes for an existing entity, addressed by name or title."""

    name: str
    changes: dict = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _title_as_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("name") and data.get("title"):
            data = {**data, "name": data["title"]}
        return data

    @field_validator("changes", mode="before")
    @classmethod
    def _changes(cls, value: Any) -> dict:
        return value if isinstance(value, dict) else {}


class SceneDelta(_Delta):
    current_location_name: str | None = None
    present_character_names: list[str] = Field(default_factory=list)

    @field_validator("current_location_name", mode="before")
    @classmethod
    def _location(cls, value: Any) -> str | None:
        return value.strip() or None if isinstance(value, str) else None

    @field_validator("present_character_names", mode="before")
    @classmethod
    def _present(cls, value: Any) -> list[str]:
        return string_list(value)


class ClassificationResult(_Delta):
    """World-state delta extracted from one narrative turn."""

    new_characters: list[CharacterDelta] = Field(default_factory=list)
    new_locations: list[LocationDelta] = Field(default_factory=list)
    new_items: list[ItemDelta] = Field(default_factory=list)
    new_story_beats: list[StoryBeatDelta] = Field(default_factory=list)
    new_lore_entries: list[LoreDelta] = Field(default_factory=list)
    character_updates: list[EntityUpdate] = Field(default_factory=list)
    item_updates: list[EntityUpdate] = Field(default_factory=list)
    story_beat_updates: list[EntityUpdate] = Field(default_factory=list)
    scene: SceneDelta = Field(default_factory=SceneDelta)

    @model_validator(mode="before")
    @classmethod
    def _unwrap(cls, data: Any) -> Any:
        # Accept the delta nested under "entryUpdates" as well as top-level
        if isinstance(data, dict):
            nested = data.get("entryUpdates") or data.get("entry_updates")
            if isinstance(nested, dict):
                data = {**nested, **{k: v for k, v in data.items() if k not in nested}}
        return data

    @field_validator(
        "new_characters",
        "new_locations",
        "new_items",
        "new_story_beats",
        "new_lore_entries",
        "character_updates",
        "item_updates",
        "story_beat_updates",
        mode="before",
    )
    @classmethod
    def _drop_malformed(cls, value: Any, info) -> list:
        item_model = typing.get_args(cls.model_fields[info.field_name].annotation)[0]
        return valid_items(value, item_model)

    @field_validator("scene", mode="before")
    @classmethod
    def _scene(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, SceneDelta)) else {}

    @property
    def is_empty(self) -> bool:
        return not (
            self.new_characters
            or self.new_locations
            or self.new_items
            or self.new_story_beats
            or self.new_lore_entries
            or self.character_updates
            or self.item_updates
            or self.story_beat_updates
            or self.scene.current_location_name
        )


@dataclass
class ClassificationContext:
    """Inputs for one classification call."""

    narrative_response: str
    user_action: str = ""
    existing_characters: tuple[Character, ...] = ()
    existing_locations: tuple[Location, ...] = ()
    existing_items: tuple[Item, ...] = ()
    existing_story_beats: tuple[StoryBeat, ...] = ()
    existing_lorebook: tuple[LorebookEntry, ...] = ()
    genre: str | None = None

    @classmethod
    def from_world(
        cls,
        narrative_response: str,
        user_action: str,
        world: WorldState,
        genre: str | None = None,
    ) -> ClassificationContext:
        return cls(
            narrative_response=narrative_response,
            user_action=user_action,
            existing_characters=world.characters,
            existing_locations=world.locations,
            existing_items=world.items,
            existing_story_beats=world.story_beats,
            existing_lorebook=world.lorebook,
            genre=genre,
        )


_RESPONSE_SHAPE = {
    "newCharacters": [
        {"name": "Name", "description": "one line", "relationship": "ally|enemy|neutral|...", "traits": ["trait"]}
    ],
    "newLocations": [{"name": "Name", "description": "one line"}],
    "newItems": [{"name": "Name", "description": "one line", "quantity": 1}],
    "newStoryBeats": [
        {"title": "Short title", "description": "one line", "type": "quest|revelation|milestone|event|plot_point", "status": "active"}
    ],
    "newLoreEntries": [{"name": "Name", "type": "faction|concept|event", "description": "one line"}],
    "characterUpdates": [{"name": "Existing name", "changes": {"status": "active|inactive|deceased", "description": "..."}}],
    "itemUpdates": [{"name": "Existing name", "changes": {"quantity": 0, "equipped": True}}],
    "storyBeatUpdates": [{"title": "Existing title", "changes": {"status": "completed|failed|active"}}],
    "scene": {"currentLocationName": "Name or null", "presentCharacterNames": ["Name"]},
}


class Classifier:
    """Turns one narrative turn into a ClassificationResult.

    Any failure (transport error, malformed JSON, schema mismatch) yields an
    empty result; classification never raises into the turn.
    """

    def __init__(self, model: LanguageModel | None, settings: ServiceSettings | None = None):
        self.model = model
        self.settings = settings or SystemServicesSettings().classifier

    def classify(self, context: ClassificationContext) -> ClassificationResult:
        if self.model is None:
            logger.debug("No model configured; skipping classification")
            return ClassificationResult()
        if not context.narrative_response.strip():
            return ClassificationResult()

        prompt = self.build_prompt(context)
        try:
            raw = complete(self.model, self.settings, prompt)
        except Exception as e:
            logger.warning("Classification request failed: %s", e)
            return ClassificationResult()

        decoded = decode_model(raw, ClassificationResult)
        if isinstance(decoded, ParseError):
            logger.warning("Discarding classification output: %s", decoded.reason)
            return ClassificationResult()

        result = reconcile_with_existing(decoded.value, context)
        logger.debug(
            "Classified turn: %d characters, %d locations, %d items, %d beats, %d lore",
            len(result.new_characters),
            len(result.new_locations),
            len(result.new_items),
            len(result.new_story_beats),
            len(result.new_lore_entries),
        )
        return result

    def build_prompt(self, context: ClassificationContext) -> str:
        def names(entities, attr="name") -> str:
            listed = [getattr(e, attr) for e in entities]
            return ", ".join(listed) if listed else "(none)"

        sections = [
            "Analyze this passage and extract world-state changes.",
            f"## Player Action\n{context.user_action or '(none)'}",
            f'## Narrative Response\n"""\n{context.narrative_response}\n"""',
            "## Already Known (update these instead of re-creating them)\n"
            f"Characters: {names(context.existing_characters)}\n"
            f"Locations: {names(context.existing_locations)}\n"
            f"Items: {names(context.existing_items)}\n"
            f"Story beats: {names(context.existing_story_beats, 'title')}\n"
            f"Lore: {names(context.existing_lorebook)}",
        ]
        if context.genre:
            sections.append(f"## Genre\n{context.genre}")
        sections.append(
            "## Response Format\nRespond with JSON only, using empty arrays where nothing applies:\n"
            + json.dumps(_RESPONSE_SHAPE, indent=2)
        )
        return "\n\n".join(sections)


def reconcile_with_existing(
    result: ClassificationResult, context: ClassificationContext
) -> ClassificationResult:
    """Fold "new" entities that already exist into updates and drop unknown references.

    Name matching is case-insensitive and tolerant of epithets, so "Elena"
    and "Elena the blacksmith's daughter" resolve to the same character.
    """
    characters: list[CharacterDelta] = []
    character_updates = list(result.character_updates)
    for delta in result.new_characters:
        existing = find_by_name(context.existing_characters, delta.name)
        if existing is not None:
            changes: dict = {}
            if delta.description:
                changes["description"] = delta.description
            if delta.traits:
                changes["traits"] = delta.traits
            if delta.relationship and not existing.relationship:
                changes["relationship"] = delta.relationship
            if changes:
                character_updates.append(EntityUpdate(name=existing.name, changes=changes))
        elif not any(names_match(c.name, delta.name) for c in characters):
            characters.append(delta)

    def fresh(deltas, existing, attr="name"):
        kept = []
        for delta in deltas:
            value = getattr(delta, attr)
            if find_by_name(existing, value, attr) is not None:
                continue
            if any(names_match(getattr(k, attr), value) for k in kept):
                continue
            kept.append(delta)
        return kept

    locations = fresh(result.new_locations, context.existing_locations)
    items = fresh(result.new_items, context.existing_items)
    beats = fresh(result.new_story_beats, context.existing_story_beats, "title")
    lore = fresh(result.new_lore_entries, context.existing_lorebook)

    def known(updates, existing, new, attr="name", new_attr="name"):
        return [
            u for u in updates
            if find_by_name(existing, u.name, attr) is not None
            or find_by_name(new, u.name, new_attr) is not None
        ]

    scene = result.scene
    if scene.current_location_name and (
        find_by_name(context.existing_locations, scene.current_location_name) is None
        and find_by_name(locations, scene.current_location_name) is None
    ):
        scene = scene.model_copy(update={"current_location_name": None})

    return result.model_copy(
        update={
            "new_characters": characters,
            "new_locations": locations,
            "new_items": items,
            "new_story_beats": beats,
            "new_lore_entries": lore,
            "character_updates": known(character_updates, context.existing_characters, characters),
            "item_updates": known(result.item_updates, context.existing_items, items),
            "story_beat_updates": known(
                result.story_beat_updates, context.existing_story_beats, beats, "title", "title"
            ),
            "scene": scene,
        }
    )
