"""Story direction suggestions and RPG action choices."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from story_memory.config import SystemServicesSettings
from story_memory.llm import LanguageModel, complete
from story_memory.models import ActionChoice, StoryEntry, StorySuggestion, WorldState
from story_memory.parsing import ParseError, decode_model, valid_items
from story_memory.prompts import format_entries

logger = logging.getLogger(__name__)

SUGGESTION_TYPES = ("action", "dialogue", "revelation", "twist")
ACTION_CHOICE_TYPES = ("action", "dialogue", "examine", "move")


class _Option(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str
    type: str = "action"

    @field_validator("text")
    @classmethod
    def _text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("empty option text")
        return value.strip()


class _SuggestionOption(_Option):
    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        value = str(value or "").strip().lower()
        return value if value in SUGGESTION_TYPES else "action"


class _ChoiceOption(_Option):
    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        value = str(value or "").strip().lower()
        return value if value in ACTION_CHOICE_TYPES else "action"


class _SuggestionsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    suggestions: list[Any] = Field(default_factory=list)


class _ChoicesPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    choices: list[Any] = Field(default_factory=list)


def _world_summary(world: WorldState | None) -> str:
    if world is None:
        return ""
    lines = []
    if world.current_location:
        lines.append(f"Location: {world.current_location.name}")
    present = [c.name for c in world.characters if not c.is_protagonist and c.status == "active"]
    if present:
        lines.append(f"Characters: {', '.join(present[:8])}")
    if world.inventory:
        lines.append(f"Inventory: {', '.join(i.name for i in world.inventory[:8])}")
    if world.active_beats:
        lines.append(f"Open threads: {', '.join(b.title for b in world.active_beats[:5])}")
    return "\n".join(lines)


class SuggestionsService:
    """Three possible directions for the author in creative-writing mode."""

    def __init__(self, model: LanguageModel | None, settings: SystemServicesSettings | None = None):
        self.model = model
        self.settings = (settings or SystemServicesSettings()).suggestions

    def generate_suggestions(
        self,
        recent_entries: Sequence[StoryEntry],
        world: WorldState | None = None,
        genre: str | None = None,
    ) -> list[StorySuggestion]:
        if self.model is None or not recent_entries:
            return []
        state = _world_summary(world)
        prompt = (
            f"## Recent Story\n{format_entries(list(recent_entries)[-5:], limit=600)}\n\n"
            + (f"## Story World\n{state}\n\n" if state else "")
            + (f"Genre: {genre}\n\n" if genre else "")
            + "## Your Task\n"
            "Suggest 3 distinct directions the story could take next, each one sentence. "
            f"Use a mix of types: {', '.join(SUGGESTION_TYPES)}.\n\n"
            "Respond with JSON only:\n"
            '{"suggestions": [{"text": "...", "type": "action"}]}'
        )
        try:
            raw = complete(self.model, self.settings, prompt)
        except Exception as e:
            logger.warning("Suggestions request failed: %s", e)
            return []
        decoded = decode_model(raw, _SuggestionsPayload)
        if isinstance(decoded, ParseError):
            logger.warning("Discarding suggestions output: %s", decoded.reason)
            return []
        options = valid_items(decoded.value.suggestions, _SuggestionOption)
        return [StorySuggestion(text=o.text, type=o.type) for o in options[:3]]


class ActionChoicesService:
    """Three or four RPG-style choices for the player in adventure mode."""

    def __init__(self, model: LanguageModel | None, settings: SystemServicesSettings | None = None):
        self.model = model
        self.settings = (settings or SystemServicesSettings()).action_choices

    def generate_choices(
        self,
        recent_entries: Sequence[StoryEntry],
        world: WorldState | None = None,
        pov: str = "second",
    ) -> list[ActionChoice]:
        if self.model is None or not recent_entries:
            return []
        voice = {
            "first": 'first person ("I draw my sword")',
            "third": 'third person using the protagonist\'s name or "they"',
        }.get(pov, 'imperative second person ("Draw your sword")')
        state = _world_summary(world)
        prompt = (
            f"## Recent Story\n{format_entries(list(recent_entries)[-5:], limit=600)}\n\n"
            + (f"## Current State\n{state}\n\n" if state else "")
            + "## Your Task\n"
            "Offer 3-4 short, distinct actions the player could take next, written in "
            f"{voice}. Use types: {', '.join(ACTION_CHOICE_TYPES)}.\n\n"
            "Respond with JSON only:\n"
            '{"choices": [{"text": "...", "type": "action"}]}'
        )
        try:
            raw = complete(self.model, self.settings, prompt)
        except Exception as e:
            logger.warning("Action choices request failed: %s", e)
            return []
        decoded = decode_model(raw, _ChoicesPayload)
        if isinstance(decoded, ParseError):
            logger.warning("Discarding action choices output: %s", decoded.reason)
            return []
        options = valid_items(decoded.value.choices, _ChoiceOption)
        return [ActionChoice(text=o.text, type=o.type) for o in options[:4]]
