"""Tiered context assembly for the narration prompt.

Tier 1 is mechanical state that always applies (where the protagonist is,
what they carry, which threads are open). Tier 2 is whatever the player or
the recent story names, kept "sticky" for a few turns through the
ActivationTracker. Tier 3 is an optional model-curated pick from what is
left. The rendered block is byte-stable for identical inputs.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from story_memory.activation import ActivationTracker
from story_memory.config import ContextConfig, ServiceSettings, SystemServicesSettings
from story_memory.llm import LanguageModel, complete
from story_memory.models import (
    INVENTORY,
    Character,
    ContextItem,
    ContextResult,
    Item,
    Location,
    LorebookEntry,
    StoryBeat,
    StoryEntry,
    WorldState,
)
from story_memory.names import match_reason, name_tokens, normalize_name
from story_memory.parsing import ParseError, decode_model, string_list
from story_memory.prompts import format_entries

logger = logging.getLogger(__name__)

_KIND_ORDER = {"location": 0, "item": 1, "story_beat": 2, "lorebook": 3, "character": 4}


def _item(kind: str, entity: Any, tier: int, reason: str) -> ContextItem:
    return ContextItem(
        kind=kind,
        entity_id=entity.id,
        name=entity.name,
        tier=tier,
        reason=reason,
        entity=entity,
    )


def _stable_key(item: ContextItem) -> tuple:
    return (_KIND_ORDER[item.kind], normalize_name(item.name), item.entity_id)


class _SelectionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    selected: list[str] = Field(default_factory=list)

    @field_validator("selected", mode="before")
    @classmethod
    def _names(cls, value: Any) -> list[str]:
        return string_list(value)


class ContextBuilder:
    """Select world state for one turn and render it as a context block."""

    def __init__(
        self,
        model: LanguageModel | None = None,
        settings: SystemServicesSettings | ServiceSettings | None = None,
        config: ContextConfig | None = None,
    ):
        self.model = model
        if isinstance(settings, SystemServicesSettings):
            settings = settings.context_selection
        self.settings: ServiceSettings = settings or SystemServicesSettings().context_selection
        self.config = config or ContextConfig()

    def build_context(
        self,
        world: WorldState,
        user_input: str,
        recent_entries: Sequence[StoryEntry] = (),
        retrieved_chapter_context: str | None = None,
        tracker: ActivationTracker | None = None,
    ) -> ContextResult:
        """Assemble tiers 1-3 and the rendered context block.

        Args:
            world: Immutable snapshot of the story's entities and lorebook
            user_input: The player's new action
            recent_entries: Latest story entries; the last few are scanned for names
            retrieved_chapter_context: Output of build_retrieved_context_block, appended last
            tracker: Activation map for stickiness; matches are recorded at its
                current position. Without one, nothing is sticky.

        Returns:
            ContextResult with per-tier items, the combined list and the block
        """
        tracker = tracker if tracker is not None else ActivationTracker()

        tier1 = self._tier1(world)
        tier2 = self._tier2(world, user_input, recent_entries, tracker, {i.entity_id for i in tier1})
        taken = {i.entity_id for i in tier1} | {i.entity_id for i in tier2}
        tier3 = self._tier3(world, user_input, recent_entries, taken)

        selected = tier1 + tier2 + tier3
        block = self._render(world, selected) + (retrieved_chapter_context or "")
        logger.debug(
            "Context built: tier1=%d tier2=%d tier3=%d", len(tier1), len(tier2), len(tier3)
        )
        return ContextResult(tier1=tier1, tier2=tier2, tier3=tier3, all=selected, context_block=block)

    # -------------------------------------------------------------------------
    # Tier 1: always-on state
    # -------------------------------------------------------------------------

    def _tier1(self, world: WorldState) -> list[ContextItem]:
        items: list[ContextItem] = []
        current = world.current_location
        if current is not None:
            items.append(_item("location", current, 1, "current"))
        items.extend(_item("item", i, 1, "inventory") for i in world.inventory)
        items.extend(_item("story_beat", b, 1, b.status) for b in world.active_beats)
        always = sorted(
            (e for e in world.lorebook if e.injection.mode == "always"),
            key=lambda e: (-e.injection.priority, normalize_name(e.name), e.id),
        )
        items.extend(_item("lorebook", e, 1, "always") for e in always)

        cap = self.config.tier1_max_items
        if len(items) > cap:
            logger.warning("Tier 1 has %d items; keeping the first %d", len(items), cap)
            items = items[:cap]
        return items

    # -------------------------------------------------------------------------
    # Tier 2: name and keyword matches with stickiness
    # -------------------------------------------------------------------------

    def _tier2_candidates(self, world: WorldState) -> list[tuple[str, Any, list[str], list[str]]]:
        """(kind, entity, full terms, fallback name tokens) for everything tier 2 may match."""
        min_len = self.config.min_token_length
        candidates: list[tuple[str, Any, list[str], list[str]]] = []
        for c in world.characters:
            if not c.is_protagonist:
                candidates.append(("character", c, [c.name], name_tokens(c.name, min_len)))
        for loc in world.locations:
            if not loc.current:
                candidates.append(("location", loc, [loc.name], name_tokens(loc.name, min_len)))
        for i in world.items:
            if i.location != INVENTORY:
                candidates.append(("item", i, [i.name], name_tokens(i.name, min_len)))
        for e in world.lorebook:
            if e.injection.mode == "keyword":
                candidates.append(("lorebook", e, e.match_terms(), name_tokens(e.name, min_len)))
        return candidates

    def _tier2(
        self,
        world: WorldState,
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        tracker: ActivationTracker,
        exclude: set[str],
    ) -> list[ContextItem]:
        window = self.config.recent_entries_for_matching
        recent = list(recent_entries)[-window:] if window > 0 else []
        haystack = "\n".join([user_input or "", *(e.content for e in recent)])

        found: list[ContextItem] = []
        for kind, entity, terms, tokens in self._tier2_candidates(world):
            if entity.id in exclude:
                continue
            reason = match_reason(haystack, terms, tokens)
            if reason is not None:
                tracker.record_activation(entity.id)
                found.append(_item(kind, entity, 2, f"matched:{reason}"))
            elif tracker.is_sticky(entity.id, self.config.stickiness_window):
                found.append(_item(kind, entity, 2, "sticky"))

        # Most recently activated first; stable tie-break keeps output deterministic
        found.sort(key=lambda i: (-(tracker.last_activated(i.entity_id) or 0), _stable_key(i)))
        cap = self.config.tier2_max_items
        if len(found) > cap:
            logger.debug("Tier 2 truncated from %d to %d items", len(found), cap)
            found = found[:cap]
        return found

    # -------------------------------------------------------------------------
    # Tier 3: model-curated
    # -------------------------------------------------------------------------

    def _tier3_candidates(self, world: WorldState, taken: set[str]) -> list[ContextItem]:
        pool: list[ContextItem] = []
        pool.extend(_item("character", c, 3, "selected") for c in world.characters if not c.is_protagonist)
        pool.extend(_item("location", loc, 3, "selected") for loc in world.locations)
        pool.extend(_item("item", i, 3, "selected") for i in world.items)
        pool.extend(_item("story_beat", b, 3, "selected") for b in world.story_beats)
        pool.extend(_item("lorebook", e, 3, "selected") for e in world.lorebook if e.injection.mode != "never")
        pool = [p for p in pool if p.entity_id not in taken]
        pool.sort(key=_stable_key)
        return pool[: self.config.tier3_max_candidates]

    def _tier3(
        self,
        world: WorldState,
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        taken: set[str],
    ) -> list[ContextItem]:
        if self.model is None or self.config.tier3_max_items == 0:
            return []
        candidates = self._tier3_candidates(world, taken)
        if not candidates:
            return []

        prompt = self._selection_prompt(user_input, recent_entries, candidates)
        try:
            raw = complete(self.model, self.settings, prompt)
        except Exception as e:
            logger.warning("Context selection request failed: %s", e)
            return []
        decoded = decode_model(raw, _SelectionPayload)
        if isinstance(decoded, ParseError):
            logger.warning("Discarding context selection output: %s", decoded.reason)
            return []

        by_name: dict[str, ContextItem] = {}
        for c in candidates:
            by_name.setdefault(normalize_name(c.name), c)
        picked: list[ContextItem] = []
        for name in decoded.value.selected:
            match = by_name.get(normalize_name(name))
            if match is None:
                logger.debug("Dropping unknown context selection %r", name)
                continue
            if match not in picked:
                picked.append(match)
            if len(picked) >= self.config.tier3_max_items:
                break
        return picked

    def _selection_prompt(
        self,
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        candidates: Sequence[ContextItem],
    ) -> str:
        listing = "\n".join(
            f"- [{c.kind}] {c.name}: {(getattr(c.entity, 'description', None) or '').strip() or '(no description)'}"
            for c in candidates
        )
        return (
            f"## Player Input\n{user_input}\n\n"
            f"## Recent Story\n{format_entries(list(recent_entries)[-3:], limit=400) or '(none)'}\n\n"
            f"## Candidates\n{listing}\n\n"
            "## Your Task\n"
            f"Pick up to {self.config.tier3_max_items} candidates the narrator should know about "
            "for the next passage, most important first. Use the exact names above.\n\n"
            "Respond with JSON only:\n"
            '{"selected": ["Name"]}'
        )

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def _render(self, world: WorldState, selected: Sequence[ContextItem]) -> str:
        current: list[Location] = []
        characters: list[Character] = []
        inventory: list[Item] = []
        other_items: list[Item] = []
        threads: list[StoryBeat] = []
        places: list[Location] = []
        lore: list[LorebookEntry] = []

        for item in selected:
            entity = item.entity
            if item.kind == "location":
                (current if entity.current else places).append(entity)
            elif item.kind == "character":
                characters.append(entity)
            elif item.kind == "item":
                (inventory if entity.location == INVENTORY else other_items).append(entity)
            elif item.kind == "story_beat":
                threads.append(entity)
            else:
                lore.append(entity)

        location_names = {loc.id: loc.name for loc in world.locations}
        sections = [
            ("[CURRENT LOCATION]", [_describe_location(loc) for loc in current]),
            ("[KNOWN CHARACTERS]", [_describe_character(c) for c in characters]),
            ("[INVENTORY]", [_describe_item(i) for i in inventory]),
            ("[NOTABLE ITEMS]", [_describe_item(i, location_names) for i in other_items]),
            ("[ACTIVE THREADS]", [_describe_beat(b) for b in threads]),
            ("[PLACES VISITED]", ["- " + _describe_location(loc) for loc in places]),
            ("[WORLD LORE]", [_describe_lore(e) for e in lore]),
        ]
        return "".join(
            "\n\n" + header + "\n" + "\n".join(lines) for header, lines in sections if lines
        )


def _with_description(head: str, description: str | None) -> str:
    description = (description or "").strip()
    return f"{head}: {description}" if description else head


def _describe_location(loc: Location) -> str:
    return _with_description(loc.name, loc.description)


def _describe_character(c: Character) -> str:
    notes = [n for n in (c.relationship, None if c.status == "active" else c.status) if n]
    head = f"- {c.name}" + (f" ({', '.join(notes)})" if notes else "")
    line = _with_description(head, c.description)
    if c.traits:
        line += f" [traits: {', '.join(c.traits)}]"
    return line


def _describe_item(i: Item, location_names: dict[str, str] | None = None) -> str:
    head = f"- {i.name}"
    if i.quantity > 1:
        head += f" x{i.quantity}"
    if i.equipped:
        head += " (equipped)"
    if location_names is not None and i.location in location_names:
        head += f" (at {location_names[i.location]})"
    return _with_description(head, i.description)


def _describe_beat(b: StoryBeat) -> str:
    return _with_description(f"- {b.title} ({b.type}, {b.status})", b.description)


def _describe_lore(e: LorebookEntry) -> str:
    line = _with_description(f"- {e.name} ({e.type})", e.description)
    if e.hidden_info:
        line += f"\n  Hidden: {e.hidden_info.strip()}"
    return line
