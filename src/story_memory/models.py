"""Data models for Story Memory."""

from __future__ import annotations

from dataclasses import dataclass, field

# Sentinel for Item.location when the protagonist carries the item
INVENTORY = "inventory"
PROTAGONIST_RELATIONSHIP = "self"

STORY_MODES = ("adventure", "creative-writing")
ENTRY_TYPES = ("user_action", "narration", "system", "retry")
CHARACTER_STATUSES = ("active", "inactive", "deceased")
STORY_BEAT_TYPES = ("milestone", "quest", "revelation", "event", "plot_point")
STORY_BEAT_STATUSES = ("pending", "active", "completed", "failed")
LOREBOOK_TYPES = ("character", "location", "item", "faction", "concept", "event")
INJECTION_MODES = ("always", "keyword", "never")
CREATED_BY = ("user", "ai", "import")


@dataclass
class MemoryConfig:
    """Per-story chapter memory settings."""

    chapter_threshold: int = 50  # entries before a chapter becomes eligible
    chapter_buffer: int = 10  # trailing entries never compressed
    auto_summarize: bool = True
    enable_retrieval: bool = True
    max_chapters_per_retrieval: int = 3

    def __post_init__(self) -> None:
        if self.chapter_threshold < 1:
            raise ValueError(
                f"chapter_threshold must be positive: {self.chapter_threshold}"
            )
        if self.chapter_buffer < 0:
            raise ValueError(f"chapter_buffer must be >= 0: {self.chapter_buffer}")
        if self.max_chapters_per_retrieval < 0:
            raise ValueError(
                "max_chapters_per_retrieval must be >= 0: "
                f"{self.max_chapters_per_retrieval}"
            )

    def to_dict(self) -> dict:
        return {
            "chapter_threshold": self.chapter_threshold,
            "chapter_buffer": self.chapter_buffer,
            "auto_summarize": self.auto_summarize,
            "enable_retrieval": self.enable_retrieval,
            "max_chapters_per_retrieval": self.max_chapters_per_retrieval,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> MemoryConfig:
        """Build a config from a persisted blob, ignoring unknown keys."""
        if not data:
            return cls()
        known = cls().to_dict().keys()
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Story:
    """A story and its per-story settings."""

    id: str
    title: str
    mode: str = "adventure"  # 'adventure' | 'creative-writing'
    genre: str | None = None
    description: str | None = None
    pov: str = "second"  # 'first' | 'second' | 'third'
    tense: str = "present"  # 'past' | 'present'
    system_prompt_override: str | None = None
    memory_config: MemoryConfig = field(default_factory=MemoryConfig)
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass(frozen=True)
class StoryEntry:
    """One immutable turn record in the append-only story log."""

    id: str
    story_id: str
    type: str  # 'user_action' | 'narration' | 'system' | 'retry'
    content: str
    position: int
    created_at: float = 0.0
    parent_id: str | None = None
    metadata: dict = field(default_factory=dict, compare=False)


@dataclass
class Character:
    """A named character in the story world."""

    id: str
    story_id: str
    name: str
    description: str | None = None
    relationship: str | None = None  # 'self' marks the protagonist
    traits: list[str] = field(default_factory=list)
    status: str = "active"  # 'active' | 'inactive' | 'deceased'
    metadata: dict = field(default_factory=dict)

    @property
    def is_protagonist(self) -> bool:
        return self.relationship == PROTAGONIST_RELATIONSHIP


@dataclass
class Location:
    """A named place in the story world."""

    id: str
    story_id: str
    name: str
    description: str | None = None
    visited: bool = False
    current: bool = False
    connections: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


@dataclass
class Item:
    """A significant object; location is INVENTORY or a Location id."""

    id: str
    story_id: str
    name: str
    description: str | None = None
    quantity: int = 1
    equipped: bool = False
    location: str = INVENTORY
    metadata: dict = field(default_factory=dict)


@dataclass
class StoryBeat:
    """A quest, milestone, revelation or other plot thread."""

    id: str
    story_id: str
    title: str
    description: str | None = None
    type: str = "event"  # 'milestone' | 'quest' | 'revelation' | 'event' | 'plot_point'
    status: str = "active"  # 'pending' | 'active' | 'completed' | 'failed'
    triggered_at: float | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.title


@dataclass
class LorebookInjection:
    """When a lorebook entry is injected into the prompt."""

    mode: str = "keyword"  # 'always' | 'keyword' | 'never'
    keywords: list[str] = field(default_factory=list)
    priority: int = 0

    def to_dict(self) -> dict:
        return {"mode": self.mode, "keywords": list(self.keywords), "priority": self.priority}

    @classmethod
    def from_dict(cls, data: dict | None) -> LorebookInjection:
        if not data:
            return cls()
        return cls(
            mode=data.get("mode", "keyword"),
            keywords=list(data.get("keywords") or []),
            priority=int(data.get("priority") or 0),
        )


@dataclass
class LorebookEntry:
    """A named concept with an explicit injection policy."""

    id: str
    story_id: str
    name: str
    type: str = "concept"  # 'character' | 'location' | 'item' | 'faction' | 'concept' | 'event'
    description: str | None = None
    hidden_info: str | None = None  # visible to the model only
    aliases: list[str] = field(default_factory=list)
    state: dict = field(default_factory=dict)
    adventure_state: dict = field(default_factory=dict)
    creative_state: dict = field(default_factory=dict)
    injection: LorebookInjection = field(default_factory=LorebookInjection)
    first_mentioned: int | None = None
    last_mentioned: int | None = None
    mention_count: int = 0
    created_by: str = "user"  # 'user' | 'ai' | 'import'
    created_at: float = 0.0
    updated_at: float = 0.0

    def match_terms(self) -> list[str]:
        """Name, aliases and keywords, in that order, without blanks."""
        terms = [self.name, *self.aliases, *self.injection.keywords]
        return [t for t in terms if t and t.strip()]


@dataclass(frozen=True)
class WorldState:
    """Immutable snapshot of one story's world entities and lorebook."""

    characters: tuple[Character, ...] = ()
    locations: tuple[Location, ...] = ()
    items: tuple[Item, ...] = ()
    story_beats: tuple[StoryBeat, ...] = ()
    lorebook: tuple[LorebookEntry, ...] = ()

    @property
    def protagonist(self) -> Character | None:
        return next((c for c in self.characters if c.is_protagonist), None)

    @property
    def current_location(self) -> Location | None:
        return next((loc for loc in self.locations if loc.current), None)

    @property
    def inventory(self) -> list[Item]:
        return [i for i in self.items if i.location == INVENTORY]

    @property
    def active_beats(self) -> list[StoryBeat]:
        return [b for b in self.story_beats if b.status in ("active", "pending")]


@dataclass(frozen=True)
class Chapter:
    """Compressed summary of the half-open entry range ending at end_entry_id."""

    id: str
    story_id: str
    number: int
    start_entry_id: str
    end_entry_id: str
    entry_count: int
    summary: str
    title: str | None = None
    keywords: tuple[str, ...] = ()
    characters: tuple[str, ...] = ()
    locations: tuple[str, ...] = ()
    plot_threads: tuple[str, ...] = ()
    emotional_tone: str | None = None
    arc_id: str | None = None
    created_at: float = 0.0


@dataclass(frozen=True)
class ChapterAnalysis:
    """Result of boundary analysis; optimal_end_index is an exclusive slice end."""

    should_create_chapter: bool
    optimal_end_index: int | None = None
    suggested_title: str | None = None


@dataclass(frozen=True)
class ChapterSummary:
    """Summary text plus retrieval metadata for one chapter."""

    title: str | None
    summary: str
    keywords: tuple[str, ...] = ()
    characters: tuple[str, ...] = ()
    locations: tuple[str, ...] = ()
    plot_threads: tuple[str, ...] = ()
    emotional_tone: str | None = None


@dataclass(frozen=True)
class RetrievalDecision:
    """Chapters selected as relevant for the upcoming turn."""

    relevant_chapter_ids: tuple[str, ...] = ()
    reasoning: str | None = None


@dataclass(frozen=True)
class ContextItem:
    """One world element selected for prompt injection."""

    kind: str  # 'character' | 'location' | 'item' | 'story_beat' | 'lorebook'
    entity_id: str
    name: str
    tier: int
    reason: str  # why the tier picked it, e.g. 'current', 'matched', 'sticky'
    entity: object = field(compare=False, repr=False)


@dataclass
class ContextResult:
    """Tiered selection plus the rendered context block."""

    tier1: list[ContextItem] = field(default_factory=list)
    tier2: list[ContextItem] = field(default_factory=list)
    tier3: list[ContextItem] = field(default_factory=list)
    all: list[ContextItem] = field(default_factory=list)
    context_block: str = ""


@dataclass(frozen=True)
class StorySnapshot:
    """Deep copy of everything a turn can change."""

    entries: tuple[StoryEntry, ...]
    world: WorldState
    chapters: tuple[Chapter, ...]
    activation: dict


@dataclass(frozen=True)
class Checkpoint:
    """A named, restorable snapshot."""

    id: str
    story_id: str
    name: str
    last_entry_id: str | None
    last_entry_preview: str | None
    entry_count: int
    snapshot: StorySnapshot
    created_at: float = 0.0


@dataclass(frozen=True)
class StorySuggestion:
    """A possible story direction (creative-writing mode)."""

    text: str
    type: str  # 'action' | 'dialogue' | 'revelation' | 'twist'


@dataclass(frozen=True)
class ActionChoice:
    """An RPG-style action the player may pick (adventure mode)."""

    text: str
    type: str  # 'action' | 'dialogue' | 'examine' | 'move'
