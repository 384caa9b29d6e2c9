"""Story Memory - Tiered context and chapter memory for interactive fiction."""

from story_memory.activation import ActivationTracker
from story_memory.classifier import ClassificationContext, ClassificationResult, Classifier
from story_memory.config import (
    ContextConfig,
    GenerationSettings,
    ServiceSettings,
    StoreConfig,
    SystemServicesSettings,
)
from story_memory.context import ContextBuilder
from story_memory.entities import EntityStore, apply_classification
from story_memory.errors import GenerationError, ModelError, StoryMemoryError
from story_memory.llm import LanguageModel, OpenAIChatModel, model_from_env
from story_memory.memory import ChapterMemory, build_retrieved_context_block
from story_memory.models import (
    Chapter,
    Character,
    ContextResult,
    Item,
    Location,
    LorebookEntry,
    MemoryConfig,
    Story,
    StoryBeat,
    StoryEntry,
    WorldState,
)
from story_memory.session import StorySession
from story_memory.store import StoryStore

__version__ = "0.1.0"

__all__ = [
    "ActivationTracker",
    "Chapter",
    "ChapterMemory",
    "Character",
    "ClassificationContext",
    "ClassificationResult",
    "Classifier",
    "ContextBuilder",
    "ContextConfig",
    "ContextResult",
    "EntityStore",
    "GenerationError",
    "GenerationSettings",
    "Item",
    "LanguageModel",
    "Location",
    "LorebookEntry",
    "MemoryConfig",
    "ModelError",
    "OpenAIChatModel",
    "ServiceSettings",
    "Story",
    "StoryBeat",
    "StoryEntry",
    "StoryMemoryError",
    "StorySession",
    "StoryStore",
    "StoreConfig",
    "SystemServicesSettings",
    "WorldState",
    "apply_classification",
    "build_retrieved_context_block",
    "model_from_env",
]
