"""Configuration for Story Memory services, context assembly and storage."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace

from story_memory import prompts

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_MODEL = "x-ai/grok-4.1-fast"
DEFAULT_NARRATOR_MODEL = "anthropic/claude-3.5-sonnet"


@dataclass
class StoreConfig:
    """Configuration for StoryStore."""

    db_path: str
    embedding_backend: str = "local"  # "local" | "openai" | "hash"
    embedding_model: str = "all-MiniLM-L6-v2"  # for local
    openai_model: str = "text-embedding-3-small"  # if backend="openai"
    vector_dimensions: int = 384  # matches model


def load_store_config_from_env(default_db_path: str = "story_memory.db") -> StoreConfig:
    """Build a StoreConfig from STORY_MEMORY_* environment variables."""
    return StoreConfig(
        db_path=os.getenv("STORY_MEMORY_DB_PATH", default_db_path),
        embedding_backend=os.getenv("STORY_MEMORY_EMBEDDING_BACKEND", "local"),
        embedding_model=os.getenv("STORY_MEMORY_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
        openai_model=os.getenv("STORY_MEMORY_OPENAI_MODEL", "text-embedding-3-small"),
        vector_dimensions=int(os.getenv("STORY_MEMORY_VECTOR_DIMENSIONS", "384")),
    )


@dataclass
class ServiceSettings:
    """Model parameters for one background service."""

    model: str
    temperature: float
    max_tokens: int
    system_prompt: str


def _service(temperature: float, max_tokens: int, prompt: str) -> ServiceSettings:
    return ServiceSettings(
        model=DEFAULT_SERVICE_MODEL,
        temperature=temperature,
        max_tokens=max_tokens,
        system_prompt=prompt,
    )


@dataclass
class SystemServicesSettings:
    """Settings for every LLM-assisted memory service."""

    classifier: ServiceSettings = field(
        default_factory=lambda: _service(0.3, 2000, prompts.CLASSIFIER_SYSTEM)
    )
    chapter_analysis: ServiceSettings = field(
        default_factory=lambda: _service(0.3, 500, prompts.CHAPTER_ANALYSIS_SYSTEM)
    )
    chapter_summarization: ServiceSettings = field(
        default_factory=lambda: _service(0.3, 1500, prompts.CHAPTER_SUMMARY_SYSTEM)
    )
    retrieval: ServiceSettings = field(
        default_factory=lambda: _service(0.3, 500, prompts.RETRIEVAL_SYSTEM)
    )
    context_selection: ServiceSettings = field(
        default_factory=lambda: _service(0.3, 500, prompts.CONTEXT_SELECTION_SYSTEM)
    )
    suggestions: ServiceSettings = field(
        default_factory=lambda: _service(0.7, 500, prompts.SUGGESTIONS_SYSTEM)
    )
    action_choices: ServiceSettings = field(
        default_factory=lambda: _service(0.8, 500, prompts.ACTION_CHOICES_SYSTEM)
    )

    def to_dict(self) -> dict:
        return {f.name: asdict(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict | None) -> SystemServicesSettings:
        """Merge a partially persisted blob over the defaults.

        Unknown services and keys are ignored; a service whose overrides do
        not fit falls back to its defaults.
        """
        settings = cls()
        if not isinstance(data, dict):
            return settings
        for f in fields(cls):
            overrides = data.get(f.name)
            if not isinstance(overrides, dict):
                continue
            current = getattr(settings, f.name)
            known = {k: v for k, v in overrides.items() if k in ServiceSettings.__dataclass_fields__}
            try:
                merged = replace(current, **known)
                merged.temperature = float(merged.temperature)
                merged.max_tokens = int(merged.max_tokens)
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed settings for service %s", f.name)
                continue
            setattr(settings, f.name, merged)
        return settings


@dataclass
class GenerationSettings:
    """Parameters for the primary narration call."""

    model: str = DEFAULT_NARRATOR_MODEL
    temperature: float = 0.8
    max_tokens: int = 1024
    adventure_prompt: str = prompts.ADVENTURE_NARRATOR
    creative_writing_prompt: str = prompts.CREATIVE_WRITING_NARRATOR
    history_entries: int = 20  # entries replayed as chat history

    def base_prompt(self, mode: str, override: str | None = None) -> str:
        if override:
            return override
        if mode == "creative-writing":
            return self.creative_writing_prompt
        return self.adventure_prompt


@dataclass
class ContextConfig:
    """Caps and windows for tiered context assembly."""

    tier1_max_items: int = 30  # hard cap, applied only to runaway worlds
    tier2_max_items: int = 12
    tier3_max_items: int = 5
    tier3_max_candidates: int = 30
    stickiness_window: int = 10
    recent_entries_for_matching: int = 5
    min_token_length: int = 4  # shortest name token matched on its own
