"""Chapter memory: boundary analysis, summarization and retrieval decisions."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from story_memory.config import ServiceSettings, SystemServicesSettings
from story_memory.llm import LanguageModel, complete
from story_memory.models import (
    Chapter,
    ChapterAnalysis,
    ChapterSummary,
    MemoryConfig,
    RetrievalDecision,
    StoryEntry,
)
from story_memory.parsing import ParseError, coerce_int, decode_model, string_list
from story_memory.prompts import format_entries

logger = logging.getLogger(__name__)

NO_CHAPTER = ChapterAnalysis(should_create_chapter=False)
NO_RETRIEVAL = RetrievalDecision()


# -----------------------------------------------------------------------------
# Mechanical rules
# -----------------------------------------------------------------------------


def is_chapter_eligible(total_entries: int, last_chapter_end_index: int, config: MemoryConfig) -> bool:
    """Enough entries past the last chapter to fill a chapter and still keep the buffer."""
    return total_entries - last_chapter_end_index >= config.chapter_threshold + config.chapter_buffer


def candidate_range(total_entries: int, last_chapter_end_index: int, config: MemoryConfig) -> tuple[int, int]:
    """Half-open entry range a new chapter may cover; the trailing buffer is excluded."""
    return last_chapter_end_index, total_entries - config.chapter_buffer


def clamp_end_index(value: int | None, last_chapter_end_index: int, upper: int) -> int:
    """Clamp an exclusive chapter end into [last_chapter_end_index + 1, upper]."""
    if value is None:
        return upper
    return max(last_chapter_end_index + 1, min(upper, value))


def last_chapter_end_index(entries: Sequence[StoryEntry], chapters: Sequence[Chapter]) -> int:
    """Exclusive index in entries where the newest chapter ends (0 without chapters)."""
    if not chapters:
        return 0
    latest = max(chapters, key=lambda c: c.number)
    for i, entry in enumerate(entries):
        if entry.id == latest.end_entry_id:
            return i + 1
    # End entry no longer in the list; fall back to counted entries
    return min(len(entries), sum(c.entry_count for c in chapters))


def create_chapter(
    story_id: str,
    entries: Sequence[StoryEntry],
    summary: ChapterSummary,
    number: int,
    *,
    title: str | None = None,
    id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    clock: Callable[[], float] = time.time,
) -> Chapter:
    """Build an immutable Chapter covering exactly ``entries``."""
    if not entries:
        raise ValueError("A chapter must cover at least one entry")
    return Chapter(
        id=id_factory(),
        story_id=story_id,
        number=number,
        title=summary.title or title,
        start_entry_id=entries[0].id,
        end_entry_id=entries[-1].id,
        entry_count=len(entries),
        summary=summary.summary,
        keywords=summary.keywords,
        characters=summary.characters,
        locations=summary.locations,
        plot_threads=summary.plot_threads,
        emotional_tone=summary.emotional_tone,
        created_at=clock(),
    )


def build_retrieved_context_block(chapters: Sequence[Chapter], decision: RetrievalDecision) -> str:
    """Render the selected chapters, in chapter-number order, as a labeled block."""
    wanted = set(decision.relevant_chapter_ids)
    selected = sorted((c for c in chapters if c.id in wanted), key=lambda c: c.number)
    if not selected:
        return ""

    lines = ["\n\n[STORY MEMORY]", "Relevant events from earlier in the story:"]
    for chapter in selected:
        heading = f"Chapter {chapter.number}"
        if chapter.title:
            heading += f": {chapter.title}"
        lines.append("")
        lines.append(heading)
        lines.append(chapter.summary)
        if chapter.characters:
            lines.append(f"Characters: {', '.join(chapter.characters)}")
        if chapter.plot_threads:
            lines.append(f"Plot threads: {', '.join(chapter.plot_threads)}")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Model output contracts
# -----------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)


class _AnalysisPayload(_Payload):
    should_create_chapter: bool = False
    optimal_end_index: Any = None
    suggested_title: str | None = None


class _SummaryPayload(_Payload):
    title: str | None = None
    summary: str
    keywords: list[str] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    plot_threads: list[str] = Field(default_factory=list)
    emotional_tone: str | None = None

    @field_validator("summary")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("summary is empty")
        return value.strip()

    @field_validator("keywords", "characters", "locations", "plot_threads", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> list[str]:
        return string_list(value)


class _RetrievalPayload(_Payload):
    relevant_chapter_ids: list[Any] = Field(default_factory=list)
    reasoning: str | None = None

    @field_validator("relevant_chapter_ids", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> list:
        if isinstance(value, (str, int)):
            return [value]
        return value if isinstance(value, list) else []


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------


class ChapterMemory:
    """LLM-assisted chapter decisions with mechanical guards around them.

    Every model call degrades to a no-op result on failure: no chapter, an
    empty summary, or an empty retrieval.
    """

    def __init__(
        self,
        model: LanguageModel | None,
        settings: SystemServicesSettings | None = None,
    ):
        self.model = model
        settings = settings or SystemServicesSettings()
        self.analysis_settings: ServiceSettings = settings.chapter_analysis
        self.summary_settings: ServiceSettings = settings.chapter_summarization
        self.retrieval_settings: ServiceSettings = settings.retrieval

    def _call(self, settings: ServiceSettings, prompt: str, purpose: str) -> str | None:
        if self.model is None:
            logger.debug("No model configured; skipping %s", purpose)
            return None
        try:
            return complete(self.model, settings, prompt)
        except Exception as e:
            logger.warning("%s request failed: %s", purpose.capitalize(), e)
            return None

    # -------------------------------------------------------------------------
    # Boundary analysis
    # -------------------------------------------------------------------------

    def analyze_for_chapter(
        self,
        entries: Sequence[StoryEntry],
        last_chapter_end_index: int,
        config: MemoryConfig,
    ) -> ChapterAnalysis:
        """Decide whether, and where, to close the next chapter.

        The eligibility gate is checked before any model call. The returned
        optimal_end_index is an exclusive end already clamped into
        [last_chapter_end_index + 1, len(entries) - chapter_buffer].
        """
        if not is_chapter_eligible(len(entries), last_chapter_end_index, config):
            return NO_CHAPTER

        start, upper = candidate_range(len(entries), last_chapter_end_index, config)
        raw = self._call(self.analysis_settings, self._analysis_prompt(entries, start, upper), "chapter analysis")
        if raw is None:
            return NO_CHAPTER

        decoded = decode_model(raw, _AnalysisPayload)
        if isinstance(decoded, ParseError):
            logger.warning("Discarding chapter analysis output: %s", decoded.reason)
            return NO_CHAPTER
        payload = decoded.value
        if not payload.should_create_chapter:
            return NO_CHAPTER

        last_index = coerce_int(payload.optimal_end_index)
        end = clamp_end_index(None if last_index is None else last_index + 1, start, upper)
        if last_index is not None and end != last_index + 1:
            logger.info("Clamped chapter end %s into [%d, %d]", last_index + 1, start + 1, upper)
        return ChapterAnalysis(
            should_create_chapter=True,
            optimal_end_index=end,
            suggested_title=(payload.suggested_title or "").strip() or None,
        )

    def _analysis_prompt(self, entries: Sequence[StoryEntry], start: int, upper: int) -> str:
        return (
            "Find the best place to end a chapter in the story content below.\n\n"
            f"## Story Content (entries {start} to {upper - 1})\n"
            f"{format_entries(entries[start:upper], start_index=start, limit=600)}\n\n"
            "## Your Task\n"
            f"Choose the index of the LAST entry that belongs in this chapter, between {start} "
            f"and {upper - 1}. If there is no natural break yet, say so.\n\n"
            "Respond with JSON only:\n"
            '{"shouldCreateChapter": true, "optimalEndIndex": <index>, "suggestedTitle": "Short title"}'
        )

    # -------------------------------------------------------------------------
    # Summarization
    # -------------------------------------------------------------------------

    def summarize_chapter(
        self,
        entries: Sequence[StoryEntry],
        previous_chapters: Sequence[Chapter] = (),
    ) -> ChapterSummary:
        """Summarize exactly these entries; an empty summary signals failure."""
        empty = ChapterSummary(title=None, summary="")
        if not entries:
            return empty
        raw = self._call(
            self.summary_settings,
            self._summary_prompt(entries, previous_chapters),
            "chapter summarization",
        )
        if raw is None:
            return empty

        decoded = decode_model(raw, _SummaryPayload)
        if isinstance(decoded, ParseError):
            logger.warning("Discarding chapter summary output: %s", decoded.reason)
            return empty
        payload = decoded.value
        return ChapterSummary(
            title=(payload.title or "").strip() or None,
            summary=payload.summary,
            keywords=tuple(payload.keywords),
            characters=tuple(payload.characters),
            locations=tuple(payload.locations),
            plot_threads=tuple(payload.plot_threads),
            emotional_tone=(payload.emotional_tone or "").strip() or None,
        )

    def _summary_prompt(self, entries: Sequence[StoryEntry], previous_chapters: Sequence[Chapter]) -> str:
        sections = []
        earlier = sorted(previous_chapters, key=lambda c: c.number)[-3:]
        if earlier:
            recap = "\n".join(f"Chapter {c.number}: {c.summary}" for c in earlier)
            sections.append(f"## Earlier Chapters (context only)\n{recap}")
        sections.append(f'## Chapter Content\n"""\n{format_entries(entries)}\n"""')
        sections.append(
            "## Your Task\n"
            "Summarize this chapter in 2-4 sentences covering the key events, and extract "
            "retrieval metadata.\n\n"
            "Respond with JSON only:\n"
            "{\n"
            '  "title": "Short evocative title",\n'
            '  "summary": "What happened",\n'
            '  "keywords": ["key", "terms"],\n'
            '  "characters": ["Names of characters who appear"],\n'
            '  "locations": ["Names of places"],\n'
            '  "plotThreads": ["Open or advanced storylines"],\n'
            '  "emotionalTone": "One or two words"\n'
            "}"
        )
        return "\n\n".join(sections)

    def resummarize_chapter(
        self,
        chapter: Chapter,
        entries: Sequence[StoryEntry],
        previous_chapters: Sequence[Chapter] = (),
    ) -> Chapter:
        """Regenerate summary and metadata for the same entry range.

        The old summary is never shown to the model. Only chapters numbered
        before this one are used as context. On failure the chapter is
        returned unchanged.
        """
        earlier = [c for c in previous_chapters if c.number < chapter.number]
        summary = self.summarize_chapter(entries, earlier)
        if not summary.summary:
            logger.warning("Resummarization of chapter %d failed; keeping old summary", chapter.number)
            return chapter
        return replace(
            chapter,
            title=summary.title or chapter.title,
            summary=summary.summary,
            keywords=summary.keywords,
            characters=summary.characters,
            locations=summary.locations,
            plot_threads=summary.plot_threads,
            emotional_tone=summary.emotional_tone,
        )

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    def decide_retrieval(
        self,
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        chapters: Sequence[Chapter],
        config: MemoryConfig,
    ) -> RetrievalDecision:
        """Pick up to max_chapters_per_retrieval relevant chapters.

        Ids the model returns that are not in ``chapters`` are dropped; a bare
        chapter number is accepted and mapped to its id.
        """
        if not config.enable_retrieval or not chapters or config.max_chapters_per_retrieval == 0:
            return NO_RETRIEVAL

        raw = self._call(
            self.retrieval_settings,
            self._retrieval_prompt(user_input, recent_entries, chapters, config),
            "retrieval decision",
        )
        if raw is None:
            return NO_RETRIEVAL
        decoded = decode_model(raw, _RetrievalPayload)
        if isinstance(decoded, ParseError):
            logger.warning("Discarding retrieval output: %s", decoded.reason)
            return NO_RETRIEVAL

        by_id = {c.id: c for c in chapters}
        by_number = {c.number: c for c in chapters}
        selected: list[str] = []
        for ref in decoded.value.relevant_chapter_ids:
            if isinstance(ref, bool) or not isinstance(ref, (str, int)):
                chapter = None
            else:
                chapter = by_id.get(str(ref).strip())
                if chapter is None and (isinstance(ref, int) or ref.strip().isdigit()):
                    chapter = by_number.get(int(ref))
            if chapter is None:
                logger.debug("Dropping unknown chapter reference %r", ref)
                continue
            if chapter.id not in selected:
                selected.append(chapter.id)
            if len(selected) >= config.max_chapters_per_retrieval:
                break

        return RetrievalDecision(
            relevant_chapter_ids=tuple(selected),
            reasoning=decoded.value.reasoning,
        )

    def _retrieval_prompt(
        self,
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        chapters: Sequence[Chapter],
        config: MemoryConfig,
    ) -> str:
        listing = []
        for c in sorted(chapters, key=lambda c: c.number):
            parts = [f'- id "{c.id}" (Chapter {c.number}{": " + c.title if c.title else ""})', f"  Summary: {c.summary}"]
            if c.keywords:
                parts.append(f"  Keywords: {', '.join(c.keywords)}")
            if c.characters:
                parts.append(f"  Characters: {', '.join(c.characters)}")
            if c.locations:
                parts.append(f"  Locations: {', '.join(c.locations)}")
            if c.plot_threads:
                parts.append(f"  Plot threads: {', '.join(c.plot_threads)}")
            listing.append("\n".join(parts))

        return (
            f"## Player Input\n{user_input}\n\n"
            f"## Recent Story\n{format_entries(list(recent_entries)[-5:], limit=400) or '(none)'}\n\n"
            "## Earlier Chapters\n" + "\n".join(listing) + "\n\n"
            "## Your Task\n"
            f"Select at most {config.max_chapters_per_retrieval} chapters whose events matter for "
            "what happens next. Use only the ids listed above. Select none if nothing is relevant.\n\n"
            "Respond with JSON only:\n"
            '{"relevantChapterIds": ["id"], "reasoning": "One sentence"}'
        )
