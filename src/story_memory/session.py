"""Per-story turn orchestration."""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace

from story_memory.activation import ActivationTracker
from story_memory.classifier import ClassificationContext, ClassificationResult, Classifier
from story_memory.config import ContextConfig, GenerationSettings, SystemServicesSettings
from story_memory.context import ContextBuilder
from story_memory.entities import EntityStore, new_id
from story_memory.errors import GenerationError, StoryMemoryError
from story_memory.llm import GenerationRequest, LanguageModel, Message
from story_memory.memory import (
    ChapterMemory,
    build_retrieved_context_block,
    candidate_range,
    clamp_end_index,
    create_chapter,
    last_chapter_end_index,
)
from story_memory.models import (
    ActionChoice,
    Chapter,
    Checkpoint,
    ContextResult,
    StoryEntry,
    StorySnapshot,
    StorySuggestion,
)
from story_memory.prompts import build_system_prompt
from story_memory.store import StoryStore
from story_memory.suggestions import ActionChoicesService, SuggestionsService

logger = logging.getLogger(__name__)

SERVICES_SETTING_KEY = "system_services"


class StorySession:
    """Everything one story needs between turns.

    A session owns its entity store, entry list, chapters and activation
    tracker; sessions share no mutable state. Classification, chapter
    creation and suggestions run on a single background worker after each
    turn, so the world state read by the next turn may lag by one turn until
    ``wait_for_background`` is called.
    """

    max_retrieval_candidates = 20
    recent_entries_for_retrieval = 5

    def __init__(
        self,
        store: StoryStore,
        story_id: str,
        model: LanguageModel | None = None,
        *,
        services: SystemServicesSettings | None = None,
        generation: GenerationSettings | None = None,
        context_config: ContextConfig | None = None,
        id_factory: Callable[[], str] = new_id,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.story = store.get_story(story_id)
        self.story_id = story_id
        self.model = model
        self.services = services or SystemServicesSettings.from_dict(
            store.get_setting("", SERVICES_SETTING_KEY)
        )
        self.generation = generation or GenerationSettings()
        self._id_factory = id_factory
        self._clock = clock

        self.classifier = Classifier(model, self.services.classifier)
        self.memory = ChapterMemory(model, self.services)
        self.context_builder = ContextBuilder(model, self.services, context_config)
        self.suggestion_service = SuggestionsService(model, self.services)
        self.action_choice_service = ActionChoicesService(model, self.services)

        snapshot = store.load_snapshot(story_id)
        self._lock = threading.RLock()
        self._epoch = 0
        self._entries: list[StoryEntry] = list(snapshot.entries)
        self._chapters: list[Chapter] = list(snapshot.chapters)
        self.entities = EntityStore(story_id, snapshot.world, id_factory=id_factory, clock=clock)
        self.tracker = ActivationTracker(self._position(), snapshot.activation)

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"story-{story_id}")
        self._pending: list[Future] = []
        self._failed_input: str | None = None
        self._last_turn: tuple[StorySnapshot, str] | None = None
        self.suggestions: list[StorySuggestion] = []
        self.action_choices: list[ActionChoice] = []

    def close(self) -> None:
        """Drain background work and stop the worker."""
        self._executor.shutdown(wait=True)

    def __enter__(self) -> StorySession:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # State access
    # -------------------------------------------------------------------------

    @property
    def entries(self) -> list[StoryEntry]:
        with self._lock:
            return list(self._entries)

    @property
    def chapters(self) -> list[Chapter]:
        with self._lock:
            return list(self._chapters)

    def _position(self) -> int:
        return self._entries[-1].position if self._entries else 0

    def snapshot(self) -> StorySnapshot:
        """Deep copy of entries, world, chapters and activation data."""
        with self._lock:
            return StorySnapshot(
                entries=copy.deepcopy(tuple(self._entries)),
                world=self.entities.snapshot(),
                chapters=tuple(self._chapters),
                activation=self.tracker.get_activation_data(),
            )

    def _restore(self, snapshot: StorySnapshot) -> None:
        with self._lock:
            # Background results computed against the old state are dropped
            self._epoch += 1
            self._entries = list(copy.deepcopy(snapshot.entries))
            self._chapters = list(snapshot.chapters)
            self.entities.restore(snapshot.world)
            self.tracker = ActivationTracker(self._position(), snapshot.activation)
            self.store.restore_snapshot(self.story_id, snapshot)

    def _rollback(self, backup: StorySnapshot) -> None:
        """Undo a failed turn: drop its entries and activations.

        World and chapters are only touched by background tasks of earlier,
        successful turns, so they are left as they are.
        """
        last = backup.entries[-1].position if backup.entries else -1
        with self._lock:
            self._entries = [e for e in self._entries if e.position <= last]
            self.store.delete_entries_after(self.story_id, last)
            self.tracker = ActivationTracker(self._position(), backup.activation)
            self.store.save_activation(self.story_id, backup.activation)

    def add_entry(self, type: str, content: str, parent_id: str | None = None) -> StoryEntry:
        """Append an entry to the log and persist it."""
        with self._lock:
            entry = StoryEntry(
                id=self._id_factory(),
                story_id=self.story_id,
                type=type,
                content=content,
                position=self._entries[-1].position + 1 if self._entries else 0,
                created_at=self._clock(),
                parent_id=parent_id,
            )
            self.store.add_entry(entry)
            self._entries.append(entry)
            return entry

    def save_world(self) -> None:
        """Persist the entity store after direct edits."""
        with self._lock:
            self.store.save_world(self.story_id, self.entities.world)

    def update_memory_config(self, **changes) -> None:
        config = replace(self.story.memory_config, **changes)
        self.store.update_memory_config(self.story_id, config)
        self.story = replace(self.story, memory_config=config)

    # -------------------------------------------------------------------------
    # Turn
    # -------------------------------------------------------------------------

    def submit_action(
        self,
        user_input: str,
        on_chunk: Callable[[str], None] | None = None,
    ) -> StoryEntry:
        """Run one turn and return the narration entry.

        Args:
            user_input: The player's action
            on_chunk: Called with each streamed piece of narration

        Returns:
            The persisted narration entry

        Raises:
            GenerationError: narration failed; state is back to before the turn
                and ``retry()`` replays the input
        """
        if not user_input or not user_input.strip():
            raise ValueError("user_input must not be blank")

        backup = self.snapshot()
        user_entry = self.add_entry("user_action", user_input)
        self.tracker.advance(user_entry.position)

        try:
            retrieved = self._retrieved_context(user_input)
            context = self.build_context(user_input, retrieved, exclude_latest=True)
            narration = self._narrate(context.context_block, on_chunk)
        except Exception as e:
            self._rollback(backup)
            self._failed_input = user_input
            logger.warning("Narration failed for story %s: %s", self.story_id, e)
            retryable = not isinstance(e, GenerationError) or e.retryable
            raise GenerationError(
                f"Generation failed: {e}", user_input=user_input, retryable=retryable
            ) from e

        entry = self.add_entry("narration", narration, parent_id=user_entry.id)
        self.tracker.prune_old_activations(self.context_builder.config.stickiness_window)
        self.store.save_activation(self.story_id, self.tracker.get_activation_data())
        self.store.touch_story(self.story_id)
        self._failed_input = None
        self._last_turn = (backup, user_input)

        epoch = self._epoch
        self._spawn(self._classify_turn, user_input, entry, epoch)
        if self.story.memory_config.auto_summarize:
            self._spawn(self._auto_chapter, epoch)
        self._spawn(self._refresh_suggestions, epoch)
        return entry

    def retry(self, on_chunk: Callable[[str], None] | None = None) -> StoryEntry:
        """Replay the failed input, or regenerate the last successful turn."""
        if self._failed_input is not None:
            return self.submit_action(self._failed_input, on_chunk)
        if self._last_turn is None:
            raise ValueError("Nothing to retry")
        self.wait_for_background()
        backup, user_input = self._last_turn
        self._restore(backup)
        return self.submit_action(user_input, on_chunk)

    def build_context(
        self,
        user_input: str,
        retrieved_chapter_context: str | None = None,
        exclude_latest: bool = False,
    ) -> ContextResult:
        """Tiered context for user_input against the current world."""
        window = self.context_builder.config.recent_entries_for_matching
        with self._lock:
            recent = self._entries[:-1] if exclude_latest else list(self._entries)
            world = self.entities.world
        return self.context_builder.build_context(
            world,
            user_input,
            recent[-window:] if window > 0 else [],
            retrieved_chapter_context,
            self.tracker,
        )

    def _retrieved_context(self, user_input: str) -> str:
        config = self.story.memory_config
        with self._lock:
            chapters = list(self._chapters)
            recent = self._entries[-(self.recent_entries_for_retrieval + 1) : -1]
        if not config.enable_retrieval or not chapters:
            return ""

        candidates = chapters
        if len(chapters) > self.max_retrieval_candidates:
            query = "\n".join([user_input, *(e.content for e in recent)])
            try:
                ids = set(self.store.similar_chapters(self.story_id, query, self.max_retrieval_candidates))
            except Exception as e:
                logger.warning("Chapter similarity search failed: %s", e)
                ids = set()
            candidates = [c for c in chapters if c.id in ids] or chapters[-self.max_retrieval_candidates :]

        decision = self.memory.decide_retrieval(user_input, recent, candidates, config)
        if decision.relevant_chapter_ids:
            logger.debug("Retrieved chapters %s", decision.relevant_chapter_ids)
        return build_retrieved_context_block(candidates, decision)

    def build_messages(self, context_block: str) -> list[Message]:
        """System prompt plus the recent entries as chat history."""
        base = self.generation.base_prompt(self.story.mode, self.story.system_prompt_override)
        messages = [Message(role="system", content=build_system_prompt(base, context_block))]
        with self._lock:
            history = self._entries[-self.generation.history_entries :]
        for entry in history:
            if entry.type == "user_action":
                messages.append(Message(role="user", content=entry.content))
            elif entry.type == "narration":
                messages.append(Message(role="assistant", content=entry.content))
        return messages

    def _narrate(self, context_block: str, on_chunk: Callable[[str], None] | None) -> str:
        if self.model is None:
            raise GenerationError("No language model configured", user_input="", retryable=False)
        request = GenerationRequest(
            messages=self.build_messages(context_block),
            model=self.generation.model,
            temperature=self.generation.temperature,
            max_tokens=self.generation.max_tokens,
        )
        parts = []
        for chunk in self.model.stream(request):
            if chunk.content:
                parts.append(chunk.content)
                if on_chunk is not None:
                    on_chunk(chunk.content)
            if chunk.done:
                break
        text = "".join(parts).strip()
        if not text:
            raise GenerationError("Model returned an empty response", user_input="")
        return text

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------

    def _spawn(self, fn: Callable, *args) -> None:
        def run() -> None:
            try:
                fn(*args)
            except Exception:
                logger.exception("Background task %s failed for story %s", fn.__name__, self.story_id)

        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(self._executor.submit(run))

    def wait_for_background(self, timeout: float | None = None) -> None:
        """Block until queued background tasks finish."""
        pending, self._pending = self._pending, []
        wait(pending, timeout=timeout)

    def _classify_turn(self, user_input: str, entry: StoryEntry, epoch: int) -> None:
        with self._lock:
            world = self.entities.world
        context = ClassificationContext.from_world(entry.content, user_input, world, self.story.genre)
        result = self.classifier.classify(context)
        with self._lock:
            if epoch != self._epoch:
                logger.debug("Dropping classification for a restored turn")
                return
            self.entities.apply(result, position=entry.position)
            self.entities.record_mentions(f"{user_input}\n{entry.content}", entry.position)
            self.store.save_world(self.story_id, self.entities.world)

    def classify_text(self, narrative: str, user_action: str = "") -> ClassificationResult:
        """Classify text now and apply the result to the world."""
        with self._lock:
            world = self.entities.world
        result = self.classifier.classify(
            ClassificationContext.from_world(narrative, user_action, world, self.story.genre)
        )
        with self._lock:
            self.entities.apply(result, position=self._position())
            self.entities.record_mentions(f"{user_action}\n{narrative}", self._position())
            self.store.save_world(self.story_id, self.entities.world)
        return result

    def _auto_chapter(self, epoch: int) -> None:
        chapter = self.maybe_create_chapter(epoch)
        if chapter is not None:
            logger.info("Created chapter %d for story %s", chapter.number, self.story_id)

    def maybe_create_chapter(self, epoch: int | None = None) -> Chapter | None:
        """Run chapter analysis and, if it says so, summarize and commit a chapter."""
        with self._lock:
            entries = list(self._entries)
            last_end = last_chapter_end_index(entries, self._chapters)
        analysis = self.memory.analyze_for_chapter(entries, last_end, self.story.memory_config)
        if not analysis.should_create_chapter:
            return None
        return self._commit_chapter(
            entries[last_end : analysis.optimal_end_index], analysis.suggested_title, epoch
        )

    def _commit_chapter(
        self,
        chapter_entries: list[StoryEntry],
        title: str | None,
        epoch: int | None,
    ) -> Chapter | None:
        with self._lock:
            previous = list(self._chapters)
        summary = self.memory.summarize_chapter(chapter_entries, previous)
        if not summary.summary:
            logger.warning("Chapter summary failed; no chapter created")
            return None
        with self._lock:
            if epoch is not None and epoch != self._epoch:
                return None
            chapter = create_chapter(
                self.story_id,
                chapter_entries,
                summary,
                number=len(self._chapters) + 1,
                title=title,
                id_factory=self._id_factory,
                clock=self._clock,
            )
            self.store.save_chapter(chapter)
            self._chapters.append(chapter)
        return chapter

    def _refresh_suggestions(self, epoch: int) -> None:
        with self._lock:
            recent = self._entries[-5:]
            world = self.entities.world
        if self.story.mode == "creative-writing":
            suggestions = self.suggestion_service.generate_suggestions(recent, world, self.story.genre)
            if epoch == self._epoch:
                self.suggestions = suggestions
        else:
            choices = self.action_choice_service.generate_choices(recent, world, self.story.pov)
            if epoch == self._epoch:
                self.action_choices = choices

    # -------------------------------------------------------------------------
    # Chapters (user-triggered)
    # -------------------------------------------------------------------------

    def create_chapter(self, end_index: int, title: str | None = None) -> Chapter:
        """Close a chapter at an explicit exclusive entry index.

        The index is clamped like a model-suggested one: the chapter holds at
        least one entry and never reaches into the trailing buffer.
        """
        self.wait_for_background()
        with self._lock:
            entries = list(self._entries)
            last_end = last_chapter_end_index(entries, self._chapters)
        start, upper = candidate_range(len(entries), last_end, self.story.memory_config)
        if upper <= start:
            raise ValueError("Not enough entries outside the buffer for a new chapter")
        end = clamp_end_index(end_index, start, upper)
        chapter = self._commit_chapter(entries[start:end], title, None)
        if chapter is None:
            raise StoryMemoryError("Chapter summarization failed")
        return chapter

    def resummarize_chapter(self, chapter_id: str) -> Chapter:
        """Regenerate a chapter's summary from its own entries."""
        self.wait_for_background()
        with self._lock:
            chapter = next((c for c in self._chapters if c.id == chapter_id), None)
            if chapter is None:
                raise ValueError(f"Chapter not found: {chapter_id}")
            ids = [e.id for e in self._entries]
            previous = [c for c in self._chapters if c.number < chapter.number]
            try:
                start = ids.index(chapter.start_entry_id)
            except ValueError:
                raise ValueError(f"Entries of chapter {chapter.number} are missing") from None
            chapter_entries = self._entries[start : start + chapter.entry_count]

        updated = self.memory.resummarize_chapter(chapter, chapter_entries, previous)
        if updated is not chapter:
            with self._lock:
                self.store.save_chapter(updated)
                self._chapters = [updated if c.id == chapter_id else c for c in self._chapters]
        return updated

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    def create_checkpoint(self, name: str) -> Checkpoint:
        self.wait_for_background()
        snapshot = self.snapshot()
        last = snapshot.entries[-1] if snapshot.entries else None
        checkpoint = Checkpoint(
            id=self._id_factory(),
            story_id=self.story_id,
            name=name,
            last_entry_id=last.id if last else None,
            last_entry_preview=last.content[:100] if last else None,
            entry_count=len(snapshot.entries),
            snapshot=snapshot,
            created_at=self._clock(),
        )
        self.store.save_checkpoint(checkpoint)
        logger.info("Saved checkpoint %r for story %s", name, self.story_id)
        return checkpoint

    def list_checkpoints(self) -> list[Checkpoint]:
        return self.store.list_checkpoints(self.story_id)

    def restore_checkpoint(self, checkpoint_id: str) -> None:
        self.wait_for_background()
        checkpoint = self.store.get_checkpoint(checkpoint_id)
        if checkpoint.story_id != self.story_id:
            raise ValueError(f"Checkpoint {checkpoint_id} belongs to another story")
        self._restore(checkpoint.snapshot)
        self._failed_input = None
        self._last_turn = None
