"""SQLite persistence for stories, world state, chapters and checkpoints."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path

from story_memory.config import StoreConfig
from story_memory.embedding import (
    EmbeddingBackend,
    chapter_embedding_text,
    make_embedding_backend,
    serialize_vector,
)
from story_memory.models import (
    Chapter,
    Character,
    Checkpoint,
    Item,
    Location,
    LorebookEntry,
    LorebookInjection,
    MemoryConfig,
    Story,
    StoryBeat,
    StoryEntry,
    StorySnapshot,
    WorldState,
)
from story_memory.queries import (
    build_chapter_query_similarity,
    build_chapter_vec_ddl,
    build_entries_query,
)

logger = logging.getLogger(__name__)

ACTIVATION_KEY = "activation"
_WORLD_TABLES = ("characters", "locations", "items", "story_beats", "lorebook_entries")


def _dumps(value) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(text: str | None, default=None):
    if text is None:
        return default
    return json.loads(text)


# -----------------------------------------------------------------------------
# Dict conversion (checkpoint blobs and MCP payloads)
# -----------------------------------------------------------------------------


def entry_from_dict(d: dict) -> StoryEntry:
    return StoryEntry(**{**d, "metadata": d.get("metadata") or {}})


def chapter_from_dict(d: dict) -> Chapter:
    data = dict(d)
    for key in ("keywords", "characters", "locations", "plot_threads"):
        data[key] = tuple(data.get(key) or ())
    return Chapter(**data)


def lorebook_from_dict(d: dict) -> LorebookEntry:
    data = dict(d)
    data["injection"] = LorebookInjection.from_dict(data.get("injection"))
    return LorebookEntry(**data)


def world_to_dict(world: WorldState) -> dict:
    return {
        "characters": [asdict(c) for c in world.characters],
        "locations": [asdict(loc) for loc in world.locations],
        "items": [asdict(i) for i in world.items],
        "story_beats": [asdict(b) for b in world.story_beats],
        "lorebook": [asdict(e) for e in world.lorebook],
    }


def world_from_dict(d: dict) -> WorldState:
    return WorldState(
        characters=tuple(Character(**c) for c in d.get("characters", [])),
        locations=tuple(Location(**loc) for loc in d.get("locations", [])),
        items=tuple(Item(**i) for i in d.get("items", [])),
        story_beats=tuple(StoryBeat(**b) for b in d.get("story_beats", [])),
        lorebook=tuple(lorebook_from_dict(e) for e in d.get("lorebook", [])),
    )


def snapshot_to_dict(snapshot: StorySnapshot) -> dict:
    return {
        "entries": [asdict(e) for e in snapshot.entries],
        "world": world_to_dict(snapshot.world),
        "chapters": [asdict(c) for c in snapshot.chapters],
        "activation": dict(snapshot.activation),
    }


def snapshot_from_dict(d: dict) -> StorySnapshot:
    return StorySnapshot(
        entries=tuple(entry_from_dict(e) for e in d.get("entries", [])),
        world=world_from_dict(d.get("world", {})),
        chapters=tuple(chapter_from_dict(c) for c in d.get("chapters", [])),
        activation=dict(d.get("activation", {})),
    )


class StoryStore:
    """SQLite-backed store; every operation is scoped by story id.

    The connection is shared with background workers, so every statement runs
    under one re-entrant lock.
    """

    def __init__(self, config: StoreConfig, embedding: EmbeddingBackend | None = None):
        self.config = config
        self._lock = threading.RLock()
        self.db = sqlite3.connect(config.db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._load_sqlite_vec()
        self._init_schema()
        self._embedding = embedding or make_embedding_backend(config)
        self.db.execute(build_chapter_vec_ddl(self._embedding.dimensions))
        self.db.commit()

    def _load_sqlite_vec(self) -> None:
        """Load the sqlite-vec extension."""
        import sqlite_vec

        # Extension loading is disabled by default
        self.db.enable_load_extension(True)
        sqlite_vec.load(self.db)
        self.db.enable_load_extension(False)

    def _init_schema(self) -> None:
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path) as f:
            schema = f.read()
        self.db.executescript(schema)
        self.db.commit()

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self.db.close()

    def __enter__(self) -> StoryStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock, self.db:
            yield self.db

    def _fetchall(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._lock:
            return self.db.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params=()) -> sqlite3.Row | None:
        with self._lock:
            return self.db.execute(sql, params).fetchone()

    # -------------------------------------------------------------------------
    # Stories
    # -------------------------------------------------------------------------

    def create_story(self, story: Story) -> str:
        """Insert a story.

        Args:
            story: Story to persist; zero timestamps are filled with now

        Returns:
            The story id
        """
        now = time.time()
        with self._transaction() as db:
            db.execute(
                """
                INSERT INTO stories (id, title, mode, genre, description, pov, tense,
                    system_prompt_override, memory_config, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    story.id,
                    story.title,
                    story.mode,
                    story.genre,
                    story.description,
                    story.pov,
                    story.tense,
                    story.system_prompt_override,
                    _dumps(story.memory_config.to_dict()),
                    story.created_at or now,
                    story.updated_at or now,
                ),
            )
        logger.info("Created story %s (%s)", story.id, story.mode)
        return story.id

    def get_story(self, story_id: str) -> Story:
        row = self._fetchone("SELECT * FROM stories WHERE id = ?", (story_id,))
        if row is None:
            raise ValueError(f"Story not found: {story_id}")
        return self._story_from_row(row)

    def list_stories(self) -> list[Story]:
        rows = self._fetchall("SELECT * FROM stories ORDER BY updated_at DESC, id")
        return [self._story_from_row(r) for r in rows]

    def _story_from_row(self, row: sqlite3.Row) -> Story:
        return Story(
            id=row["id"],
            title=row["title"],
            mode=row["mode"],
            genre=row["genre"],
            description=row["description"],
            pov=row["pov"],
            tense=row["tense"],
            system_prompt_override=row["system_prompt_override"],
            memory_config=MemoryConfig.from_dict(_loads(row["memory_config"])),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def update_memory_config(self, story_id: str, config: MemoryConfig) -> None:
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE stories SET memory_config = ?, updated_at = ? WHERE id = ?",
                (_dumps(config.to_dict()), time.time(), story_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Story not found: {story_id}")

    def touch_story(self, story_id: str) -> None:
        with self._transaction() as db:
            db.execute("UPDATE stories SET updated_at = ? WHERE id = ?", (time.time(), story_id))

    def delete_story(self, story_id: str) -> None:
        """Delete a story and everything scoped to it."""
        with self._transaction() as db:
            self._delete_chapters(db, story_id)
            for table in ("story_entries", *_WORLD_TABLES, "checkpoints", "settings"):
                db.execute(f"DELETE FROM {table} WHERE story_id = ?", (story_id,))
            db.execute("DELETE FROM stories WHERE id = ?", (story_id,))

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def add_entry(self, entry: StoryEntry) -> str:
        with self._transaction() as db:
            self._insert_entry(db, entry)
        return entry.id

    def _insert_entry(self, db: sqlite3.Connection, entry: StoryEntry) -> None:
        db.execute(
            """
            INSERT INTO story_entries (id, story_id, type, content, position,
                parent_id, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.story_id,
                entry.type,
                entry.content,
                entry.position,
                entry.parent_id,
                _dumps(entry.metadata or None),
                entry.created_at,
            ),
        )

    def delete_entries_after(self, story_id: str, position: int) -> int:
        """Delete entries past position; returns how many were removed."""
        with self._transaction() as db:
            cursor = db.execute(
                "DELETE FROM story_entries WHERE story_id = ? AND position > ?",
                (story_id, position),
            )
        return cursor.rowcount

    def get_entries(self, story_id: str, limit: int | None = None) -> list[StoryEntry]:
        """Entries in position order; with limit, only the latest ``limit``."""
        rows = self._fetchall(build_entries_query(limit), {"story_id": story_id})
        return [
            StoryEntry(
                id=r["id"],
                story_id=r["story_id"],
                type=r["type"],
                content=r["content"],
                position=r["position"],
                created_at=r["created_at"],
                parent_id=r["parent_id"],
                metadata=_loads(r["metadata"], {}),
            )
            for r in rows
        ]

    # -------------------------------------------------------------------------
    # World state
    # -------------------------------------------------------------------------

    def load_world(self, story_id: str) -> WorldState:
        params = (story_id,)
        characters = tuple(
            Character(
                id=r["id"],
                story_id=r["story_id"],
                name=r["name"],
                description=r["description"],
                relationship=r["relationship"],
                traits=_loads(r["traits"], []),
                status=r["status"],
                metadata=_loads(r["metadata"], {}),
            )
            for r in self._fetchall("SELECT * FROM characters WHERE story_id = ? ORDER BY rowid", params)
        )
        locations = tuple(
            Location(
                id=r["id"],
                story_id=r["story_id"],
                name=r["name"],
                description=r["description"],
                visited=bool(r["visited"]),
                current=bool(r["current"]),
                connections=_loads(r["connections"], []),
                metadata=_loads(r["metadata"], {}),
            )
            for r in self._fetchall("SELECT * FROM locations WHERE story_id = ? ORDER BY rowid", params)
        )
        items = tuple(
            Item(
                id=r["id"],
                story_id=r["story_id"],
                name=r["name"],
                description=r["description"],
                quantity=r["quantity"],
                equipped=bool(r["equipped"]),
                location=r["location"],
                metadata=_loads(r["metadata"], {}),
            )
            for r in self._fetchall("SELECT * FROM items WHERE story_id = ? ORDER BY rowid", params)
        )
        beats = tuple(
            StoryBeat(
                id=r["id"],
                story_id=r["story_id"],
                title=r["title"],
                description=r["description"],
                type=r["type"],
                status=r["status"],
                triggered_at=r["triggered_at"],
                metadata=_loads(r["metadata"], {}),
            )
            for r in self._fetchall("SELECT * FROM story_beats WHERE story_id = ? ORDER BY rowid", params)
        )
        lorebook = tuple(
            LorebookEntry(
                id=r["id"],
                story_id=r["story_id"],
                name=r["name"],
                type=r["type"],
                description=r["description"],
                hidden_info=r["hidden_info"],
                aliases=_loads(r["aliases"], []),
                state=_loads(r["state"], {}),
                adventure_state=_loads(r["adventure_state"], {}),
                creative_state=_loads(r["creative_state"], {}),
                injection=LorebookInjection.from_dict(_loads(r["injection"])),
                first_mentioned=r["first_mentioned"],
                last_mentioned=r["last_mentioned"],
                mention_count=r["mention_count"],
                created_by=r["created_by"],
                created_at=r["created_at"],
                updated_at=r["updated_at"],
            )
            for r in self._fetchall("SELECT * FROM lorebook_entries WHERE story_id = ? ORDER BY rowid", params)
        )
        return WorldState(characters, locations, items, beats, lorebook)

    def save_world(self, story_id: str, world: WorldState) -> None:
        """Replace the story's world state in one transaction."""
        with self._transaction() as db:
            self._write_world(db, story_id, world)
        logger.debug(
            "Saved world for %s: %d characters, %d locations, %d items, %d beats, %d lore",
            story_id,
            len(world.characters),
            len(world.locations),
            len(world.items),
            len(world.story_beats),
            len(world.lorebook),
        )

    def _write_world(self, db: sqlite3.Connection, story_id: str, world: WorldState) -> None:
        for table in _WORLD_TABLES:
            db.execute(f"DELETE FROM {table} WHERE story_id = ?", (story_id,))
        db.executemany(
            """
            INSERT INTO characters (id, story_id, name, description, relationship, traits, status, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (c.id, story_id, c.name, c.description, c.relationship,
                 _dumps(c.traits), c.status, _dumps(c.metadata))
                for c in world.characters
            ],
        )
        db.executemany(
            """
            INSERT INTO locations (id, story_id, name, description, visited, current, connections, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (loc.id, story_id, loc.name, loc.description, int(loc.visited),
                 int(loc.current), _dumps(loc.connections), _dumps(loc.metadata))
                for loc in world.locations
            ],
        )
        db.executemany(
            """
            INSERT INTO items (id, story_id, name, description, quantity, equipped, location, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (i.id, story_id, i.name, i.description, i.quantity,
                 int(i.equipped), i.location, _dumps(i.metadata))
                for i in world.items
            ],
        )
        db.executemany(
            """
            INSERT INTO story_beats (id, story_id, title, description, type, status, triggered_at, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (b.id, story_id, b.title, b.description, b.type, b.status,
                 b.triggered_at, _dumps(b.metadata))
                for b in world.story_beats
            ],
        )
        db.executemany(
            """
            INSERT INTO lorebook_entries (id, story_id, name, type, description, hidden_info,
                aliases, state, adventure_state, creative_state, injection,
                first_mentioned, last_mentioned, mention_count, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (e.id, story_id, e.name, e.type, e.description, e.hidden_info,
                 _dumps(e.aliases), _dumps(e.state), _dumps(e.adventure_state),
                 _dumps(e.creative_state), _dumps(e.injection.to_dict()),
                 e.first_mentioned, e.last_mentioned, e.mention_count,
                 e.created_by, e.created_at, e.updated_at)
                for e in world.lorebook
            ],
        )

    # -------------------------------------------------------------------------
    # Chapters
    # -------------------------------------------------------------------------

    def save_chapter(self, chapter: Chapter) -> str:
        """Insert or update a chapter and re-index its summary embedding."""
        vector = self._embedding.embed(chapter_embedding_text(chapter))
        with self._transaction() as db:
            self._write_chapter(db, chapter, vector)
        return chapter.id

    def _write_chapter(self, db: sqlite3.Connection, chapter: Chapter, vector: list[float]) -> None:
        db.execute(
            """
            INSERT INTO chapters (id, story_id, number, title, start_entry_id, end_entry_id,
                entry_count, summary, keywords, characters, locations, plot_threads,
                emotional_tone, arc_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                summary = excluded.summary,
                keywords = excluded.keywords,
                characters = excluded.characters,
                locations = excluded.locations,
                plot_threads = excluded.plot_threads,
                emotional_tone = excluded.emotional_tone,
                arc_id = excluded.arc_id
            """,
            (
                chapter.id,
                chapter.story_id,
                chapter.number,
                chapter.title,
                chapter.start_entry_id,
                chapter.end_entry_id,
                chapter.entry_count,
                chapter.summary,
                _dumps(list(chapter.keywords)),
                _dumps(list(chapter.characters)),
                _dumps(list(chapter.locations)),
                _dumps(list(chapter.plot_threads)),
                chapter.emotional_tone,
                chapter.arc_id,
                chapter.created_at,
            ),
        )
        seq = db.execute("SELECT seq FROM chapters WHERE id = ?", (chapter.id,)).fetchone()["seq"]
        db.execute("DELETE FROM chapter_vec WHERE rowid = ?", (seq,))
        db.execute(
            "INSERT INTO chapter_vec (rowid, embedding) VALUES (?, ?)",
            (seq, serialize_vector(vector)),
        )

    def _delete_chapters(self, db: sqlite3.Connection, story_id: str) -> None:
        db.execute(
            "DELETE FROM chapter_vec WHERE rowid IN (SELECT seq FROM chapters WHERE story_id = ?)",
            (story_id,),
        )
        db.execute("DELETE FROM chapters WHERE story_id = ?", (story_id,))

    def get_chapters(self, story_id: str) -> list[Chapter]:
        rows = self._fetchall(
            "SELECT * FROM chapters WHERE story_id = ? ORDER BY number", (story_id,)
        )
        return [self._chapter_from_row(r) for r in rows]

    def _chapter_from_row(self, r: sqlite3.Row) -> Chapter:
        return Chapter(
            id=r["id"],
            story_id=r["story_id"],
            number=r["number"],
            title=r["title"],
            start_entry_id=r["start_entry_id"],
            end_entry_id=r["end_entry_id"],
            entry_count=r["entry_count"],
            summary=r["summary"],
            keywords=tuple(_loads(r["keywords"], [])),
            characters=tuple(_loads(r["characters"], [])),
            locations=tuple(_loads(r["locations"], [])),
            plot_threads=tuple(_loads(r["plot_threads"], [])),
            emotional_tone=r["emotional_tone"],
            arc_id=r["arc_id"],
            created_at=r["created_at"],
        )

    def similar_chapters(self, story_id: str, text: str, limit: int = 20) -> list[str]:
        """Chapter ids of one story, nearest to text first.

        Args:
            story_id: Story whose chapters are searched
            text: Query text, usually the player input plus recent entries
            limit: Maximum ids to return

        Returns:
            Chapter ids ordered by embedding distance
        """
        total = self._fetchone("SELECT COUNT(*) AS n FROM chapter_vec")["n"]
        if total == 0 or limit <= 0:
            return []
        query_embedding = self._embedding.embed(text)
        rows = self._fetchall(
            build_chapter_query_similarity(),
            {
                "query_vector": serialize_vector(query_embedding),
                # k is applied across all stories before the story filter
                "k": min(total, 4096),
                "story_id": story_id,
                "limit": limit,
            },
        )
        return [r["id"] for r in rows]

    # -------------------------------------------------------------------------
    # Settings and activation data
    # -------------------------------------------------------------------------

    def get_setting(self, story_id: str, key: str, default=None):
        row = self._fetchone(
            "SELECT value FROM settings WHERE story_id = ? AND key = ?", (story_id, key)
        )
        return default if row is None else _loads(row["value"], default)

    def set_setting(self, story_id: str, key: str, value) -> None:
        with self._transaction() as db:
            self._write_setting(db, story_id, key, value)

    def _write_setting(self, db: sqlite3.Connection, story_id: str, key: str, value) -> None:
        db.execute(
            """
            INSERT INTO settings (story_id, key, value) VALUES (?, ?, ?)
            ON CONFLICT(story_id, key) DO UPDATE SET value = excluded.value
            """,
            (story_id, key, _dumps(value)),
        )

    def load_activation(self, story_id: str) -> dict[str, int]:
        return dict(self.get_setting(story_id, ACTIVATION_KEY, {}) or {})

    def save_activation(self, story_id: str, data: dict[str, int]) -> None:
        self.set_setting(story_id, ACTIVATION_KEY, data)

    # -------------------------------------------------------------------------
    # Snapshots and checkpoints
    # -------------------------------------------------------------------------

    def load_snapshot(self, story_id: str) -> StorySnapshot:
        with self._lock:
            return StorySnapshot(
                entries=tuple(self.get_entries(story_id)),
                world=self.load_world(story_id),
                chapters=tuple(self.get_chapters(story_id)),
                activation=self.load_activation(story_id),
            )

    def restore_snapshot(self, story_id: str, snapshot: StorySnapshot) -> None:
        """Rewrite entries, world, chapters and activation data atomically."""
        vectors = [self._embedding.embed(chapter_embedding_text(c)) for c in snapshot.chapters]
        with self._transaction() as db:
            db.execute("DELETE FROM story_entries WHERE story_id = ?", (story_id,))
            for entry in snapshot.entries:
                self._insert_entry(db, entry)
            self._write_world(db, story_id, snapshot.world)
            self._delete_chapters(db, story_id)
            for chapter, vector in zip(snapshot.chapters, vectors):
                self._write_chapter(db, chapter, vector)
            self._write_setting(db, story_id, ACTIVATION_KEY, dict(snapshot.activation))
        logger.info("Restored story %s to %d entries", story_id, len(snapshot.entries))

    def save_checkpoint(self, checkpoint: Checkpoint) -> str:
        with self._transaction() as db:
            db.execute(
                """
                INSERT INTO checkpoints (id, story_id, name, last_entry_id, last_entry_preview,
                    entry_count, snapshot, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint.id,
                    checkpoint.story_id,
                    checkpoint.name,
                    checkpoint.last_entry_id,
                    checkpoint.last_entry_preview,
                    checkpoint.entry_count,
                    json.dumps(snapshot_to_dict(checkpoint.snapshot)),
                    checkpoint.created_at,
                ),
            )
        return checkpoint.id

    def list_checkpoints(self, story_id: str) -> list[Checkpoint]:
        rows = self._fetchall(
            "SELECT * FROM checkpoints WHERE story_id = ? ORDER BY created_at, rowid", (story_id,)
        )
        return [self._checkpoint_from_row(r) for r in rows]

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        row = self._fetchone("SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,))
        if row is None:
            raise ValueError(f"Checkpoint not found: {checkpoint_id}")
        return self._checkpoint_from_row(row)

    def delete_checkpoint(self, checkpoint_id: str) -> None:
        with self._transaction() as db:
            db.execute("DELETE FROM checkpoints WHERE id = ?", (checkpoint_id,))

    def _checkpoint_from_row(self, r: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            id=r["id"],
            story_id=r["story_id"],
            name=r["name"],
            last_entry_id=r["last_entry_id"],
            last_entry_preview=r["last_entry_preview"],
            entry_count=r["entry_count"],
            snapshot=snapshot_from_dict(json.loads(r["snapshot"])),
            created_at=r["created_at"],
        )
