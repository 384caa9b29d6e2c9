"""Tests for embedding backends."""

import json

import pytest

from story_memory.config import StoreConfig
from story_memory.embedding import (
    HashEmbedding,
    chapter_embedding_text,
    make_embedding_backend,
    serialize_vector,
)
from story_memory.models import Chapter


def test_hash_embedding_is_deterministic():
    backend = HashEmbedding(dimensions=16)
    first = backend.embed("The tavern at dusk")

    assert len(first) == 16
    assert first == backend.embed("The tavern at dusk")
    assert first != backend.embed("The forge at dawn")
    assert backend.embed_batch(["a", "b"]) == [backend.embed("a"), backend.embed("b")]


def test_make_embedding_backend():
    backend = make_embedding_backend(StoreConfig(db_path=":memory:", embedding_backend="hash", vector_dimensions=8))
    assert backend.dimensions == 8

    with pytest.raises(ValueError):
        make_embedding_backend(StoreConfig(db_path=":memory:", embedding_backend="carrier-pigeon"))


def test_serialize_vector():
    assert json.loads(serialize_vector([0.5, -1.0])) == [0.5, -1.0]


def test_chapter_embedding_text():
    chapter = Chapter(
        id="c1",
        story_id="s",
        number=1,
        start_entry_id="e0",
        end_entry_id="e9",
        entry_count=10,
        summary="Elena gives you the amulet.",
        title="The Tavern",
        characters=("Elena",),
    )
    text = chapter_embedding_text(chapter)

    assert text.startswith("The Tavern\nElena gives you the amulet.")
    assert "Characters: Elena" in text
    assert "Keywords" not in text
