"""Embedding backends for chapter similarity search."""

from __future__ import annotations

import hashlib
import json
import random
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from story_memory.config import StoreConfig
    from story_memory.models import Chapter


class EmbeddingBackend(Protocol):
    """Protocol for embedding backends."""

    def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts."""
        ...

    @property
    def dimensions(self) -> int:
        """Return the dimensionality of embeddings."""
        ...


class LocalEmbedding:
    """Local embedding using sentence-transformers."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        from sentence_transformers import SentenceTransformer

        self.model = SentenceTransformer(model_name)
        self._dimensions = self.model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        return self.model.encode(text).tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self.model.encode(texts).tolist()

    @property
    def dimensions(self) -> int:
        return self._dimensions


class OpenAIEmbedding:
    """OpenAI-compatible embeddings API backend."""

    _MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(self, model: str = "text-embedding-3-small", api_key: str | None = None):
        from openai import OpenAI

        self.model = model
        self.client = OpenAI(api_key=api_key) if api_key else OpenAI()
        self._dimensions = self._MODEL_DIMENSIONS.get(model, 1536)

    def embed(self, text: str) -> list[float]:
        response = self.client.embeddings.create(input=text, model=self.model)
        return response.data[0].embedding

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = self.client.embeddings.create(input=texts, model=self.model)
        return [d.embedding for d in response.data]

    @property
    def dimensions(self) -> int:
        return self._dimensions


class HashEmbedding:
    """Deterministic embedding with no model behind it.

    Vectors carry no meaning; use it for tests and for installs without
    sentence-transformers.
    """

    def __init__(self, dimensions: int = 384):
        self._dimensions = dimensions

    def _rng_for_text(self, text: str) -> random.Random:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return random.Random(int.from_bytes(digest[:8], "big", signed=False))

    def embed(self, text: str) -> list[float]:
        rng = self._rng_for_text(text)
        return [rng.uniform(-1.0, 1.0) for _ in range(self._dimensions)]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]

    @property
    def dimensions(self) -> int:
        return self._dimensions


def make_embedding_backend(config: StoreConfig) -> EmbeddingBackend:
    """Build the backend named by config.embedding_backend."""
    if config.embedding_backend == "openai":
        return OpenAIEmbedding(model=config.openai_model)
    if config.embedding_backend == "hash":
        return HashEmbedding(dimensions=config.vector_dimensions)
    if config.embedding_backend == "local":
        return LocalEmbedding(model_name=config.embedding_model)
    raise ValueError(f"Unknown embedding backend: {config.embedding_backend}")


def serialize_vector(vec: list[float]) -> str:
    """Serialize a vector to JSON for sqlite-vec."""
    return json.dumps(vec)


def chapter_embedding_text(chapter: Chapter) -> str:
    """Text indexed for a chapter: title, summary and retrieval metadata."""
    parts = [chapter.title or "", chapter.summary]
    for label, values in (
        ("Keywords", chapter.keywords),
        ("Characters", chapter.characters),
        ("Locations", chapter.locations),
        ("Threads", chapter.plot_threads),
    ):
        if values:
            parts.append(f"{label}: {', '.join(values)}")
    return "\n".join(p for p in parts if p)
