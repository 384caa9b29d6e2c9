"""Pytest fixtures for Story Memory tests."""

import json
from collections.abc import Iterator

import pytest

from story_memory import MemoryConfig, Story, StoryEntry, StoryStore, StoreConfig
from story_memory.errors import ModelError
from story_memory.llm import GenerationRequest, GenerationResponse, StreamChunk


class ScriptedModel:
    """Fake LanguageModel that replays queued responses.

    Queue plain strings, dicts (sent as JSON) or exceptions. Every request is
    recorded in ``requests``. An empty queue answers with ``default``.
    """

    def __init__(self, *responses, default: str = "{}"):
        self.responses = list(responses)
        self.default = default
        self.requests: list[GenerationRequest] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def _next(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        return GenerationResponse(content=self._next(request), model=request.model)

    def stream(self, request: GenerationRequest) -> Iterator[StreamChunk]:
        content = self._next(request)
        for word in content.split(" "):
            yield StreamChunk(content=word + " ")
        yield StreamChunk(content="", done=True)

    def prompts(self) -> list[str]:
        return [r.messages[-1].content for r in self.requests]


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def network_error():
    return ModelError("connection reset", error_class="ConnectionError")


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    config = StoreConfig(db_path=":memory:", embedding_backend="hash", vector_dimensions=32)
    store = StoryStore(config)
    yield store
    store.close()


@pytest.fixture
def story(store):
    """A stored adventure story with small chapter settings."""
    story = Story(
        id="story-1",
        title="The Amulet",
        mode="adventure",
        genre="fantasy",
        memory_config=MemoryConfig(chapter_threshold=4, chapter_buffer=2),
    )
    store.create_story(story)
    return story


def make_entries(count: int, story_id: str = "story-1", start: int = 0) -> list[StoryEntry]:
    """Alternating user_action / narration entries."""
    return [
        StoryEntry(
            id=f"e{i}",
            story_id=story_id,
            type="user_action" if i % 2 == 0 else "narration",
            content=f"entry {i}",
            position=i,
        )
        for i in range(start, start + count)
    ]


@pytest.fixture
def entries_factory():
    return make_entries
