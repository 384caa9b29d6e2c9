"""Language-model transport abstraction for Story Memory."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Protocol

from story_memory.errors import ModelError

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


@dataclass(frozen=True)
class Message:
    """A role-tagged chat message."""

    role: str  # 'system' | 'user' | 'assistant'
    content: str


@dataclass
class GenerationRequest:
    """Everything a model needs for one completion."""

    messages: list[Message]
    model: str
    temperature: float = 0.7
    max_tokens: int = 1024


@dataclass
class GenerationResponse:
    content: str
    model: str | None = None
    usage: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StreamChunk:
    content: str
    done: bool = False


class LanguageModel(Protocol):
    """Protocol for language-model backends."""

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Return a complete response."""
        ...

    def stream(self, request: GenerationRequest) -> Iterator[StreamChunk]:
        """Yield the response chunk by chunk; the last chunk has done=True."""
        ...


class OpenAIChatModel:
    """Chat-completions backend for OpenAI-compatible APIs.

    Pass ``base_url=OPENROUTER_BASE_URL`` to route through OpenRouter.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        from openai import OpenAI

        resolved_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not resolved_key:
            raise ValueError("An API key is required. Pass api_key= or set OPENAI_API_KEY.")
        self.base_url = base_url
        self.client = OpenAI(api_key=resolved_key, base_url=base_url, timeout=timeout)

    def _kwargs(self, request: GenerationRequest) -> dict:
        return {
            "model": request.model,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        try:
            response = self.client.chat.completions.create(**self._kwargs(request))
        except Exception as e:
            logger.debug("Chat completion failed: %s", e, exc_info=True)
            raise ModelError(f"Model request failed: {e}", error_class=type(e).__name__) from e

        if not response.choices:
            raise ModelError("Model returned no choices", error_class="empty_response")
        usage = {}
        if response.usage:
            usage = {
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            }
        return GenerationResponse(
            content=response.choices[0].message.content or "",
            model=response.model,
            usage=usage,
        )

    def stream(self, request: GenerationRequest) -> Iterator[StreamChunk]:
        try:
            stream = self.client.chat.completions.create(stream=True, **self._kwargs(request))
            for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                content = choice.delta.content or ""
                if choice.finish_reason:
                    yield StreamChunk(content=content, done=True)
                    return
                if content:
                    yield StreamChunk(content=content)
        except Exception as e:
            logger.debug("Chat stream failed: %s", e, exc_info=True)
            raise ModelError(f"Model stream failed: {e}", error_class=type(e).__name__) from e
        yield StreamChunk(content="", done=True)


def model_from_env() -> OpenAIChatModel | None:
    """Build a model from environment credentials, or None when none are set.

    Detection order: STORY_MEMORY_API_KEY (with optional STORY_MEMORY_BASE_URL),
    OPENROUTER_API_KEY, OPENAI_API_KEY.
    """
    key = os.environ.get("STORY_MEMORY_API_KEY")
    if key:
        base_url = os.environ.get("STORY_MEMORY_BASE_URL") or None
        logger.info("Configured model backend from STORY_MEMORY_API_KEY")
        return OpenAIChatModel(api_key=key, base_url=base_url)

    key = os.environ.get("OPENROUTER_API_KEY")
    if key:
        logger.info("Configured OpenRouter model backend")
        return OpenAIChatModel(api_key=key, base_url=OPENROUTER_BASE_URL)

    key = os.environ.get("OPENAI_API_KEY")
    if key:
        logger.info("Configured OpenAI model backend")
        return OpenAIChatModel(api_key=key)

    logger.info("No model credentials found; LLM-assisted memory features disabled")
    return None


def complete(model: LanguageModel, settings, prompt: str) -> str:
    """Run one non-streaming service call: system prompt from settings, then prompt."""
    request = GenerationRequest(
        messages=[
            Message(role="system", content=settings.system_prompt),
            Message(role="user", content=prompt),
        ],
        model=settings.model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )
    return model.generate(request).content
