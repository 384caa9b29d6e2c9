"""Exception types for Story Memory."""

from __future__ import annotations


class StoryMemoryError(Exception):
    """Base class for errors raised by this package."""


class ModelError(StoryMemoryError):
    """Raised when the language-model transport fails."""

    def __init__(self, message: str, *, error_class: str = "unknown") -> None:
        super().__init__(message)
        self.error_class = error_class


class GenerationError(StoryMemoryError):
    """The narration call for a turn failed; the turn can be retried.

    The session has already restored its pre-turn snapshot when this is
    raised, so retrying with ``user_input`` is equivalent to a first attempt.
    """

    def __init__(self, message: str, *, user_input: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.user_input = user_input
        self.retryable = retryable
