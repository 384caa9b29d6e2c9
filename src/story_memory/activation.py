"""Activation tracking for context stickiness."""

from __future__ import annotations

DEFAULT_STICKINESS_WINDOW = 10


class ActivationTracker:
    """In-memory map of entity id -> story position of its last activation.

    An entity stays "sticky" for ``window`` positions after its last
    activation. Persisting the map is the caller's job.
    """

    def __init__(self, current_position: int = 0, data: dict[str, int] | None = None):
        self.current_position = current_position
        self._data: dict[str, int] = {}
        if data:
            self.load_activation_data(data)

    def load_activation_data(self, data: dict[str, int]) -> None:
        """Replace the map; non-integer positions are dropped."""
        self._data = {
            str(k): int(v)
            for k, v in data.items()
            if isinstance(v, (int, float)) and not isinstance(v, bool)
        }

    def get_activation_data(self) -> dict[str, int]:
        return dict(self._data)

    def advance(self, position: int) -> None:
        """Move the tracker to a new story position."""
        if position < self.current_position:
            raise ValueError(
                f"Story position cannot move backwards: {position} < {self.current_position}"
            )
        self.current_position = position

    def record_activation(self, entity_id: str, position: int | None = None) -> None:
        position = self.current_position if position is None else position
        previous = self._data.get(entity_id)
        if previous is None or position > previous:
            self._data[entity_id] = position

    def last_activated(self, entity_id: str) -> int | None:
        return self._data.get(entity_id)

    def age(self, entity_id: str) -> int | None:
        last = self._data.get(entity_id)
        return None if last is None else self.current_position - last

    def is_sticky(self, entity_id: str, window: int = DEFAULT_STICKINESS_WINDOW) -> bool:
        """True while the entity is at most ``window`` positions past its last activation."""
        age = self.age(entity_id)
        return age is not None and 0 <= age <= window

    def _stale(self, max_age: int) -> list[str]:
        return [k for k, v in self._data.items() if self.current_position - v > max_age]

    def prune_old_activations(self, max_age: int = DEFAULT_STICKINESS_WINDOW) -> list[str]:
        """Drop entries older than max_age; returns the evicted ids."""
        evicted = self._stale(max_age)
        for entity_id in evicted:
            del self._data[entity_id]
        return evicted

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._data
