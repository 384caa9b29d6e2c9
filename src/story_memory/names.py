"""Name normalization and text matching for world entities."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from functools import lru_cache
from typing import TypeVar

E = TypeVar("E")

# Words that may follow a short name inside a longer epithet,
# e.g. "Elena the blacksmith's daughter"
_EPITHET_WORDS = {"the", "of", "from", "a", "an", "who", "called"}
_LEADING_ARTICLE = re.compile(r"^(?:the|a|an)\s+")
_WHITESPACE = re.compile(r"\s+")
_TOKEN = re.compile(r"[^\W\d_]+(?:['’][^\W\d_]+)*")

STOPWORDS = frozenset(
    {
        "the", "and", "with", "from", "that", "this", "your", "their", "into",
        "lord", "lady", "king", "queen", "house", "city", "tower", "great",
        "north", "south", "east", "west", "old", "new",
    }
)


def normalize_name(name: str | None) -> str:
    """Lowercase, unify apostrophes, collapse whitespace, drop a leading article."""
    if not name:
        return ""
    text = name.replace("’", "'").strip().lower()
    text = _WHITESPACE.sub(" ", text).strip(" .;:!?\"'")
    return _LEADING_ARTICLE.sub("", text)


def names_match(a: str | None, b: str | None) -> bool:
    """True when two names refer to the same entity.

    Equal after normalization, or the shorter name opens the longer one and is
    followed by a comma or an epithet word ("Elena" / "Elena, the blacksmith's
    daughter"). "John Smith" and "John Doe" do not match.
    """
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return False
    if na == nb:
        return True
    short, long = (na, nb) if len(na) <= len(nb) else (nb, na)
    if long.startswith(short + ","):
        return True
    if long.startswith(short + " "):
        rest = long[len(short) + 1 :].split()
        return bool(rest) and rest[0] in _EPITHET_WORDS
    return False


def find_index_by_name(entities: Sequence[E], name: str | None, attr: str = "name") -> int | None:
    """Index of the entity whose name matches; exact matches win over epithet matches."""
    target = normalize_name(name)
    if not target:
        return None
    for i, entity in enumerate(entities):
        if normalize_name(getattr(entity, attr)) == target:
            return i
    for i, entity in enumerate(entities):
        if names_match(getattr(entity, attr), name):
            return i
    return None


def find_by_name(entities: Sequence[E], name: str | None, attr: str = "name") -> E | None:
    idx = find_index_by_name(entities, name, attr)
    return None if idx is None else entities[idx]


@lru_cache(maxsize=2048)
def term_pattern(term: str) -> re.Pattern:
    """Case-insensitive whole-word pattern for a name, alias or keyword."""
    escaped = r"\s+".join(re.escape(part) for part in term.split())
    return re.compile(rf"(?<!\w){escaped}(?!\w)", re.IGNORECASE)


def mentions(text: str, term: str) -> bool:
    if not text or not term or not term.strip():
        return False
    return term_pattern(term).search(text) is not None


def name_tokens(name: str, min_length: int = 4) -> list[str]:
    """Distinctive single-word tokens of a multi-word name."""
    tokens = _TOKEN.findall(name or "")
    if len(tokens) < 2:
        return []
    return [
        t for t in tokens
        if len(t) >= min_length and t.lower() not in STOPWORDS
    ]


def match_reason(text: str, terms: Iterable[str], tokens: Iterable[str] = ()) -> str | None:
    """Which term matched text: the full term first, then a name token."""
    for term in terms:
        if mentions(text, term):
            return term
    for token in tokens:
        if mentions(text, token):
            return token
    return None
