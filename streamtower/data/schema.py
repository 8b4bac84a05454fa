"""
Record types shared by the streaming, feature, and inference layers.

Ratings arrive on the external 1-5 scale; the model works on 0-10, so the
conversion lives on the record itself rather than being repeated by callers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Sequence

RATING_SCALE = 2.0
NO_GENRES_LABEL = "(no genres listed)"

_YEAR_PATTERN = re.compile(r"\((\d{4})\)")
_GENRE_SPLIT = re.compile(r"[|,]")
MIN_RELEASE_YEAR = 1870
MAX_RELEASE_YEAR = 2100


@dataclass(frozen=True)
class RatingExample:
    """One labeled (user, item) rating as read from the backing store."""

    user_id: int
    item_id: int
    rating: float
    genres: tuple[str, ...] = ()
    release_year: int | None = None

    @property
    def target(self) -> float:
        """Rating on the model's 0-10 scale."""
        return float(self.rating) * RATING_SCALE


@dataclass(frozen=True)
class RatedItem:
    """Entry of a user's rating history."""

    item_id: int
    rating: float
    genres: tuple[str, ...] = ()


@dataclass(frozen=True)
class ItemMetadata:
    item_id: int
    title: str = ""
    genres: tuple[str, ...] = ()
    release_year: int | None = None


@dataclass(frozen=True)
class RatingPage:
    """A page of examples plus the ordering key of its last row."""

    examples: list[RatingExample] = field(default_factory=list)
    last_key: list[int] | None = None

    def __len__(self) -> int:
        return len(self.examples)


def parse_genres(raw_value: str | Sequence[str] | None) -> tuple[str, ...]:
    """
    Split a pipe/comma delimited genre string into labels.

    Blank entries and the MovieLens "(no genres listed)" marker are dropped.
    """
    if isinstance(raw_value, str):
        parts = _GENRE_SPLIT.split(raw_value)
    elif isinstance(raw_value, (list, tuple)):
        parts = [str(part) for part in raw_value]
    else:  # None, NaN, pd.NA
        return ()
    labels = []
    for part in parts:
        label = part.strip()
        if label and label != NO_GENRES_LABEL:
            labels.append(label)
    return tuple(labels)


def parse_release_year(title: str | None) -> int | None:
    """
    Extract the release year embedded as ``(YYYY)`` in a title.

    When several parenthesised years appear the last one wins, since alternate
    titles precede the year in MovieLens naming.
    """
    if not isinstance(title, str) or not title:
        return None
    matches = _YEAR_PATTERN.findall(title)
    if not matches:
        return None
    year = int(matches[-1])
    if year < MIN_RELEASE_YEAR or year > MAX_RELEASE_YEAR:
        return None
    return year
