"""
Feature engineering utilities for user/item towers.

Every vector has the same fixed width and a documented slot layout: genre
slots first (one per canonical genre), then a handful of aggregate slots that
differ between users and items. Slots are normalised to [0, 1] and slots a
record has no data for stay at zero.
"""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Iterable, Sequence

import numpy as np

from .indexers import EntityKind
from .schema import ItemMetadata, RatedItem
from .sources import RatingSource, transient_retrying

FEATURE_DIM = 32
MAX_RATING = 5.0
HIGH_RATING_THRESHOLD = 4.0
LOW_RATING_THRESHOLD = 2.0
ACTIVITY_SATURATION = 100.0
GENRE_COUNT_SATURATION = 5.0
RECENCY_BASE_YEAR = 1950

CANONICAL_GENRES: tuple[str, ...] = (
    "Action",
    "Adventure",
    "Animation",
    "Comedy",
    "Crime",
    "Documentary",
    "Drama",
    "Family",
    "Fantasy",
    "History",
    "Horror",
    "Music",
    "Mystery",
    "Romance",
    "Science Fiction",
    "TV Movie",
    "Thriller",
    "War",
    "Western",
)
NUM_GENRES = len(CANONICAL_GENRES)
GENRE_SLOTS = {genre: idx for idx, genre in enumerate(CANONICAL_GENRES)}

# Source labels that differ from the canonical taxonomy.
GENRE_ALIASES: dict[str, tuple[str, ...]] = {
    "Children": ("Family",),
    "Children's": ("Family",),
    "Film-Noir": ("Crime", "Mystery"),
    "Musical": ("Music",),
    "Sci-Fi": ("Science Fiction",),
}

DECADES: tuple[int, ...] = (1970, 1980, 1990, 2000, 2010, 2020)


class UserSlot(IntEnum):
    MEAN_RATING = NUM_GENRES
    RATING_VARIANCE = NUM_GENRES + 1
    INTERACTION_COUNT = NUM_GENRES + 2
    HIGH_RATING_FRACTION = NUM_GENRES + 3
    LOW_RATING_FRACTION = NUM_GENRES + 4


class ItemSlot(IntEnum):
    GENRE_COUNT = NUM_GENRES
    DECADE_1970S = NUM_GENRES + 1
    DECADE_1980S = NUM_GENRES + 2
    DECADE_1990S = NUM_GENRES + 3
    DECADE_2000S = NUM_GENRES + 4
    DECADE_2010S = NUM_GENRES + 5
    DECADE_2020S = NUM_GENRES + 6
    RECENCY = NUM_GENRES + 7


DECADE_SLOTS = dict(
    zip(
        DECADES,
        (
            ItemSlot.DECADE_1970S,
            ItemSlot.DECADE_1980S,
            ItemSlot.DECADE_1990S,
            ItemSlot.DECADE_2000S,
            ItemSlot.DECADE_2010S,
            ItemSlot.DECADE_2020S,
        ),
    )
)


def feature_names(kind: EntityKind | str) -> list[str]:
    """Return slot names in vector order; unused slots are named ``unused:<idx>``."""
    kind = EntityKind(kind)
    names = [f"genre:{genre}" for genre in CANONICAL_GENRES]
    slots = UserSlot if kind is EntityKind.USER else ItemSlot
    names.extend(slot.name.lower() for slot in slots)
    names.extend(f"unused:{idx}" for idx in range(len(names), FEATURE_DIM))
    return names


def canonical_genres(labels: Iterable[str]) -> set[str]:
    """Map raw genre labels onto the canonical taxonomy, dropping unknown ones."""
    genres: set[str] = set()
    for label in labels:
        if label in GENRE_SLOTS:
            genres.add(label)
        else:
            genres.update(GENRE_ALIASES.get(label, ()))
    return genres


def compute_user_features(history: Sequence[RatedItem]) -> np.ndarray:
    """
    Build a user vector from the user's rating history (ratings on 1-5).

    Genre slots hold the mean normalised rating over rated items carrying the
    genre; trailing slots hold rating statistics.
    """
    features = np.zeros(FEATURE_DIM, dtype=np.float32)
    if not history:
        return features

    genre_sum = np.zeros(NUM_GENRES, dtype=np.float64)
    genre_count = np.zeros(NUM_GENRES, dtype=np.float64)
    for entry in history:
        for genre in canonical_genres(entry.genres):
            slot = GENRE_SLOTS[genre]
            genre_sum[slot] += float(entry.rating)
            genre_count[slot] += 1.0
    rated = genre_count > 0
    features[:NUM_GENRES][rated] = genre_sum[rated] / genre_count[rated] / MAX_RATING

    ratings = np.asarray([float(entry.rating) for entry in history], dtype=np.float64)
    features[UserSlot.MEAN_RATING] = ratings.mean() / MAX_RATING
    features[UserSlot.RATING_VARIANCE] = min(ratings.var() / MAX_RATING, 1.0)
    features[UserSlot.INTERACTION_COUNT] = min(len(ratings) / ACTIVITY_SATURATION, 1.0)
    features[UserSlot.HIGH_RATING_FRACTION] = float(np.mean(ratings >= HIGH_RATING_THRESHOLD))
    features[UserSlot.LOW_RATING_FRACTION] = float(np.mean(ratings <= LOW_RATING_THRESHOLD))
    return features


def compute_item_features(
    metadata: ItemMetadata | None,
    *,
    current_year: int | None = None,
) -> np.ndarray:
    """
    Build an item vector from its genres and release year.

    A missing or unparseable year leaves the decade and recency slots at zero
    while genre slots are still filled.
    """
    features = np.zeros(FEATURE_DIM, dtype=np.float32)
    if metadata is None:
        return features

    genres = canonical_genres(metadata.genres)
    for genre in genres:
        features[GENRE_SLOTS[genre]] = 1.0
    features[ItemSlot.GENRE_COUNT] = min(len(genres) / GENRE_COUNT_SATURATION, 1.0)

    year = metadata.release_year
    if year is not None:
        decade_slot = DECADE_SLOTS.get((year // 10) * 10)
        if decade_slot is not None:
            features[decade_slot] = 1.0
        current_year = current_year or datetime.now().year
        span = max(current_year - RECENCY_BASE_YEAR, 1)
        features[ItemSlot.RECENCY] = min(max((year - RECENCY_BASE_YEAR) / span, 0.0), 1.0)
    return features


class FeatureExtractor:
    """
    Computes feature vectors against the current state of a rating source.

    Nothing is cached between calls, so vectors always reflect the latest
    data. Source reads go through the same transient-failure retry policy as
    the batch stream.
    """

    def __init__(
        self,
        source: RatingSource,
        *,
        current_year: int | None = None,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        self.source = source
        self.current_year = current_year
        self._retrying = transient_retrying(retry_attempts, retry_backoff, operation="feature read")

    def user_histories(self, user_ids: Iterable[int]) -> dict[int, list[RatedItem]]:
        return self._retrying(self.source.user_histories, set(user_ids))

    def item_metadata(self, item_ids: Iterable[int]) -> dict[int, ItemMetadata]:
        return self._retrying(self.source.item_metadata, set(item_ids))

    def user_features(self, user_id: int) -> np.ndarray:
        return self.user_feature_matrix([user_id])[0]

    def item_features(self, item_id: int) -> np.ndarray:
        return self.item_feature_matrix([item_id])[0]

    def user_feature_matrix(self, user_ids: Sequence[int]) -> np.ndarray:
        """Float32 matrix with one row per requested user, in request order."""
        histories = self.user_histories(user_ids)
        matrix = np.zeros((len(user_ids), FEATURE_DIM), dtype=np.float32)
        for row, user_id in enumerate(user_ids):
            matrix[row] = compute_user_features(histories.get(user_id, []))
        return matrix

    def item_feature_matrix(self, item_ids: Sequence[int]) -> np.ndarray:
        """Float32 matrix with one row per requested item, in request order."""
        return self.item_matrix_from_metadata(item_ids, self.item_metadata(item_ids))

    def item_matrix_from_metadata(
        self,
        item_ids: Sequence[int],
        metadata: dict[int, ItemMetadata],
    ) -> np.ndarray:
        matrix = np.zeros((len(item_ids), FEATURE_DIM), dtype=np.float32)
        for row, item_id in enumerate(item_ids):
            matrix[row] = compute_item_features(
                metadata.get(item_id), current_year=self.current_year
            )
        return matrix
