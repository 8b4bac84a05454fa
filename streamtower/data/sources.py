"""
Backing-store access for the rating stream.

Sources are injected into the streamer, feature extractor, and inference
engine so tests and smoke runs can swap in a bounded in-memory source without
touching the training code. Pages are read in a stable order keyed by
``(user_id, movie_id)`` (or row position for in-memory frames), which is what
makes a stream re-openable from a recorded position.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd
from loguru import logger
from sqlalchemy import bindparam, create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .schema import (
    ItemMetadata,
    RatedItem,
    RatingExample,
    RatingPage,
    parse_genres,
    parse_release_year,
)

DEFAULT_RATINGS_TABLE = "movielens_ratings"
DEFAULT_MOVIES_TABLE = "movielens_movies"
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StoreConfigurationError(RuntimeError):
    """The backing store cannot be used at all; training must not start."""


class TransientStoreError(RuntimeError):
    """A read failed in a way that may succeed when retried."""


def transient_retrying(attempts: int = 3, backoff: float = 1.0, *, operation: str = "read") -> Retrying:
    """
    Retry policy for backing-store reads.

    Only ``TransientStoreError`` is retried, with exponential backoff; the
    last failure is re-raised once ``attempts`` are spent.
    """

    def log_retry(retry_state) -> None:
        logger.warning(
            "Transient failure during {} (attempt {}): {}",
            operation,
            retry_state.attempt_number,
            retry_state.outcome.exception(),
        )

    return Retrying(
        retry=retry_if_exception_type(TransientStoreError),
        stop=stop_after_attempt(max(int(attempts), 1)),
        wait=wait_exponential(multiplier=backoff, max=30),
        before_sleep=log_retry,
        reraise=True,
    )


class RatingSource(ABC):
    """Read-only view over ratings and item metadata."""

    @abstractmethod
    def read_page(
        self,
        *,
        after: Sequence[int] | None,
        offset: int,
        limit: int,
    ) -> RatingPage:
        """
        Return up to ``limit`` examples in stable order.

        When ``after`` is given, rows strictly after that ordering key are
        returned and ``offset`` is ignored; otherwise the first ``offset`` rows
        are skipped.
        """

    @abstractmethod
    def user_histories(self, user_ids: Iterable[int]) -> dict[int, list[RatedItem]]:
        """Return every rating of the requested users, keyed by user ID."""

    @abstractmethod
    def item_metadata(self, item_ids: Iterable[int]) -> dict[int, ItemMetadata]:
        """Return metadata for the requested items that have any."""

    @abstractmethod
    def entity_counts(self) -> tuple[int, int]:
        """Return the number of distinct (users, items) in the ratings relation."""

    def close(self) -> None:  # pragma: no cover - nothing to release by default
        return None


def _examples_from_frame(frame: pd.DataFrame) -> list[RatingExample]:
    examples: list[RatingExample] = []
    for row in frame.itertuples(index=False):
        examples.append(
            RatingExample(
                user_id=int(row.user_id),
                item_id=int(row.movie_id),
                rating=float(row.rating),
                genres=parse_genres(row.genres),
                release_year=parse_release_year(row.title),
            )
        )
    return examples


def _histories_from_frame(frame: pd.DataFrame) -> dict[int, list[RatedItem]]:
    histories: dict[int, list[RatedItem]] = defaultdict(list)
    for row in frame.itertuples(index=False):
        histories[int(row.user_id)].append(
            RatedItem(
                item_id=int(row.movie_id),
                rating=float(row.rating),
                genres=parse_genres(row.genres),
            )
        )
    return dict(histories)


def _metadata_from_frame(frame: pd.DataFrame) -> dict[int, ItemMetadata]:
    metadata: dict[int, ItemMetadata] = {}
    for row in frame.itertuples(index=False):
        title = row.title if isinstance(row.title, str) else ""
        metadata[int(row.movie_id)] = ItemMetadata(
            item_id=int(row.movie_id),
            title=title,
            genres=parse_genres(row.genres),
            release_year=parse_release_year(title),
        )
    return metadata


class InMemoryRatingSource(RatingSource):
    """
    Rating source backed by pandas frames.

    The ordering key is the row position, so pages follow the input order.

    Parameters
    ----------
    ratings:
        Frame with ``user_id``, ``movie_id`` and ``rating`` (1-5) columns.
    movies:
        Optional frame with ``movie_id``, ``title`` and ``genres`` columns.
    """

    def __init__(self, ratings: pd.DataFrame, movies: pd.DataFrame | None = None) -> None:
        missing = {"user_id", "movie_id", "rating"} - set(ratings.columns)
        if missing:
            raise ValueError(f"Ratings frame is missing columns: {sorted(missing)}")

        ratings = ratings[["user_id", "movie_id", "rating"]].reset_index(drop=True)
        if movies is None:
            self._movies = pd.DataFrame(
                {
                    "movie_id": pd.Series(dtype="int64"),
                    "title": pd.Series(dtype="object"),
                    "genres": pd.Series(dtype="object"),
                }
            )
            self._ratings = ratings.assign(title=None, genres=None)
        else:
            self._movies = movies[["movie_id", "title", "genres"]].drop_duplicates("movie_id")
            self._ratings = ratings.merge(self._movies, on="movie_id", how="left", sort=False)

    @classmethod
    def from_records(
        cls,
        ratings: Iterable[tuple[int, int, float]],
        movies: Iterable[tuple[int, str, str]] | None = None,
    ) -> "InMemoryRatingSource":
        ratings_frame = pd.DataFrame(list(ratings), columns=["user_id", "movie_id", "rating"])
        movies_frame = None
        if movies is not None:
            movies_frame = pd.DataFrame(list(movies), columns=["movie_id", "title", "genres"])
        return cls(ratings_frame, movies_frame)

    def __len__(self) -> int:
        return len(self._ratings)

    def read_page(
        self,
        *,
        after: Sequence[int] | None,
        offset: int,
        limit: int,
    ) -> RatingPage:
        start = int(after[0]) + 1 if after else int(offset)
        rows = self._ratings.iloc[start : start + limit]
        if rows.empty:
            return RatingPage(examples=[], last_key=list(after) if after else None)
        return RatingPage(
            examples=_examples_from_frame(rows),
            last_key=[start + len(rows) - 1],
        )

    def user_histories(self, user_ids: Iterable[int]) -> dict[int, list[RatedItem]]:
        subset = self._ratings[self._ratings["user_id"].isin(list(user_ids))]
        return _histories_from_frame(subset)

    def item_metadata(self, item_ids: Iterable[int]) -> dict[int, ItemMetadata]:
        subset = self._movies[self._movies["movie_id"].isin(list(item_ids))]
        return _metadata_from_frame(subset)

    def entity_counts(self) -> tuple[int, int]:
        return (
            int(self._ratings["user_id"].nunique()),
            int(self._ratings["movie_id"].nunique()),
        )


def validate_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise StoreConfigurationError(f"Invalid table name: {name!r}")
    return name


class SqlRatingSource(RatingSource):
    """
    Rating source over a relational store reached through SQLAlchemy.

    Pages use keyset pagination on ``(user_id, movie_id)`` so each read costs
    the same regardless of how deep into the table the stream is. A missing
    movies table degrades to "no metadata" instead of failing.
    """

    def __init__(
        self,
        url_or_engine: str | Engine,
        *,
        ratings_table: str = DEFAULT_RATINGS_TABLE,
        movies_table: str = DEFAULT_MOVIES_TABLE,
        history_chunk_size: int = 500,
    ) -> None:
        self.ratings_table = validate_identifier(ratings_table)
        self.movies_table = validate_identifier(movies_table)
        self.history_chunk_size = max(int(history_chunk_size), 1)

        try:
            self.engine = (
                create_engine(url_or_engine)
                if isinstance(url_or_engine, str)
                else url_or_engine
            )
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            inspector = inspect(self.engine)
            has_ratings = inspector.has_table(self.ratings_table)
            self.has_metadata = inspector.has_table(self.movies_table)
        except SQLAlchemyError as exc:
            raise StoreConfigurationError(f"Backing store is unreachable: {exc}") from exc

        if not has_ratings:
            raise StoreConfigurationError(
                f"Ratings table '{self.ratings_table}' does not exist in the backing store."
            )
        if not self.has_metadata:
            logger.warning(
                "Movies table '{}' not found; genre and release-year features will be zero.",
                self.movies_table,
            )

    def _read_frame(self, query: Any, params: Mapping[str, Any]) -> pd.DataFrame:
        try:
            with self.engine.connect() as conn:
                return pd.read_sql(query, conn, params=dict(params))
        except OperationalError as exc:
            raise TransientStoreError(f"Backing store read failed: {exc}") from exc

    def _select_examples(self) -> str:
        if self.has_metadata:
            return (
                f"SELECT r.user_id, r.movie_id, r.rating, m.title, m.genres "
                f"FROM {self.ratings_table} r "
                f"LEFT JOIN {self.movies_table} m ON m.movie_id = r.movie_id"
            )
        return (
            f"SELECT r.user_id, r.movie_id, r.rating, NULL AS title, NULL AS genres "
            f"FROM {self.ratings_table} r"
        )

    def read_page(
        self,
        *,
        after: Sequence[int] | None,
        offset: int,
        limit: int,
    ) -> RatingPage:
        base = self._select_examples()
        if after:
            query = (
                f"{base} WHERE r.user_id > :after_user "
                f"OR (r.user_id = :after_user AND r.movie_id > :after_item) "
                f"ORDER BY r.user_id, r.movie_id LIMIT :limit"
            )
            params = {"after_user": int(after[0]), "after_item": int(after[1]), "limit": int(limit)}
        else:
            query = f"{base} ORDER BY r.user_id, r.movie_id LIMIT :limit OFFSET :offset"
            params = {"limit": int(limit), "offset": int(offset)}

        frame = self._read_frame(text(query), params)
        if frame.empty:
            return RatingPage(examples=[], last_key=list(after) if after else None)
        last = frame.iloc[-1]
        return RatingPage(
            examples=_examples_from_frame(frame),
            last_key=[int(last["user_id"]), int(last["movie_id"])],
        )

    def user_histories(self, user_ids: Iterable[int]) -> dict[int, list[RatedItem]]:
        ids = sorted({int(user_id) for user_id in user_ids})
        genres_column = "m.genres" if self.has_metadata else "NULL AS genres"
        join = (
            f"LEFT JOIN {self.movies_table} m ON m.movie_id = r.movie_id"
            if self.has_metadata
            else ""
        )
        query = text(
            f"SELECT r.user_id, r.movie_id, r.rating, {genres_column} "
            f"FROM {self.ratings_table} r {join} "
            f"WHERE r.user_id IN :ids ORDER BY r.user_id, r.movie_id"
        ).bindparams(bindparam("ids", expanding=True))

        histories: dict[int, list[RatedItem]] = {}
        for start in range(0, len(ids), self.history_chunk_size):
            chunk = ids[start : start + self.history_chunk_size]
            histories.update(_histories_from_frame(self._read_frame(query, {"ids": chunk})))
        return histories

    def item_metadata(self, item_ids: Iterable[int]) -> dict[int, ItemMetadata]:
        if not self.has_metadata:
            return {}
        ids = sorted({int(item_id) for item_id in item_ids})
        query = text(
            f"SELECT movie_id, title, genres FROM {self.movies_table} WHERE movie_id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))

        metadata: dict[int, ItemMetadata] = {}
        for start in range(0, len(ids), self.history_chunk_size):
            chunk = ids[start : start + self.history_chunk_size]
            metadata.update(_metadata_from_frame(self._read_frame(query, {"ids": chunk})))
        return metadata

    def entity_counts(self) -> tuple[int, int]:
        frame = self._read_frame(
            text(
                f"SELECT COUNT(DISTINCT user_id) AS users, COUNT(DISTINCT movie_id) AS items "
                f"FROM {self.ratings_table}"
            ),
            {},
        )
        return int(frame.iloc[0]["users"]), int(frame.iloc[0]["items"])

    def close(self) -> None:
        self.engine.dispose()


def open_rating_source(data_config: Mapping[str, Any]) -> SqlRatingSource:
    """Build the configured SQL source; raises StoreConfigurationError when unusable."""
    url = data_config.get("url")
    if not url:
        raise StoreConfigurationError("data.url must point at the ratings database.")
    logger.info("Connecting to backing store at {}", url)
    return SqlRatingSource(
        str(url),
        ratings_table=str(data_config.get("ratings_table", DEFAULT_RATINGS_TABLE)),
        movies_table=str(data_config.get("movies_table", DEFAULT_MOVIES_TABLE)),
        history_chunk_size=int(data_config.get("history_chunk_size", 500)),
    )
