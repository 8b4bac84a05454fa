"""
Import helpers that load the MovieLens CSV release into the backing store.

CSV files are read in chunks so the full ratings file never has to fit in
memory; a composite index on ``(user_id, movie_id)`` is created afterwards to
back the streamer's keyset pagination.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pandas as pd
from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Engine

from .sources import DEFAULT_MOVIES_TABLE, DEFAULT_RATINGS_TABLE, validate_identifier

DEFAULT_RATINGS_FILENAME = "ratings.csv"
DEFAULT_MOVIES_FILENAME = "movies.csv"


@dataclass(frozen=True)
class ImportSummary:
    ratings: int
    movies: int


def _require(path: Path) -> Path:
    if not path.exists():
        raise FileNotFoundError(f"Expected CSV at {path} but file was not found.")
    return path


def import_movies(
    engine: Engine,
    data_dir: Path,
    *,
    filename: str | None = None,
    table: str = DEFAULT_MOVIES_TABLE,
) -> int:
    """Replace the movies table with ``movies.csv`` (movieId, title, genres)."""
    table = validate_identifier(table)
    path = _require(data_dir / (filename or DEFAULT_MOVIES_FILENAME))
    movies = pd.read_csv(path, dtype={"movieId": "int64", "title": "string", "genres": "string"})
    movies = movies.rename(columns={"movieId": "movie_id"})[["movie_id", "title", "genres"]]
    movies.to_sql(table, engine, if_exists="replace", index=False)
    with engine.begin() as conn:
        conn.execute(text(f"CREATE UNIQUE INDEX IF NOT EXISTS ix_{table}_movie ON {table} (movie_id)"))
    logger.info("Imported {} movies into '{}'", len(movies), table)
    return len(movies)


def import_ratings(
    engine: Engine,
    data_dir: Path,
    *,
    filename: str | None = None,
    table: str = DEFAULT_RATINGS_TABLE,
    chunk_size: int = 500_000,
    limit: Optional[int] = None,
) -> int:
    """Replace the ratings table with ``ratings.csv`` (userId, movieId, rating, timestamp)."""
    table = validate_identifier(table)
    path = _require(data_dir / (filename or DEFAULT_RATINGS_FILENAME))
    dtype = {"userId": "int64", "movieId": "int64", "rating": "float64", "timestamp": "Int64"}
    total = 0
    reader = pd.read_csv(path, dtype=dtype, chunksize=chunk_size, nrows=limit)
    for chunk_idx, chunk in enumerate(reader):
        chunk = chunk.rename(columns={"userId": "user_id", "movieId": "movie_id"})
        columns = [col for col in ("user_id", "movie_id", "rating", "timestamp") if col in chunk]
        chunk[columns].to_sql(
            table,
            engine,
            if_exists="replace" if chunk_idx == 0 else "append",
            index=False,
        )
        total += len(chunk)
        logger.debug("Imported {} ratings so far", total)

    with engine.begin() as conn:
        conn.execute(
            text(f"CREATE UNIQUE INDEX IF NOT EXISTS ix_{table}_key ON {table} (user_id, movie_id)")
        )
    logger.info("Imported {} ratings into '{}'", total, table)
    return total


def import_movielens(
    engine: Engine,
    data_dir: Path,
    *,
    ratings_file: str | None = None,
    movies_file: str | None = None,
    ratings_table: str = DEFAULT_RATINGS_TABLE,
    movies_table: str = DEFAULT_MOVIES_TABLE,
    chunk_size: int = 500_000,
    ratings_limit: Optional[int] = None,
) -> ImportSummary:
    """
    Load both MovieLens CSVs into the backing store.

    A missing ``movies.csv`` is tolerated: the streamer treats an absent movies
    table as "no metadata".
    """
    movies = 0
    try:
        movies = import_movies(engine, data_dir, filename=movies_file, table=movies_table)
    except FileNotFoundError as exc:
        logger.warning("Skipping movie metadata import: {}", exc)

    ratings = import_ratings(
        engine,
        data_dir,
        filename=ratings_file,
        table=ratings_table,
        chunk_size=chunk_size,
        limit=ratings_limit,
    )
    return ImportSummary(ratings=ratings, movies=movies)
