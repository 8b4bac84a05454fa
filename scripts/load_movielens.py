"""Import the MovieLens ratings.csv / movies.csv release into the configured store."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from loguru import logger
from sqlalchemy import create_engine

from streamtower.data import import_movielens
from streamtower.utils import configure_logging, load_config


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/default.yaml"),
        help="Path to the YAML configuration file.",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=Path("data/ml-latest"),
        help="Directory holding ratings.csv and movies.csv.",
    )
    parser.add_argument("--limit", type=int, help="Only import the first N ratings.")
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=500_000,
        help="Rows read from ratings.csv per chunk.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = load_config(args.config)
    configure_logging(config.get("logging"))
    data_cfg = config.get("data", {})
    url = data_cfg.get("url")
    if not url:
        logger.error("data.url is not set in {}", args.config)
        return 2

    logger.info("Importing MovieLens CSVs from {} into {}", args.data_dir, url)
    engine = create_engine(str(url))
    try:
        summary = import_movielens(
            engine,
            args.data_dir,
            ratings_table=str(data_cfg.get("ratings_table", "movielens_ratings")),
            movies_table=str(data_cfg.get("movies_table", "movielens_movies")),
            chunk_size=args.chunk_size,
            ratings_limit=args.limit,
        )
    finally:
        engine.dispose()
    logger.info("Import finished | ratings={} movies={}", summary.ratings, summary.movies)
    return 0


if __name__ == "__main__":
    sys.exit(main())
