"""Score (user, movie) pairs or list top-K recommendations from a trained artifact."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from loguru import logger

from streamtower.data import StoreConfigurationError, open_rating_source
from streamtower.pipelines import InferenceEngine
from streamtower.pipelines.training import run_directory
from streamtower.utils import ConfigurationError, configure_logging, load_config


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/default.yaml"),
        help="Path to the YAML configuration file.",
    )
    parser.add_argument(
        "--artifact",
        type=Path,
        help="Artifact directory (defaults to the configured run's model directory).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    predict = subparsers.add_parser("predict", help="Predict the 0-10 score of one pair.")
    predict.add_argument("user_id", type=int)
    predict.add_argument("movie_id", type=int)

    top = subparsers.add_parser("top", help="List the best-scoring unrated movies for a user.")
    top.add_argument("user_id", type=int)
    top.add_argument("-k", type=int, help="Number of recommendations.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigurationError) as exc:
        logger.error("Configuration error: {}", exc)
        return 2
    configure_logging(config.get("logging"))

    inference_cfg = dict(config.get("inference", {}))
    data_cfg = dict(config.get("data", {}))
    artifact_dir = args.artifact or Path(
        config.get("artifact", {}).get("dir") or run_directory(config) / "model"
    )
    try:
        source = open_rating_source(data_cfg)
    except StoreConfigurationError as exc:
        logger.error("Configuration error: {}", exc)
        return 2

    try:
        engine = InferenceEngine.from_artifact(
            artifact_dir,
            source,
            cold_start_score=float(inference_cfg.get("cold_start_score", 7.0)),
            device=str(inference_cfg.get("device", "cpu")),
            current_year=data_cfg.get("current_year"),
            retry_attempts=int(data_cfg.get("retry_attempts", 3)),
            retry_backoff=float(data_cfg.get("retry_backoff", 1.0)),
        )
        if args.command == "predict":
            score = engine.predict(args.user_id, args.movie_id)
            print(f"{args.user_id}\t{args.movie_id}\t{score:.3f}")
        else:
            k = args.k if args.k is not None else int(inference_cfg.get("default_k", 10))
            for rank, (movie_id, score) in enumerate(engine.top_recommendations(args.user_id, k), start=1):
                print(f"{rank}\t{movie_id}\t{score:.3f}")
    except FileNotFoundError as exc:
        logger.error("{}", exc)
        return 1
    finally:
        source.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
