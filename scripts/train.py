"""Command-line interface for launching the streaming two-tower training loop."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from loguru import logger

from streamtower.data import StoreConfigurationError
from streamtower.pipelines import run_training
from streamtower.utils import (
    ConfigurationError,
    apply_overrides,
    apply_test_mode,
    configure_logging,
    load_config,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/default.yaml"),
        help="Path to the YAML configuration file.",
    )
    parser.add_argument("--batch-size", type=int, help="Examples per streamed batch.")
    parser.add_argument(
        "--checkpoint-every",
        type=int,
        help="Write a checkpoint every N processed examples.",
    )
    parser.add_argument("--epochs", type=int, help="Number of passes over the stream.")
    parser.add_argument(
        "--validation-split",
        type=float,
        help="Fraction of (user, item) pairs held out for validation.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        help="Only stream the first N examples of each epoch (N x epochs in total).",
    )
    parser.add_argument(
        "--test",
        action="store_true",
        help="Short smoke run: batch 2000, checkpoint 5000, 2 epochs of 10k examples each.",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue from the latest checkpoint of this run.",
    )
    return parser.parse_args(argv)


def build_run_config(args: argparse.Namespace) -> dict:
    """Load the YAML config and layer the test preset and explicit flags on top."""
    config = load_config(args.config)
    if args.test:
        config = apply_test_mode(config)
    return apply_overrides(
        config,
        {
            "training.batch_size": args.batch_size,
            "checkpoint.every": args.checkpoint_every,
            "training.num_epochs": args.epochs,
            "training.validation_split": args.validation_split,
            "data.limit": args.limit,
        },
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = build_run_config(args)
    except (FileNotFoundError, ConfigurationError) as exc:
        logger.error("Configuration error: {}", exc)
        return EXIT_CONFIG_ERROR

    configure_logging(config.get("logging"))
    logger.info("Starting training with config at {}", args.config)
    if args.test:
        logger.info("Test mode enabled")
    try:
        result = run_training(config, resume=args.resume)
    except (ConfigurationError, StoreConfigurationError) as exc:
        logger.error("Configuration error: {}", exc)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted; rerun with --resume to continue from the last checkpoint")
        return EXIT_FAILURE
    except Exception:
        logger.exception("Training failed")
        return EXIT_FAILURE

    logger.info(
        "Artifact published to {} after {} examples",
        result.artifact_path,
        result.total_examples,
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
