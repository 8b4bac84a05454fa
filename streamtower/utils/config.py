"""Configuration loading and manipulation helpers."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence

import yaml

# Preset applied by ``--test``: a short run over a small prefix of the stream.
TEST_MODE_OVERRIDES: Mapping[str, Any] = {
    "training.batch_size": 2000,
    "checkpoint.every": 5000,
    "training.num_epochs": 2,
    "data.limit": 10_000,
}


class ConfigurationError(ValueError):
    """Raised when configuration values are missing or out of range."""


def load_config(config_path: Path | str) -> dict[str, Any]:
    """
    Parse a YAML configuration file into a nested mapping.

    The top level must be a mapping; an empty file yields an empty dict.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, Mapping):
        raise ConfigurationError(
            f"Configuration root in {config_path} must be a mapping, got {type(loaded).__name__}."
        )
    return dict(loaded)


def clone_config(config: Mapping[str, Any]) -> dict[str, Any]:
    """Return a deep copy of the configuration mapping."""
    return copy.deepcopy(dict(config))


def set_by_dotted_path(
    config: MutableMapping[str, Any],
    dotted_key: str,
    value: Any,
) -> None:
    """
    Assign a value inside a nested mapping using dotted-path syntax.

    Examples
    --------
    >>> cfg = {"training": {"batch_size": 10000}}
    >>> set_by_dotted_path(cfg, "training.batch_size", 500)
    >>> cfg["training"]["batch_size"]
    500
    """
    keys: Sequence[str] = dotted_key.split(".")
    current: MutableMapping[str, Any] = config
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], MutableMapping):
            current[key] = {}
        current = current[key]  # type: ignore[assignment]
    current[keys[-1]] = value


def get_by_dotted_path(config: Mapping[str, Any], dotted_key: str, default: Any = None) -> Any:
    """Fetch a value from a nested mapping using dotted-path syntax."""
    current: Any = config
    for key in dotted_key.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current


def apply_overrides(
    config: Mapping[str, Any],
    overrides: Mapping[str, Any],
) -> dict[str, Any]:
    """Return a copy of ``config`` with every non-None dotted override applied."""
    updated = clone_config(config)
    for dotted_key, value in overrides.items():
        if value is not None:
            set_by_dotted_path(updated, dotted_key, value)
    return updated


def apply_test_mode(config: Mapping[str, Any]) -> dict[str, Any]:
    return apply_overrides(config, TEST_MODE_OVERRIDES)
