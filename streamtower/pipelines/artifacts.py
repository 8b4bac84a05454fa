"""Publishing and reading the final trained artifact."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import torch
from loguru import logger

from ..data.indexers import IndexRegistry
from ..models import TwoTowerRatingModel, build_rating_model

ARTIFACT_MODEL_FILENAME = "model.pt"
ARTIFACT_MAPPINGS_FILENAME = "mappings.json"


@dataclass(frozen=True)
class TrainedArtifact:
    model: TwoTowerRatingModel
    registry: IndexRegistry
    version: str
    trained_on: str
    model_config: Mapping[str, Any]
    dataset_size: int
    path: Path


def write_artifact(
    directory: Path | str,
    *,
    model: TwoTowerRatingModel,
    model_config: Mapping[str, Any],
    registry: IndexRegistry,
    version: str,
    dataset_size: int,
    trained_on: str | None = None,
) -> Path:
    """
    Publish ``model.pt`` and ``mappings.json`` into ``directory``.

    The files are staged next to the target and swapped in with a rename, so a
    reader never sees a half-written artifact. The registry is frozen first.
    """
    directory = Path(directory)
    directory.parent.mkdir(parents=True, exist_ok=True)
    registry.freeze()
    trained_on = trained_on or time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())

    staging = Path(tempfile.mkdtemp(prefix=f".{directory.name}-", dir=directory.parent))
    try:
        torch.save(
            {
                "model_state_dict": model.state_dict(),
                "model_config": dict(model_config),
                "capacities": model.embedding_capacity(),
            },
            staging / ARTIFACT_MODEL_FILENAME,
        )
        mappings = dict(registry.serialize())
        mappings.update(
            {
                "version": version,
                "trainedOn": trained_on,
                "model": ARTIFACT_MODEL_FILENAME,
                "datasetSize": int(dataset_size),
            }
        )
        (staging / ARTIFACT_MAPPINGS_FILENAME).write_text(
            json.dumps(mappings, indent=2), encoding="utf-8"
        )
        if directory.exists():
            shutil.rmtree(directory)
        os.replace(staging, directory)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    logger.info(
        "Published artifact {} | version={} users={} items={} examples={}",
        directory,
        version,
        len(registry.users),
        len(registry.items),
        dataset_size,
    )
    return directory


def read_artifact(
    directory: Path | str,
    *,
    device: str | torch.device = "cpu",
) -> TrainedArtifact:
    """Rebuild the model from a published artifact and load its frozen index maps."""
    directory = Path(directory)
    model_path = directory / ARTIFACT_MODEL_FILENAME
    mappings_path = directory / ARTIFACT_MAPPINGS_FILENAME
    for path in (model_path, mappings_path):
        if not path.exists():
            raise FileNotFoundError(f"Artifact file not found: {path}")

    mappings = json.loads(mappings_path.read_text(encoding="utf-8"))
    registry = IndexRegistry.load(mappings, frozen=True)

    device = torch.device(device)
    payload = torch.load(model_path, map_location=device)
    model_config = payload.get("model_config") or {}
    capacities = payload.get("capacities") or {}
    model = build_rating_model(
        model_config,
        num_users=int(capacities.get("users", len(registry.users))),
        num_items=int(capacities.get("items", len(registry.items))),
        device=device,
    )
    model.load_state_dict(payload["model_state_dict"])
    model.eval()

    return TrainedArtifact(
        model=model,
        registry=registry,
        version=str(mappings.get("version", "")),
        trained_on=str(mappings.get("trainedOn", "")),
        model_config=model_config,
        dataset_size=int(mappings.get("datasetSize", 0)),
        path=directory,
    )
