"""
Durable, resumable training checkpoints.

Layout under the checkpoint directory::

    ckpt-<total>/model.pt          model + optimiser state (torch.save)
    ckpt-<total>/index_maps.json   serialised user/item index maps
    ckpt-<total>/metadata.json     position, accumulators, history
    latest.json                    pointer to the newest complete checkpoint

Each checkpoint is assembled in a temporary sibling directory and renamed into
place, so a directory named ``ckpt-*`` is always complete. ``latest.json`` is
replaced atomically after the rename.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import torch
from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..data.indexers import IndexRegistry

CHECKPOINT_PREFIX = "ckpt-"
LATEST_POINTER = "latest.json"
MODEL_FILENAME = "model.pt"
INDEX_MAP_FILENAME = "index_maps.json"
METADATA_FILENAME = "metadata.json"
FORMAT_VERSION = 1


@dataclass(frozen=True)
class Checkpoint:
    """Reference to a checkpoint directory on disk and its position in the stream."""

    path: Path
    epoch: int
    batch_offset: int
    total_examples: int
    timestamp: float
    cursor_key: list[int] | None = None

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def model_path(self) -> Path:
        return self.path / MODEL_FILENAME

    @property
    def index_map_path(self) -> Path:
        return self.path / INDEX_MAP_FILENAME

    @classmethod
    def from_metadata(cls, path: Path, metadata: Mapping[str, Any]) -> "Checkpoint":
        cursor_key = metadata.get("cursorKey")
        return cls(
            path=path,
            epoch=int(metadata["epoch"]),
            batch_offset=int(metadata["batchOffset"]),
            total_examples=int(metadata["totalExamplesProcessed"]),
            timestamp=float(metadata.get("timestamp", 0.0)),
            cursor_key=[int(v) for v in cursor_key] if cursor_key else None,
        )


@dataclass
class CheckpointState:
    """
    Everything needed to continue training exactly where a run stopped.

    ``epoch`` and ``batch_offset`` identify the next example to process:
    epoch ``epoch`` (0-based) resumes after ``batch_offset`` examples.
    """

    epoch: int
    batch_offset: int
    total_examples: int
    model_state: Mapping[str, Any]
    registry: IndexRegistry
    optimizer_state: Mapping[str, Any] | None = None
    cursor_key: list[int] | None = None
    model_config: Mapping[str, Any] = field(default_factory=dict)
    capacities: Mapping[str, int] = field(default_factory=dict)
    accumulators: Mapping[str, Any] = field(default_factory=dict)
    history: Mapping[str, list[float]] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def metadata(self) -> dict[str, Any]:
        return {
            "formatVersion": FORMAT_VERSION,
            "epoch": self.epoch,
            "batchOffset": self.batch_offset,
            "totalExamplesProcessed": self.total_examples,
            "modelWeightsRef": MODEL_FILENAME,
            "indexMapRef": INDEX_MAP_FILENAME,
            "timestamp": self.timestamp,
            "cursorKey": self.cursor_key,
            "capacities": dict(self.capacities),
            "accumulators": dict(self.accumulators),
            "history": {key: list(values) for key, values in self.history.items()},
        }


def _write_json(path: Path, payload: Any) -> None:
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
        handle.flush()
        os.fsync(handle.fileno())


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


class CheckpointManager:
    """
    Writes, lists, loads and prunes checkpoints under a single directory.

    A directory is owned by one training run at a time; there is no locking.
    """

    def __init__(
        self,
        directory: Path | str,
        *,
        keep_last: int | None = None,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        self.directory = Path(directory)
        self.keep_last = keep_last
        self.retry_attempts = max(int(retry_attempts), 1)
        self.retry_backoff = float(retry_backoff)

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(OSError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=30),
            before_sleep=lambda state: logger.warning(
                "Checkpoint write failed (attempt {}): {}",
                state.attempt_number,
                state.outcome.exception(),
            ),
            reraise=True,
        )

    def save(self, state: CheckpointState) -> Checkpoint:
        """Persist ``state`` and point ``latest.json`` at it."""
        checkpoint = self._retrying()(self._write, state)
        logger.info(
            "Saved checkpoint {} | epoch={} offset={} total={}",
            checkpoint.name,
            checkpoint.epoch,
            checkpoint.batch_offset,
            checkpoint.total_examples,
        )
        if self.keep_last:
            self.cleanup(self.keep_last)
        return checkpoint

    def _write(self, state: CheckpointState) -> Checkpoint:
        self.directory.mkdir(parents=True, exist_ok=True)
        final_path = self.directory / f"{CHECKPOINT_PREFIX}{state.total_examples}"
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=self.directory))
        try:
            torch.save(
                {
                    "model_state_dict": state.model_state,
                    "optimizer_state_dict": state.optimizer_state,
                    "model_config": dict(state.model_config),
                },
                staging / MODEL_FILENAME,
            )
            _write_json(staging / INDEX_MAP_FILENAME, state.registry.serialize())
            metadata = state.metadata()
            _write_json(staging / METADATA_FILENAME, metadata)

            # Only a fresh run reusing an old directory lands on an existing name.
            retired = None
            if final_path.exists():
                retired = final_path.with_name(f".retired-{final_path.name}-{os.getpid()}")
                os.replace(final_path, retired)
            os.replace(staging, final_path)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        if retired is not None:
            shutil.rmtree(retired, ignore_errors=True)

        pointer_tmp = self.directory / f".{LATEST_POINTER}.tmp"
        _write_json(
            pointer_tmp,
            {
                "checkpoint": final_path.name,
                "totalExamplesProcessed": state.total_examples,
                "timestamp": state.timestamp,
            },
        )
        os.replace(pointer_tmp, self.directory / LATEST_POINTER)
        return Checkpoint.from_metadata(final_path, metadata)

    def list(self) -> list[Checkpoint]:
        """Complete checkpoints ordered by examples processed (oldest first)."""
        if not self.directory.exists():
            return []
        checkpoints: list[Checkpoint] = []
        for path in self.directory.iterdir():
            metadata_path = path / METADATA_FILENAME
            if not path.is_dir() or not path.name.startswith(CHECKPOINT_PREFIX):
                continue
            if not metadata_path.exists():
                logger.warning("Ignoring incomplete checkpoint directory {}", path)
                continue
            checkpoints.append(Checkpoint.from_metadata(path, _read_json(metadata_path)))
        return sorted(checkpoints, key=lambda ckpt: (ckpt.total_examples, ckpt.timestamp))

    def latest(self) -> Checkpoint | None:
        pointer = self.directory / LATEST_POINTER
        if pointer.exists():
            name = _read_json(pointer).get("checkpoint")
            path = self.directory / str(name)
            if name and (path / METADATA_FILENAME).exists():
                return Checkpoint.from_metadata(path, _read_json(path / METADATA_FILENAME))
            logger.warning("latest.json points to missing checkpoint '{}'; scanning directory", name)
        checkpoints = self.list()
        return checkpoints[-1] if checkpoints else None

    def load(
        self,
        checkpoint: Checkpoint | None = None,
        *,
        map_location: str | torch.device = "cpu",
    ) -> CheckpointState:
        checkpoint = checkpoint or self.latest()
        if checkpoint is None:
            raise FileNotFoundError(f"No checkpoint found under {self.directory}")

        metadata = _read_json(checkpoint.path / METADATA_FILENAME)
        payload = torch.load(checkpoint.model_path, map_location=map_location)
        registry = IndexRegistry.load(_read_json(checkpoint.index_map_path))
        return CheckpointState(
            epoch=checkpoint.epoch,
            batch_offset=checkpoint.batch_offset,
            total_examples=checkpoint.total_examples,
            model_state=payload["model_state_dict"],
            optimizer_state=payload.get("optimizer_state_dict"),
            registry=registry,
            cursor_key=checkpoint.cursor_key,
            model_config=payload.get("model_config") or {},
            capacities={k: int(v) for k, v in (metadata.get("capacities") or {}).items()},
            accumulators=metadata.get("accumulators") or {},
            history=metadata.get("history") or {},
            timestamp=checkpoint.timestamp,
        )

    def cleanup(self, keep_last: int | None = None) -> list[Path]:
        """Delete all but the newest ``keep_last`` checkpoints; the latest is never removed."""
        keep = keep_last if keep_last is not None else self.keep_last
        if not keep or keep < 1:
            return []
        checkpoints = self.list()
        latest = self.latest()
        removed: list[Path] = []
        for checkpoint in checkpoints[:-keep]:
            if latest is not None and checkpoint.path == latest.path:
                continue
            shutil.rmtree(checkpoint.path, ignore_errors=True)
            removed.append(checkpoint.path)
        if removed:
            logger.debug("Removed {} superseded checkpoints", len(removed))
        return removed
