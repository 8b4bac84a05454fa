"""
Training orchestration entry point.

The trainer streams rating examples page by page, encodes each batch on the
fly (index allocation plus feature extraction), and takes one optimisation
step per batch. Durable checkpoints are written every ``checkpoint_every``
examples and at epoch boundaries, so a multi-hour run can be resumed after an
interruption without replaying the examples already processed.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import numpy as np
import torch
import torch.nn.functional as F
from loguru import logger
from torch.nn.utils import clip_grad_norm_

from ..data.datasets import BatchTensors, encode_batch
from ..data.features import FeatureExtractor
from ..data.indexers import IndexRegistry
from ..data.samplers import validation_mask
from ..data.schema import RatingExample
from ..data.sources import RatingSource, TransientStoreError, open_rating_source
from ..data.streaming import DEFAULT_BATCH_SIZE, BatchCursor
from ..evaluation import MetricAccumulator, RegressionMetrics
from ..models import TwoTowerRatingModel, build_rating_model
from ..reporting import save_training_curves
from ..utils import ConfigurationError
from .artifacts import write_artifact
from .checkpoints import Checkpoint, CheckpointManager, CheckpointState


@dataclass(frozen=True)
class TrainingSettings:
    """
    Typed training options.

    ``limit`` caps the stream position within each epoch, so a run processes
    at most ``limit * num_epochs`` examples in total.
    """

    batch_size: int = DEFAULT_BATCH_SIZE
    checkpoint_every: int = 100_000
    num_epochs: int = 10
    validation_split: float = 0.1
    limit: int | None = None
    learning_rate: float = 1e-3
    weight_decay: float = 0.0
    gradient_clip_norm: float | None = None
    seed: int | None = 42
    device: str = "cpu"
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    validation_salt: int = 0
    current_year: int | None = None

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ConfigurationError("training.batch_size must be greater than zero.")
        if self.checkpoint_every < 0:
            raise ConfigurationError("checkpoint.every must be non-negative.")
        if self.num_epochs <= 0:
            raise ConfigurationError("training.num_epochs must be greater than zero.")
        if not 0.0 <= self.validation_split < 1.0:
            raise ConfigurationError("training.validation_split must lie in [0, 1).")
        if self.limit is not None and self.limit <= 0:
            raise ConfigurationError("data.limit must be positive when set.")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "TrainingSettings":
        training_cfg = dict(config.get("training", {}))
        checkpoint_cfg = dict(config.get("checkpoint", {}))
        data_cfg = dict(config.get("data", {}))
        experiment_cfg = dict(config.get("experiment", {}))

        gradient_clip_norm = training_cfg.get("gradient_clip_norm")
        limit = data_cfg.get("limit")
        seed = experiment_cfg.get("seed", 42)
        current_year = data_cfg.get("current_year")
        try:
            return cls(
                batch_size=int(training_cfg.get("batch_size", DEFAULT_BATCH_SIZE)),
                checkpoint_every=int(checkpoint_cfg.get("every", 100_000)),
                num_epochs=int(training_cfg.get("num_epochs", 10)),
                validation_split=float(training_cfg.get("validation_split", 0.1)),
                limit=int(limit) if limit is not None else None,
                learning_rate=float(training_cfg.get("learning_rate", 1e-3)),
                weight_decay=float(training_cfg.get("weight_decay", 0.0)),
                gradient_clip_norm=(
                    float(gradient_clip_norm) if gradient_clip_norm is not None else None
                ),
                seed=int(seed) if seed is not None else None,
                device=str(training_cfg.get("device", "cpu")),
                retry_attempts=int(data_cfg.get("retry_attempts", 3)),
                retry_backoff=float(data_cfg.get("retry_backoff", 1.0)),
                validation_salt=int(training_cfg.get("validation_salt", 0)),
                current_year=int(current_year) if current_year is not None else None,
            )
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid training configuration: {exc}") from exc


@dataclass
class TrainingHistory:
    train_loss: list[float] = field(default_factory=list)
    val_loss: list[float] = field(default_factory=list)
    val_mae: list[float] = field(default_factory=list)
    val_rmse: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[float]]:
        return {
            "train_loss": list(self.train_loss),
            "val_loss": list(self.val_loss),
            "val_mae": list(self.val_mae),
            "val_rmse": list(self.val_rmse),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "TrainingHistory":
        payload = payload or {}
        return cls(**{key: [float(v) for v in payload.get(key, [])] for key in cls().to_dict()})


@dataclass
class TrainingResult:
    history: TrainingHistory
    total_examples: int
    epochs_completed: int
    runtime_seconds: float
    artifact_path: Path | None
    checkpoints: list[Checkpoint] = field(default_factory=list)
    val_metrics: RegressionMetrics | None = None
    loss_plot_path: Path | None = None


def _seed_everything(seed: int) -> None:
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def _resolve_device(name: str) -> torch.device:
    if name == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(name)


def _nan_if_none(value: float | None) -> float:
    return float("nan") if value is None else float(value)


class StreamingTrainer:
    """
    Multi-epoch trainer over a streamed rating source.

    Parameters
    ----------
    source:
        Backing store the examples are paged from.
    settings:
        Typed training options (see ``TrainingSettings.from_config``).
    model_config:
        The ``model`` configuration section, stored with every checkpoint and
        the final artifact so the architecture can be rebuilt.
    checkpoints:
        Manager owning the run's checkpoint directory.
    artifact_dir:
        Where the final model and index maps are published.
    extractor:
        Optional feature extractor; defaults to one bound to ``source``.
    """

    def __init__(
        self,
        source: RatingSource,
        settings: TrainingSettings,
        model_config: Mapping[str, Any],
        checkpoints: CheckpointManager,
        artifact_dir: Path | str,
        *,
        extractor: FeatureExtractor | None = None,
        version: str | None = None,
        loss_plot_path: Path | str | None = None,
    ) -> None:
        self.source = source
        self.settings = settings
        self.model_config = dict(model_config)
        self.checkpoints = checkpoints
        self.artifact_dir = Path(artifact_dir)
        self.extractor = extractor or FeatureExtractor(
            source,
            current_year=settings.current_year,
            retry_attempts=settings.retry_attempts,
            retry_backoff=settings.retry_backoff,
        )
        self.version = version
        self.loss_plot_path = Path(loss_plot_path) if loss_plot_path else None
        self.device = _resolve_device(settings.device)

        self.registry = IndexRegistry()
        self.model: TwoTowerRatingModel | None = None
        self.optimizer: torch.optim.Optimizer | None = None
        self.history = TrainingHistory()
        self.total_examples = 0
        self._train_metrics = MetricAccumulator()
        self._val_metrics = MetricAccumulator()
        self._written: list[Checkpoint] = []

    def _build_optimizer(self) -> torch.optim.Optimizer:
        return torch.optim.Adam(
            self.model.parameters(),
            lr=self.settings.learning_rate,
            weight_decay=self.settings.weight_decay,
        )

    def _initialise(self, state: CheckpointState | None) -> None:
        if state is None:
            num_users, num_items = self.source.entity_counts()
        else:
            self.registry = state.registry
            num_users = int(state.capacities.get("users", len(self.registry.users)))
            num_items = int(state.capacities.get("items", len(self.registry.items)))
            if state.model_config and state.model_config != self.model_config:
                logger.warning("Model configuration differs from the checkpoint; using the checkpoint's.")
                self.model_config = dict(state.model_config)

        self.model = build_rating_model(
            self.model_config,
            num_users=max(num_users, 1),
            num_items=max(num_items, 1),
            device=self.device,
        )
        self.optimizer = self._build_optimizer()

        if state is None:
            logger.info(
                "Starting fresh run | capacity users={} items={} device={}",
                num_users,
                num_items,
                self.device,
            )
            return

        self.model.load_state_dict(state.model_state)
        if state.optimizer_state:
            self.optimizer.load_state_dict(state.optimizer_state)
        self.history = TrainingHistory.from_dict(state.history)
        self.total_examples = state.total_examples
        self._train_metrics = MetricAccumulator.from_state(state.accumulators.get("train"))
        self._val_metrics = MetricAccumulator.from_state(state.accumulators.get("validation"))
        logger.info(
            "Resuming at epoch {} offset {} ({} examples processed, users={} items={})",
            state.epoch + 1,
            state.batch_offset,
            state.total_examples,
            len(self.registry.users),
            len(self.registry.items),
        )

    def _ensure_capacity(self) -> None:
        """Grow embedding tables when the stream introduced more ids than pre-sized."""
        grown = self.model.user_encoder.grow(len(self.registry.users))
        grown = self.model.item_encoder.grow(len(self.registry.items)) or grown
        if not grown:
            return
        capacity = self.model.embedding_capacity()
        logger.warning(
            "Embedding tables grown to users={} items={}; rebuilding optimiser",
            capacity["users"],
            capacity["items"],
        )
        previous = self.optimizer.state
        self.optimizer = self._build_optimizer()
        for param in self.model.parameters():
            if param in previous:
                self.optimizer.state[param] = previous[param]

    def _train_step(self, batch: BatchTensors) -> None:
        self.model.train()
        self.optimizer.zero_grad()
        scores = self.model(batch.user_inputs(), batch.item_inputs())["score"]
        loss = F.mse_loss(scores, batch.targets)
        loss.backward()
        if self.settings.gradient_clip_norm is not None:
            clip_grad_norm_(self.model.parameters(), self.settings.gradient_clip_norm)
        self.optimizer.step()
        self._train_metrics.update(scores, batch.targets)

    @torch.no_grad()
    def _validation_step(self, batch: BatchTensors) -> None:
        self.model.eval()
        scores = self.model(batch.user_inputs(), batch.item_inputs())["score"]
        self._val_metrics.update(scores, batch.targets)

    def _process_batch(self, examples: list[RatingExample]) -> None:
        tensors = encode_batch(
            examples,
            registry=self.registry,
            extractor=self.extractor,
            device=self.device,
        )
        self._ensure_capacity()

        held_out = torch.from_numpy(
            validation_mask(
                examples,
                self.settings.validation_split,
                salt=self.settings.validation_salt,
            )
        ).to(self.device)
        train_batch = tensors.select(~held_out)
        val_batch = tensors.select(held_out)
        if len(train_batch):
            self._train_step(train_batch)
        if len(val_batch):
            self._validation_step(val_batch)

    def _save_checkpoint(self, *, epoch: int, offset: int, cursor_key: list[int] | None) -> Checkpoint:
        state = CheckpointState(
            epoch=epoch,
            batch_offset=offset,
            total_examples=self.total_examples,
            model_state=self.model.state_dict(),
            optimizer_state=self.optimizer.state_dict(),
            registry=self.registry,
            cursor_key=cursor_key,
            model_config=self.model_config,
            capacities=self.model.embedding_capacity(),
            accumulators={
                "train": self._train_metrics.state_dict(),
                "validation": self._val_metrics.state_dict(),
            },
            history=self.history.to_dict(),
        )
        checkpoint = self.checkpoints.save(state)
        self._written.append(checkpoint)
        return checkpoint

    def _finish_epoch(self, epoch: int) -> RegressionMetrics | None:
        train_summary = self._train_metrics.summary()
        val_summary = self._val_metrics.summary()
        self.history.train_loss.append(_nan_if_none(train_summary and train_summary.loss))
        self.history.val_loss.append(_nan_if_none(val_summary and val_summary.loss))
        self.history.val_mae.append(_nan_if_none(val_summary and val_summary.mae))
        self.history.val_rmse.append(_nan_if_none(val_summary and val_summary.rmse))
        logger.info(
            "Epoch {:03d}/{:03d} | train_loss={:.4f} val_loss={:.4f} val_mae={:.4f} val_rmse={:.4f}",
            epoch + 1,
            self.settings.num_epochs,
            self.history.train_loss[-1],
            self.history.val_loss[-1],
            self.history.val_mae[-1],
            self.history.val_rmse[-1],
        )
        self._train_metrics = MetricAccumulator()
        self._val_metrics = MetricAccumulator()
        return val_summary

    def _run_epoch(self, epoch: int, offset: int, cursor_key: list[int] | None) -> int:
        settings = self.settings
        cursor = BatchCursor(
            self.source,
            batch_size=settings.batch_size,
            offset=offset,
            after_key=cursor_key,
            limit=settings.limit,
            retry_attempts=settings.retry_attempts,
            retry_backoff=settings.retry_backoff,
        )
        every = settings.checkpoint_every
        final_epoch = epoch + 1 >= settings.num_epochs
        # An interval checkpoint is written once the next read shows the epoch
        # continues; on the last batch of a non-final epoch the boundary
        # checkpoint takes its place.
        pending: dict[str, Any] | None = None
        while True:
            try:
                batch = cursor.next_batch()
            except BaseException:
                if pending is not None:
                    self._save_checkpoint(**pending)
                raise
            if batch is None:
                break
            if pending is not None:
                position, pending = pending, None
                self._save_checkpoint(**position)

            self._process_batch(batch)
            previous_total = self.total_examples
            self.total_examples += len(batch)
            logger.debug(
                "Epoch {} | processed batch of {} (stream offset {}, total {})",
                epoch + 1,
                len(batch),
                cursor.offset,
                self.total_examples,
            )
            if every and self.total_examples // every > previous_total // every:
                pending = {"epoch": epoch, "offset": cursor.offset, "cursor_key": cursor.last_key}

        if pending is not None and final_epoch:
            self._save_checkpoint(**pending)
        return cursor.offset

    def train(self, *, resume: bool = False) -> TrainingResult:
        """
        Run (or continue) training and publish the final artifact.

        With ``resume=True`` the latest checkpoint is restored; when none
        exists the run starts from scratch.
        """
        start_time = time.time()
        if self.settings.seed is not None:
            _seed_everything(self.settings.seed)

        state: CheckpointState | None = None
        if resume:
            if self.checkpoints.latest() is not None:
                state = self.checkpoints.load(map_location=self.device)
            else:
                logger.warning("No checkpoint under {}; starting from scratch", self.checkpoints.directory)
        self._initialise(state)

        start_epoch = state.epoch if state else 0
        offset = state.batch_offset if state else 0
        cursor_key = state.cursor_key if state else None
        epoch_size = 0
        val_metrics: RegressionMetrics | None = None

        try:
            for epoch in range(start_epoch, self.settings.num_epochs):
                epoch_size = self._run_epoch(epoch, offset, cursor_key)
                val_metrics = self._finish_epoch(epoch)
                offset, cursor_key = 0, None
                if epoch + 1 < self.settings.num_epochs:
                    self._save_checkpoint(epoch=epoch + 1, offset=0, cursor_key=None)
        except (TransientStoreError, OSError):
            latest = self.checkpoints.latest()
            logger.error(
                "Training interrupted after {} examples; resume from {}",
                self.total_examples,
                latest.path if latest else "the beginning (no checkpoint written)",
            )
            raise

        if self.total_examples == 0:
            logger.warning("No examples were streamed; publishing an untrained model")

        artifact_path = write_artifact(
            self.artifact_dir,
            model=self.model,
            model_config=self.model_config,
            registry=self.registry,
            version=self.version or time.strftime("%Y%m%d%H%M%S", time.gmtime()),
            dataset_size=epoch_size,
        )

        loss_plot_path = None
        if self.loss_plot_path is not None and self.history.train_loss:
            try:
                loss_plot_path = save_training_curves(
                    self.history.to_dict(), output_path=self.loss_plot_path
                )
            except ValueError as exc:
                logger.warning("Skipping training curves: {}", exc)

        runtime = time.time() - start_time
        logger.info(
            "Training complete | examples={} epochs={} runtime={:.1f}s",
            self.total_examples,
            len(self.history.train_loss),
            runtime,
        )
        return TrainingResult(
            history=self.history,
            total_examples=self.total_examples,
            epochs_completed=len(self.history.train_loss),
            runtime_seconds=runtime,
            artifact_path=artifact_path,
            checkpoints=list(self._written),
            val_metrics=val_metrics,
            loss_plot_path=loss_plot_path,
        )


def run_directory(config: Mapping[str, Any]) -> Path:
    experiment_cfg = config.get("experiment", {})
    output_dir = Path(experiment_cfg.get("output_dir", "artifacts"))
    return output_dir / str(experiment_cfg.get("name", "experiment"))


def build_trainer(config: Mapping[str, Any], source: RatingSource) -> StreamingTrainer:
    """Wire a trainer from the nested configuration mapping."""
    settings = TrainingSettings.from_config(config)
    run_dir = run_directory(config)
    checkpoint_cfg = dict(config.get("checkpoint", {}))
    artifact_cfg = dict(config.get("artifact", {}))
    reporting_cfg = dict(config.get("reporting", {}))

    keep_last = checkpoint_cfg.get("keep_last")
    manager = CheckpointManager(
        Path(checkpoint_cfg.get("dir") or run_dir / "checkpoints"),
        keep_last=int(keep_last) if keep_last else None,
        retry_attempts=int(checkpoint_cfg.get("retry_attempts", 3)),
        retry_backoff=float(checkpoint_cfg.get("retry_backoff", 1.0)),
    )
    loss_plot = reporting_cfg.get("loss_plot_path") if reporting_cfg.get("enabled", True) else None
    return StreamingTrainer(
        source,
        settings,
        dict(config.get("model", {})),
        manager,
        Path(artifact_cfg.get("dir") or run_dir / "model"),
        version=artifact_cfg.get("version"),
        loss_plot_path=loss_plot,
    )


def run_training(
    config: Mapping[str, Any],
    *,
    resume: bool = False,
    source: RatingSource | None = None,
) -> TrainingResult:
    """Train from configuration, opening (and closing) the configured store if none is given."""
    owns_source = source is None
    if source is None:
        source = open_rating_source(config.get("data", {}))
    try:
        trainer = build_trainer(config, source)
        return trainer.train(resume=resume)
    finally:
        if owns_source:
            source.close()
