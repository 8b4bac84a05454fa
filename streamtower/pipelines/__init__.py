"""Training, checkpointing, artifact publishing and inference pipelines."""

from .artifacts import TrainedArtifact, read_artifact, write_artifact  # noqa: F401
from .checkpoints import Checkpoint, CheckpointManager, CheckpointState  # noqa: F401
from .inference import InferenceEngine, RatingPredictor  # noqa: F401
from .training import (  # noqa: F401
    StreamingTrainer,
    TrainingHistory,
    TrainingResult,
    TrainingSettings,
    build_trainer,
    run_training,
)
