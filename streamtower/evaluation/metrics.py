"""Rating-prediction metric utilities."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Mapping

import torch


@dataclass(frozen=True)
class RegressionMetrics:
    loss: float
    mae: float
    rmse: float
    count: int


@dataclass
class MetricAccumulator:
    """
    Running sums for MSE loss, MAE and RMSE over streamed batches.

    Values are kept as plain floats so the accumulator can be stored in a
    checkpoint and restored mid-epoch.
    """

    squared_error: float = 0.0
    absolute_error: float = 0.0
    count: int = 0

    def update(self, predictions: torch.Tensor, targets: torch.Tensor) -> None:
        if predictions.numel() == 0:
            return
        diff = (predictions.detach() - targets.detach()).float()
        self.squared_error += float((diff * diff).sum().item())
        self.absolute_error += float(diff.abs().sum().item())
        self.count += int(diff.numel())

    def summary(self) -> RegressionMetrics | None:
        if self.count == 0:
            return None
        mse = self.squared_error / self.count
        return RegressionMetrics(
            loss=mse,
            mae=self.absolute_error / self.count,
            rmse=math.sqrt(mse),
            count=self.count,
        )

    def state_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_state(cls, state: Mapping[str, Any] | None) -> "MetricAccumulator":
        if not state:
            return cls()
        return cls(
            squared_error=float(state.get("squared_error", 0.0)),
            absolute_error=float(state.get("absolute_error", 0.0)),
            count=int(state.get("count", 0)),
        )
