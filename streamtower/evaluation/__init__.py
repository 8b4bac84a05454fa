"""Evaluation helpers for rating-prediction quality."""

from .metrics import MetricAccumulator, RegressionMetrics  # noqa: F401
