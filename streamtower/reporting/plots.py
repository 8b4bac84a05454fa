"""Training curves written next to the published artifact."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Mapping, Sequence

import matplotlib

# Headless backend; training usually runs without a display.
matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt  # noqa: E402

LOSS_SERIES = {"train_loss": "train", "val_loss": "validation"}
ERROR_SERIES = {"val_mae": "validation MAE", "val_rmse": "validation RMSE"}


def _finite_points(values: Sequence[float]) -> tuple[list[int], list[float]]:
    """Epoch numbers (1-based) and values, skipping epochs without a measurement."""
    epochs, kept = [], []
    for epoch, value in enumerate(values, start=1):
        if value is not None and not math.isnan(value):
            epochs.append(epoch)
            kept.append(float(value))
    return epochs, kept


def _plot_series(ax, history: Mapping[str, Sequence[float]], labels: Mapping[str, str]) -> bool:
    plotted = False
    for key, label in labels.items():
        epochs, values = _finite_points(history.get(key, ()))
        if not values:
            continue
        ax.plot(epochs, values, marker="o", linestyle="-", label=label)
        plotted = True
    if plotted:
        ax.set_xlabel("Epoch")
        ax.grid(True, linestyle="--", linewidth=0.5, alpha=0.7)
        ax.legend()
    return plotted


def save_training_curves(
    history: Mapping[str, Sequence[float]],
    *,
    output_path: Path | str,
    title: str = "Rating model training",
) -> Path:
    """
    Save per-epoch loss curves and, when available, validation error curves.

    Parameters
    ----------
    history:
        Mapping with any of ``train_loss``, ``val_loss``, ``val_mae`` and
        ``val_rmse``, each ordered by epoch. NaN entries mark epochs without
        held-out examples and are left out of the plot.
    output_path:
        Target image path. Parent directories are created.
    """
    output_path = Path(output_path)
    has_errors = any(_finite_points(history.get(key, ()))[1] for key in ERROR_SERIES)

    ncols = 2 if has_errors else 1
    fig, axes = plt.subplots(1, ncols, figsize=(7 * ncols, 5), squeeze=False)
    loss_ax = axes[0][0]
    if not _plot_series(loss_ax, history, LOSS_SERIES):
        plt.close(fig)
        raise ValueError("Training history has no loss values; nothing to plot.")
    loss_ax.set_ylabel("MSE (0-10 scale)")
    loss_ax.set_title("Loss")

    if has_errors:
        error_ax = axes[0][1]
        _plot_series(error_ax, history, ERROR_SERIES)
        error_ax.set_ylabel("Rating error")
        error_ax.set_title("Validation error")

    fig.suptitle(title)
    fig.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
    return output_path
