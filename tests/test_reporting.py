import math

import pytest

from streamtower.reporting import save_training_curves


def test_save_training_curves_writes_png(tmp_path):
    path = save_training_curves(
        {
            "train_loss": [4.0, 3.1, 2.6],
            "val_loss": [4.4, 3.5, 3.0],
            "val_mae": [1.7, 1.5, 1.4],
            "val_rmse": [2.1, 1.9, 1.7],
        },
        output_path=tmp_path / "reports" / "loss.png",
    )

    assert path.exists()
    assert path.stat().st_size > 0


def test_epochs_without_validation_are_skipped(tmp_path):
    nan = math.nan
    path = save_training_curves(
        {"train_loss": [2.0, 1.5], "val_loss": [nan, nan], "val_mae": [nan, nan]},
        output_path=tmp_path / "loss.png",
    )

    assert path.exists()


def test_save_training_curves_rejects_empty_history(tmp_path):
    with pytest.raises(ValueError):
        save_training_curves({"train_loss": []}, output_path=tmp_path / "loss.png")
    assert not (tmp_path / "loss.png").exists()
