import importlib.util
from pathlib import Path

import pytest
import yaml

from test_loaders import MOVIES_CSV, RATINGS_CSV

SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "scripts"


def _load_script(name: str):
    module_spec = importlib.util.spec_from_file_location(f"script_{name}", SCRIPTS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture
def workspace(tmp_path):
    data_dir = tmp_path / "ml"
    data_dir.mkdir()
    (data_dir / "ratings.csv").write_text(RATINGS_CSV, encoding="utf-8")
    (data_dir / "movies.csv").write_text(MOVIES_CSV, encoding="utf-8")
    config = {
        "experiment": {"name": "cli", "output_dir": str(tmp_path / "artifacts"), "seed": 0},
        "data": {"url": f"sqlite:///{tmp_path / 'ml.db'}", "retry_backoff": 0.0},
        "training": {"batch_size": 2, "num_epochs": 1, "validation_split": 0.0},
        "model": {
            "user_encoder": {"id_embedding": {"params": {"embedding_dim": 4}}},
            "item_encoder": {"id_embedding": {"params": {"embedding_dim": 4}}},
            "merge": {"type": "mlp", "hidden_dims": [8], "dropout": 0.0},
        },
        "checkpoint": {"every": 2},
        "inference": {"cold_start_score": 7.0},
        "reporting": {"enabled": False},
        "logging": {"level": "WARNING"},
    }
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return tmp_path, config_path, data_dir


def test_cli_flags_override_config_and_test_preset(workspace):
    _, config_path, _ = workspace
    train = _load_script("train")

    args = train.parse_args(["--config", str(config_path), "--test", "--epochs", "3", "--limit", "50"])
    config = train.build_run_config(args)

    assert config["training"]["batch_size"] == 2000
    assert config["checkpoint"]["every"] == 5000
    assert config["training"]["num_epochs"] == 3
    assert config["data"]["limit"] == 50


def test_train_exits_with_config_error_for_missing_file(tmp_path):
    train = _load_script("train")

    assert train.main(["--config", str(tmp_path / "missing.yaml")]) == 2


def test_train_exits_with_config_error_for_missing_store(workspace):
    tmp_path, config_path, _ = workspace
    # No import has run, so the ratings table does not exist.
    assert _load_script("train").main(["--config", str(config_path)]) == 2


def test_import_train_and_recommend_end_to_end(workspace, capsys):
    tmp_path, config_path, data_dir = workspace

    assert _load_script("load_movielens").main(["--config", str(config_path), "--data-dir", str(data_dir)]) == 0
    assert _load_script("train").main(["--config", str(config_path), "--checkpoint-every", "4"]) == 0

    artifact = tmp_path / "artifacts" / "cli" / "model"
    assert (artifact / "mappings.json").exists()
    assert (tmp_path / "artifacts" / "cli" / "checkpoints" / "ckpt-4").exists()

    recommend = _load_script("recommend")
    capsys.readouterr()
    assert recommend.main(["--config", str(config_path), "predict", "999", "10"]) == 0
    assert capsys.readouterr().out.strip() == "999\t10\t7.000"

    assert recommend.main(["--config", str(config_path), "top", "1", "-k", "5"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert [line.split("\t")[1] for line in lines] == ["30"]


def test_train_resume_flag_continues_from_checkpoint(workspace):
    tmp_path, config_path, data_dir = workspace
    _load_script("load_movielens").main(["--config", str(config_path), "--data-dir", str(data_dir)])
    train = _load_script("train")

    assert train.main(["--config", str(config_path)]) == 0
    assert train.main(["--config", str(config_path), "--resume"]) == 0
