import pytest
import torch
from torch import nn

from conftest import SCENARIO_MOVIES, SCENARIO_RATINGS
from streamtower.data.features import FeatureExtractor
from streamtower.data.indexers import EntityKind, IndexRegistry
from streamtower.data.sources import InMemoryRatingSource, TransientStoreError
from streamtower.pipelines.checkpoints import CheckpointManager
from streamtower.pipelines.inference import InferenceEngine, RatingPredictor
from streamtower.pipelines.training import StreamingTrainer, TrainingSettings

SMALL_MODEL = {
    "user_encoder": {"id_embedding": {"params": {"embedding_dim": 4}}},
    "item_encoder": {"id_embedding": {"params": {"embedding_dim": 4}}},
    "merge": {"type": "dot"},
}


class ItemIndexModel(nn.Module):
    """Scores every pair by a fixed per-item-index table."""

    def __init__(self, scores):
        super().__init__()
        self.register_buffer("scores", torch.tensor(scores, dtype=torch.float32))

    def forward(self, user_inputs, item_inputs):
        return {"score": self.scores[item_inputs["indices"]]}


@pytest.fixture
def trained_engine(scenario_source, tmp_path) -> InferenceEngine:
    settings = TrainingSettings(batch_size=2, checkpoint_every=0, num_epochs=2, validation_split=0.0, seed=0)
    trainer = StreamingTrainer(
        scenario_source,
        settings,
        SMALL_MODEL,
        CheckpointManager(tmp_path / "checkpoints"),
        tmp_path / "model",
    )
    result = trainer.train()
    return InferenceEngine.from_artifact(result.artifact_path, scenario_source, current_year=2024)


def _registry(users, items) -> IndexRegistry:
    registry = IndexRegistry()
    for user_id in users:
        registry.index_of(user_id, EntityKind.USER)
    for item_id in items:
        registry.index_of(item_id, EntityKind.ITEM)
    registry.freeze()
    return registry


def test_known_pairs_score_within_range(trained_engine):
    for user_id in (1, 2, 3):
        for item_id in (10, 20, 30):
            score = trained_engine.predict(user_id, item_id)
            assert 0.0 <= score <= 10.0


def test_unknown_ids_get_cold_start_score(trained_engine):
    assert trained_engine.predict(999, 10) == 7.0
    assert trained_engine.predict(1, 999) == 7.0
    assert trained_engine.predict(999, 999) == 7.0


def test_cold_start_score_is_configurable(scenario_source):
    engine = InferenceEngine(
        ItemIndexModel([1.0]),
        _registry([1], [10]),
        scenario_source,
        cold_start_score=5.5,
    )

    assert engine.predict(2, 10) == 5.5
    with pytest.raises(ValueError):
        InferenceEngine(ItemIndexModel([1.0]), _registry([1], [10]), scenario_source, cold_start_score=11)


def test_predict_many_matches_predict(trained_engine):
    items = [30, 999, 10, 20]

    batch = trained_engine.predict_many(2, items)

    assert batch == pytest.approx([trained_engine.predict(2, item) for item in items])
    assert batch[1] == 7.0


def test_top_recommendations_exclude_rated_items(trained_engine):
    recommendations = trained_engine.top_recommendations(1, k=5)

    assert [item_id for item_id, _ in recommendations] == [30]
    assert all(0.0 <= score <= 10.0 for _, score in recommendations)


def test_top_recommendations_order_and_ties(scenario_source):
    # Scores by item: 60 -> 9, 50 -> 3, 40 -> 9, 70 -> 15 (clamped to 10), 80 -> 3.
    engine = InferenceEngine(
        ItemIndexModel([9.0, 3.0, 9.0, 15.0, 3.0]),
        _registry([3], [60, 50, 40, 70, 80]),
        scenario_source,
    )

    ranked = engine.top_recommendations(3, k=10)

    assert ranked == [(70, 10.0), (40, 9.0), (60, 9.0), (50, 3.0), (80, 3.0)]
    assert engine.top_recommendations(3, k=2) == [(70, 10.0), (40, 9.0)]


def test_top_recommendations_with_explicit_candidates(scenario_source):
    engine = InferenceEngine(
        ItemIndexModel([2.0, 8.0, 4.0]),
        _registry([1], [10, 20, 30]),
        scenario_source,
    )

    ranked = engine.top_recommendations(1, k=3, candidates=[30, 999, 20, 30])

    assert ranked == [(999, 7.0), (30, 4.0)]
    assert engine.top_recommendations(1, k=3, candidates=[20], exclude_rated=False) == [(20, 8.0)]


def test_non_positive_k_returns_nothing(trained_engine):
    assert trained_engine.top_recommendations(1, k=0) == []
    assert trained_engine.top_recommendations(1, k=-3) == []


def test_unknown_user_gets_cold_start_ranking(trained_engine):
    ranked = trained_engine.top_recommendations(999, k=2)

    assert ranked == [(10, 7.0), (20, 7.0)]


def test_engine_satisfies_predictor_protocol(trained_engine):
    assert isinstance(trained_engine, RatingPredictor)
    assert trained_engine.version


class FlakyHistorySource(InMemoryRatingSource):
    failures = 1

    def user_histories(self, user_ids):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreError("connection reset")
        return super().user_histories(user_ids)


def test_rated_item_lookup_retries_transient_failures():
    source = FlakyHistorySource.from_records(SCENARIO_RATINGS, SCENARIO_MOVIES)
    engine = InferenceEngine(
        ItemIndexModel([9.0, 8.0, 7.0]),
        _registry([1, 2, 3], [10, 20, 30]),
        source,
        extractor=FeatureExtractor(source, retry_attempts=2, retry_backoff=0.0),
    )

    assert engine.top_recommendations(1, 3) == [(30, 7.0)]
    assert source.failures == 0
