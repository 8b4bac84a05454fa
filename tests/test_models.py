import pytest
import torch

from streamtower.data.features import FEATURE_DIM
from streamtower.models import RATING_MAX, DotProductMerge, build_rating_model
from streamtower.models.encoders import build_tower_encoder


def _inputs(count: int, num_embeddings: int) -> dict:
    return {
        "indices": torch.arange(count, dtype=torch.long) % num_embeddings,
        "features": torch.rand(count, FEATURE_DIM),
    }


def test_build_tower_encoder_with_concat_fusion():
    config = {
        "id_embedding": {"params": {"embedding_dim": 8}},
        "feature_encoder": {"type": "linear", "output_dim": 4},
        "fusion": "concat",
        "output_dim": 6,
    }
    encoder = build_tower_encoder(
        config,
        num_embeddings=5,
        feature_dim=FEATURE_DIM,
        device=torch.device("cpu"),
    )

    output = encoder(_inputs(3, 5))

    assert output.shape == (3, 6)
    assert encoder.output_dim == 6


def test_tower_encoder_sum_fusion_requires_matching_dims():
    config = {
        "id_embedding": {"params": {"embedding_dim": 8}},
        "feature_encoder": {"type": "linear", "output_dim": 4},
        "fusion": "sum",
    }
    with pytest.raises(ValueError):
        build_tower_encoder(config, num_embeddings=5, feature_dim=FEATURE_DIM)


def test_tower_encoder_identity_without_features():
    encoder = build_tower_encoder(
        {"id_embedding": {"params": {"embedding_dim": 4}}},
        num_embeddings=10,
        feature_dim=0,
    )

    output = encoder({"indices": torch.tensor([0, 9])})

    assert encoder.fusion == "identity"
    assert output.shape == (2, 4)


def test_tower_grow_keeps_existing_rows():
    encoder = build_tower_encoder(
        {"id_embedding": {"params": {"embedding_dim": 4}}},
        num_embeddings=3,
        feature_dim=FEATURE_DIM,
    )
    before = encoder.embedding.weight.detach().clone()

    assert not encoder.grow(3)
    assert encoder.grow(5)
    assert encoder.num_embeddings >= 5
    assert torch.equal(encoder.embedding.weight[:3].detach(), before)


@pytest.mark.parametrize("merge", ["mlp", "dot"])
def test_rating_model_scores_lie_on_ten_point_scale(merge):
    config = {
        "user_encoder": {"id_embedding": {"params": {"embedding_dim": 8}}},
        "item_encoder": {"id_embedding": {"params": {"embedding_dim": 8}}},
        "merge": {"type": merge, "hidden_dims": [16, 8], "dropout": 0.0},
    }
    model = build_rating_model(config, num_users=4, num_items=6)
    model.eval()

    outputs = model(_inputs(5, 4), _inputs(5, 6), return_embeddings=True)

    assert outputs["score"].shape == (5,)
    assert (outputs["score"] >= 0).all() and (outputs["score"] <= RATING_MAX).all()
    assert outputs["user_embedding"].shape[0] == 5
    assert model.embedding_capacity() == {"users": 4, "items": 6}
    if merge == "dot":
        assert isinstance(model.merge, DotProductMerge)


def test_dot_merge_requires_equal_tower_dims():
    config = {
        "user_encoder": {"id_embedding": {"params": {"embedding_dim": 8}}, "output_dim": 8},
        "item_encoder": {"id_embedding": {"params": {"embedding_dim": 8}}, "output_dim": 12},
        "merge": {"type": "dot"},
    }
    with pytest.raises(ValueError):
        build_rating_model(config, num_users=2, num_items=2)


def test_unknown_merge_type_is_rejected():
    with pytest.raises(ValueError):
        build_rating_model({"merge": {"type": "cosine"}}, num_users=2, num_items=2)
