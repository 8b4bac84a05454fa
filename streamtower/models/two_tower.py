"""
Two-tower rating model.

The user and item towers are built independently (see ``encoders``); a merge
module turns the pair of tower outputs into a single rating on the 0-10 scale.
Swapping the merge keeps the public API stable while the architecture evolves.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import torch
from torch import nn

from ..data.features import FEATURE_DIM
from .encoders import TowerEncoder, build_mlp, build_tower_encoder

RATING_MAX = 10.0


class MLPMerge(nn.Module):
    """Feed-forward head over the concatenated tower outputs."""

    def __init__(
        self,
        input_dim: int,
        hidden_dims: Sequence[int] = (128, 64, 32),
        *,
        activation: str = "relu",
        dropout: float = 0.3,
    ) -> None:
        super().__init__()
        self.network = build_mlp(
            input_dim,
            hidden_dims,
            1,
            activation=activation,
            dropout=dropout,
        )

    def forward(
        self, user_embedding: torch.Tensor, item_embedding: torch.Tensor
    ) -> torch.Tensor:
        combined = torch.cat([user_embedding, item_embedding], dim=-1)
        return self.network(combined).squeeze(-1)


class DotProductMerge(nn.Module):
    """Dot product between tower outputs plus a learned global bias."""

    def __init__(self) -> None:
        super().__init__()
        self.bias = nn.Parameter(torch.zeros(1))

    def forward(
        self, user_embedding: torch.Tensor, item_embedding: torch.Tensor
    ) -> torch.Tensor:
        return (user_embedding * item_embedding).sum(dim=-1) + self.bias


class TwoTowerRatingModel(nn.Module):
    """
    Predict a rating in ``[0, RATING_MAX]`` from a (user, item) pair.

    Inputs for each tower are dicts with ``indices`` (long tensor) and
    ``features`` (float tensor of width ``FEATURE_DIM``).
    """

    def __init__(
        self,
        user_encoder: TowerEncoder,
        item_encoder: TowerEncoder,
        merge: nn.Module,
    ) -> None:
        super().__init__()
        self.user_encoder = user_encoder
        self.item_encoder = item_encoder
        self.merge = merge

    def forward(
        self,
        user_inputs: Mapping[str, torch.Tensor],
        item_inputs: Mapping[str, torch.Tensor],
        *,
        return_embeddings: bool = False,
    ) -> dict[str, torch.Tensor]:
        user_embedding = self.user_encoder(user_inputs)
        item_embedding = self.item_encoder(item_inputs)
        logit = self.merge(user_embedding, item_embedding)

        outputs = {"score": RATING_MAX * torch.sigmoid(logit)}
        if return_embeddings:
            outputs["user_embedding"] = user_embedding
            outputs["item_embedding"] = item_embedding
        return outputs

    def embedding_capacity(self) -> dict[str, int]:
        return {
            "users": self.user_encoder.num_embeddings,
            "items": self.item_encoder.num_embeddings,
        }


def build_merge(config: Mapping[str, Any], *, user_dim: int, item_dim: int) -> nn.Module:
    merge_cfg = dict(config.get("merge", {}))
    merge_type = str(merge_cfg.get("type", "mlp")).lower()

    if merge_type == "mlp":
        return MLPMerge(
            user_dim + item_dim,
            [int(h) for h in merge_cfg.get("hidden_dims", (128, 64, 32))],
            activation=str(merge_cfg.get("activation", "relu")),
            dropout=float(merge_cfg.get("dropout", 0.3)),
        )
    if merge_type == "dot":
        if user_dim != item_dim:
            raise ValueError(
                "Dot merge requires user and item tower outputs of equal dimension "
                f"(got {user_dim} and {item_dim})."
            )
        return DotProductMerge()
    raise ValueError(f"Unsupported merge type: {merge_type}")


def build_rating_model(
    config: Mapping[str, Any] | None,
    *,
    num_users: int,
    num_items: int,
    device: torch.device | None = None,
) -> TwoTowerRatingModel:
    """Construct the full model from the ``model`` configuration section."""
    cfg = dict(config or {})
    user_encoder = build_tower_encoder(
        cfg.get("user_encoder", {}),
        num_embeddings=num_users,
        feature_dim=FEATURE_DIM,
        device=device,
    )
    item_encoder = build_tower_encoder(
        cfg.get("item_encoder", {}),
        num_embeddings=num_items,
        feature_dim=FEATURE_DIM,
        device=device,
    )
    merge = build_merge(
        cfg, user_dim=user_encoder.output_dim, item_dim=item_encoder.output_dim
    )
    model = TwoTowerRatingModel(user_encoder, item_encoder, merge)
    if device is not None:
        model = model.to(device)
    return model
