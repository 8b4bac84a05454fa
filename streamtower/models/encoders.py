"""
Reusable encoder building blocks for the two-tower architecture.

Each tower combines an ID embedding with a projection of the dense feature
vector, so users and items seen only a handful of times still get a
representation driven by their side information.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import torch
from torch import nn

DEFAULT_EMBEDDING_INIT: Mapping[str, Any] = {"type": "normal", "std": 0.02}

_ACTIVATIONS = {
    "relu": nn.ReLU,
    "gelu": nn.GELU,
    "tanh": nn.Tanh,
}


def _init_embedding(
    weight: torch.Tensor, init_config: Mapping[str, Any] | None = None
) -> None:
    """Initialise an embedding weight (or a slice of one) in place."""
    init_config = init_config or DEFAULT_EMBEDDING_INIT
    init_type = str(init_config.get("type", "normal")).lower()

    with torch.no_grad():
        if init_type == "normal":
            weight.normal_(mean=0.0, std=float(init_config.get("std", 0.02)))
        elif init_type == "uniform":
            bound = float(init_config.get("bound", 0.1))
            weight.uniform_(-bound, bound)
        elif init_type == "xavier_uniform":
            nn.init.xavier_uniform_(weight)
        else:
            raise ValueError(f"Unsupported embedding init type: {init_type}")


def build_id_embedding(
    config: Mapping[str, Any],
    *,
    num_embeddings: int,
    device: torch.device | None = None,
) -> nn.Embedding:
    """Embedding table sized for ``num_embeddings`` ids (at least one row)."""
    params = config.get("params", {})
    embedding = nn.Embedding(
        num_embeddings=max(int(num_embeddings), 1),
        embedding_dim=int(params.get("embedding_dim", 32)),
        max_norm=params.get("max_norm"),
    )
    _init_embedding(embedding.weight, config.get("init"))

    if device is not None:
        embedding = embedding.to(device)
    return embedding


def _get_activation(name: str) -> nn.Module:
    try:
        return _ACTIVATIONS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unsupported activation '{name}'") from None


class FeatureEncoderWrapper(nn.Module):
    """Wraps a projection network while exposing its output dimension."""

    def __init__(self, network: nn.Module, output_dim: int) -> None:
        super().__init__()
        self.network = network
        self.output_dim = output_dim

    def forward(self, inputs: torch.Tensor) -> torch.Tensor:
        return self.network(inputs)


@dataclass(frozen=True)
class FeatureEncoderConfig:
    type: str = "linear"
    output_dim: int | None = None
    hidden_dims: Iterable[int] | None = None
    activation: str = "relu"
    dropout: float = 0.0


def build_mlp(
    input_dim: int,
    hidden_dims: Iterable[int],
    output_dim: int,
    *,
    activation: str = "relu",
    dropout: float = 0.0,
) -> nn.Sequential:
    layers: list[nn.Module] = []
    prev_dim = input_dim
    for hidden_dim in hidden_dims:
        linear = nn.Linear(prev_dim, int(hidden_dim))
        nn.init.kaiming_normal_(linear.weight, nonlinearity="relu")
        layers.extend([linear, _get_activation(activation)])
        if dropout:
            layers.append(nn.Dropout(p=dropout))
        prev_dim = int(hidden_dim)

    final_linear = nn.Linear(prev_dim, output_dim)
    nn.init.xavier_uniform_(final_linear.weight)
    layers.append(final_linear)
    return nn.Sequential(*layers)


def build_feature_encoder(
    config: Mapping[str, Any] | None,
    *,
    input_dim: int,
    fallback_output_dim: int,
) -> FeatureEncoderWrapper | None:
    if input_dim == 0:
        return None

    cfg = FeatureEncoderConfig(**(config or {}))
    output_dim = int(cfg.output_dim or fallback_output_dim)

    if cfg.type == "identity":
        if input_dim != output_dim:
            raise ValueError(
                "Identity feature encoder requires input_dim == output_dim."
            )
        return FeatureEncoderWrapper(nn.Identity(), output_dim)

    if cfg.type == "linear":
        layer = nn.Linear(input_dim, output_dim)
        nn.init.xavier_uniform_(layer.weight)
        return FeatureEncoderWrapper(layer, output_dim)

    if cfg.type == "mlp":
        network = build_mlp(
            input_dim,
            [int(h) for h in (cfg.hidden_dims or [])],
            output_dim,
            activation=cfg.activation,
            dropout=cfg.dropout,
        )
        return FeatureEncoderWrapper(network, output_dim)

    raise ValueError(f"Unsupported feature encoder type: {cfg.type}")


class TowerEncoder(nn.Module):
    """
    Combines an ID embedding with an optional feature encoder.
    """

    def __init__(
        self,
        *,
        embedding: nn.Embedding,
        feature_encoder: FeatureEncoderWrapper | None,
        fusion: str,
        output_dim: int | None,
        embedding_init: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__()
        self.embedding = embedding
        self.feature_encoder = feature_encoder
        self.fusion = fusion
        self.embedding_init = dict(embedding_init or DEFAULT_EMBEDDING_INIT)
        self.id_dim = embedding.embedding_dim
        self.output_dim = self.id_dim

        if fusion not in {"identity", "sum", "concat"}:
            raise ValueError(f"Unsupported fusion strategy: {fusion}")

        if feature_encoder is None:
            self.fusion = "identity"

        if self.fusion == "concat":
            target_dim = int(output_dim or (self.id_dim + feature_encoder.output_dim))
            self.projection = nn.Linear(
                self.id_dim + feature_encoder.output_dim, target_dim
            )
            nn.init.xavier_uniform_(self.projection.weight)
            self.output_dim = target_dim

    @property
    def num_embeddings(self) -> int:
        return self.embedding.num_embeddings

    def grow(self, num_embeddings: int) -> bool:
        """
        Enlarge the embedding table to at least ``num_embeddings`` rows.

        Capacity at least doubles so a stream of new ids triggers only a
        logarithmic number of reallocations. Existing rows are copied and new
        rows use the tower's embedding init. Returns True when the table was
        replaced (its parameter object changes).
        """
        current = self.embedding.num_embeddings
        if num_embeddings <= current:
            return False
        replacement = nn.Embedding(
            max(int(num_embeddings), current * 2),
            self.id_dim,
            max_norm=self.embedding.max_norm,
        ).to(self.embedding.weight.device)
        with torch.no_grad():
            replacement.weight[:current] = self.embedding.weight
        _init_embedding(replacement.weight[current:], self.embedding_init)
        self.embedding = replacement
        return True

    def forward(self, inputs: Mapping[str, torch.Tensor]) -> torch.Tensor:
        indices = inputs["indices"]
        id_repr = self.embedding(indices)

        if self.fusion == "identity" or self.feature_encoder is None:
            return id_repr

        features = inputs.get("features")
        if features is None:
            # Fallback to id-only behaviour when features are unavailable.
            return id_repr

        feature_repr = self.feature_encoder(features)

        if self.fusion == "sum":
            if feature_repr.shape[-1] != id_repr.shape[-1]:
                raise ValueError(
                    "Feature encoder output dimension must match id embedding dimension for 'sum' fusion."
                )
            return id_repr + feature_repr

        combined = torch.cat([id_repr, feature_repr], dim=-1)
        return self.projection(combined)


def build_tower_encoder(
    config: Mapping[str, Any] | None,
    *,
    num_embeddings: int,
    feature_dim: int,
    device: torch.device | None = None,
) -> TowerEncoder:
    """
    Build one tower from its ``model.<tower>`` config section.

    Fusion defaults to ``concat`` whenever a feature vector is supplied, and
    ``sum`` requires the feature encoder to match the embedding width.
    """
    cfg = config or {}
    id_embedding_cfg = cfg.get("id_embedding", {})
    embedding = build_id_embedding(id_embedding_cfg, num_embeddings=num_embeddings, device=device)
    feature_encoder = build_feature_encoder(
        cfg.get("feature_encoder"),
        input_dim=feature_dim,
        fallback_output_dim=embedding.embedding_dim,
    )

    fusion = str(cfg.get("fusion", "concat" if feature_dim > 0 else "identity")).lower()
    if fusion == "sum" and feature_encoder is not None:
        if feature_encoder.output_dim != embedding.embedding_dim:
            raise ValueError("'sum' fusion needs feature output_dim equal to embedding_dim.")

    tower = TowerEncoder(
        embedding=embedding,
        feature_encoder=feature_encoder,
        fusion=fusion,
        output_dim=cfg.get("output_dim"),
        embedding_init=id_embedding_cfg.get("init"),
    )
    if device is not None:
        tower = tower.to(device)
    return tower
