"""
Helpers for turning a streamed batch into PyTorch-friendly tensors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import torch

from .features import FeatureExtractor
from .indexers import IndexRegistry
from .schema import ItemMetadata, RatingExample


@dataclass(frozen=True)
class BatchTensors:
    """Model inputs and targets for one batch, aligned row by row."""

    user_indices: torch.Tensor
    item_indices: torch.Tensor
    user_features: torch.Tensor
    item_features: torch.Tensor
    targets: torch.Tensor

    def __len__(self) -> int:
        return int(self.targets.shape[0])

    def select(self, mask: torch.Tensor) -> "BatchTensors":
        return BatchTensors(
            user_indices=self.user_indices[mask],
            item_indices=self.item_indices[mask],
            user_features=self.user_features[mask],
            item_features=self.item_features[mask],
            targets=self.targets[mask],
        )

    def user_inputs(self) -> dict[str, torch.Tensor]:
        return {"indices": self.user_indices, "features": self.user_features}

    def item_inputs(self) -> dict[str, torch.Tensor]:
        return {"indices": self.item_indices, "features": self.item_features}


def _expand_rows(unique_ids: Sequence[int], matrix: np.ndarray, ids: Sequence[int]) -> np.ndarray:
    position = {entity_id: row for row, entity_id in enumerate(unique_ids)}
    return matrix[[position[entity_id] for entity_id in ids]]


def encode_batch(
    examples: Sequence[RatingExample],
    *,
    registry: IndexRegistry,
    extractor: FeatureExtractor,
    device: torch.device,
) -> BatchTensors:
    """
    Allocate indices in stream order and extract features for one batch.

    User features come from the source (full history); item features come from
    the metadata already carried by the streamed examples.
    """
    user_ids = [ex.user_id for ex in examples]
    item_ids = [ex.item_id for ex in examples]
    user_indices = [registry.users.index_of(uid) for uid in user_ids]
    item_indices = [registry.items.index_of(iid) for iid in item_ids]

    unique_users = list(dict.fromkeys(user_ids))
    user_matrix = extractor.user_feature_matrix(unique_users)

    metadata: dict[int, ItemMetadata] = {}
    for ex in examples:
        if ex.item_id not in metadata:
            metadata[ex.item_id] = ItemMetadata(
                item_id=ex.item_id,
                genres=ex.genres,
                release_year=ex.release_year,
            )
    unique_items = list(metadata)
    item_matrix = extractor.item_matrix_from_metadata(unique_items, metadata)

    return BatchTensors(
        user_indices=torch.as_tensor(user_indices, dtype=torch.long, device=device),
        item_indices=torch.as_tensor(item_indices, dtype=torch.long, device=device),
        user_features=torch.from_numpy(_expand_rows(unique_users, user_matrix, user_ids)).to(device),
        item_features=torch.from_numpy(_expand_rows(unique_items, item_matrix, item_ids)).to(device),
        targets=torch.as_tensor([ex.target for ex in examples], dtype=torch.float32, device=device),
    )
