"""
Rating prediction and top-K recommendation from a published artifact.

Feature vectors are extracted fresh for every request, so predictions reflect
the current contents of the store while embeddings come from the artifact.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Protocol, Sequence, runtime_checkable

import numpy as np
import torch
from loguru import logger

from ..data.features import FeatureExtractor
from ..data.indexers import UNKNOWN_INDEX, EntityKind, IndexRegistry
from ..data.sources import RatingSource
from ..models import RATING_MAX, TwoTowerRatingModel
from .artifacts import read_artifact

DEFAULT_COLD_START_SCORE = 7.0


@runtime_checkable
class RatingPredictor(Protocol):
    """Scoring interface consumed by serving and traffic-splitting layers."""

    def predict(self, user_id: int, item_id: int) -> float:
        ...

    def top_recommendations(
        self,
        user_id: int,
        k: int,
        candidates: Iterable[int] | None = None,
    ) -> list[tuple[int, float]]:
        ...


class InferenceEngine:
    """
    Scores (user, item) pairs on the 0-10 scale with a trained two-tower model.

    Pairs involving an id absent from the artifact's index maps score
    ``cold_start_score`` instead of raising.
    """

    def __init__(
        self,
        model: TwoTowerRatingModel,
        registry: IndexRegistry,
        source: RatingSource,
        *,
        cold_start_score: float = DEFAULT_COLD_START_SCORE,
        device: str | torch.device = "cpu",
        batch_size: int = 4096,
        extractor: FeatureExtractor | None = None,
        version: str = "",
    ) -> None:
        if not 0.0 <= cold_start_score <= RATING_MAX:
            raise ValueError(f"cold_start_score must lie in [0, {RATING_MAX}].")
        self.device = torch.device(device)
        self.model = model.to(self.device).eval()
        self.registry = registry
        self.source = source
        self.extractor = extractor or FeatureExtractor(source)
        self.cold_start_score = float(cold_start_score)
        self.batch_size = max(int(batch_size), 1)
        self.version = version

    @classmethod
    def from_artifact(
        cls,
        path: Path | str,
        source: RatingSource,
        *,
        cold_start_score: float = DEFAULT_COLD_START_SCORE,
        device: str | torch.device = "cpu",
        current_year: int | None = None,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
    ) -> "InferenceEngine":
        artifact = read_artifact(path, device=device)
        logger.info(
            "Loaded artifact {} | version={} users={} items={}",
            artifact.path,
            artifact.version,
            len(artifact.registry.users),
            len(artifact.registry.items),
        )
        return cls(
            artifact.model,
            artifact.registry,
            source,
            cold_start_score=cold_start_score,
            device=device,
            extractor=FeatureExtractor(
                source,
                current_year=current_year,
                retry_attempts=retry_attempts,
                retry_backoff=retry_backoff,
            ),
            version=artifact.version,
        )

    def predict(self, user_id: int, item_id: int) -> float:
        return self.predict_many(user_id, [item_id])[0]

    def predict_many(self, user_id: int, item_ids: Sequence[int]) -> list[float]:
        """Score ``item_ids`` for one user; result order matches ``item_ids``."""
        scores = np.full(len(item_ids), self.cold_start_score, dtype=np.float64)
        user_index = self.registry.lookup(user_id, EntityKind.USER)
        if user_index == UNKNOWN_INDEX or not len(item_ids):
            return scores.tolist()

        item_indices = np.array(
            [self.registry.lookup(item_id, EntityKind.ITEM) for item_id in item_ids],
            dtype=np.int64,
        )
        known = np.flatnonzero(item_indices != UNKNOWN_INDEX)
        if known.size == 0:
            return scores.tolist()

        user_vector = torch.from_numpy(self.extractor.user_features(user_id)).to(self.device)
        for start in range(0, known.size, self.batch_size):
            positions = known[start : start + self.batch_size]
            item_matrix = self.extractor.item_feature_matrix([item_ids[pos] for pos in positions])
            scores[positions] = self._score(
                user_index, user_vector, item_indices[positions], item_matrix
            )
        return scores.tolist()

    def _score(
        self,
        user_index: int,
        user_vector: torch.Tensor,
        item_indices: np.ndarray,
        item_matrix: np.ndarray,
    ) -> np.ndarray:
        size = len(item_indices)
        user_inputs = {
            "indices": torch.full((size,), user_index, dtype=torch.long, device=self.device),
            "features": user_vector.unsqueeze(0).expand(size, -1),
        }
        item_inputs = {
            "indices": torch.from_numpy(item_indices).to(self.device),
            "features": torch.from_numpy(item_matrix).to(self.device),
        }
        with torch.inference_mode():
            output = self.model(user_inputs, item_inputs)["score"]
        return output.clamp(0.0, RATING_MAX).double().cpu().numpy()

    def top_recommendations(
        self,
        user_id: int,
        k: int,
        candidates: Iterable[int] | None = None,
        *,
        exclude_rated: bool = True,
    ) -> list[tuple[int, float]]:
        """
        Return at most ``k`` ``(item_id, score)`` pairs, best first.

        Candidates default to every item in the artifact. Items the user has
        already rated are skipped unless ``exclude_rated`` is False. Ties are
        broken by ascending item id.
        """
        if k <= 0:
            return []
        pool = list(dict.fromkeys(
            self.registry.items.index_to_id if candidates is None else candidates
        ))
        if exclude_rated:
            history = self.extractor.user_histories([user_id]).get(user_id, [])
            rated = {entry.item_id for entry in history}
            pool = [item_id for item_id in pool if item_id not in rated]

        scores = self.predict_many(user_id, pool)
        ranked = sorted(zip(pool, scores), key=lambda pair: (-pair[1], pair[0]))
        return [(int(item_id), float(score)) for item_id, score in ranked[:k]]
