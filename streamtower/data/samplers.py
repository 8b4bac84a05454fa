"""Validation hold-out sampling."""

from __future__ import annotations

import zlib
from typing import Sequence

import numpy as np

from .schema import RatingExample

_HASH_BUCKETS = 10_000


def is_validation_pair(user_id: int, item_id: int, fraction: float, *, salt: int = 0) -> bool:
    """
    Decide deterministically whether a (user, item) pair is held out.

    The decision depends only on the identifiers, so every epoch and every
    resumed run hold out the same examples.
    """
    if fraction <= 0.0:
        return False
    if fraction >= 1.0:
        return True
    digest = zlib.crc32(f"{salt}:{user_id}:{item_id}".encode("ascii"))
    return (digest % _HASH_BUCKETS) < int(round(fraction * _HASH_BUCKETS))


def validation_mask(
    examples: Sequence[RatingExample],
    fraction: float,
    *,
    salt: int = 0,
) -> np.ndarray:
    """Boolean mask over ``examples`` marking the held-out ones."""
    return np.fromiter(
        (is_validation_pair(ex.user_id, ex.item_id, fraction, salt=salt) for ex in examples),
        dtype=bool,
        count=len(examples),
    )
