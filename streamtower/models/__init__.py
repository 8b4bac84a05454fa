"""Model definitions for the two-tower rating architecture."""

from .encoders import (  # noqa: F401
    TowerEncoder,
    build_id_embedding,
    build_tower_encoder,
)
from .two_tower import (  # noqa: F401
    RATING_MAX,
    DotProductMerge,
    MLPMerge,
    TwoTowerRatingModel,
    build_rating_model,
)
