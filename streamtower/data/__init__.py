"""Data access, streaming and feature extraction utilities."""

from .datasets import BatchTensors, encode_batch  # noqa: F401
from .features import (  # noqa: F401
    CANONICAL_GENRES,
    FEATURE_DIM,
    FeatureExtractor,
    ItemSlot,
    UserSlot,
    compute_item_features,
    compute_user_features,
    feature_names,
)
from .indexers import (  # noqa: F401
    UNKNOWN_INDEX,
    EntityKind,
    IndexMapper,
    IndexRegistry,
    build_index_mapping,
)
from .loaders import ImportSummary, import_movielens  # noqa: F401
from .samplers import is_validation_pair, validation_mask  # noqa: F401
from .schema import ItemMetadata, RatedItem, RatingExample, RatingPage  # noqa: F401
from .sources import (  # noqa: F401
    InMemoryRatingSource,
    RatingSource,
    SqlRatingSource,
    StoreConfigurationError,
    TransientStoreError,
    open_rating_source,
)
from .streaming import BatchCursor, stream_batches  # noqa: F401
