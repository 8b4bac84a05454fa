import numpy as np
import pytest

from streamtower.data.features import (
    CANONICAL_GENRES,
    FEATURE_DIM,
    GENRE_SLOTS,
    FeatureExtractor,
    ItemSlot,
    UserSlot,
    canonical_genres,
    compute_item_features,
    compute_user_features,
    feature_names,
)
from streamtower.data.indexers import EntityKind
from streamtower.data.schema import ItemMetadata, RatedItem
from streamtower.data.sources import InMemoryRatingSource, TransientStoreError


def test_taxonomy_has_nineteen_ordered_genres():
    assert len(CANONICAL_GENRES) == 19
    assert CANONICAL_GENRES[0] == "Action"
    assert CANONICAL_GENRES[-1] == "Western"
    assert GENRE_SLOTS["Drama"] == 6


def test_source_labels_map_onto_canonical_genres():
    assert canonical_genres(["Children"]) == {"Family"}
    assert canonical_genres(["Sci-Fi", "Musical"]) == {"Science Fiction", "Music"}
    assert canonical_genres(["Film-Noir"]) == {"Crime", "Mystery"}
    assert canonical_genres(["IMAX", "(no genres listed)"]) == set()
    assert canonical_genres(["Drama", "Drama"]) == {"Drama"}


def test_user_drama_slot_averages_normalised_ratings(scenario_source):
    extractor = FeatureExtractor(scenario_source)

    vector = extractor.user_features(1)

    assert vector[GENRE_SLOTS["Drama"]] == pytest.approx(0.8)
    # Action only on movie 10 (rated 5), Comedy only on movie 20 (rated 3).
    assert vector[GENRE_SLOTS["Action"]] == pytest.approx(1.0)
    assert vector[GENRE_SLOTS["Comedy"]] == pytest.approx(0.6)
    assert vector[GENRE_SLOTS["Western"]] == 0.0


def test_user_trailing_statistics():
    history = [
        RatedItem(item_id=1, rating=5.0, genres=("Drama",)),
        RatedItem(item_id=2, rating=3.0, genres=("Drama",)),
        RatedItem(item_id=3, rating=1.0, genres=()),
        RatedItem(item_id=4, rating=4.0, genres=()),
    ]

    vector = compute_user_features(history)

    ratings = np.array([5.0, 3.0, 1.0, 4.0])
    assert vector[UserSlot.MEAN_RATING] == pytest.approx(ratings.mean() / 5)
    assert vector[UserSlot.RATING_VARIANCE] == pytest.approx(ratings.var() / 5)
    assert vector[UserSlot.INTERACTION_COUNT] == pytest.approx(0.04)
    assert vector[UserSlot.HIGH_RATING_FRACTION] == pytest.approx(0.5)
    assert vector[UserSlot.LOW_RATING_FRACTION] == pytest.approx(0.25)


def test_user_count_saturates_and_variance_stays_scaled():
    history = [RatedItem(item_id=i, rating=1.0 if i % 2 else 5.0, genres=()) for i in range(250)]

    vector = compute_user_features(history)

    assert vector[UserSlot.RATING_VARIANCE] == pytest.approx(0.8)
    assert vector[UserSlot.INTERACTION_COUNT] == 1.0


def test_entities_without_data_get_all_zero_vectors(scenario_source):
    extractor = FeatureExtractor(scenario_source)

    assert not compute_user_features([]).any()
    assert not compute_item_features(None).any()
    assert not extractor.user_features(999).any()
    assert not extractor.item_features(999).any()
    assert extractor.user_features(999).shape == (FEATURE_DIM,)


def test_item_features_fill_genres_decade_and_recency():
    metadata = ItemMetadata(item_id=1, title="Heat (1995)", genres=("Action", "Crime", "Drama"), release_year=1995)

    vector = compute_item_features(metadata, current_year=2020)

    for genre in ("Action", "Crime", "Drama"):
        assert vector[GENRE_SLOTS[genre]] == 1.0
    assert vector[GENRE_SLOTS["Comedy"]] == 0.0
    assert vector[ItemSlot.GENRE_COUNT] == pytest.approx(0.6)
    assert vector[ItemSlot.DECADE_1990S] == 1.0
    assert vector[ItemSlot.DECADE_2000S] == 0.0
    assert vector[ItemSlot.RECENCY] == pytest.approx(45 / 70)


def test_item_without_year_keeps_genres_and_zeroes_year_slots():
    metadata = ItemMetadata(item_id=2, title="Untitled", genres=("Film-Noir",), release_year=None)

    vector = compute_item_features(metadata, current_year=2020)

    assert vector[GENRE_SLOTS["Crime"]] == 1.0
    assert vector[GENRE_SLOTS["Mystery"]] == 1.0
    assert vector[ItemSlot.RECENCY] == 0.0
    assert not vector[ItemSlot.DECADE_1970S : ItemSlot.DECADE_2020S + 1].any()


def test_old_release_has_no_decade_and_zero_recency():
    metadata = ItemMetadata(item_id=3, title="Metropolis (1927)", genres=(), release_year=1927)

    vector = compute_item_features(metadata, current_year=2020)

    assert not vector.any()


def test_all_slots_lie_in_unit_interval(scenario_source):
    extractor = FeatureExtractor(scenario_source, current_year=2024)

    users = extractor.user_feature_matrix([1, 2, 3])
    items = extractor.item_feature_matrix([10, 20, 30])

    for matrix in (users, items):
        assert matrix.dtype == np.float32
        assert matrix.shape[1] == FEATURE_DIM
        assert (matrix >= 0.0).all() and (matrix <= 1.0).all()


def test_item_matrix_preserves_request_order(scenario_source):
    extractor = FeatureExtractor(scenario_source, current_year=2024)

    matrix = extractor.item_feature_matrix([30, 10])

    assert matrix[0][GENRE_SLOTS["Family"]] == 1.0
    assert matrix[1][GENRE_SLOTS["Action"]] == 1.0


def test_extractor_reflects_current_source_contents():
    source = InMemoryRatingSource.from_records([(1, 10, 2.0)], [(10, "A (2000)", "Drama")])
    before = FeatureExtractor(source).user_features(1)

    updated = InMemoryRatingSource.from_records(
        [(1, 10, 2.0), (1, 11, 5.0)], [(10, "A (2000)", "Drama"), (11, "B (2001)", "Drama")]
    )
    after = FeatureExtractor(updated).user_features(1)

    assert before[GENRE_SLOTS["Drama"]] == pytest.approx(0.4)
    assert after[GENRE_SLOTS["Drama"]] == pytest.approx(0.7)


def test_feature_names_cover_every_slot():
    user_names = feature_names(EntityKind.USER)
    item_names = feature_names("item")

    assert len(user_names) == len(item_names) == FEATURE_DIM
    assert user_names[6] == "genre:Drama"
    assert user_names[UserSlot.MEAN_RATING] == "mean_rating"
    assert item_names[ItemSlot.RECENCY] == "recency"
    assert item_names[-1] == f"unused:{FEATURE_DIM - 1}"


def test_slot_layout_fits_feature_width():
    assert max(UserSlot) < FEATURE_DIM
    assert max(ItemSlot) < FEATURE_DIM
    assert min(UserSlot) == min(ItemSlot) == len(CANONICAL_GENRES)


class FlakySource(InMemoryRatingSource):
    """Fails the first ``failures`` history and metadata reads."""

    failures = 1

    def user_histories(self, user_ids):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreError("connection reset")
        return super().user_histories(user_ids)

    def item_metadata(self, item_ids):
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreError("connection reset")
        return super().item_metadata(item_ids)


def test_extractor_retries_transient_reads():
    source = FlakySource.from_records([(1, 10, 5.0)], [(10, "Heat (1995)", "Drama")])
    extractor = FeatureExtractor(source, retry_attempts=2, retry_backoff=0.0)

    user = extractor.user_features(1)
    source.failures = 1
    item = extractor.item_features(10)

    assert user[GENRE_SLOTS["Drama"]] == 1.0
    assert item[GENRE_SLOTS["Drama"]] == 1.0


def test_extractor_gives_up_after_retry_budget():
    source = FlakySource.from_records([(1, 10, 5.0)])
    source.failures = 2
    extractor = FeatureExtractor(source, retry_attempts=2, retry_backoff=0.0)

    with pytest.raises(TransientStoreError):
        extractor.user_features(1)
