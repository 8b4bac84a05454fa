import pytest

from streamtower.data import InMemoryRatingSource

# Users 1-3, movies 10/20/30: the three-user scenario used across the suite.
SCENARIO_RATINGS = [
    (1, 10, 5.0),
    (1, 20, 3.0),
    (2, 10, 4.0),
    (2, 30, 2.0),
    (3, 20, 5.0),
]

SCENARIO_MOVIES = [
    (10, "Heat (1995)", "Action|Crime|Drama"),
    (20, "Amelie (Fabuleux destin d'Amélie Poulain, Le) (2001)", "Comedy|Drama|Romance"),
    (30, "Toy Story (1995)", "Adventure|Animation|Children|Comedy|Fantasy"),
]


def make_ratings(count: int, *, users: int = 3) -> list[tuple[int, int, float]]:
    """``count`` ratings spread round-robin over ``users`` users, each on a distinct movie."""
    return [
        (1 + idx % users, 100 + idx, float(1 + idx % 5))
        for idx in range(count)
    ]


@pytest.fixture
def scenario_source() -> InMemoryRatingSource:
    return InMemoryRatingSource.from_records(SCENARIO_RATINGS, SCENARIO_MOVIES)


@pytest.fixture
def ten_example_source() -> InMemoryRatingSource:
    ratings = make_ratings(10)
    movies = [(movie_id, f"Movie {movie_id} (1999)", "Drama") for _, movie_id, _ in ratings]
    return InMemoryRatingSource.from_records(ratings, movies)
