import json

import pytest

from streamtower.data.indexers import (
    UNKNOWN_INDEX,
    EntityKind,
    IndexMapper,
    IndexRegistry,
    build_index_mapping,
)


def test_index_mapper_allocates_in_first_seen_order():
    mapper = build_index_mapping([42, 7, 42, 99, 7])

    assert len(mapper) == 3
    assert mapper.index_of(42) == 0
    assert mapper.index_of(7) == 1
    assert mapper.index_of(99) == 2
    assert mapper.external_id(1) == 7
    assert mapper.index_to_id == [42, 7, 99]


def test_lookup_returns_unknown_for_unseen_ids():
    mapper = build_index_mapping([1, 2])

    assert mapper.lookup(2) == 1
    assert mapper.lookup(3) == UNKNOWN_INDEX
    assert 3 not in mapper
    assert len(mapper) == 2


def test_frozen_mapper_rejects_new_ids_but_resolves_known_ones():
    mapper = build_index_mapping([5, 6])
    mapper.freeze()

    assert mapper.index_of(6) == 1
    with pytest.raises(RuntimeError):
        mapper.index_of(7)


def test_serialize_load_round_trip_survives_json():
    mapper = build_index_mapping([300, 100, 200])
    payload = json.loads(json.dumps(mapper.serialize()))

    restored = IndexMapper.load(payload)

    assert restored.index_to_id == mapper.index_to_id
    assert restored.serialize() == mapper.serialize()
    assert not restored.frozen


def test_load_accepts_unordered_pairs():
    restored = IndexMapper.load([[20, 1], [10, 0]], frozen=True)

    assert restored.index_to_id == [10, 20]
    assert restored.frozen


@pytest.mark.parametrize(
    "pairs",
    [
        [[10, 0], [20, 2]],
        [[10, 0], [10, 1]],
    ],
)
def test_load_rejects_gaps_and_duplicates(pairs):
    with pytest.raises(ValueError):
        IndexMapper.load(pairs)


def test_registry_keeps_user_and_item_spaces_separate():
    registry = IndexRegistry()

    assert registry.index_of(1, EntityKind.USER) == 0
    assert registry.index_of(1, "item") == 0
    assert registry.index_of(2, EntityKind.ITEM) == 1
    assert registry.lookup(2, EntityKind.USER) == UNKNOWN_INDEX
    assert len(registry.users) == 1
    assert len(registry.items) == 2


def test_registry_serialization_uses_artifact_keys():
    registry = IndexRegistry()
    registry.index_of(7, EntityKind.USER)
    registry.index_of(70, EntityKind.ITEM)

    payload = registry.serialize()

    assert payload == {"userIndexMap": [[7, 0]], "itemIndexMap": [[70, 0]]}
    assert IndexRegistry.load(payload) == registry


def test_registry_freeze_applies_to_both_mappers():
    registry = IndexRegistry()
    registry.index_of(1, EntityKind.USER)
    registry.freeze()

    with pytest.raises(RuntimeError):
        registry.index_of(2, EntityKind.USER)
    with pytest.raises(RuntimeError):
        registry.index_of(2, EntityKind.ITEM)


def test_registry_uses_supplied_empty_mapper():
    users = IndexMapper()
    users.freeze()
    registry = IndexRegistry(users=users)

    assert registry.users is users


def test_same_ordered_input_reproduces_identical_maps():
    stream = [(3, 30), (1, 10), (3, 20), (2, 10)]

    def build() -> IndexRegistry:
        registry = IndexRegistry()
        for user_id, item_id in stream:
            registry.index_of(user_id, EntityKind.USER)
            registry.index_of(item_id, EntityKind.ITEM)
        return registry

    assert build().serialize() == build().serialize()
