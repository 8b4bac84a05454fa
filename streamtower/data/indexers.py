"""
Indexing utilities that map raw identifiers to contiguous integer ranges.

Mappings grow append-only while the training stream is consumed, so index
assignment follows first-seen order and replaying the same ordered stream
reproduces identical maps. Once training finishes the maps are frozen and
serialised next to the model weights.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

UNKNOWN_INDEX = -1


class EntityKind(str, Enum):
    USER = "user"
    ITEM = "item"


class IndexMapper:
    """Bidirectional mapping between raw IDs and contiguous indices."""

    def __init__(self) -> None:
        self._id_to_index: dict[int, int] = {}
        self._index_to_id: list[int] = []
        self._frozen = False

    def __len__(self) -> int:
        return len(self._index_to_id)

    def __contains__(self, raw_id: object) -> bool:
        return raw_id in self._id_to_index

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def index_to_id(self) -> list[int]:
        return list(self._index_to_id)

    def index_of(self, raw_id: int) -> int:
        """Return the index for ``raw_id``, allocating the next one on first sight."""
        index = self._id_to_index.get(raw_id)
        if index is not None:
            return index
        if self._frozen:
            raise RuntimeError(f"Cannot allocate index for ID '{raw_id}': mapping is frozen")
        index = len(self._index_to_id)
        self._id_to_index[raw_id] = index
        self._index_to_id.append(raw_id)
        return index

    def lookup(self, raw_id: int) -> int:
        """Return the index for ``raw_id`` or ``UNKNOWN_INDEX`` when it was never seen."""
        return self._id_to_index.get(raw_id, UNKNOWN_INDEX)

    def external_id(self, index: int) -> int:
        if index < 0 or index >= len(self._index_to_id):
            raise IndexError(f"Index {index} out of bounds for mapping")
        return self._index_to_id[index]

    def freeze(self) -> None:
        self._frozen = True

    def serialize(self) -> list[list[int]]:
        """Return ``[externalId, denseIndex]`` pairs in index order."""
        return [[raw_id, index] for index, raw_id in enumerate(self._index_to_id)]

    @classmethod
    def load(cls, pairs: Iterable[Sequence[Any]], *, frozen: bool = False) -> "IndexMapper":
        """
        Rebuild a mapper from ``[externalId, denseIndex]`` pairs.

        Pairs may arrive in any order but must cover ``0..n-1`` exactly once.
        """
        ordered = sorted(((int(index), int(raw_id)) for raw_id, index in pairs))
        mapper = cls()
        for expected, (index, raw_id) in enumerate(ordered):
            if index != expected:
                raise ValueError(
                    f"Index mapping is not contiguous: expected {expected}, found {index}"
                )
            if raw_id in mapper._id_to_index:
                raise ValueError(f"Duplicate ID '{raw_id}' in index mapping")
            mapper._id_to_index[raw_id] = index
            mapper._index_to_id.append(raw_id)
        mapper._frozen = frozen
        return mapper


def build_index_mapping(values: Iterable[int]) -> IndexMapper:
    """
    Create an IndexMapper that preserves the order of first appearance.

    Parameters
    ----------
    values:
        Iterable of raw identifiers (user IDs, item IDs, etc.).
    """
    mapper = IndexMapper()
    for value in values:
        mapper.index_of(value)
    return mapper


class IndexRegistry:
    """User and item mappers, shared by training and inference."""

    def __init__(
        self,
        users: IndexMapper | None = None,
        items: IndexMapper | None = None,
    ) -> None:
        self.users = users if users is not None else IndexMapper()
        self.items = items if items is not None else IndexMapper()

    def mapper(self, kind: EntityKind | str) -> IndexMapper:
        kind = EntityKind(kind)
        return self.users if kind is EntityKind.USER else self.items

    def index_of(self, external_id: int, kind: EntityKind | str) -> int:
        return self.mapper(kind).index_of(external_id)

    def lookup(self, external_id: int, kind: EntityKind | str) -> int:
        return self.mapper(kind).lookup(external_id)

    def freeze(self) -> None:
        self.users.freeze()
        self.items.freeze()

    def serialize(self) -> dict[str, list[list[int]]]:
        return {
            "userIndexMap": self.users.serialize(),
            "itemIndexMap": self.items.serialize(),
        }

    @classmethod
    def load(cls, payload: Mapping[str, Any], *, frozen: bool = False) -> "IndexRegistry":
        return cls(
            users=IndexMapper.load(payload.get("userIndexMap", []), frozen=frozen),
            items=IndexMapper.load(payload.get("itemIndexMap", []), frozen=frozen),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IndexRegistry):
            return NotImplemented
        return self.serialize() == other.serialize()
