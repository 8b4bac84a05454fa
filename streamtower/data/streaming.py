"""
Resumable batch streaming over a rating source.

A cursor holds an explicit position (count of examples already consumed and
the ordering key of the last one), so resuming a stream is simply constructing
a cursor at the recorded position. Only one page is held in memory at a time.
"""

from __future__ import annotations

from typing import Iterator, Sequence

from .schema import RatingExample
from .sources import RatingSource, transient_retrying

DEFAULT_BATCH_SIZE = 10_000


class BatchCursor:
    """
    Pull-based cursor yielding ordered batches of rating examples.

    Parameters
    ----------
    source:
        Backing store to page through.
    batch_size:
        Maximum number of examples per batch.
    offset:
        Number of examples already consumed from the start of the stream.
    after_key:
        Ordering key of the last consumed example. When known it is used
        instead of ``offset`` to locate the next page.
    limit:
        Optional cap on the absolute stream position; examples past it are
        never yielded. The cap applies to one pass over the stream, so a
        multi-epoch run processes up to ``limit`` examples per epoch.
    retry_attempts, retry_backoff:
        Attempts and exponential backoff multiplier (seconds) for transient
        read failures.
    """

    def __init__(
        self,
        source: RatingSource,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        offset: int = 0,
        after_key: Sequence[int] | None = None,
        limit: int | None = None,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be greater than zero.")
        if offset < 0:
            raise ValueError("offset must be non-negative.")
        if limit is not None and limit <= 0:
            limit = None

        self.source = source
        self.batch_size = int(batch_size)
        self.limit = limit
        self._offset = int(offset)
        self._last_key = list(after_key) if after_key else None
        self._exhausted = False
        self._retrying = transient_retrying(retry_attempts, retry_backoff, operation="batch read")

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def last_key(self) -> list[int] | None:
        return list(self._last_key) if self._last_key else None

    def next_batch(self) -> list[RatingExample] | None:
        """Return the next batch, or ``None`` once the stream is exhausted."""
        if self._exhausted:
            return None

        size = self.batch_size
        if self.limit is not None:
            size = min(size, self.limit - self._offset)
        if size <= 0:
            self._exhausted = True
            return None

        page = self._retrying(
            self.source.read_page,
            after=self._last_key,
            offset=self._offset,
            limit=size,
        )
        if not page.examples:
            self._exhausted = True
            return None

        self._offset += len(page.examples)
        self._last_key = page.last_key
        if len(page.examples) < size:
            self._exhausted = True
        return page.examples

    def __iter__(self) -> Iterator[list[RatingExample]]:
        return self

    def __next__(self) -> list[RatingExample]:
        batch = self.next_batch()
        if batch is None:
            raise StopIteration
        return batch


def stream_batches(
    source: RatingSource,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    limit: int | None = None,
) -> Iterator[list[RatingExample]]:
    """Convenience generator over a fresh cursor starting at the beginning."""
    yield from BatchCursor(source, batch_size=batch_size, limit=limit)
