"""
Chunking and batching of the ordered record set.

Chunks are fetched from the store with keyset pagination (`ordinal > cursor`,
ascending, `LIMIT n`), so a new generator started from any watermark continues
exactly where the previous one stopped. A chunk shorter than requested means the
source is exhausted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence

from arn_reconciler.domain.models import Record

FetchRecords = Callable[[Optional[int], int], List[Record]]


@dataclass(frozen=True)
class Chunk:
    number: int
    records: List[Record]
    requested: int

    @property
    def exhausted(self) -> bool:
        """True when the store returned fewer rows than asked for."""
        return len(self.records) < self.requested

    @property
    def last_ordinal(self) -> Optional[int]:
        return self.records[-1].ordinal if self.records else None


def iter_chunks(
    fetch: FetchRecords,
    after: Optional[int],
    chunk_size: int,
    limit: Optional[int] = None,
) -> Iterator[Chunk]:
    """
    Yield chunks of records with ordinal strictly greater than `after`.

    Stops after the first short chunk or once `limit` records have been yielded.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if limit is not None and limit <= 0:
        return

    cursor = after
    remaining = limit
    number = 0
    while True:
        requested = chunk_size if remaining is None else min(chunk_size, remaining)
        records = fetch(cursor, requested)
        number += 1
        chunk = Chunk(number=number, records=list(records), requested=requested)
        yield chunk

        if chunk.exhausted:
            return
        cursor = chunk.last_ordinal
        if remaining is not None:
            remaining -= len(chunk.records)
            if remaining <= 0:
                return


def split_batches(records: Sequence[Record], batch_size: int) -> List[List[Record]]:
    """
    Split records into order-preserving groups of `batch_size` (last may be shorter).
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return [list(records[i : i + batch_size]) for i in range(0, len(records), batch_size)]


__all__ = ["Chunk", "FetchRecords", "iter_chunks", "split_batches"]
