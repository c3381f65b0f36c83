"""Collects changed file ids during a pass and invalidates them once."""

from __future__ import annotations

from typing import Iterable, Set

from .interfaces import InvalidationSink


class InvalidationBatcher:
    """Accumulates file ids for one pass; ``flush`` emits a single invalidation.

    Used as a context manager, pending ids are flushed on exit whether or
    not the pass raised.
    """

    def __init__(self, sink: InvalidationSink) -> None:
        self.sink = sink
        self._pending: Set[int] = set()

    def add(self, file_ids: Iterable[int]) -> None:
        self._pending.update(int(fid) for fid in file_ids)

    @property
    def pending(self) -> Set[int]:
        return set(self._pending)

    def flush(self) -> Set[int]:
        flushed = self._pending
        self._pending = set()
        if flushed:
            self.sink.invalidate(set(flushed))
        return flushed

    def __enter__(self) -> "InvalidationBatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.flush()
