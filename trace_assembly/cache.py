"""Page merge/dedup cache.

Pages fetched on scroll are accumulated into one collection: duplicates by
id are dropped (the cached entry wins, so re-renders do not flicker) and the
result is re-sorted newest first after every merge.

A generation counter tracks filter changes. Each fetch is stamped with the
generation current when it started; a result whose stamp no longer matches
is discarded instead of merged.
"""

import logging
import threading
from enum import Enum
from typing import (
    Any,
    Callable,
    Generic,
    Hashable,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from .models import Span

logger = logging.getLogger(__name__)

T = TypeVar("T")


def span_key(span: Span) -> str:
    return span.span_id


def span_start(span: Span) -> Any:
    return span.start_time


def merge(
    existing: Iterable[T],
    incoming: Iterable[T],
    key: Callable[[T], Hashable] = span_key,
    sort_key: Callable[[T], Any] = span_start,
) -> List[T]:
    """Merge an incoming batch into an existing collection.

    Concatenates, keeps the first item per key, then sorts by `sort_key`
    descending. The sort is stable, so items with equal sort keys keep their
    relative order and re-merging a batch already merged is a no-op.

    Parameters
    ----------
    existing : Iterable[T]
        The collection held so far (newest first).
    incoming : Iterable[T]
        The newly fetched batch.
    key : Callable[[T], Hashable]
        Identity of an item; span id by default.
    sort_key : Callable[[T], Any]
        Ordering of an item; span start time by default.

    Returns
    -------
    List[T]
        Deduplicated items, newest first.
    """
    seen = set()
    merged: List[T] = []
    for batch in (existing, incoming):
        for item in batch:
            item_key = key(item)
            if item_key in seen:
                continue
            seen.add(item_key)
            merged.append(item)
    merged.sort(key=sort_key, reverse=True)
    return merged


class CacheState(str, Enum):
    EMPTY = "empty"
    POPULATED = "populated"


class PageCache(Generic[T]):
    """Owned, deduplicated, time-ordered collection of fetched items.

    One instance per active view. `items` is exposed read-only as a tuple.
    The merge step is guarded by a lock so the cache stays consistent if
    pages are merged from more than one thread.
    """

    def __init__(
        self,
        key: Callable[[T], Hashable] = span_key,
        sort_key: Callable[[T], Any] = span_start,
    ):
        self._key = key
        self._sort_key = sort_key
        self._items: Tuple[T, ...] = ()
        self._generation = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    @property
    def items(self) -> Tuple[T, ...]:
        return self._items

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> CacheState:
        return CacheState.POPULATED if self._items else CacheState.EMPTY

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def reset(self) -> int:
        """Empty the cache and start a new generation.

        Returns
        -------
        int
            The new generation, to stamp the next fetch with.
        """
        with self._lock:
            self._items = ()
            self._generation += 1
            return self._generation

    def merge_page(self, incoming: Iterable[T], generation: Optional[int] = None) -> bool:
        """Merge a fetched batch.

        Parameters
        ----------
        incoming : Iterable[T]
            The fetched items.
        generation : Optional[int]
            Generation the fetch was stamped with; None skips the check.

        Returns
        -------
        bool
            False if the batch belonged to a stale generation and was
            dropped, True if it was merged.
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(
                    f"Dropping stale page from generation {generation} "
                    f"(current {self._generation})"
                )
                return False
            self._items = tuple(
                merge(self._items, incoming, key=self._key, sort_key=self._sort_key)
            )
            return True
