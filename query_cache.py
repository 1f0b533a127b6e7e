"""
query_cache.py
==============
Keyed response cache with request coalescing and stale-while-revalidate.

Keys are tuples such as ``('encounters', 'detail', '01H...')``.  A read
through :meth:`QueryCache.fetch` either answers from a fresh entry, answers
from a stale entry while refetching it in the background, joins a fetch that
is already in flight for the same key, or starts a new fetch.  Fetches run on
a small worker pool; the entry map is guarded by one lock that is never held
while a fetcher runs.

Usage
-----
::

    cache = QueryCache(stale_time=300)
    page = cache.fetch(('encounters', 'list', {'lat': 1.0}),
                       lambda: api.list_encounters(1.0, 2.0).unwrap())
    unsubscribe = cache.subscribe(('encounters', 'list', {'lat': 1.0}), print)
    cache.invalidate(('encounters', 'list'))
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

logger = logging.getLogger('ghostatlas.cache')

Fetcher = Callable[[], Any]
Listener = Callable[['QueryState'], None]


def _freeze(value: Any) -> Hashable:
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, set):
        return tuple(sorted(_freeze(v) for v in value))
    return value


def make_key(*parts: Any) -> Tuple:
    """Build a cache key; dict parts are frozen so equal params give equal keys."""
    return tuple(_freeze(p) for p in parts)


@dataclass(frozen=True)
class QueryState:
    """Snapshot of one cache entry handed to subscribers."""

    key: Tuple
    data: Any = None
    error: Optional[BaseException] = None
    updated_at: Optional[float] = None
    is_fetching: bool = False
    is_invalidated: bool = False

    @property
    def status(self) -> str:
        if self.data is None and self.error is not None:
            return 'error'
        if self.updated_at is None:
            return 'loading' if self.is_fetching else 'idle'
        return 'success'


class _Entry:
    __slots__ = ('data', 'error', 'updated_at', 'fetcher', 'future',
                 'invalidated', 'listeners', 'last_used', 'stale_time',
                 'generation', 'fetch_generation')

    def __init__(self, now: float) -> None:
        self.data = None
        self.error = None
        self.updated_at: Optional[float] = None
        self.fetcher: Optional[Fetcher] = None
        self.future: Optional[Future] = None
        self.invalidated = False
        self.listeners: List[Listener] = []
        self.last_used = now
        self.stale_time: Optional[float] = None
        # Bumped by every write and invalidation; a fetch started under an
        # older generation must not overwrite the entry.
        self.generation = 0
        self.fetch_generation = -1

    @property
    def in_flight(self) -> bool:
        return self.future is not None and not self.future.done()


def _completed(value: Any) -> Future:
    future: Future = Future()
    future.set_result(value)
    return future


class QueryCache:
    """Thread-safe query cache.

    Args:
        stale_time:  Seconds an entry stays fresh unless a read overrides it.
        gc_time:     Seconds an unused entry without subscribers is kept.
        clock:       Monotonic time source (injectable for tests).
        max_workers: Size of the fetch worker pool.
    """

    def __init__(self, stale_time: float = 300, gc_time: float = 600,
                 clock: Callable[[], float] = time.monotonic,
                 max_workers: int = 4) -> None:
        self.stale_time = stale_time
        self.gc_time = gc_time
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple, _Entry] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix='ghostatlas-cache')

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_future(self, key, fetcher: Fetcher, stale_time: Optional[float] = None,
                     force: bool = False) -> Future:
        """Return a future for the value under *key*.

        * a fresh entry resolves immediately;
        * a stale or invalidated entry resolves immediately with the old value
          and starts one background refetch (unless *force*);
        * a fetch already in flight for *key* is shared rather than repeated;
        * otherwise *fetcher* is scheduled on the worker pool.
        """
        key = make_key(*key)
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry(now)
            entry.fetcher = fetcher
            entry.last_used = now
            if stale_time is not None:
                entry.stale_time = stale_time

            has_data = entry.updated_at is not None
            if entry.in_flight:
                if has_data and not force:
                    return _completed(entry.data)
                if entry.fetch_generation == entry.generation:
                    return entry.future
            if has_data and not force:
                if not self._is_stale(entry, now):
                    return _completed(entry.data)
                logger.debug("Serving stale %s while revalidating", key)
                self._start(key, entry)
                return _completed(entry.data)
            future = self._start(key, entry)
        self._notify(key)
        return future

    def fetch(self, key, fetcher: Fetcher, stale_time: Optional[float] = None,
              force: bool = False, timeout: Optional[float] = None) -> Any:
        """Blocking form of :meth:`fetch_future`; re-raises the fetcher's error."""
        return self.fetch_future(key, fetcher, stale_time=stale_time,
                                 force=force).result(timeout=timeout)

    def get_state(self, key) -> QueryState:
        key = make_key(*key)
        with self._lock:
            return self._snapshot(key, self._entries.get(key))

    def get_data(self, key) -> Any:
        return self.get_state(key).data

    def is_stale(self, key) -> bool:
        key = make_key(*key)
        with self._lock:
            entry = self._entries.get(key)
            return entry is None or self._is_stale(entry, self._clock())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_data(self, key, updater) -> Any:
        """Replace the cached value under *key*.

        *updater* is either the new value or a callable receiving the current
        value (``None`` when absent) and returning the new one.
        """
        key = make_key(*key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry(self._clock())
            value = updater(entry.data) if callable(updater) else updater
            entry.data = value
            entry.error = None
            entry.generation += 1
            entry.updated_at = self._clock()
            entry.invalidated = False
        self._notify(key)
        return value

    def invalidate(self, prefix=()) -> int:
        """Mark every entry whose key starts with *prefix* as stale.

        Entries that have subscribers and a known fetcher are refetched in the
        background straight away; the rest refetch on their next read.

        Returns:
            Number of entries invalidated.
        """
        prefix = make_key(*prefix)
        touched = []
        with self._lock:
            for key, entry in self._entries.items():
                if key[:len(prefix)] != prefix:
                    continue
                entry.invalidated = True
                entry.generation += 1
                touched.append(key)
                if entry.listeners and entry.fetcher is not None and not entry.in_flight:
                    self._start(key, entry)
        if touched:
            logger.debug("Invalidated %d entr%s under %s", len(touched),
                         'y' if len(touched) == 1 else 'ies', prefix)
        for key in touched:
            self._notify(key)
        return len(touched)

    def remove(self, prefix) -> int:
        prefix = make_key(*prefix)
        with self._lock:
            doomed = [k for k in self._entries if k[:len(prefix)] == prefix]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # ------------------------------------------------------------------
    # Subscriptions & housekeeping
    # ------------------------------------------------------------------

    def subscribe(self, key, listener: Listener) -> Callable[[], None]:
        """Call *listener* with a :class:`QueryState` whenever *key* changes.

        Returns:
            A function that removes the subscription.
        """
        key = make_key(*key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry(self._clock())
            entry.listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                current = self._entries.get(key)
                if current is not None and listener in current.listeners:
                    current.listeners.remove(listener)
                    current.last_used = self._clock()
        return unsubscribe

    def collect_garbage(self) -> int:
        """Drop entries unused for ``gc_time`` that nobody is subscribed to."""
        with self._lock:
            now = self._clock()
            doomed = [key for key, entry in self._entries.items()
                      if not entry.listeners and not entry.in_flight
                      and now - entry.last_used >= self.gc_time]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Garbage-collected %d cache entr%s", len(doomed),
                         'y' if len(doomed) == 1 else 'ies')
        return len(doomed)

    def keys(self) -> List[Tuple]:
        with self._lock:
            return list(self._entries)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_stale(self, entry: _Entry, now: float) -> bool:
        if entry.updated_at is None or entry.invalidated:
            return True
        stale_time = entry.stale_time if entry.stale_time is not None else self.stale_time
        return now - entry.updated_at >= stale_time

    def _start(self, key: Tuple, entry: _Entry) -> Future:
        """Schedule *entry*'s fetcher; caller holds the lock."""
        entry.fetch_generation = entry.generation
        future = self._executor.submit(self._run, key, entry, entry.fetcher,
                                       entry.generation)
        entry.future = future
        return future

    def _run(self, key: Tuple, entry: _Entry, fetcher: Fetcher, generation: int) -> Any:
        try:
            data = fetcher()
        except Exception as exc:
            logger.debug("Fetch for %s failed: %s", key, exc)
            with self._lock:
                if entry.generation == generation:
                    entry.error = exc
            self._notify(key, entry, fetching=False)
            raise
        with self._lock:
            if entry.generation == generation:
                entry.data = data
                entry.error = None
                entry.updated_at = self._clock()
                entry.invalidated = False
                fetching = False
            else:
                # Written or invalidated while this fetch ran: the result may
                # predate that change, so it never counts as fresh.
                logger.debug("Discarding superseded fetch for %s", key)
                if entry.updated_at is None:
                    entry.data = data
                    entry.updated_at = self._clock()
                    entry.invalidated = True
                if entry.fetch_generation != entry.generation:
                    if (entry.invalidated and entry.listeners
                            and entry.fetcher is not None):
                        self._start(key, entry)
                fetching = (entry.in_flight
                            and entry.fetch_generation == entry.generation)
        self._notify(key, entry, fetching=fetching)
        return data

    def _snapshot(self, key: Tuple, entry: Optional[_Entry],
                  fetching: Optional[bool] = None) -> QueryState:
        if entry is None:
            return QueryState(key=key)
        return QueryState(
            key=key,
            data=entry.data,
            error=entry.error,
            updated_at=entry.updated_at,
            is_fetching=entry.in_flight if fetching is None else fetching,
            is_invalidated=entry.invalidated,
        )

    def _notify(self, key: Tuple, entry: Optional[_Entry] = None,
                fetching: Optional[bool] = None) -> None:
        with self._lock:
            if entry is None:
                entry = self._entries.get(key)
            if entry is None or not entry.listeners:
                return
            listeners = list(entry.listeners)
            state = self._snapshot(key, entry, fetching)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Cache subscriber for %s raised", key)
