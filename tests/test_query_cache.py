#!/usr/bin/env python3
"""
Tests for query_cache.py.

Run with:
    python -m pytest tests/test_query_cache.py
"""
import os
import sys
import threading
import time
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from query_cache import QueryCache, make_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _wait_for(predicate, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class CacheTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.cache = QueryCache(stale_time=300, gc_time=600, clock=self.clock)

    def tearDown(self):
        self.cache.close()


class TestKeys(unittest.TestCase):

    def test_dict_order_does_not_matter(self):
        self.assertEqual(make_key('encounters', 'list', {'a': 1, 'b': 2}),
                         make_key('encounters', 'list', {'b': 2, 'a': 1}))

    def test_keys_are_hashable(self):
        hash(make_key('x', {'ids': [1, 2]}))


class TestFetch(CacheTestCase):

    def test_fresh_entry_served_from_cache(self):
        calls = []
        fetcher = lambda: calls.append(1) or 'value'
        self.assertEqual(self.cache.fetch(('k',), fetcher), 'value')
        self.assertEqual(self.cache.fetch(('k',), fetcher), 'value')
        self.assertEqual(len(calls), 1)

    def test_concurrent_reads_share_one_fetch(self):
        release = threading.Event()
        calls = []

        def fetcher():
            calls.append(1)
            release.wait(2)
            return 'shared'

        first = self.cache.fetch_future(('encounters', 'detail', 'e1'), fetcher)
        second = self.cache.fetch_future(('encounters', 'detail', 'e1'), fetcher)
        self.assertIs(first, second)
        release.set()
        self.assertEqual(first.result(2), 'shared')
        self.assertEqual(second.result(2), 'shared')
        self.assertEqual(len(calls), 1)

    def test_stale_entry_returned_while_revalidating(self):
        values = iter(['v1', 'v2'])
        fetcher = lambda: next(values)
        self.assertEqual(self.cache.fetch(('k',), fetcher), 'v1')
        self.clock.now += 301
        self.assertTrue(self.cache.is_stale(('k',)))
        self.assertEqual(self.cache.fetch(('k',), fetcher), 'v1')
        self.assertTrue(_wait_for(lambda: self.cache.get_data(('k',)) == 'v2'))

    def test_force_waits_for_fresh_data(self):
        values = iter(['v1', 'v2'])
        fetcher = lambda: next(values)
        self.cache.fetch(('k',), fetcher)
        self.assertEqual(self.cache.fetch(('k',), fetcher, force=True), 'v2')

    def test_per_read_stale_time(self):
        values = iter(['v1', 'v2'])
        fetcher = lambda: next(values)
        self.cache.fetch(('k',), fetcher, stale_time=60)
        self.clock.now += 61
        self.assertTrue(self.cache.is_stale(('k',)))

    def test_fetch_error_is_raised_and_recorded(self):
        def failing():
            raise RuntimeError('offline')
        with self.assertRaises(RuntimeError):
            self.cache.fetch(('k',), failing)
        state = self.cache.get_state(('k',))
        self.assertEqual(state.status, 'error')
        self.assertIsInstance(state.error, RuntimeError)


class TestWrites(CacheTestCase):

    def test_set_data_with_updater(self):
        self.cache.set_data(('k',), {'rating': 3})
        updated = self.cache.set_data(('k',), lambda old: dict(old, rating=4))
        self.assertEqual(updated, {'rating': 4})
        self.assertEqual(self.cache.get_data(('k',)), {'rating': 4})

    def test_invalidate_by_prefix(self):
        self.cache.set_data(('encounters', 'list', {'lat': 1}), 'a')
        self.cache.set_data(('encounters', 'list', {'lat': 2}), 'b')
        self.cache.set_data(('encounters', 'detail', 'e1'), 'c')
        self.assertEqual(self.cache.invalidate(('encounters', 'list')), 2)
        self.assertTrue(self.cache.get_state(('encounters', 'list', {'lat': 1})).is_invalidated)
        self.assertFalse(self.cache.is_stale(('encounters', 'detail', 'e1')))

    def test_invalidated_entry_with_subscriber_is_refetched(self):
        values = iter(['v1', 'v2'])
        seen = []
        self.cache.fetch(('k',), lambda: next(values))
        self.cache.subscribe(('k',), seen.append)
        self.cache.invalidate(('k',))
        self.assertTrue(_wait_for(lambda: self.cache.get_data(('k',)) == 'v2'))
        self.assertTrue(any(state.data == 'v2' for state in seen))

    # ------------------------------------------------------------------
    # Writes racing an in-flight fetch
    # ------------------------------------------------------------------

    def _blocking_fetcher(self, release, first, later=None):
        calls = []

        def fetcher():
            calls.append(1)
            if len(calls) == 1:
                release.wait(2)
                return first
            return later
        return fetcher, calls

    def test_fetch_started_before_write_does_not_overwrite_it(self):
        release = threading.Event()
        fetcher, _ = self._blocking_fetcher(release, {'rating': 3})
        future = self.cache.fetch_future(('encounters', 'detail', 'e1'), fetcher)
        self.cache.set_data(('encounters', 'detail', 'e1'), {'rating': 5})
        release.set()
        self.assertEqual(future.result(2), {'rating': 3})
        self.assertEqual(self.cache.get_data(('encounters', 'detail', 'e1')), {'rating': 5})
        self.assertFalse(self.cache.is_stale(('encounters', 'detail', 'e1')))

    def test_fetch_started_before_invalidation_is_not_marked_fresh(self):
        release = threading.Event()
        fetcher, _ = self._blocking_fetcher(release, {'rating': 3})
        future = self.cache.fetch_future(('k',), fetcher)
        self.cache.set_data(('k',), {'rating': 5})
        self.cache.invalidate(('k',))
        release.set()
        future.result(2)
        self.assertEqual(self.cache.get_data(('k',)), {'rating': 5})
        self.assertTrue(self.cache.is_stale(('k',)))
        self.assertTrue(self.cache.get_state(('k',)).is_invalidated)

    def test_invalidation_during_fetch_refetches_for_subscribers(self):
        release = threading.Event()
        fetcher, calls = self._blocking_fetcher(release, 'v1', 'v2')
        self.cache.fetch_future(('k',), fetcher)
        self.cache.subscribe(('k',), lambda state: None)
        self.cache.invalidate(('k',))
        release.set()
        self.assertTrue(_wait_for(lambda: self.cache.get_data(('k',)) == 'v2'))
        self.assertFalse(self.cache.is_stale(('k',)))
        self.assertEqual(len(calls), 2)

    def test_forced_read_after_invalidation_does_not_join_old_fetch(self):
        release = threading.Event()
        fetcher, calls = self._blocking_fetcher(release, 'v1', 'v2')
        first = self.cache.fetch_future(('k',), fetcher)
        self.cache.invalidate(('k',))
        second = self.cache.fetch_future(('k',), fetcher, force=True)
        self.assertIsNot(first, second)
        self.assertEqual(second.result(2), 'v2')
        release.set()
        self.assertEqual(first.result(2), 'v1')
        self.assertEqual(self.cache.get_data(('k',)), 'v2')
        self.assertFalse(self.cache.is_stale(('k',)))

    def test_remove_and_clear(self):
        self.cache.set_data(('a', 1), 1)
        self.cache.set_data(('a', 2), 2)
        self.cache.set_data(('b',), 3)
        self.assertEqual(self.cache.remove(('a',)), 2)
        self.assertEqual(self.cache.keys(), [('b',)])
        self.cache.clear()
        self.assertEqual(self.cache.keys(), [])


class TestSubscriptions(CacheTestCase):

    def test_subscriber_notified_after_fetch(self):
        seen = []
        self.cache.subscribe(('k',), seen.append)
        self.cache.fetch(('k',), lambda: 'value')
        self.assertTrue(_wait_for(lambda: any(s.data == 'value' and not s.is_fetching
                                              for s in seen)))

    def test_unsubscribe_stops_notifications(self):
        seen = []
        unsubscribe = self.cache.subscribe(('k',), seen.append)
        self.cache.set_data(('k',), 1)
        unsubscribe()
        self.cache.set_data(('k',), 2)
        self.assertEqual([s.data for s in seen], [1])

    def test_failing_subscriber_does_not_break_others(self):
        seen = []

        def broken(state):
            raise ValueError('bad listener')
        self.cache.subscribe(('k',), broken)
        self.cache.subscribe(('k',), seen.append)
        self.cache.set_data(('k',), 1)
        self.assertEqual(len(seen), 1)


class TestGarbageCollection(CacheTestCase):

    def test_unused_entries_are_dropped(self):
        self.cache.set_data(('old',), 1)
        self.clock.now += 601
        self.cache.set_data(('new',), 2)
        self.assertEqual(self.cache.collect_garbage(), 1)
        self.assertEqual(self.cache.keys(), [('new',)])

    def test_subscribed_entries_are_kept(self):
        self.cache.subscribe(('watched',), lambda state: None)
        self.clock.now += 601
        self.assertEqual(self.cache.collect_garbage(), 0)


if __name__ == '__main__':
    unittest.main()
