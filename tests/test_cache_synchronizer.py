"""Unit tests for CacheSynchronizer."""
import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from processor.models import Event, Location, PoolMetadata, SharedCacheEvent, UploadResult
from storage.backends import InMemoryBackend
from storage.event_store import EventStore
from cache_sync.cache_synchronizer import (
    COORDINATION_KEY,
    LAST_SYNC_KEY,
    CacheSynchronizer,
)
from cache_sync.shared_cache_client import SharedCacheClient, SharedCacheError


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_event(event_id, when='2024-06-01T10:00:00Z', name=None):
    return Event(
        id=event_id, datetime=when, name=name or f'Händelse {event_id}',
        summary='Sammanfattning', url=f'/handelser/{event_id}', type='Skadegörelse',
        location=Location(name='Västerås', gps='59.609901,16.544809')
    )


def shared(event_id, cached_at, is_archived=False, name=None, when='2024-06-01T10:00:00Z'):
    event = make_event(event_id, when=when, name=name)
    return SharedCacheEvent(
        id=event.id, datetime=event.datetime, name=event.name, summary=event.summary,
        url=event.url, type=event.type, location=event.location,
        cached_at=cached_at, is_archived=is_archived, contributor_id='contrib_9'
    )


def snapshot(store):
    return [event.to_dict() for event in store.get_events()]


METADATA = PoolMetadata(last_update='2024-06-10T11:00:00.000Z', total_events=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend, clock):
    return EventStore(backend, clock=clock)


@pytest.fixture
def client():
    client = Mock(spec=SharedCacheClient)
    client.fetch_events.return_value = ([], METADATA)
    return client


@pytest.fixture
def synchronizer(store, client, backend, clock):
    return CacheSynchronizer(store, client, backend, clock=clock)


class TestPerformSync:
    """Test cases for the pull path."""

    def test_first_sync_requests_full_pool(self, synchronizer, client, backend):
        result = synchronizer.perform_sync()

        assert result == 0
        client.fetch_events.assert_called_once_with(since=None)
        assert backend.get(LAST_SYNC_KEY) == '2024-06-10T12:00:00.000Z'
        assert synchronizer.last_sync_time == '2024-06-10T12:00:00.000Z'

    def test_next_sync_uses_watermark(self, synchronizer, client, clock):
        synchronizer.perform_sync()
        clock.advance(minutes=5)

        synchronizer.perform_sync()

        assert client.fetch_events.call_args_list[1].kwargs == {
            'since': '2024-06-10T12:00:00.000Z'
        }

    def test_merges_shared_events(self, synchronizer, client, store):
        client.fetch_events.return_value = ([
            shared(1, '2024-06-09T00:00:00.000Z'),
            shared(2, '2024-06-09T00:00:00.000Z', is_archived=True),
        ], METADATA)

        assert synchronizer.perform_sync() == 2

        assert store.get_event_by_id(1).is_archived is False
        assert store.get_event_by_id(2).is_archived is True

    def test_skips_when_recently_synced_by_another_client(self, synchronizer, client,
                                                          backend, clock):
        recent_ms = int((clock.now - timedelta(seconds=90)).timestamp() * 1000)
        backend.set(COORDINATION_KEY, json.dumps({'lastSync': recent_ms}))

        assert synchronizer.perform_sync() is None

        client.fetch_events.assert_not_called()

    def test_runs_when_coordination_is_stale(self, synchronizer, client, backend, clock):
        stale_ms = int((clock.now - timedelta(minutes=3)).timestamp() * 1000)
        backend.set(COORDINATION_KEY, json.dumps({'lastSync': stale_ms}))

        synchronizer.perform_sync()

        client.fetch_events.assert_called_once()
        now_ms = int(clock.now.timestamp() * 1000)
        assert json.loads(backend.get(COORDINATION_KEY)) == {'lastSync': now_ms}

    def test_corrupt_coordination_is_ignored(self, synchronizer, client, backend):
        backend.set(COORDINATION_KEY, 'not json')

        synchronizer.perform_sync()

        client.fetch_events.assert_called_once()

    @pytest.mark.parametrize('error', [
        requests.ConnectionError('offline'),
        requests.HTTPError('500 Server Error'),
        SharedCacheError('bad payload'),
    ])
    def test_failure_keeps_watermark(self, synchronizer, client, backend, clock, error):
        synchronizer.perform_sync()
        clock.advance(minutes=5)
        client.fetch_events.side_effect = error

        assert synchronizer.perform_sync() is None

        assert synchronizer.last_sync_time == '2024-06-10T12:00:00.000Z'
        assert backend.get(LAST_SYNC_KEY) == '2024-06-10T12:00:00.000Z'

    def test_retry_after_failure_uses_same_watermark(self, synchronizer, client, clock):
        synchronizer.perform_sync()
        clock.advance(minutes=5)
        client.fetch_events.side_effect = requests.Timeout('slow')
        synchronizer.perform_sync()
        clock.advance(minutes=5)
        client.fetch_events.side_effect = None

        synchronizer.perform_sync()

        assert client.fetch_events.call_args.kwargs == {'since': '2024-06-10T12:00:00.000Z'}

    def test_concurrent_sync_is_noop(self, synchronizer, client, clock):
        entered = threading.Event()
        release = threading.Event()

        def slow_fetch(since=None):
            entered.set()
            release.wait(5)
            return [], METADATA

        client.fetch_events.side_effect = slow_fetch
        worker = threading.Thread(target=synchronizer.perform_sync)
        worker.start()
        assert entered.wait(5)

        assert synchronizer.perform_sync(ignore_coordination=True) is None

        release.set()
        worker.join(5)
        assert client.fetch_events.call_count == 1

    def test_force_sync_ignores_watermark_and_coordination(self, synchronizer, client):
        synchronizer.perform_sync()

        synchronizer.force_sync()

        assert client.fetch_events.call_count == 2
        assert client.fetch_events.call_args.kwargs == {'since': None}


class TestMergeSharedEvents:
    """Test cases for the pull-side conflict rule."""

    def test_rejects_older_and_equal_records(self, synchronizer, store, clock):
        store.cache_events([make_event(1, name='Lokal')])

        merged = synchronizer.merge_shared_events([
            shared(1, '2024-06-10T12:00:00.000Z', name='Samma'),
            shared(1, '2024-06-01T00:00:00.000Z', name='Äldre'),
        ])

        assert merged == 0
        assert store.get_event_by_id(1).name == 'Lokal'

    def test_accepts_newer_record_but_keeps_local_cached_at(self, synchronizer, store):
        store.cache_events([make_event(1, name='Lokal')])

        assert synchronizer.merge_shared_events([
            shared(1, '2024-06-11T00:00:00.000Z', name='Nyare')
        ]) == 1

        event = store.get_event_by_id(1)
        assert event.name == 'Nyare'
        assert event.cached_at == '2024-06-10T12:00:00.000Z'

    def test_archive_promotion_from_peer(self, synchronizer, store):
        store.cache_events([make_event(1)])

        synchronizer.merge_shared_events([shared(1, '2024-06-01T00:00:00.000Z', is_archived=True)])

        assert store.get_event_by_id(1).is_archived is True

    def test_does_not_archive_unrelated_local_events(self, synchronizer, store):
        store.cache_events([make_event(1), make_event(2)])

        synchronizer.merge_shared_events([shared(3, '2024-06-09T00:00:00.000Z')])

        assert store.get_current_events() and all(
            not e.is_archived for e in store.get_events()
        )

    def test_idempotent(self, synchronizer, store):
        store.cache_events([make_event(1), make_event(2)])
        batch = [
            shared(1, '2024-06-11T00:00:00.000Z', name='Ny'),
            shared(2, '2024-06-01T00:00:00.000Z', is_archived=True),
            shared(3, '2024-06-09T00:00:00.000Z'),
        ]

        synchronizer.merge_shared_events(batch)
        once = snapshot(store)
        synchronizer.merge_shared_events(batch)

        assert snapshot(store) == once

    def test_commutative_for_consistently_ordered_batches(self, backend, client, clock):
        """
        Merging A then B equals B then A when both batches agree on a
        global cachedAt order for each id.
        """
        batch_a = [
            shared(1, '2024-06-01T00:00:00.000Z'),
            shared(2, '2024-06-02T00:00:00.000Z', is_archived=True),
        ]
        batch_b = [
            shared(2, '2024-06-02T00:00:00.000Z'),
            shared(3, '2024-06-03T00:00:00.000Z'),
        ]

        def merged(first, second):
            store = EventStore(InMemoryBackend(), clock=clock)
            store.cache_events([make_event(1)])
            sync = CacheSynchronizer(store, client, InMemoryBackend(), clock=clock)
            sync.merge_shared_events(first)
            sync.merge_shared_events(second)
            return snapshot(store)

        assert merged(batch_a, batch_b) == merged(batch_b, batch_a)


class TestUploadLocalCache:
    """Test cases for the push path."""

    def test_uploads_full_snapshot(self, synchronizer, client, store):
        store.cache_events([make_event(1), make_event(2)])
        client.upload_events.return_value = UploadResult(
            success=True, new_events=2, updated_events=0, total_events=2, contributors=1
        )

        result = synchronizer.upload_local_cache()

        assert result.new_events == 2
        uploaded = client.upload_events.call_args.args[0]
        assert sorted(e.id for e in uploaded) == [1, 2]

    def test_empty_store_skips_upload(self, synchronizer, client):
        assert synchronizer.upload_local_cache() is None
        client.upload_events.assert_not_called()

    def test_upload_failure_is_logged_not_raised(self, synchronizer, client, store):
        store.cache_events([make_event(1)])
        client.upload_events.side_effect = requests.ConnectionError('offline')

        assert synchronizer.upload_local_cache() is None

    def test_concurrent_upload_is_noop(self, synchronizer, client, store):
        store.cache_events([make_event(1)])
        entered = threading.Event()
        release = threading.Event()

        def slow_upload(events):
            entered.set()
            release.wait(5)
            return UploadResult(True, 0, 0, 1, 1)

        client.upload_events.side_effect = slow_upload
        worker = threading.Thread(target=synchronizer.upload_local_cache)
        worker.start()
        assert entered.wait(5)

        assert synchronizer.force_upload() is None

        release.set()
        worker.join(5)
        assert client.upload_events.call_count == 1


class TestBackgroundLoops:
    """Test cases for scheduling."""

    def test_initialize_loads_watermark_and_runs_loops(self, store, client, backend, clock):
        backend.set(LAST_SYNC_KEY, '2024-06-09T00:00:00.000Z')
        store.cache_events([make_event(1)])
        client.upload_events.return_value = UploadResult(True, 1, 0, 1, 1)
        synchronizer = CacheSynchronizer(
            store, client, backend,
            sync_interval=0.05, upload_interval=0.05, initial_delay=0, clock=clock
        )

        synchronizer.initialize()
        try:
            deadline = threading.Event()
            for _ in range(100):
                if client.fetch_events.called and client.upload_events.called:
                    break
                deadline.wait(0.05)
        finally:
            synchronizer.stop(timeout=5)

        client.fetch_events.assert_any_call(since='2024-06-09T00:00:00.000Z')
        assert client.upload_events.called

    def test_loops_survive_unexpected_errors(self, store, client, backend, clock):
        synchronizer = CacheSynchronizer(
            store, client, backend,
            sync_interval=0.01, upload_interval=0.01, initial_delay=0, clock=clock
        )
        failing = Mock(side_effect=RuntimeError('boom'))

        with patch.object(synchronizer, 'perform_sync', failing), \
                patch.object(synchronizer, 'upload_local_cache', failing):
            synchronizer.start()
            try:
                waiter = threading.Event()
                for _ in range(200):
                    if failing.call_count >= 4:
                        break
                    waiter.wait(0.01)
                assert all(thread.is_alive() for thread in synchronizer._threads)
            finally:
                synchronizer.stop(timeout=5)

        assert failing.call_count >= 4

    def test_stop_before_initial_delay_skips_pull(self, store, client, backend, clock):
        synchronizer = CacheSynchronizer(store, client, backend, initial_delay=30, clock=clock)

        synchronizer.start()
        synchronizer.stop(timeout=5)

        client.fetch_events.assert_not_called()

    def test_get_shared_cache_stats(self, synchronizer, client):
        client.get_stats.return_value = METADATA
        assert synchronizer.get_shared_cache_stats() == METADATA

        client.get_stats.side_effect = requests.ConnectionError('offline')
        assert synchronizer.get_shared_cache_stats() is None
