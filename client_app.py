"""Client runtime: polls the police feed, caches events and syncs with the shared pool."""
import logging
import os
import threading
from typing import Optional

from fetcher.police_api import PoliceApiClient, PoliceApiError
from log_setup import setup_logging
from processor.event_processor import EventProcessor
from processor.models import EventFilters
from storage.backends import FileBackend, InMemoryBackend, PersistenceBackend
from storage.dynamodb_backend import DynamoDBBackend
from storage.event_store import EventStore
from cache_sync.cache_synchronizer import CacheSynchronizer
from cache_sync.shared_cache_client import SharedCacheClient

logger = logging.getLogger(__name__)


def build_backend(kind: str) -> PersistenceBackend:
    """
    Create the local persistence backend named by CACHE_BACKEND.

    Args:
        kind: 'file', 'dynamodb' or 'memory'
    """
    kind = kind.lower()
    if kind == 'file':
        return FileBackend(os.environ.get('CACHE_DIR', '~/.police-events-cache'))
    if kind == 'dynamodb':
        return DynamoDBBackend(os.environ.get('CACHE_TABLE_NAME', 'police-events-cache'))
    if kind == 'memory':
        return InMemoryBackend()
    raise ValueError(f"Unknown CACHE_BACKEND: {kind}")


def poll_once(
    api_client: PoliceApiClient,
    processor: EventProcessor,
    store: EventStore,
    filters: Optional[EventFilters] = None
) -> bool:
    """
    Fetch one upstream snapshot and apply it to the store.

    Fetch failures are logged and leave the store untouched.

    Returns:
        True if the snapshot was cached
    """
    try:
        raw_events = api_client.fetch_events(filters)
    except PoliceApiError as e:
        logger.error(
            f"Failed to fetch police events: {e}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return False

    search_query = filters.search_query if filters else None
    events = processor.process_events(raw_events, search_query=search_query)
    store.cache_events(events)
    return True


def run_client(stop_event: Optional[threading.Event] = None) -> None:
    """Run the poller and the shared cache synchronizer until stopped."""
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))

    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))
    poll_interval = int(os.environ.get('POLL_INTERVAL_SECONDS', '600'))
    sync_interval = int(os.environ.get('SYNC_INTERVAL_SECONDS', '300'))
    upload_interval = int(os.environ.get('UPLOAD_INTERVAL_SECONDS', '600'))
    shared_cache_url = os.environ.get('SHARED_CACHE_URL')

    backend = build_backend(os.environ.get('CACHE_BACKEND', 'file'))
    store = EventStore(backend)
    api_client = PoliceApiClient(
        base_url=os.environ.get('POLICE_API_URL'),
        timeout=timeout_seconds
    )
    processor = EventProcessor()

    synchronizer = None
    if shared_cache_url:
        synchronizer = CacheSynchronizer(
            store,
            SharedCacheClient(shared_cache_url, timeout=timeout_seconds),
            backend,
            sync_interval=sync_interval,
            upload_interval=upload_interval
        )
        synchronizer.initialize()
    else:
        logger.info("SHARED_CACHE_URL not set, running without shared cache")

    stop = stop_event or threading.Event()
    logger.info(
        "Client started",
        extra={'poll_interval': poll_interval, 'events_cached': len(store)}
    )
    try:
        while True:
            poll_once(api_client, processor, store)
            if stop.wait(poll_interval):
                break
    finally:
        if synchronizer:
            synchronizer.stop()
        logger.info("Client stopped")


def main() -> None:
    try:
        run_client()
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
