"""Background pull/push synchronization between a local store and the shared pool."""
import json
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

import requests

from processor.merge import should_replace
from processor.models import CachedEvent, PoolMetadata, UploadResult
from processor.timestamps import to_iso, utc_now
from storage.backends import PersistenceBackend, PersistenceError
from storage.event_store import EventStore
from cache_sync.shared_cache_client import SharedCacheClient, SharedCacheError

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = 'last_shared_sync'
COORDINATION_KEY = 'shared_cache_coordination'

SYNC_ERRORS = (requests.RequestException, SharedCacheError, PersistenceError, ValueError)


class CacheSynchronizer:
    """
    Reconciles an EventStore with the shared pool in both directions.

    Pulls fetch records cached since the last successful pull and merge the
    accepted ones into the store. Pushes upload the whole store. Each path
    runs on its own thread and ignores requests while it is already busy.
    """

    SYNC_INTERVAL = 5 * 60
    UPLOAD_INTERVAL = 10 * 60
    INITIAL_SYNC_DELAY = 2
    COORDINATION_WINDOW = 2 * 60  # skip a pull if anyone pulled this recently

    def __init__(
        self,
        store: EventStore,
        client: SharedCacheClient,
        backend: PersistenceBackend,
        sync_interval: float = SYNC_INTERVAL,
        upload_interval: float = UPLOAD_INTERVAL,
        initial_delay: float = INITIAL_SYNC_DELAY,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.client = client
        self.backend = backend
        self.sync_interval = sync_interval
        self.upload_interval = upload_interval
        self.initial_delay = initial_delay
        self.clock = clock or utc_now

        self.last_sync_time: Optional[str] = None
        self._sync_lock = threading.Lock()
        self._upload_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def initialize(self) -> None:
        """Load the pull watermark and start the background loops."""
        try:
            self.last_sync_time = self.backend.get(LAST_SYNC_KEY) or None
        except PersistenceError as e:
            logger.error(f"Error loading last shared sync time: {e}")
            self.last_sync_time = None
        self.start()

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._sync_loop, name='shared-cache-sync', daemon=True),
            threading.Thread(target=self._upload_loop, name='shared-cache-upload', daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            f"Started shared cache sync (pull every {self.sync_interval}s, "
            f"push every {self.upload_interval}s)"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop scheduling new cycles; cycles already running finish."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def _sync_loop(self) -> None:
        if self._stop.wait(self.initial_delay):
            return
        while True:
            self._run_cycle('sync', self.perform_sync)
            if self._stop.wait(self.sync_interval):
                return

    def _upload_loop(self) -> None:
        while not self._stop.wait(self.upload_interval):
            self._run_cycle('upload', self.upload_local_cache)

    @staticmethod
    def _run_cycle(label: str, cycle: Callable[[], object]) -> None:
        """Run one scheduled cycle; an unexpected failure must not end the loop."""
        try:
            cycle()
        except Exception as e:
            logger.error(
                f"Unexpected error in shared cache {label}: {e}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )

    def perform_sync(self, ignore_coordination: bool = False) -> Optional[int]:
        """
        Pull new records from the shared pool and merge them.

        Args:
            ignore_coordination: Pull even if another client pulled recently

        Returns:
            Number of records merged, or None if the pull was skipped or failed
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.debug("Shared cache sync already in progress")
            return None

        try:
            started = self.clock()
            now_ms = int(started.timestamp() * 1000)

            if not ignore_coordination:
                last_sync = self._get_coordination().get('lastSync')
                window_ms = self.COORDINATION_WINDOW * 1000
                if isinstance(last_sync, (int, float)) and now_ms - last_sync < window_ms:
                    logger.debug("Another client synced recently, skipping")
                    return None

            self._update_coordination({'lastSync': now_ms})

            shared_events, _ = self.client.fetch_events(since=self.last_sync_time)
            merged = 0
            if shared_events:
                merged = self.merge_shared_events(shared_events)
                logger.info(
                    f"Synced {len(shared_events)} events from shared cache, "
                    f"merged {merged}"
                )

            watermark = to_iso(started)
            self.backend.set(LAST_SYNC_KEY, watermark)
            self.last_sync_time = watermark
            return merged

        except SYNC_ERRORS as e:
            logger.error(
                f"Error syncing with shared cache: {e}",
                extra={'error_type': type(e).__name__}
            )
            return None
        finally:
            self._sync_lock.release()

    def upload_local_cache(self) -> Optional[UploadResult]:
        """
        Push every local record to the shared pool.

        Returns:
            Upload counts, or None if skipped or failed
        """
        if not self._upload_lock.acquire(blocking=False):
            logger.debug("Shared cache upload already in progress")
            return None

        try:
            local_events = self.store.get_events()
            if not local_events:
                return None

            result = self.client.upload_events(local_events)
            if result.new_events > 0 or result.updated_events > 0:
                logger.info(
                    f"Uploaded to shared cache: {result.new_events} new, "
                    f"{result.updated_events} updated events"
                )
            return result

        except SYNC_ERRORS as e:
            logger.error(
                f"Error uploading to shared cache: {e}",
                extra={'error_type': type(e).__name__}
            )
            return None
        finally:
            self._upload_lock.release()

    def merge_shared_events(self, shared_events: List[CachedEvent]) -> int:
        """
        Merge the shared records that win the conflict rule against local ones.

        Returns:
            Number of records merged into the store
        """
        to_merge = [
            event for event in shared_events
            if should_replace(self.store.get_event_by_id(event.id), event)
        ]
        return self.store.merge_shared_events(to_merge)

    def force_sync(self) -> Optional[int]:
        """Re-pull the whole pool regardless of watermark or coordination."""
        self.last_sync_time = None
        return self.perform_sync(ignore_coordination=True)

    def force_upload(self) -> Optional[UploadResult]:
        return self.upload_local_cache()

    def get_shared_cache_stats(self) -> Optional[PoolMetadata]:
        try:
            return self.client.get_stats()
        except (requests.RequestException, SharedCacheError) as e:
            logger.error(f"Error fetching shared cache stats: {e}")
            return None

    def _get_coordination(self) -> dict:
        try:
            stored = self.backend.get(COORDINATION_KEY)
            data = json.loads(stored) if stored else {}
            return data if isinstance(data, dict) else {}
        except (PersistenceError, ValueError):
            return {}

    def _update_coordination(self, update: dict) -> None:
        try:
            current = self._get_coordination()
            current.update(update)
            self.backend.set(COORDINATION_KEY, json.dumps(current))
        except PersistenceError as e:
            logger.error(f"Error updating coordination: {e}")
