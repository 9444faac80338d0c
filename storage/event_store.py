"""Offline-first local store of police events with archive tracking."""
import json
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from processor.models import CacheMetadata, CachedEvent, DateRange, Event
from processor.timestamps import parse_timestamp, to_date, to_iso, utc_now
from storage.backends import PersistenceBackend, PersistenceError

logger = logging.getLogger(__name__)

CACHE_KEY = 'police_events_cache'
CACHE_METADATA_KEY = 'police_events_cache_metadata'

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _event_time(event: Event) -> datetime:
    """Event datetime for sorting; unparseable values sort last."""
    return parse_timestamp(event.datetime) or _EPOCH


def _newest_first(events: List[CachedEvent]) -> List[CachedEvent]:
    return sorted(events, key=_event_time, reverse=True)


class EventStore:
    """
    Accumulates every event a client has seen, across polling cycles.

    The upstream feed only returns a short live window. Events that drop
    out of it are kept and flagged archived instead of being deleted.
    Records are persisted through an injected backend after every mutation.
    """

    ARCHIVE_RETENTION_DAYS = 30

    def __init__(
        self,
        backend: PersistenceBackend,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            backend: Persistence backend for the serialized collection
            clock: Returns the current aware datetime (defaults to UTC now)
        """
        self.backend = backend
        self.clock = clock or utc_now
        self._cache: Dict[int, CachedEvent] = {}
        self._lock = threading.RLock()
        self._initialized = False
        self._snapshot_pending = False

    def initialize(self) -> bool:
        """
        Load the persisted collection once.

        Undecodable records are skipped and an unparseable payload starts
        empty. A backend read failure leaves the store unloaded: changes are
        kept in memory and nothing is persisted until a later load succeeds,
        so the stored history is never overwritten by a partial collection.

        Returns:
            True once the persisted collection has been loaded
        """
        with self._lock:
            if self._initialized:
                return True

            try:
                cached_data = self.backend.get(CACHE_KEY)
            except PersistenceError as e:
                logger.error(f"Error loading cached events, will retry: {e}")
                return False

            self._adopt_loaded(self._decode_cache(cached_data) if cached_data else {})
            self._initialized = True
            return True

    def cache_events(self, new_events: List[Event]) -> None:
        """
        Apply a full snapshot of the live feed.

        Stored events missing from the snapshot are flagged archived.
        Incoming events keep their first-seen cachedAt and are marked live,
        including ones that were archived before.

        Args:
            new_events: Every event in the current upstream response
        """
        with self._lock:
            if not self.initialize():
                self._snapshot_pending = True

            now = to_iso(self.clock())
            current_ids = {event.id for event in new_events}

            archived = 0
            for event_id, cached in self._cache.items():
                if event_id not in current_ids and not cached.is_archived:
                    self._cache[event_id] = replace(cached, is_archived=True)
                    archived += 1

            for event in new_events:
                existing = self._cache.get(event.id)
                self._cache[event.id] = self._to_cached(
                    event,
                    cached_at=existing.cached_at if existing else now,
                    is_archived=False,
                )

            logger.info(
                f"Cached {len(new_events)} live events, archived {archived}, "
                f"{len(self._cache)} total"
            )
            self._persist_cache()
            self._update_metadata()

    def merge_shared_events(self, records: List[CachedEvent]) -> int:
        """
        Upsert records received from the shared pool.

        Callers decide which records to accept. This is not a snapshot, so
        no other record is archived. Known ids keep their local cachedAt,
        unknown ids adopt the peer's. Archive status is only ever promoted.

        Args:
            records: Accepted peer records

        Returns:
            Number of records upserted
        """
        if not records:
            return 0

        with self._lock:
            self.initialize()

            for record in records:
                existing = self._cache.get(record.id)
                if existing:
                    cached_at = existing.cached_at
                    is_archived = existing.is_archived or record.is_archived
                else:
                    cached_at = record.cached_at or to_iso(self.clock())
                    is_archived = record.is_archived
                self._cache[record.id] = self._to_cached(
                    record, cached_at=cached_at, is_archived=is_archived
                )

            self._persist_cache()
            self._update_metadata()
            return len(records)

    def get_events(self, date_range: Optional[DateRange] = None) -> List[CachedEvent]:
        """Return all records, optionally within a date range, newest first."""
        with self._lock:
            self.initialize()
            events = list(self._cache.values())
        return _newest_first(self._filter_by_range(events, date_range))

    def get_current_events(self) -> List[CachedEvent]:
        """Return records still present in the live feed, newest first."""
        with self._lock:
            self.initialize()
            events = [e for e in self._cache.values() if not e.is_archived]
        return _newest_first(events)

    def get_archived_events(self, date_range: Optional[DateRange] = None) -> List[CachedEvent]:
        """Return archived records, optionally within a date range, newest first."""
        with self._lock:
            self.initialize()
            events = [e for e in self._cache.values() if e.is_archived]
        return _newest_first(self._filter_by_range(events, date_range))

    def get_event_by_id(self, event_id: int) -> Optional[CachedEvent]:
        with self._lock:
            self.initialize()
            return self._cache.get(event_id)

    def get_date_range(self) -> Optional[Dict[str, str]]:
        """
        Return the earliest and latest event dates (UTC, YYYY-MM-DD).

        Returns:
            Dict with 'earliest' and 'latest', or None for an empty store
        """
        with self._lock:
            self.initialize()
            times = [
                t for t in (parse_timestamp(e.datetime) for e in self._cache.values())
                if t is not None
            ]
        if not times:
            return None
        return {'earliest': to_date(min(times)), 'latest': to_date(max(times))}

    def get_cache_metadata(self) -> Optional[CacheMetadata]:
        """Read the persisted summary without scanning the store."""
        try:
            metadata = self.backend.get(CACHE_METADATA_KEY)
            return CacheMetadata.from_dict(json.loads(metadata)) if metadata else None
        except (PersistenceError, ValueError, TypeError, KeyError) as e:
            logger.error(f"Error loading cache metadata: {e}")
            return None

    def clear_cache(self) -> None:
        """Drop every record and both persisted keys."""
        with self._lock:
            self._cache.clear()
            self._initialized = True
            self._snapshot_pending = False
            self.backend.delete(CACHE_KEY)
            self.backend.delete(CACHE_METADATA_KEY)
        logger.info("Cache cleared")

    def __len__(self) -> int:
        with self._lock:
            self.initialize()
            return len(self._cache)

    def _persist_cache(self) -> None:
        """Persist the collection, evicting old archived records if the write fails."""
        if not self._initialized:
            logger.warning(
                f"Persisted cache not loaded yet, keeping {len(self._cache)} events in memory"
            )
            return

        try:
            self._write_cache()
        except PersistenceError as e:
            logger.error(f"Error persisting cache: {e}")
            self._cleanup_old_archived_events()
            try:
                self._write_cache()
            except PersistenceError as retry_error:
                logger.error(
                    f"Persisting cache failed again after cleanup: {retry_error}"
                )

    def _write_cache(self) -> None:
        payload = json.dumps(
            [event.to_dict() for event in self._cache.values()],
            ensure_ascii=False
        )
        self.backend.set(CACHE_KEY, payload)

    def _update_metadata(self) -> None:
        if not self._initialized:
            return

        times = [
            t for t in (parse_timestamp(e.datetime) for e in self._cache.values())
            if t is not None
        ]
        if not times:
            return

        metadata = CacheMetadata(
            last_fetch=to_iso(self.clock()),
            total_events=len(self._cache),
            oldest_event=to_iso(min(times)),
            newest_event=to_iso(max(times)),
        )
        try:
            self.backend.set(CACHE_METADATA_KEY, json.dumps(metadata.to_dict()))
        except PersistenceError as e:
            logger.warning(f"Error persisting cache metadata: {e}")

    @staticmethod
    def _decode_cache(cached_data: str) -> Dict[int, CachedEvent]:
        try:
            raw_events = json.loads(cached_data)
        except ValueError as e:
            logger.error(f"Cached events are corrupt, starting empty: {e}")
            return {}
        if not isinstance(raw_events, list):
            logger.error("Cached events are not a list, starting empty")
            return {}

        loaded: Dict[int, CachedEvent] = {}
        skipped = 0
        for raw in raw_events:
            try:
                event = CachedEvent.from_dict(raw)
            except ValueError as e:
                logger.warning(f"Skipping undecodable cached event: {e}")
                skipped += 1
                continue
            loaded[event.id] = event

        logger.info(f"Loaded {len(loaded)} cached events, skipped {skipped}")
        return loaded

    def _adopt_loaded(self, loaded: Dict[int, CachedEvent]) -> None:
        """
        Combine the persisted collection with changes made while it was unreadable.

        Persisted records keep their first-seen cachedAt. If a snapshot was
        applied meanwhile, persisted records absent from memory were not in
        it and are archived.
        """
        for event_id, stored in loaded.items():
            current = self._cache.get(event_id)
            if current is None:
                if self._snapshot_pending and not stored.is_archived:
                    stored = replace(stored, is_archived=True)
                self._cache[event_id] = stored
                continue

            is_archived = current.is_archived
            if not self._snapshot_pending:
                is_archived = is_archived or stored.is_archived
            self._cache[event_id] = replace(
                current,
                cached_at=stored.cached_at or current.cached_at,
                is_archived=is_archived,
            )
        self._snapshot_pending = False

    def _cleanup_old_archived_events(self) -> None:
        """Keep live records and archived ones from the retention window."""
        cutoff = self.clock() - timedelta(days=self.ARCHIVE_RETENTION_DAYS)

        kept = {
            event_id: event for event_id, event in self._cache.items()
            if not event.is_archived or _event_time(event) >= cutoff
        }
        removed = len(self._cache) - len(kept)
        self._cache = kept
        logger.warning(
            f"Cleaned up cache, removed {removed} archived events, kept {len(kept)}"
        )

    @staticmethod
    def _filter_by_range(
        events: List[CachedEvent],
        date_range: Optional[DateRange]
    ) -> List[CachedEvent]:
        if not date_range:
            return events

        start = parse_timestamp(date_range.start_date)
        end = parse_timestamp(f"{date_range.end_date}T23:59:59.999Z")
        if start is None or end is None:
            raise ValueError(f"Invalid date range: {date_range}")

        selected = []
        for event in events:
            moment = parse_timestamp(event.datetime)
            if moment is not None and start <= moment <= end:
                selected.append(event)
        return selected

    @staticmethod
    def _to_cached(event: Event, cached_at: str, is_archived: bool) -> CachedEvent:
        return CachedEvent(
            id=event.id,
            datetime=event.datetime,
            name=event.name,
            summary=event.summary,
            url=event.url,
            type=event.type,
            location=event.location,
            cached_at=cached_at,
            is_archived=is_archived,
        )
