"""In-memory shared pool aggregating events uploaded by all clients."""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from processor.merge import should_replace
from processor.models import CachedEvent, PoolMetadata, SharedCacheEvent, UploadResult
from processor.timestamps import parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def generate_contributor_id(
    headers: Optional[Mapping[str, str]],
    source_ip: Optional[str] = None
) -> str:
    """
    Derive a coarse, anonymized contributor tag from request metadata.

    Uses the first X-Forwarded-For address, then X-Real-IP, then the
    connection's source address. The 32-bit string hash is only a rough
    attribution tag; it is trivially reversible and not an auth mechanism.

    Args:
        headers: Request headers (any case)
        source_ip: Source address reported by the gateway

    Returns:
        Tag of the form ``contrib_<n>``
    """
    lowered = {k.lower(): v for k, v in (headers or {}).items()}
    forwarded = lowered.get('x-forwarded-for')
    if forwarded:
        ip = forwarded.split(',')[0]
    else:
        ip = lowered.get('x-real-ip') or source_ip or 'anonymous'

    hash_value = 0
    for char in ip:
        hash_value = (hash_value * 31 + ord(char)) & 0xFFFFFFFF
    if hash_value >= 0x80000000:
        hash_value -= 0x100000000
    return f"contrib_{abs(hash_value)}"


class SharedPool:
    """
    Process-wide aggregate of every client's cached events.

    Nothing is durable: a restart is an implicit reset. Writes are
    serialized and the new state is built aside and installed at the end,
    so a failed write leaves the previous state untouched.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utc_now
        self._lock = threading.Lock()
        self._events: Dict[int, SharedCacheEvent] = {}
        self._contributors: Dict[str, None] = {}
        self._last_update = to_iso(self.clock())
        self._oldest_event: Optional[str] = None
        self._newest_event: Optional[str] = None

    def read(self, since: Optional[str] = None) -> Dict[str, Any]:
        """
        Return records cached after ``since`` plus the pool metadata.

        ``since`` is compared against each record's cachedAt, strictly.
        An unparseable value matches nothing.

        Args:
            since: Optional ISO timestamp

        Returns:
            Wire dict with 'events' and 'metadata'
        """
        with self._lock:
            events = list(self._events.values())
            metadata = self._metadata()

        if since:
            since_time = parse_timestamp(since)
            selected = []
            if since_time is not None:
                for event in events:
                    cached_time = parse_timestamp(event.cached_at)
                    if cached_time is not None and cached_time > since_time:
                        selected.append(event)
            events = selected

        events.sort(key=lambda e: parse_timestamp(e.datetime) or _EPOCH, reverse=True)

        return {
            'events': [event.to_dict() for event in events],
            'metadata': metadata.to_dict(),
        }

    def write(self, records: List[Dict[str, Any]], contributor_id: str) -> UploadResult:
        """
        Merge a batch of client records into the pool.

        New ids are inserted. Known ids are replaced when the candidate has
        a strictly newer cachedAt or promotes the record to archived.
        Records without an integer id or a parseable cachedAt are skipped.

        Args:
            records: Decoded CachedEvent objects from the request body
            contributor_id: Tag of the uploading client

        Returns:
            Counts of new and updated records plus pool totals
        """
        if not isinstance(records, list):
            raise ValueError("'events' must be a list")

        with self._lock:
            events = dict(self._events)
            new_count = 0
            updated_count = 0
            skipped = 0

            for raw in records:
                try:
                    candidate = CachedEvent.from_dict(raw)
                except ValueError as e:
                    logger.warning(f"Skipping invalid shared cache record: {e}")
                    skipped += 1
                    continue
                if parse_timestamp(candidate.cached_at) is None:
                    logger.warning(
                        f"Skipping record {candidate.id} with invalid cachedAt: "
                        f"{candidate.cached_at!r}"
                    )
                    skipped += 1
                    continue

                existing = events.get(candidate.id)
                if existing is None:
                    new_count += 1
                elif should_replace(existing, candidate):
                    updated_count += 1
                else:
                    continue
                events[candidate.id] = SharedCacheEvent.from_cached(candidate, contributor_id)

            contributors = dict(self._contributors)
            contributors[contributor_id] = None
            oldest, newest = self._bounds(events)

            self._events = events
            self._contributors = contributors
            self._last_update = to_iso(self.clock())
            if events:
                self._oldest_event, self._newest_event = oldest, newest

            result = UploadResult(
                success=True,
                new_events=new_count,
                updated_events=updated_count,
                total_events=len(events),
                contributors=len(contributors),
            )

        logger.info(
            f"Shared cache write from {contributor_id}: {new_count} new, "
            f"{updated_count} updated, {skipped} skipped, {result.total_events} total"
        )
        return result

    def reset(self) -> None:
        """Discard every record and all metadata."""
        with self._lock:
            self._events = {}
            self._contributors = {}
            self._last_update = to_iso(self.clock())
            self._oldest_event = None
            self._newest_event = None
        logger.info("Shared cache cleared")

    def metadata(self) -> PoolMetadata:
        with self._lock:
            return self._metadata()

    def _metadata(self) -> PoolMetadata:
        return PoolMetadata(
            last_update=self._last_update,
            total_events=len(self._events),
            contributors=list(self._contributors),
            oldest_event=self._oldest_event,
            newest_event=self._newest_event,
        )

    @staticmethod
    def _bounds(events: Dict[int, SharedCacheEvent]):
        times = [
            t for t in (parse_timestamp(e.datetime) for e in events.values())
            if t is not None
        ]
        if not times:
            return None, None
        return to_iso(min(times)), to_iso(max(times))
