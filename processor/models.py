"""Data models for police events, the local cache and the shared pool."""
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional


@dataclass
class Location:
    """Where an event happened; gps is free text "lat,lon"."""
    name: str
    gps: str


@dataclass
class Event:
    """Police event as published by the upstream feed."""
    id: int
    datetime: str
    name: str
    summary: str
    url: str
    type: str
    location: Location

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase wire form."""
        return {
            'id': self.id,
            'datetime': self.datetime,
            'name': self.name,
            'summary': self.summary,
            'url': self.url,
            'type': self.type,
            'location': {'name': self.location.name, 'gps': self.location.gps},
        }

    @classmethod
    def _base_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise ValueError(f"Expected an object, got {type(data).__name__}")

        event_id = data.get('id')
        if isinstance(event_id, bool) or not isinstance(event_id, int):
            raise ValueError(f"Invalid event id: {event_id!r}")

        location = data.get('location') or {}
        if not isinstance(location, dict):
            location = {}

        return {
            'id': event_id,
            'datetime': str(data.get('datetime') or ''),
            'name': str(data.get('name') or ''),
            'summary': str(data.get('summary') or ''),
            'url': str(data.get('url') or ''),
            'type': str(data.get('type') or ''),
            'location': Location(
                name=str(location.get('name') or ''),
                gps=str(location.get('gps') or ''),
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Event':
        """Build from the wire form; raises ValueError without an integer id."""
        return cls(**cls._base_kwargs(data))


@dataclass
class CachedEvent(Event):
    """Event as held in a client's local store."""
    cached_at: str = ''
    is_archived: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['cachedAt'] = self.cached_at
        data['isArchived'] = self.is_archived
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CachedEvent':
        kwargs = cls._base_kwargs(data)
        kwargs['cached_at'] = str(data.get('cachedAt') or '')
        kwargs['is_archived'] = bool(data.get('isArchived', False))
        return cls(**kwargs)

    def as_event(self) -> Event:
        """Strip cache bookkeeping, returning the plain upstream event."""
        names = [f.name for f in fields(Event)]
        return Event(**{name: getattr(self, name) for name in names})


@dataclass
class SharedCacheEvent(CachedEvent):
    """Cached event held by the shared pool, tagged with its uploader."""
    contributor_id: str = ''

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['contributorId'] = self.contributor_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SharedCacheEvent':
        cached = CachedEvent.from_dict(data)
        return cls.from_cached(cached, str(data.get('contributorId') or ''))

    @classmethod
    def from_cached(cls, event: CachedEvent, contributor_id: str) -> 'SharedCacheEvent':
        names = [f.name for f in fields(CachedEvent)]
        return cls(
            contributor_id=contributor_id,
            **{name: getattr(event, name) for name in names}
        )


@dataclass
class DateRange:
    """Inclusive calendar date range (YYYY-MM-DD)."""
    start_date: str
    end_date: str


@dataclass
class CacheMetadata:
    """Cheap summary of a local store."""
    last_fetch: str
    total_events: int
    oldest_event: str
    newest_event: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lastFetch': self.last_fetch,
            'totalEvents': self.total_events,
            'oldestEvent': self.oldest_event,
            'newestEvent': self.newest_event,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheMetadata':
        return cls(
            last_fetch=data['lastFetch'],
            total_events=int(data['totalEvents']),
            oldest_event=data['oldestEvent'],
            newest_event=data['newestEvent'],
        )


@dataclass
class PoolMetadata:
    """Summary of the shared pool as sent over the wire."""
    last_update: str
    total_events: int
    contributors: List[str] = field(default_factory=list)
    oldest_event: Optional[str] = None
    newest_event: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'lastUpdate': self.last_update,
            'totalEvents': self.total_events,
            'contributors': list(self.contributors),
        }
        if self.oldest_event:
            data['oldestEvent'] = self.oldest_event
        if self.newest_event:
            data['newestEvent'] = self.newest_event
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PoolMetadata':
        contributors = data.get('contributors') or []
        if not isinstance(contributors, list):
            raise ValueError("contributors must be a list")
        return cls(
            last_update=str(data.get('lastUpdate') or ''),
            total_events=int(data.get('totalEvents', 0)),
            contributors=[str(c) for c in contributors],
            oldest_event=data.get('oldestEvent'),
            newest_event=data.get('newestEvent'),
        )


@dataclass
class UploadResult:
    """Outcome of a write to the shared pool."""
    success: bool
    new_events: int
    updated_events: int
    total_events: int
    contributors: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'newEvents': self.new_events,
            'updatedEvents': self.updated_events,
            'totalEvents': self.total_events,
            'contributors': self.contributors,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UploadResult':
        return cls(
            success=bool(data['success']),
            new_events=int(data['newEvents']),
            updated_events=int(data['updatedEvents']),
            total_events=int(data['totalEvents']),
            contributors=int(data['contributors']),
        )


@dataclass
class EventFilters:
    """Query filters for the upstream feed."""
    date_time: Optional[str] = None
    location_name: Optional[str] = None
    event_type: Optional[str] = None
    search_query: Optional[str] = None
