"""Event processor for validating and normalizing police feed records."""
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from processor.models import Event
from processor.timestamps import parse_timestamp

logger = logging.getLogger(__name__)


class EventProcessor:
    """Processor for validating and normalizing raw police events."""

    def process_events(
        self,
        raw_events: List[Dict[str, Any]],
        search_query: Optional[str] = None
    ) -> List[Event]:
        """
        Validate raw feed records and apply the free-text filter.

        Args:
            raw_events: Decoded JSON objects from the police feed
            search_query: Optional case-insensitive text to match against
                name, summary, location name and type

        Returns:
            List of valid Event objects
        """
        events = []

        for raw in raw_events:
            try:
                event = self._process_single_event(raw)
                if event:
                    events.append(event)
            except Exception as e:
                logger.warning(f"Failed to process event {self._describe(raw)}: {e}")
                continue

        logger.info(
            f"Processed {len(events)} valid events out of "
            f"{len(raw_events)} total events"
        )

        if search_query:
            events = self.filter_events(events, search_query)
            logger.info(f"{len(events)} events match search query '{search_query}'")

        return events

    def filter_events(self, events: List[Event], query: str) -> List[Event]:
        """Keep events whose name, summary, location or type contain query."""
        needle = query.lower()
        return [
            event for event in events
            if needle in event.name.lower()
            or needle in event.summary.lower()
            or needle in event.location.name.lower()
            or needle in event.type.lower()
        ]

    def _process_single_event(self, raw: Dict[str, Any]) -> Optional[Event]:
        """
        Process a single feed record.

        Args:
            raw: Decoded JSON object

        Returns:
            Event object or None if validation fails
        """
        event = Event.from_dict(raw)

        if parse_timestamp(event.datetime) is None:
            logger.warning(
                f"Invalid datetime for event {event.id}: {event.datetime!r}"
            )
            return None

        if not event.name.strip():
            logger.warning(f"Event {event.id} missing required field: name")
            return None

        event.name = event.name.strip()
        event.type = event.type.strip()
        event.location.name = event.location.name.strip()
        return event

    @staticmethod
    def _describe(raw: Any) -> str:
        if isinstance(raw, dict):
            return repr(raw.get('id'))
        return f"<{type(raw).__name__}>"


def parse_coordinates(gps: str) -> Optional[Tuple[float, float]]:
    """
    Parse a free-text "lat,lon" pair.

    Args:
        gps: Coordinate text from the feed

    Returns:
        (lat, lon) tuple or None if the text is not two numbers
    """
    parts = (gps or '').split(',')
    if len(parts) != 2:
        return None
    try:
        lat, lon = float(parts[0].strip()), float(parts[1].strip())
    except ValueError:
        return None
    if math.isnan(lat) or math.isnan(lon):
        return None
    return lat, lon
