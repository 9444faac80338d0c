"""Conflict rule applied when a peer's record meets one we already hold."""
from typing import Optional

from processor.models import CachedEvent
from processor.timestamps import parse_timestamp


def should_replace(existing: Optional[CachedEvent], incoming: CachedEvent) -> bool:
    """
    Decide whether an incoming record supersedes the one already held.

    The incoming record wins when there is no existing record, when its
    cachedAt is strictly newer, or when it promotes the event to archived.
    Equal timestamps alone never replace.

    Args:
        existing: Record currently held for the id, if any
        incoming: Candidate record from a peer

    Returns:
        True if the incoming record should be accepted
    """
    if existing is None:
        return True

    incoming_time = parse_timestamp(incoming.cached_at)
    existing_time = parse_timestamp(existing.cached_at)

    if incoming_time is not None:
        if existing_time is None or incoming_time > existing_time:
            return True

    return not existing.is_archived and incoming.is_archived
