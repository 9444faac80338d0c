"""HTTP client for the shared cache endpoint."""
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from processor.models import CachedEvent, PoolMetadata, SharedCacheEvent, UploadResult

logger = logging.getLogger(__name__)


class SharedCacheError(Exception):
    """The shared cache answered with something we cannot use."""


class SharedCacheClient:
    """Client for GET/POST/DELETE on ``<base_url>/shared-cache``."""

    def __init__(self, base_url: str, timeout: int = 30):
        """
        Initialize the client.

        Args:
            base_url: Endpoint root, e.g. https://example.com/api
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.url = base_url.rstrip('/') + '/shared-cache'
        self.timeout = timeout

    def fetch_events(
        self,
        since: Optional[str] = None
    ) -> Tuple[List[SharedCacheEvent], PoolMetadata]:
        """
        Read pool records cached after ``since`` (all records when omitted).

        Raises:
            requests.RequestException: On network or HTTP status errors
            SharedCacheError: If the response body is malformed
        """
        params = {'since': since} if since else None
        response = requests.get(self.url, params=params, timeout=self.timeout)
        response.raise_for_status()
        data = self._json(response)

        raw_events = data.get('events')
        if not isinstance(raw_events, list) or not isinstance(data.get('metadata'), dict):
            raise SharedCacheError("Response is missing 'events' or 'metadata'")

        try:
            events = [SharedCacheEvent.from_dict(raw) for raw in raw_events]
            metadata = PoolMetadata.from_dict(data['metadata'])
        except (ValueError, TypeError) as e:
            raise SharedCacheError(f"Malformed shared cache record: {e}") from e

        return events, metadata

    def upload_events(self, events: List[CachedEvent]) -> UploadResult:
        """
        Submit a batch of local records to the pool.

        Raises:
            requests.RequestException: On network or HTTP status errors
            SharedCacheError: If the response body is malformed
        """
        response = requests.post(
            self.url,
            json={'events': [event.to_dict() for event in events]},
            timeout=self.timeout
        )
        response.raise_for_status()

        try:
            return UploadResult.from_dict(self._json(response))
        except (KeyError, ValueError, TypeError) as e:
            raise SharedCacheError(f"Malformed upload response: {e}") from e

    def get_stats(self) -> PoolMetadata:
        """Return only the pool metadata."""
        _, metadata = self.fetch_events()
        return metadata

    def clear(self) -> bool:
        """Ask the pool to drop everything; returns the reported success flag."""
        response = requests.delete(self.url, timeout=self.timeout)
        response.raise_for_status()
        return bool(self._json(response).get('success'))

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise SharedCacheError(f"Response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise SharedCacheError("Response is not a JSON object")
        return data
