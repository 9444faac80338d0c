"""Client for the Swedish police public events feed."""
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from processor.models import EventFilters

logger = logging.getLogger(__name__)


class PoliceApiError(Exception):
    """The upstream feed could not be fetched."""


class PoliceApiClient:
    """Client for https://polisen.se/api/events."""

    BASE_URL = "https://polisen.se/api/events"
    MAX_RETRIES = 3
    BASE_DELAY = 1  # seconds
    MAX_DELAY = 30  # seconds

    def __init__(self, base_url: Optional[str] = None, timeout: int = 30):
        """
        Initialize the feed client.

        Args:
            base_url: Override for the feed URL
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.base_url = base_url or self.BASE_URL
        self.timeout = timeout

    def fetch_events(self, filters: Optional[EventFilters] = None) -> List[Dict[str, Any]]:
        """
        Fetch the current snapshot of live events.

        Args:
            filters: Optional date, location and type filters; the free-text
                search query is applied later by EventProcessor

        Returns:
            Raw event objects as decoded from JSON

        Raises:
            PoliceApiError: If every attempt fails or the body is not a list
        """
        params = self._build_params(filters)
        logger.info(f"Fetching police events with params {params}")

        try:
            events = self._fetch_json(params)
        except (requests.RequestException, ValueError) as e:
            raise PoliceApiError(
                "Failed to fetch police events. Please try again later."
            ) from e

        if not isinstance(events, list):
            logger.error(f"Unexpected police feed payload: {type(events).__name__}")
            raise PoliceApiError("Failed to fetch police events. Please try again later.")

        logger.info(f"Successfully fetched {len(events)} events")
        return events

    def _build_params(self, filters: Optional[EventFilters]) -> Dict[str, str]:
        params = {}
        if filters:
            if filters.date_time:
                params['DateTime'] = filters.date_time
            if filters.location_name:
                params['locationname'] = filters.location_name
            if filters.event_type:
                params['type'] = filters.event_type
        return params

    def _fetch_json(self, params: Dict[str, str]) -> Any:
        """
        Fetch and decode the feed with capped exponential backoff.

        Raises:
            requests.RequestException: If all retry attempts fail
            ValueError: If the final response is not JSON
        """
        for attempt in range(self.MAX_RETRIES):
            try:
                logger.info(f"Fetching police feed (attempt {attempt + 1}/{self.MAX_RETRIES})")
                response = requests.get(
                    self.base_url,
                    params=params,
                    headers={'Accept': 'application/json'},
                    timeout=self.timeout
                )
                response.raise_for_status()
                return response.json()

            except requests.RequestException as e:
                if attempt < self.MAX_RETRIES - 1:
                    delay = min(self.BASE_DELAY * (2 ** attempt), self.MAX_DELAY)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.MAX_RETRIES} retry attempts failed. Last error: {e}"
                    )
                    raise
