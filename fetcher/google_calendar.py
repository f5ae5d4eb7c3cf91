"""Google Calendar client for fetching agenda events."""
import logging
import time
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
from urllib.parse import quote

import requests

from engine.scheduler import sort_by_start
from engine.status import DEFAULT_TIMEZONE, resolve_timezone
from processor.event_mapper import EventMapper
from processor.models import CalendarInfo, Event

logger = logging.getLogger(__name__)


class UnauthorizedError(Exception):
    """Raised when the calendar API rejects the access token."""


class GoogleCalendarClient:
    """Client for the Google Calendar v3 REST API."""

    BASE_URL = "https://www.googleapis.com/calendar/v3"
    MAX_RESULTS = 250

    def __init__(
        self,
        access_token: str,
        timeout: int = 30,
        timezone: str = DEFAULT_TIMEZONE,
        mapper: Optional[EventMapper] = None
    ):
        """
        Initialize the calendar client.

        Args:
            access_token: OAuth bearer token
            timeout: HTTP request timeout in seconds (default: 30)
            timezone: IANA zone requested from the API (default: Asia/Dhaka)
            mapper: EventMapper used to build Event objects
        """
        self.access_token = access_token
        self.timeout = timeout
        self.timezone = timezone
        self.mapper = mapper or EventMapper(timezone)

    def fetch_calendar_list(self) -> List[CalendarInfo]:
        """
        Fetch calendars readable by the user.

        Returns:
            List of CalendarInfo objects
        """
        data = self._get_json(
            f"{self.BASE_URL}/users/me/calendarList",
            params={'minAccessRole': 'reader'}
        )

        calendars = [
            CalendarInfo(
                calendar_id=item['id'],
                summary=item.get('summaryOverride') or item.get('summary', ''),
                background_color=item.get('backgroundColor'),
                selected=bool(item.get('selected', False))
            )
            for item in (data or {}).get('items', [])
            if item.get('id')
        ]
        logger.info(f"Fetched {len(calendars)} calendars")
        return calendars

    def default_calendar_ids(self) -> List[str]:
        """
        Pick calendars when none are configured.

        Calendars the user has selected win; otherwise the first calendar in
        the list, and ``primary`` when the list is empty.
        """
        calendars = self.fetch_calendar_list()
        selected = [calendar.calendar_id for calendar in calendars if calendar.selected]
        if selected:
            return selected
        if calendars:
            logger.info("No calendar selected, using the first one")
            return [calendars[0].calendar_id]
        return ['primary']

    def fetch_events(
        self,
        calendar_id: str,
        time_min: str,
        time_max: str
    ) -> List[dict]:
        """
        Fetch raw event resources for one calendar, following pages.

        Args:
            calendar_id: Calendar identifier
            time_min: ISO-8601 lower bound
            time_max: ISO-8601 upper bound

        Returns:
            List of event resource dictionaries; empty when the calendar
            is gone (404/410)
        """
        url = f"{self.BASE_URL}/calendars/{quote(calendar_id, safe='')}/events"
        params = {
            'timeMin': time_min,
            'timeMax': time_max,
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'maxResults': str(self.MAX_RESULTS),
            'timeZone': self.timezone
        }

        items = []
        while True:
            data = self._get_json(url, params=params, missing_ok=True)
            if data is None:
                logger.warning(f"Calendar {calendar_id} not found")
                return []

            items.extend(data.get('items', []))

            page_token = data.get('nextPageToken')
            if not page_token:
                break
            params = dict(params, pageToken=page_token)

        logger.info(f"Fetched {len(items)} events for calendar {calendar_id}")
        return items

    def fetch_agenda(
        self,
        calendar_ids: Iterable[str],
        days_ahead: int = 30
    ) -> List[Event]:
        """
        Fetch and map events for several calendars.

        Args:
            calendar_ids: Calendars to include
            days_ahead: Number of days after today to include (default: 30)

        Returns:
            Events sorted by start
        """
        tz = resolve_timezone(self.timezone)
        start_of_day = datetime.now(tz).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        time_min = start_of_day.isoformat()
        time_max = (datetime.now(tz) + timedelta(days=days_ahead)).isoformat()

        events = []
        for calendar_id in calendar_ids:
            raw_events = self.fetch_events(calendar_id, time_min, time_max)
            events.extend(self.mapper.map_events(raw_events, calendar_id))

        return sort_by_start(events, tz)

    def _get_json(self, url: str, params: dict, missing_ok: bool = False):
        """
        GET a JSON document with retry logic.

        Args:
            url: Request URL
            params: Query parameters
            missing_ok: Return None for 404/410 instead of raising

        Returns:
            Decoded JSON body, or None for a missing resource

        Raises:
            UnauthorizedError: If the API answers 401
            requests.RequestException: If all retry attempts fail
        """
        headers = {
            'Authorization': f"Bearer {self.access_token}",
            'Cache-Control': 'no-cache',
            'Pragma': 'no-cache'
        }

        max_retries = 3
        base_delay = 1  # seconds

        for attempt in range(max_retries):
            try:
                logger.info(f"Requesting {url} (attempt {attempt + 1}/{max_retries})")
                response = requests.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout
                )

                if response.status_code == 401:
                    raise UnauthorizedError("Calendar API rejected the access token")
                if missing_ok and response.status_code in (404, 410):
                    return None

                response.raise_for_status()
                return response.json()

            except requests.RequestException as e:
                if attempt < max_retries - 1:
                    # Calculate exponential backoff delay
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise
