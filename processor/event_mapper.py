"""Event mapper for converting calendar API resources into agenda events."""
import logging
from datetime import datetime
from typing import List, Optional

from engine.status import classify_event, resolve_timezone
from engine.clock import current_time_ms
from processor.models import Event

logger = logging.getLogger(__name__)


class EventMapper:
    """Maps Google Calendar event resources into Event objects."""

    UNTITLED = '(No Title)'
    MAX_TITLE_LENGTH = 200

    def __init__(self, timezone: Optional[str] = None):
        """
        Initialize the mapper.

        Args:
            timezone: IANA zone used for all-day and naive timestamps
        """
        self.tz = resolve_timezone(timezone)

    def map_events(self, raw_events: List[dict], calendar_id: str) -> List[Event]:
        """
        Map raw calendar resources.

        Args:
            raw_events: Event resources returned by the calendar API
            calendar_id: Calendar the resources belong to

        Returns:
            List of Event objects
        """
        events = []

        for raw in raw_events:
            try:
                event = self.map_event(raw, calendar_id)
                if event:
                    events.append(event)
            except Exception as e:
                logger.warning(
                    f"Failed to map event '{raw.get('summary')}': {e}"
                )
                continue

        logger.info(
            f"Mapped {len(events)} events out of {len(raw_events)} "
            f"resources for calendar {calendar_id}"
        )
        return events

    def map_event(self, raw: dict, calendar_id: str) -> Optional[Event]:
        """
        Map a single calendar resource.

        Args:
            raw: Event resource dictionary
            calendar_id: Calendar the resource belongs to

        Returns:
            Event object or None if the resource is cancelled or has no id
        """
        if raw.get('status') == 'cancelled':
            return None

        event_id = raw.get('id')
        if not event_id:
            logger.warning(f"Event '{raw.get('summary')}' missing required field: id")
            return None

        start = raw.get('start') or {}
        end = raw.get('end') or {}
        is_all_day = bool(start.get('date'))

        if is_all_day:
            # all-day end dates are exclusive (next day)
            start_at = f"{start['date']}T00:00:00"
            end_at = f"{end['date']}T00:00:00" if end.get('date') else start_at
        else:
            fallback = datetime.now(self.tz).isoformat()
            start_at = start.get('dateTime') or fallback
            end_at = end.get('dateTime') or fallback

        title = (raw.get('summary') or '').strip() or self.UNTITLED

        event = Event(
            event_id=event_id,
            title=title[:self.MAX_TITLE_LENGTH],
            start_at=start_at,
            end_at=end_at,
            is_all_day=is_all_day,
            calendar_id=calendar_id,
            location=raw.get('location'),
            html_link=raw.get('htmlLink')
        )

        status = classify_event(event, current_time_ms(), self.tz)
        if status is None:
            logger.warning(
                f"Event '{title}' has unparseable bounds: {start_at} - {end_at}"
            )
        return event.with_status(status)
