"""Event status classification and instant helpers."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from processor.models import Event, EventStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'Asia/Dhaka'
MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def classify(now: int, start: int, end: int) -> EventStatus:
    """
    Classify an event's bounds against the current instant.

    Args:
        now: Current instant in epoch milliseconds
        start: Event start in epoch milliseconds
        end: Event end in epoch milliseconds

    Returns:
        EXPIRED when now >= end, ONGOING when start <= now < end,
        UPCOMING otherwise
    """
    if now >= end:
        return EventStatus.EXPIRED
    if start <= now:
        return EventStatus.ONGOING
    return EventStatus.UPCOMING


def resolve_timezone(name: Optional[str]):
    """Return a tzinfo for ``name``, falling back to the default zone."""
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', using {DEFAULT_TIMEZONE}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def parse_instant(value, tz=None) -> Optional[int]:
    """
    Parse an ISO-8601 instant into epoch milliseconds.

    Naive values (all-day bounds such as ``2024-01-15T00:00:00``) are
    interpreted in ``tz``, or the default zone when none is given.

    Args:
        value: ISO-8601 string
        tz: tzinfo used for naive values

    Returns:
        Epoch milliseconds or None if the value cannot be parsed
    """
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz or resolve_timezone(None))

    delta = parsed - _EPOCH
    return (delta.days * 86400 + delta.seconds) * MS_PER_SECOND + delta.microseconds // 1000


def to_iso(ms: int) -> str:
    """Format epoch milliseconds as a UTC ISO-8601 string with a Z suffix."""
    moment = _EPOCH + timedelta(milliseconds=ms)
    return f"{moment.strftime('%Y-%m-%dT%H:%M:%S')}.{moment.microsecond // 1000:03d}Z"


def event_bounds(event: Event, tz=None) -> tuple[Optional[int], Optional[int]]:
    return parse_instant(event.start_at, tz), parse_instant(event.end_at, tz)


def classify_event(event: Event, now: int, tz=None) -> Optional[EventStatus]:
    """
    Classify an event, tolerating malformed bounds.

    Returns:
        EventStatus, or None when either bound cannot be parsed
    """
    start, end = event_bounds(event, tz)
    if start is None or end is None:
        return None
    return classify(now, start, end)


def format_duration(start_at: str, end_at: str, tz=None) -> str:
    """
    Format the length of an interval as ``1h 30m``, ``2h`` or ``45m``.

    Inverted intervals report ``0m``; unparseable ones an empty string.
    """
    start = parse_instant(start_at, tz)
    end = parse_instant(end_at, tz)
    if start is None or end is None:
        return ''

    diff = end - start
    if diff < 0:
        return '0m'

    total_minutes = diff // MS_PER_MINUTE
    hours, minutes = divmod(total_minutes, 60)

    if hours > 0:
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"
    return f"{minutes}m"
