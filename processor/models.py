"""Data models for agenda events and timing adjustments."""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional, Tuple


class EventStatus(Enum):
    """Status of an event relative to the current time."""
    UPCOMING = 'UPCOMING'
    ONGOING = 'ONGOING'
    EXPIRED = 'EXPIRED'


@dataclass(frozen=True)
class Event:
    """Calendar event mapped into the agenda domain."""
    event_id: str
    title: str
    start_at: str
    end_at: str
    is_all_day: bool
    calendar_id: str
    location: Optional[str] = None
    html_link: Optional[str] = None
    status: Optional[EventStatus] = None

    def with_times(self, start_at: str, end_at: str) -> 'Event':
        return replace(self, start_at=start_at, end_at=end_at)

    def with_status(self, status: Optional[EventStatus]) -> 'Event':
        return replace(self, status=status)

    def to_dict(self) -> dict:
        return {
            'id': self.event_id,
            'title': self.title,
            'start_at': self.start_at,
            'end_at': self.end_at,
            'is_all_day': self.is_all_day,
            'calendar_id': self.calendar_id,
            'location': self.location,
            'html_link': self.html_link,
            'status': self.status.value if self.status else None
        }


@dataclass(frozen=True)
class Override:
    """Manual replacement of an event's start and/or end."""
    event_id: str
    start_at: Optional[str] = None
    end_at: Optional[str] = None

    def merge(self, newer: 'Override') -> 'Override':
        """
        Combine with a later override for the same event.

        Args:
            newer: Override written after this one

        Returns:
            New Override where every field set on ``newer`` wins
        """
        return Override(
            event_id=self.event_id,
            start_at=newer.start_at if newer.start_at is not None else self.start_at,
            end_at=newer.end_at if newer.end_at is not None else self.end_at
        )

    def apply_to(self, event: Event) -> Event:
        return event.with_times(
            self.start_at if self.start_at is not None else event.start_at,
            self.end_at if self.end_at is not None else event.end_at
        )

    @property
    def is_empty(self) -> bool:
        return self.start_at is None and self.end_at is None

    def to_dict(self) -> dict:
        return {'start_at': self.start_at, 'end_at': self.end_at}


@dataclass(frozen=True)
class ScheduleResult:
    """Outcome of an extend or finish request."""
    applied: bool
    action: str
    event_id: Optional[str] = None
    overrides: Dict[str, Override] = field(default_factory=dict)

    @property
    def shifted_event_ids(self) -> list[str]:
        """Identifiers moved by the cascade, excluding the active event."""
        return [
            event_id for event_id in self.overrides
            if event_id != self.event_id
        ]


@dataclass(frozen=True)
class ActiveTransition:
    """Change of the active event between two clock ticks."""
    previous_id: Optional[str]
    current_id: Optional[str]

    @property
    def started(self) -> bool:
        return self.current_id is not None

    @property
    def ended(self) -> bool:
        return self.previous_id is not None

    def to_dict(self) -> dict:
        return {'previous_id': self.previous_id, 'current_id': self.current_id}


@dataclass(frozen=True)
class TimingSnapshot:
    """State derived by the timing clock on one tick."""
    now_ms: int
    active_event_id: Optional[str]
    remaining: str
    is_critical: bool
    transition: Optional[ActiveTransition]
    events: Tuple[Event, ...]


@dataclass
class CalendarInfo:
    """Calendar available to the signed-in user."""
    calendar_id: str
    summary: str
    background_color: Optional[str]
    selected: bool


@dataclass
class SyncResult:
    """Result of an override sync operation."""
    added: int
    updated: int
    deleted: int
    errors: list[str]
