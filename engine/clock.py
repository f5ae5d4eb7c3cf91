"""Timing clock deriving the countdown for the active event."""
import logging
import threading
import time
from typing import Callable, Optional, Sequence, Tuple

from engine.status import (
    MS_PER_HOUR,
    MS_PER_MINUTE,
    MS_PER_SECOND,
    event_bounds,
)
from engine.store import EventStore
from processor.models import ActiveTransition, Event, TimingSnapshot

logger = logging.getLogger(__name__)


def current_time_ms() -> int:
    return time.time_ns() // 1_000_000


def format_remaining(remaining_ms: int) -> str:
    """
    Format a countdown as ``-HH:MM:SS``.

    Values are floored to whole seconds; anything at or below zero is
    shown as ``00:00:00``.
    """
    if remaining_ms <= 0:
        return '00:00:00'

    hours = remaining_ms // MS_PER_HOUR
    minutes = (remaining_ms % MS_PER_HOUR) // MS_PER_MINUTE
    seconds = (remaining_ms % MS_PER_MINUTE) // MS_PER_SECOND
    return f"-{hours:02d}:{minutes:02d}:{seconds:02d}"


def find_ongoing(events: Sequence[Event], now: int, tz=None) -> Optional[Event]:
    """
    Return the ongoing event, preferring the earliest start.

    Overlapping imports can leave more than one event ongoing at once; the
    earliest-starting one is the active event.
    """
    active = None
    active_start = None
    for event in events:
        start, end = event_bounds(event, tz)
        if start is None or end is None:
            continue
        if start <= now < end and (active_start is None or start < active_start):
            active = event
            active_start = start
    return active


class TimingClock:
    """
    Recurring tick over an EventStore.

    Every tick recomputes the countdown for the active event. Status of the
    whole list is reclassified on a coarser interval, or as soon as the
    store changes.
    """

    TICK_INTERVAL_SECONDS = 1.0
    RECLASSIFY_INTERVAL_MS = 5000
    CRITICAL_THRESHOLD_MS = 2 * MS_PER_MINUTE

    def __init__(
        self,
        store: EventStore,
        now_fn: Callable[[], int] = current_time_ms,
        previous_active_id: Optional[str] = None
    ):
        """
        Initialize the clock.

        Args:
            store: EventStore providing effective events
            now_fn: Source of the current instant in epoch milliseconds
            previous_active_id: Active event id seen before this clock
                started, so a restart does not repeat an edge
        """
        self.store = store
        self.now_fn = now_fn
        self._previous_active_id = previous_active_id
        self._events: Tuple[Event, ...] = ()
        self._classified_at: Optional[int] = None
        self._classified_version: Optional[int] = None

    @property
    def active_event_id(self) -> Optional[str]:
        return self._previous_active_id

    def tick(self, now: Optional[int] = None) -> TimingSnapshot:
        """
        Advance the clock once.

        Args:
            now: Instant to evaluate; defaults to ``now_fn()``

        Returns:
            TimingSnapshot for this tick
        """
        if now is None:
            now = self.now_fn()

        if self._needs_reclassify(now):
            self._events = self.store.effective_events(now)
            self._classified_at = now
            self._classified_version = self.store.version

        # countdown reads bounds, not the cached statuses
        active = find_ongoing(self._events, now, self.store.tz)

        if active is not None:
            _, end = event_bounds(active, self.store.tz)
            remaining_ms = end - now
            remaining = format_remaining(remaining_ms)
            is_critical = remaining_ms <= self.CRITICAL_THRESHOLD_MS
            active_id = active.event_id
        else:
            remaining = ''
            is_critical = False
            active_id = None

        transition = None
        if active_id != self._previous_active_id:
            transition = ActiveTransition(
                previous_id=self._previous_active_id,
                current_id=active_id
            )
            logger.info(
                f"Active event changed from {self._previous_active_id} "
                f"to {active_id}"
            )
            self._previous_active_id = active_id

        return TimingSnapshot(
            now_ms=now,
            active_event_id=active_id,
            remaining=remaining,
            is_critical=is_critical,
            transition=transition,
            events=self._events
        )

    def run(
        self,
        stop_event: threading.Event,
        on_tick: Optional[Callable[[TimingSnapshot], None]] = None
    ) -> None:
        """
        Tick once per TICK_INTERVAL_SECONDS until ``stop_event`` is set.

        Errors raised by ``on_tick`` are logged and do not stop the loop.
        """
        logger.info("Timing clock started")
        while not stop_event.is_set():
            snapshot = self.tick()
            if on_tick is not None:
                try:
                    on_tick(snapshot)
                except Exception as e:
                    logger.error(f"Tick callback failed: {e}", exc_info=True)
            stop_event.wait(self.TICK_INTERVAL_SECONDS)
        logger.info("Timing clock stopped")

    def _needs_reclassify(self, now: int) -> bool:
        if self._classified_at is None:
            return True
        if self._classified_version != self.store.version:
            return True
        elapsed = now - self._classified_at
        return elapsed < 0 or elapsed >= self.RECLASSIFY_INTERVAL_MS
