"""Cascade scheduler for operator timing adjustments."""
import logging
from typing import Dict, List, Optional, Sequence

from engine.status import MS_PER_MINUTE, event_bounds, to_iso
from processor.models import Event, Override, ScheduleResult

logger = logging.getLogger(__name__)

EXTEND = 'extend'
FINISH = 'finish'


def start_sort_key(event: Event, tz=None) -> tuple:
    """Sort key placing events by start, malformed starts last."""
    start, _ = event_bounds(event, tz)
    if start is None:
        return (1, 0)
    return (0, start)


def sort_by_start(events: Sequence[Event], tz=None) -> List[Event]:
    return sorted(events, key=lambda event: start_sort_key(event, tz))


class CascadeScheduler:
    """
    Computes override batches for extend and finish-now requests.

    The scheduler is stateless: every call reads the effective event list it
    is given and returns the overrides to write, leaving storage to the
    caller.
    """

    GRACE_WINDOW_MS = 5 * MS_PER_MINUTE
    FINISH_EPSILON_MS = 1000
    MAX_EXTEND_MINUTES = 24 * 60

    def __init__(self, tz=None):
        """
        Initialize the scheduler.

        Args:
            tz: tzinfo used to interpret naive event timestamps
        """
        self.tz = tz

    def find_active_index(
        self,
        events: Sequence[Event],
        now: int,
        allow_grace: bool = False
    ) -> Optional[int]:
        """
        Locate the event an operator action applies to.

        Args:
            events: Effective events sorted by start
            now: Current instant in epoch milliseconds
            allow_grace: Also accept an event that ended less than
                GRACE_WINDOW_MS ago

        Returns:
            Index into ``events`` or None if no event qualifies
        """
        for index, event in enumerate(events):
            start, end = event_bounds(event, self.tz)
            if start is None or end is None or end < start:
                continue

            if start <= now < end:
                return index

            if allow_grace and 0 <= now - end < self.GRACE_WINDOW_MS:
                return index

        return None

    def extend(
        self,
        events: Sequence[Event],
        now: int,
        minutes: int
    ) -> ScheduleResult:
        """
        Extend the active event and push overlapping successors.

        Each pushed event keeps its duration and starts at the end of the
        event before it. The walk stops at the first event that no longer
        overlaps.

        Args:
            events: Effective events
            now: Current instant in epoch milliseconds
            minutes: Positive number of minutes to add

        Returns:
            ScheduleResult holding the override batch

        Raises:
            ValueError: If events is None or minutes is not a positive integer
                no greater than MAX_EXTEND_MINUTES
        """
        if events is None:
            raise ValueError("events must not be None")
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise ValueError(f"minutes must be a positive integer, got {minutes!r}")
        if minutes > self.MAX_EXTEND_MINUTES:
            raise ValueError(
                f"minutes must be at most {self.MAX_EXTEND_MINUTES}, got {minutes}"
            )

        ordered = sort_by_start(events, self.tz)
        active_index = self.find_active_index(ordered, now, allow_grace=True)
        if active_index is None:
            logger.debug("Extend requested with no active event")
            return ScheduleResult(applied=False, action=EXTEND)

        active = ordered[active_index]
        _, active_end = event_bounds(active, self.tz)
        new_end = active_end + minutes * MS_PER_MINUTE

        overrides: Dict[str, Override] = {
            active.event_id: Override(event_id=active.event_id, end_at=to_iso(new_end))
        }

        boundary = new_end
        for event in ordered[active_index + 1:]:
            start, end = event_bounds(event, self.tz)
            if start is None or end is None:
                logger.warning(
                    f"Skipping event '{event.title}' with malformed bounds "
                    f"during cascade"
                )
                continue
            if end < start:
                logger.warning(
                    f"Skipping event '{event.title}' with inverted interval "
                    f"during cascade"
                )
                continue

            if start >= boundary:
                break

            shifted_end = boundary + (end - start)
            overrides[event.event_id] = Override(
                event_id=event.event_id,
                start_at=to_iso(boundary),
                end_at=to_iso(shifted_end)
            )
            boundary = shifted_end

        logger.info(
            f"Extended '{active.title}' by {minutes} minutes, "
            f"pushed {len(overrides) - 1} following events"
        )
        return ScheduleResult(
            applied=True,
            action=EXTEND,
            event_id=active.event_id,
            overrides=overrides
        )

    def finish(self, events: Sequence[Event], now: int) -> ScheduleResult:
        """
        End the ongoing event just before ``now``.

        Later events are left in place, so finishing early opens a gap
        rather than pulling the rest of the day forward.

        Raises:
            ValueError: If events is None
        """
        if events is None:
            raise ValueError("events must not be None")

        ordered = sort_by_start(events, self.tz)
        active_index = self.find_active_index(ordered, now)
        if active_index is None:
            logger.debug("Finish requested with no ongoing event")
            return ScheduleResult(applied=False, action=FINISH)

        active = ordered[active_index]
        active_start, _ = event_bounds(active, self.tz)
        # never finish before the event began
        forced_end = max(active_start, now - self.FINISH_EPSILON_MS)

        logger.info(f"Finished '{active.title}' early")
        return ScheduleResult(
            applied=True,
            action=FINISH,
            event_id=active.event_id,
            overrides={
                active.event_id: Override(
                    event_id=active.event_id,
                    end_at=to_iso(forced_end)
                )
            }
        )
