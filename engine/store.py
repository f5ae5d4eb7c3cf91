"""Event store holding source events and manual time overrides."""
import logging
import threading
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from engine.scheduler import CascadeScheduler, sort_by_start
from engine.status import classify_event, parse_instant
from processor.models import Event, Override, ScheduleResult

logger = logging.getLogger(__name__)


def reconcile_overrides(
    overrides: Mapping[str, Override],
    events: Iterable[Event],
    tz=None
) -> Dict[str, Override]:
    """
    Reconcile stored overrides against freshly fetched source events.

    An override survives only while it still expresses a manual change:
    an end that differs from the source end (extended, or finished early
    and possibly extended again afterwards), or a start that is later than
    the source start (pushed). Fields the fresh source already matches are
    dropped, as are overrides for events that disappeared from the source.

    Args:
        overrides: Current override map
        events: Fresh source events
        tz: tzinfo used for naive timestamps

    Returns:
        New override map
    """
    source_by_id = {event.event_id: event for event in events}
    reconciled = {}

    for event_id, override in overrides.items():
        source = source_by_id.get(event_id)
        if source is None:
            logger.info(f"Dropping override for removed event {event_id}")
            continue

        source_start = parse_instant(source.start_at, tz)
        source_end = parse_instant(source.end_at, tz)
        override_start = parse_instant(override.start_at, tz)
        override_end = parse_instant(override.end_at, tz)

        start_at = None
        if override_start is not None and (
            source_start is None or override_start > source_start
        ):
            start_at = override.start_at

        end_at = None
        if override_end is not None and override_end != source_end:
            end_at = override.end_at

        kept = Override(event_id=event_id, start_at=start_at, end_at=end_at)
        if kept.is_empty:
            logger.info(f"Override for event {event_id} is moot, clearing it")
            continue
        reconciled[event_id] = kept

    return reconciled


class EventStore:
    """
    Authoritative source list plus a sparse map of manual overrides.

    Readers get immutable snapshots: the effective list is a tuple of frozen
    events and the override map is a read-only proxy. The source and the
    map are held together in one state tuple that is replaced wholesale on
    every write, so a reader never pairs a new source with an old map.
    Operator actions are serialized so each one computes against the latest
    snapshot.
    """

    def __init__(
        self,
        events: Iterable[Event] = (),
        overrides: Optional[Mapping[str, Override]] = None,
        tz=None,
        scheduler: Optional[CascadeScheduler] = None
    ):
        """
        Initialize the store.

        Args:
            events: Source events
            overrides: Previously persisted overrides keyed by event id
            tz: tzinfo used for naive timestamps
            scheduler: CascadeScheduler used for operator actions
        """
        self.tz = tz
        self.scheduler = scheduler or CascadeScheduler(tz=tz)
        self._lock = threading.Lock()
        self._version = 0
        self._state: Tuple[Tuple[Event, ...], Mapping[str, Override]] = (
            self._dedupe(events),
            MappingProxyType(dict(overrides or {}))
        )

    @property
    def source_events(self) -> Tuple[Event, ...]:
        return self._state[0]

    @property
    def overrides(self) -> Mapping[str, Override]:
        """Read-only snapshot of the override map."""
        return self._state[1]

    @property
    def version(self) -> int:
        """Counter bumped on every change to the source or overrides."""
        return self._version

    def replace_source(self, events: Iterable[Event], reconcile: bool = True) -> None:
        """
        Replace the source list after a calendar refresh.

        Args:
            events: Fresh source events
            reconcile: Drop overrides made moot by the fresh source

        Raises:
            ValueError: If events is None
        """
        if events is None:
            raise ValueError("events must not be None")

        source = self._dedupe(events)
        with self._lock:
            overrides = self._state[1]
            if reconcile:
                overrides = MappingProxyType(
                    reconcile_overrides(overrides, source, self.tz)
                )
            self._state = (source, overrides)
            self._version += 1

        logger.info(
            f"Source replaced with {len(source)} events, "
            f"{len(overrides)} overrides kept"
        )

    def effective_events(self, now: Optional[int] = None) -> Tuple[Event, ...]:
        """
        Build the effective event list.

        Args:
            now: When given, each event's status is classified against it

        Returns:
            Tuple of events with overrides applied, sorted by start
        """
        source, overrides = self._state

        effective = []
        for event in source:
            override = overrides.get(event.event_id)
            if override is not None:
                event = override.apply_to(event)
            if now is not None:
                event = event.with_status(classify_event(event, now, self.tz))
            effective.append(event)

        return tuple(sort_by_start(effective, self.tz))

    def apply_overrides(self, batch: Mapping[str, Override]) -> None:
        """
        Merge a batch of overrides, latest write per field winning.

        The map is replaced in a single assignment.
        """
        with self._lock:
            self._apply_locked(batch)

    def clear_override(self, event_id: str) -> bool:
        """Remove the override for an event; returns True if one existed."""
        with self._lock:
            source, overrides = self._state
            if event_id not in overrides:
                return False
            updated = dict(overrides)
            del updated[event_id]
            self._state = (source, MappingProxyType(updated))
            self._version += 1
            return True

    def extend(self, minutes: int, now: int) -> ScheduleResult:
        """Extend the active event by ``minutes`` and cascade the push."""
        with self._lock:
            result = self.scheduler.extend(self.effective_events(), now, minutes)
            if result.applied:
                self._apply_locked(result.overrides)
            return result

    def finish(self, now: int) -> ScheduleResult:
        """End the ongoing event now without moving later events."""
        with self._lock:
            result = self.scheduler.finish(self.effective_events(), now)
            if result.applied:
                self._apply_locked(result.overrides)
            return result

    def _apply_locked(self, batch: Mapping[str, Override]) -> None:
        if not batch:
            return
        source, overrides = self._state
        updated = dict(overrides)
        for event_id, override in batch.items():
            existing = updated.get(event_id)
            updated[event_id] = existing.merge(override) if existing else override
        self._state = (source, MappingProxyType(updated))
        self._version += 1
        logger.debug(f"Applied {len(batch)} overrides")

    def _dedupe(self, events: Iterable[Event]) -> Tuple[Event, ...]:
        if events is None:
            raise ValueError("events must not be None")

        seen = set()
        unique = []
        for event in events:
            if event.event_id in seen:
                logger.warning(
                    f"Duplicate event id {event.event_id} ('{event.title}') ignored"
                )
                continue
            seen.add(event.event_id)
            unique.append(event)
        return tuple(unique)
