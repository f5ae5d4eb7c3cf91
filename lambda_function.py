"""AWS Lambda handler for the agenda timing service."""
import json
import logging
import os
import time
from typing import Dict, Any

from engine.clock import TimingClock, current_time_ms
from engine.scheduler import CascadeScheduler
from engine.status import resolve_timezone
from engine.store import EventStore
from fetcher.google_calendar import GoogleCalendarClient, UnauthorizedError
from storage.dynamodb_manager import OverrideRepository

ACTIONS = ('status', 'extend', 'finish')

# Attributes every LogRecord carries; anything else came from ``extra``
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord('', logging.INFO, '', 0, '', (), None).__dict__
) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including fields passed via ``extra``."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any], start_time: float) -> Dict[str, Any]:
    body['duration_seconds'] = round(time.time() - start_time, 2)
    return {'statusCode': status_code, 'body': json.dumps(body)}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler for agenda status and operator actions.

    The payload selects an action: ``status`` (default), ``extend`` with
    ``minutes``, or ``finish``. ``read_only`` sessions may only read status.
    ``previous_active_id`` lets the caller detect active-event edges across
    invocations.

    Args:
        event: Request payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    event = event or {}

    # Read configuration from environment variables
    table_name = os.environ.get('TABLE_NAME', 'agenda-overrides')
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    days_ahead = int(os.environ.get('DAYS_AHEAD', '30'))
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))
    timezone = os.environ.get('TIMEZONE', 'Asia/Dhaka')
    calendar_ids = [
        calendar_id.strip()
        for calendar_id in os.environ.get('CALENDAR_IDS', '').split(',')
        if calendar_id.strip()
    ]
    access_token = event.get('access_token') or os.environ.get('GOOGLE_ACCESS_TOKEN', '')

    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    action = event.get('action', 'status')
    read_only = bool(event.get('read_only', False))

    logger.info(
        f"Lambda execution started",
        extra={
            'action': action,
            'read_only': read_only,
            'table_name': table_name,
            'calendar_count': len(calendar_ids)
        }
    )

    # Validate the request before touching any external service
    if action not in ACTIONS:
        logger.warning(f"Unknown action requested: {action}")
        return _response(400, {
            'message': 'Unknown action',
            'action': action,
            'allowed_actions': list(ACTIONS)
        }, start_time)

    if action != 'status' and read_only:
        logger.warning(f"Rejected {action} in read-only session")
        return _response(403, {
            'message': 'Timing adjustments are not allowed in read-only mode',
            'action': action
        }, start_time)

    minutes = event.get('minutes')
    if action == 'extend' and (
        isinstance(minutes, bool) or not isinstance(minutes, int)
        or not 0 < minutes <= CascadeScheduler.MAX_EXTEND_MINUTES
    ):
        logger.warning(f"Invalid extend minutes: {minutes!r}")
        return _response(400, {
            'message': (
                f"minutes must be a positive integer no greater than "
                f"{CascadeScheduler.MAX_EXTEND_MINUTES}"
            ),
            'action': action
        }, start_time)

    try:
        tz = resolve_timezone(timezone)
        client = GoogleCalendarClient(
            access_token=access_token,
            timeout=timeout_seconds,
            timezone=timezone
        )
        repository = OverrideRepository(table_name=table_name)

        # Fetch events from the calendar API with error handling
        try:
            if not calendar_ids:
                calendar_ids = client.default_calendar_ids()
                logger.info(f"Using calendars from calendar list: {calendar_ids}")
            logger.info("Fetching agenda from calendar API")
            source_events = client.fetch_agenda(calendar_ids, days_ahead=days_ahead)
            logger.info(f"Fetched {len(source_events)} events")
        except UnauthorizedError as e:
            logger.warning(f"Calendar API rejected credentials: {e}")
            return _response(401, {
                'message': 'Calendar authorization failed',
                'error': str(e),
                'error_type': type(e).__name__
            }, start_time)
        except Exception as e:
            logger.error(
                f"Failed to fetch calendar events after retries: {str(e)}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            return _response(500, {
                'message': 'Failed to fetch calendar events',
                'error': str(e),
                'error_type': type(e).__name__
            }, start_time)

        now = current_time_ms()
        stored_overrides = repository.get_all_overrides()
        store = EventStore(overrides=stored_overrides, tz=tz)
        store.replace_source(source_events)

        result = None
        if action == 'extend':
            result = store.extend(minutes, now)
        elif action == 'finish':
            result = store.finish(now)

        # Persist whenever the map changed, including reconciliation drops
        if dict(store.overrides) != stored_overrides:
            try:
                logger.info("Synchronizing overrides with DynamoDB")
                sync_result = repository.sync_overrides(store.overrides)
            except Exception as e:
                logger.error(
                    f"Error during DynamoDB sync operation: {str(e)}",
                    extra={'error_type': type(e).__name__},
                    exc_info=True
                )
                return _response(500, {
                    'message': 'Failed to persist overrides',
                    'error': str(e),
                    'error_type': type(e).__name__,
                    'note': 'Previous overrides remain in DynamoDB'
                }, start_time)

            if sync_result.errors:
                return _response(500, {
                    'message': 'Failed to persist overrides',
                    'errors': sync_result.errors,
                    'note': 'Previous overrides remain in DynamoDB'
                }, start_time)

        clock = TimingClock(
            store,
            now_fn=lambda: now,
            previous_active_id=event.get('previous_active_id')
        )
        snapshot = clock.tick()

        body = {
            'message': 'OK',
            'action': action,
            'applied': result.applied if result else None,
            'event_id': result.event_id if result else None,
            'shifted_event_ids': result.shifted_event_ids if result else [],
            'active_event_id': snapshot.active_event_id,
            'remaining': snapshot.remaining,
            'is_critical': snapshot.is_critical,
            'transition': snapshot.transition.to_dict() if snapshot.transition else None,
            'events': [item.to_dict() for item in snapshot.events],
            'overrides': {
                event_id: override.to_dict()
                for event_id, override in store.overrides.items()
            }
        }

        logger.info(
            f"Lambda execution completed successfully",
            extra={
                'action': action,
                'applied': body['applied'],
                'active_event_id': snapshot.active_event_id,
                'override_count': len(store.overrides)
            }
        )
        return _response(200, body, start_time)

    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {
            'message': 'Request failed',
            'error': str(e),
            'error_type': type(e).__name__
        }, start_time)
