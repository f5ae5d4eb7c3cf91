"""Integration tests for Lambda handler."""
import json
import logging
import os
from unittest.mock import Mock, patch

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from engine.status import parse_instant
from fetcher.google_calendar import UnauthorizedError
from lambda_function import JsonFormatter, lambda_handler, setup_logging
from processor.models import Event, Override, SyncResult

NOW = parse_instant('2024-01-15T10:20:00Z')


def make_event(event_id, start, end):
    return Event(
        event_id=event_id,
        title=f"Event {event_id}",
        start_at=f"2024-01-15T{start}Z",
        end_at=f"2024-01-15T{end}Z",
        is_all_day=False,
        calendar_id='primary'
    )


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'TABLE_NAME': 'test-agenda-overrides',
        'LOG_LEVEL': 'INFO',
        'DAYS_AHEAD': '14',
        'TIMEOUT_SECONDS': '10',
        'CALENDAR_IDS': 'primary, work',
        'TIMEZONE': 'UTC',
        'GOOGLE_ACCESS_TOKEN': 'env-token'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def agenda():
    return [
        make_event('A', '10:00:00', '10:30:00'),
        make_event('B', '10:25:00', '10:45:00'),
        make_event('C', '11:00:00', '11:15:00'),
    ]


@pytest.fixture
def components(agenda):
    """Patch the calendar client, repository and clock used by the handler."""
    with patch('lambda_function.GoogleCalendarClient') as client_class, \
            patch('lambda_function.OverrideRepository') as repository_class, \
            patch('lambda_function.current_time_ms', return_value=NOW):
        client = Mock()
        client.fetch_agenda.return_value = agenda
        client_class.return_value = client

        repository = Mock()
        repository.get_all_overrides.return_value = {}
        repository.sync_overrides.return_value = SyncResult(
            added=2, updated=0, deleted=0, errors=[]
        )
        repository_class.return_value = repository

        yield {
            'client_class': client_class,
            'client': client,
            'repository_class': repository_class,
            'repository': repository
        }


class TestLambdaHandler:
    """Test cases for Lambda handler."""

    def test_status_request(self, mock_env, mock_context, components):
        """Test reading the agenda without an action."""
        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['action'] == 'status'
        assert body['applied'] is None
        assert body['active_event_id'] == 'A'
        assert body['remaining'] == '-00:10:00'
        assert body['is_critical'] is False
        assert body['transition'] == {'previous_id': None, 'current_id': 'A'}
        assert [e['id'] for e in body['events']] == ['A', 'B', 'C']
        assert body['events'][0]['status'] == 'ONGOING'
        assert 'duration_seconds' in body

        components['client_class'].assert_called_once_with(
            access_token='env-token', timeout=10, timezone='UTC'
        )
        components['client'].fetch_agenda.assert_called_once_with(
            ['primary', 'work'], days_ahead=14
        )
        components['repository_class'].assert_called_once_with(
            table_name='test-agenda-overrides'
        )
        components['repository'].sync_overrides.assert_not_called()

    def test_extend_persists_cascade(self, mock_env, mock_context, components):
        """Test extending the active event and persisting the batch."""
        response = lambda_handler(
            {'action': 'extend', 'minutes': 10, 'previous_active_id': 'A'},
            mock_context
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['applied'] is True
        assert body['event_id'] == 'A'
        assert body['shifted_event_ids'] == ['B']
        assert body['remaining'] == '-00:20:00'
        assert body['transition'] is None
        assert body['overrides'] == {
            'A': {'start_at': None, 'end_at': '2024-01-15T10:40:00.000Z'},
            'B': {'start_at': '2024-01-15T10:40:00.000Z',
                  'end_at': '2024-01-15T11:00:00.000Z'}
        }

        saved = components['repository'].sync_overrides.call_args[0][0]
        assert set(saved) == {'A', 'B'}

    def test_finish_persists_single_override(self, mock_env, mock_context, components):
        response = lambda_handler({'action': 'finish'}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['applied'] is True
        assert body['active_event_id'] is None
        assert body['remaining'] == ''
        assert body['overrides'] == {
            'A': {'start_at': None, 'end_at': '2024-01-15T10:19:59.000Z'}
        }

    def test_noop_action_reports_not_applied(self, mock_env, mock_context, components):
        """Test that an action with no active event is distinguishable."""
        components['client'].fetch_agenda.return_value = [
            make_event('C', '11:00:00', '11:15:00')
        ]

        response = lambda_handler({'action': 'finish'}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['applied'] is False
        assert body['overrides'] == {}
        components['repository'].sync_overrides.assert_not_called()

    def test_stored_overrides_applied(self, mock_env, mock_context, components):
        components['repository'].get_all_overrides.return_value = {
            'A': Override(event_id='A', end_at='2024-01-15T10:50:00.000Z')
        }

        response = lambda_handler({}, mock_context)

        body = json.loads(response['body'])
        assert body['remaining'] == '-00:30:00'
        components['repository'].sync_overrides.assert_not_called()

    def test_moot_overrides_cleared(self, mock_env, mock_context, components):
        """Test that reconciliation drops overrides for removed events."""
        components['repository'].get_all_overrides.return_value = {
            'gone': Override(event_id='gone', end_at='2024-01-15T10:50:00.000Z')
        }

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        components['repository'].sync_overrides.assert_called_once_with({})

    def test_read_only_rejects_actions(self, mock_env, mock_context, components):
        """Test that read-only sessions never reach the scheduler."""
        response = lambda_handler(
            {'action': 'extend', 'minutes': 5, 'read_only': True},
            mock_context
        )

        assert response['statusCode'] == 403
        components['client'].fetch_agenda.assert_not_called()
        components['repository'].sync_overrides.assert_not_called()

    def test_read_only_allows_status(self, mock_env, mock_context, components):
        response = lambda_handler({'read_only': True}, mock_context)
        assert response['statusCode'] == 200

    @pytest.mark.parametrize('minutes', [None, 0, -1, '5', 1.5, 24 * 60 + 1, 10 ** 12])
    def test_invalid_minutes(self, mock_env, mock_context, components, minutes):
        response = lambda_handler({'action': 'extend', 'minutes': minutes}, mock_context)

        assert response['statusCode'] == 400
        components['client'].fetch_agenda.assert_not_called()

    def test_unknown_action(self, mock_env, mock_context, components):
        response = lambda_handler({'action': 'rewind'}, mock_context)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['allowed_actions'] == ['status', 'extend', 'finish']

    def test_payload_token_preferred(self, mock_env, mock_context, components):
        lambda_handler({'access_token': 'payload-token'}, mock_context)

        assert components['client_class'].call_args.kwargs['access_token'] == 'payload-token'

    def test_calendars_from_calendar_list(
        self, mock_env, mock_context, components, monkeypatch
    ):
        """Test that unset CALENDAR_IDS falls back to the selected calendars."""
        monkeypatch.delenv('CALENDAR_IDS')
        components['client'].default_calendar_ids.return_value = ['home', 'team']

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        components['client'].default_calendar_ids.assert_called_once_with()
        components['client'].fetch_agenda.assert_called_once_with(
            ['home', 'team'], days_ahead=14
        )

    def test_configured_calendars_skip_calendar_list(
        self, mock_env, mock_context, components
    ):
        lambda_handler({}, mock_context)

        components['client'].default_calendar_ids.assert_not_called()

    def test_calendar_list_unauthorized(
        self, mock_env, mock_context, components, monkeypatch
    ):
        monkeypatch.setenv('CALENDAR_IDS', ' , ')
        components['client'].default_calendar_ids.side_effect = UnauthorizedError('expired')

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 401
        components['client'].fetch_agenda.assert_not_called()

    def test_unauthorized(self, mock_env, mock_context, components):
        components['client'].fetch_agenda.side_effect = UnauthorizedError('expired')

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 401
        body = json.loads(response['body'])
        assert body['error_type'] == 'UnauthorizedError'

    def test_calendar_fetch_failure(self, mock_env, mock_context, components):
        """Test error handling for calendar fetch failures."""
        components['client'].fetch_agenda.side_effect = Exception('Network error')

        response = lambda_handler({'action': 'extend', 'minutes': 5}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Failed to fetch calendar events'
        assert 'Network error' in body['error']
        components['repository'].sync_overrides.assert_not_called()

    def test_persist_failure(self, mock_env, mock_context, components):
        """Test that a failed write is reported."""
        components['repository'].sync_overrides.return_value = SyncResult(
            added=0, updated=0, deleted=0, errors=['throttled']
        )

        response = lambda_handler({'action': 'extend', 'minutes': 5}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Failed to persist overrides'
        assert body['errors'] == ['throttled']

    def test_persist_exception(self, mock_env, mock_context, components):
        components['repository'].sync_overrides.side_effect = Exception('boom')

        response = lambda_handler({'action': 'finish'}, mock_context)

        assert response['statusCode'] == 500
        assert json.loads(response['body'])['error'] == 'boom'

    def test_unexpected_failure(self, mock_env, mock_context, components):
        components['repository'].get_all_overrides.side_effect = Exception('scan failed')

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Request failed'
        assert body['error'] == 'scan failed'


class TestPersistenceWithDynamoDB:
    """Test the handler against a mocked DynamoDB table."""

    @pytest.fixture
    def dynamodb_table(self, mock_env, monkeypatch):
        monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
        monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
        monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
        with mock_aws():
            dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
            yield dynamodb.create_table(
                TableName='test-agenda-overrides',
                KeySchema=[{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
                AttributeDefinitions=[
                    {'AttributeName': 'event_id', 'AttributeType': 'S'}
                ],
                BillingMode='PAY_PER_REQUEST'
            )

    @pytest.fixture
    def calendar(self, agenda):
        with patch('lambda_function.GoogleCalendarClient') as client_class, \
                patch('lambda_function.current_time_ms', return_value=NOW):
            client_class.return_value.fetch_agenda.return_value = agenda
            yield client_class.return_value

    def test_extend_written_to_table(self, dynamodb_table, mock_context, calendar):
        response = lambda_handler({'action': 'extend', 'minutes': 10}, mock_context)

        assert response['statusCode'] == 200
        item = dynamodb_table.get_item(Key={'event_id': 'A'})['Item']
        assert item['end_at'] == '2024-01-15T10:40:00.000Z'

    def test_failed_batch_write_returns_error(
        self, dynamodb_table, mock_context, calendar, monkeypatch
    ):
        """Test that a rejected batch write is not reported as success."""
        def throttled_flush(self):
            raise ClientError(
                {'Error': {'Code': 'ProvisionedThroughputExceededException',
                           'Message': 'Rate exceeded'}},
                'BatchWriteItem'
            )

        monkeypatch.setattr('boto3.dynamodb.table.BatchWriter._flush', throttled_flush)

        response = lambda_handler({'action': 'extend', 'minutes': 10}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Failed to persist overrides'
        assert body['errors'] == ['2 overrides failed to write']
        assert 'Item' not in dynamodb_table.get_item(Key={'event_id': 'A'})


class TestLogging:
    """Test cases for logging setup."""

    def test_setup_logging_installs_json_formatter(self):
        setup_logging('DEBUG')

        root_logger = logging.getLogger()
        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, JsonFormatter)

    def test_unknown_level_defaults_to_info(self):
        setup_logging('LOUD')
        assert logging.getLogger().level == logging.INFO

    def test_json_formatter_output(self):
        record = logging.LogRecord(
            'engine.scheduler', logging.INFO, __file__, 1, 'Extended %s', ('A',), None
        )

        data = json.loads(JsonFormatter().format(record))

        assert data['level'] == 'INFO'
        assert data['message'] == 'Extended A'
        assert data['logger'] == 'engine.scheduler'

    def test_json_formatter_includes_extra_fields(self):
        """Test that fields passed via extra reach the JSON output."""
        logger = logging.getLogger('tests.extra')
        record = logger.makeRecord(
            'tests.extra', logging.ERROR, __file__, 1, 'Sync failed', (), None,
            extra={'error_type': 'ClientError', 'override_count': 2}
        )

        data = json.loads(JsonFormatter().format(record))

        assert data['message'] == 'Sync failed'
        assert data['error_type'] == 'ClientError'
        assert data['override_count'] == 2
        assert 'args' not in data
        assert 'lineno' not in data

    def test_json_formatter_reserved_keys_win(self):
        record = logging.LogRecord(
            'engine.store', logging.INFO, __file__, 1, 'Applied', (), None
        )
        record.level = 'custom'

        data = json.loads(JsonFormatter().format(record))

        assert data['level'] == 'INFO'
