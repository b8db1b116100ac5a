"""Integration tests for Lambda handlers."""
import json
import logging
import os
from unittest.mock import Mock, patch

import pytest

from lambda_function import (
    JsonFormatter,
    assert_host_access,
    export_ics_handler,
    lambda_handler,
    refresh_calendar_handler,
    setup_logging,
)
from processor.models import (
    ApartmentFailure,
    BusyRange,
    Conflict,
    SweepResult,
    SyncResult,
    SOURCE_IMPORT,
)
from sync.errors import NotFoundError, PermissionDeniedError, UnauthenticatedError
from sync.export_gateway import ExportResponse


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'TABLE_NAME': 'test-apartment-calendars',
        'LOG_LEVEL': 'INFO',
        'FETCH_TIMEOUT_SECONDS': '10',
        'FETCH_MAX_RETRIES': '1',
        'FETCH_MAX_WORKERS': '4',
        'EXPORT_CACHE_MAX_AGE': '60',
        'SWEEP_TIME_MARGIN_SECONDS': '30'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 256
    context.aws_request_id = 'test-request-id'
    context.get_remaining_time_in_millis.return_value = 900000
    return context


def api_event(body=None, claims=None, query=None):
    """Build an API Gateway proxy event."""
    event = {'requestContext': {}}
    if claims is not None:
        event['requestContext']['authorizer'] = {'claims': claims}
    if body is not None:
        event['body'] = json.dumps(body)
    if query is not None:
        event['queryStringParameters'] = query
    return event


HOST_CLAIMS = {'sub': 'user-1', 'custom:hostId': 'h1'}


class TestScheduledHandler:
    """Test cases for the scheduled sweep handler."""

    @patch('lambda_function.FleetSyncScheduler')
    @patch('lambda_function.CalendarStore')
    def test_successful_sweep(self, mock_store_class, mock_scheduler_class, mock_env, mock_context):
        """Test the sweep statistics are returned."""
        mock_scheduler = Mock()
        mock_scheduler.run_sweep.return_value = SweepResult(
            apartments_synced=4,
            apartments_failed=1,
            failures=[ApartmentFailure('h1', 'loft', 'boom', 'RuntimeError')]
        )
        mock_scheduler_class.return_value = mock_scheduler

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['message'] == 'Calendar sweep completed'
        assert body['statistics']['apartments_synced'] == 4
        assert body['statistics']['apartments_failed'] == 1
        assert body['statistics']['apartments_skipped'] == 0
        assert 'duration_seconds' in body['statistics']
        assert body['failures'] == [{
            'hostId': 'h1',
            'apartmentSlug': 'loft',
            'error': 'boom',
            'errorType': 'RuntimeError'
        }]
        mock_store_class.assert_called_once_with(table_name='test-apartment-calendars')
        mock_scheduler.run_sweep.assert_called_once_with(
            remaining_time_ms=mock_context.get_remaining_time_in_millis
        )

    @patch('lambda_function.FleetSyncScheduler')
    @patch('lambda_function.CalendarStore')
    def test_sweep_cannot_start(self, mock_store_class, mock_scheduler_class, mock_env, mock_context):
        """Test a failure listing hosts returns 500."""
        mock_scheduler_class.return_value.run_sweep.side_effect = Exception('DynamoDB error')

        response = lambda_handler({}, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Calendar sweep failed'
        assert 'DynamoDB error' in body['error']
        assert body['error_type'] == 'Exception'

    @patch('lambda_function.CalendarSyncOrchestrator')
    @patch('lambda_function.ICalFeedFetcher')
    @patch('lambda_function.FleetSyncScheduler')
    @patch('lambda_function.CalendarStore')
    def test_settings_wired(
        self,
        mock_store_class,
        mock_scheduler_class,
        mock_fetcher_class,
        mock_orchestrator_class,
        mock_env,
        mock_context
    ):
        """Test environment settings reach the fetcher and orchestrator."""
        mock_scheduler_class.return_value.run_sweep.return_value = SweepResult()

        lambda_handler({}, mock_context)

        mock_fetcher_class.assert_called_once_with(timeout=10, max_retries=1)
        mock_orchestrator_class.assert_called_once_with(
            store=mock_store_class.return_value,
            fetcher=mock_fetcher_class.return_value,
            max_workers=4
        )
        mock_scheduler_class.assert_called_once_with(
            mock_store_class.return_value,
            mock_orchestrator_class.return_value,
            time_margin_seconds=30
        )


class TestRefreshHandler:
    """Test cases for the host-triggered refresh handler."""

    @patch('lambda_function.CalendarSyncOrchestrator')
    @patch('lambda_function.CalendarStore')
    def test_refresh_success(self, mock_store_class, mock_orchestrator_class, mock_env, mock_context):
        """Test the orchestrator result is returned as JSON."""
        mock_orchestrator_class.return_value.sync_apartment_calendar.return_value = SyncResult(
            imported_busy_ranges=[BusyRange(SOURCE_IMPORT, 'airbnb', '2026-07-03', '2026-07-10')],
            conflicts=[Conflict('c1', '2026-07-03', '2026-07-05', 'overlap', ['airbnb'])],
            synced_at='2026-10-19T08:00:00Z'
        )

        response = refresh_calendar_handler(
            api_event({'hostId': 'h1', 'apartmentSlug': 'loft'}, HOST_CLAIMS),
            mock_context
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['syncedAt'] == '2026-10-19T08:00:00Z'
        assert body['importedBusyRanges'][0]['sourceId'] == 'airbnb'
        assert body['conflicts'][0]['sourceIds'] == ['airbnb']
        mock_orchestrator_class.return_value.sync_apartment_calendar.assert_called_once_with(
            'h1', 'loft'
        )

    @patch('lambda_function.CalendarSyncOrchestrator')
    @patch('lambda_function.CalendarStore')
    def test_admin_may_refresh_any_host(
        self, mock_store_class, mock_orchestrator_class, mock_env, mock_context
    ):
        mock_orchestrator_class.return_value.sync_apartment_calendar.return_value = SyncResult(
            imported_busy_ranges=[], conflicts=[], synced_at='2026-10-19T08:00:00Z'
        )
        claims = {'sub': 'admin-1', 'custom:admin': 'true'}

        response = refresh_calendar_handler(
            api_event({'hostId': 'h9', 'apartmentSlug': 'loft'}, claims),
            mock_context
        )

        assert response['statusCode'] == 200

    @patch('lambda_function.CalendarStore')
    def test_unauthenticated(self, mock_store_class, mock_env, mock_context):
        response = refresh_calendar_handler(
            api_event({'hostId': 'h1', 'apartmentSlug': 'loft'}),
            mock_context
        )

        assert response['statusCode'] == 401
        mock_store_class.assert_not_called()

    @patch('lambda_function.CalendarStore')
    def test_other_host_denied(self, mock_store_class, mock_env, mock_context):
        response = refresh_calendar_handler(
            api_event({'hostId': 'h2', 'apartmentSlug': 'loft'}, HOST_CLAIMS),
            mock_context
        )

        assert response['statusCode'] == 403
        assert json.loads(response['body'])['message'] == 'Not allowed for this host.'
        mock_store_class.assert_not_called()

    @pytest.mark.parametrize('body,message', [
        ({'apartmentSlug': 'loft'}, 'hostId is required.'),
        ({'hostId': 'h1'}, 'apartmentSlug is required.'),
    ])
    @patch('lambda_function.CalendarStore')
    def test_missing_parameters(self, mock_store_class, body, message, mock_env, mock_context):
        response = refresh_calendar_handler(api_event(body, HOST_CLAIMS), mock_context)

        assert response['statusCode'] == 400
        assert json.loads(response['body'])['message'] == message
        mock_store_class.assert_not_called()

    def test_invalid_json_body(self, mock_env, mock_context):
        event = api_event(claims=HOST_CLAIMS)
        event['body'] = '{not json'

        response = refresh_calendar_handler(event, mock_context)

        assert response['statusCode'] == 400

    @patch('lambda_function.CalendarSyncOrchestrator')
    @patch('lambda_function.CalendarStore')
    def test_apartment_not_found(self, mock_store_class, mock_orchestrator_class, mock_env, mock_context):
        mock_orchestrator_class.return_value.sync_apartment_calendar.side_effect = (
            NotFoundError('Apartment not found.')
        )

        response = refresh_calendar_handler(
            api_event({'hostId': 'h1', 'apartmentSlug': 'ghost'}, HOST_CLAIMS),
            mock_context
        )

        assert response['statusCode'] == 404
        assert json.loads(response['body'])['message'] == 'Apartment not found.'

    @patch('lambda_function.CalendarSyncOrchestrator')
    @patch('lambda_function.CalendarStore')
    def test_internal_error_hides_details(
        self, mock_store_class, mock_orchestrator_class, mock_env, mock_context
    ):
        mock_orchestrator_class.return_value.sync_apartment_calendar.side_effect = (
            RuntimeError('table arn:aws:dynamodb:secret unavailable')
        )

        response = refresh_calendar_handler(
            api_event({'hostId': 'h1', 'apartmentSlug': 'loft'}, HOST_CLAIMS),
            mock_context
        )

        assert response['statusCode'] == 500
        assert json.loads(response['body']) == {'message': 'Internal error.'}


class TestExportHandler:
    """Test cases for the export handler."""

    @patch('lambda_function.ExportGateway')
    @patch('lambda_function.CalendarStore')
    def test_export_success(self, mock_store_class, mock_gateway_class, mock_env, mock_context):
        mock_gateway_class.return_value.export_ics.return_value = ExportResponse(
            body='BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n',
            headers={'Content-Type': 'text/calendar; charset=utf-8'}
        )

        response = export_ics_handler(
            api_event(query={'hostId': 'h1', 'apartmentSlug': 'loft', 'token': 's3cr3t-XYZ'}),
            mock_context
        )

        assert response['statusCode'] == 200
        assert response['headers']['Content-Type'] == 'text/calendar; charset=utf-8'
        assert response['body'].startswith('BEGIN:VCALENDAR')
        mock_gateway_class.return_value.export_ics.assert_called_once_with(
            'h1', 'loft', 's3cr3t-XYZ'
        )

    @patch('lambda_function.CalendarStore')
    def test_missing_query_parameters(self, mock_store_class, mock_env, mock_context):
        """Test requests without parameters get a 400 text response."""
        response = export_ics_handler({'queryStringParameters': None}, mock_context)

        assert response['statusCode'] == 400
        assert response['body'] == 'Missing hostId, apartmentSlug, or token.'
        assert response['headers']['Content-Type'].startswith('text/plain')
        mock_store_class.return_value.load_apartment.assert_not_called()

    @pytest.mark.parametrize('error,status', [
        (NotFoundError('Apartment not found.'), 404),
        (PermissionDeniedError('Invalid export token.'), 403),
    ])
    @patch('lambda_function.ExportGateway')
    @patch('lambda_function.CalendarStore')
    def test_gateway_errors(
        self, mock_store_class, mock_gateway_class, error, status, mock_env, mock_context
    ):
        mock_gateway_class.return_value.export_ics.side_effect = error

        response = export_ics_handler(
            api_event(query={'hostId': 'h1', 'apartmentSlug': 'loft', 'token': 's3cr3t-XYZ'}),
            mock_context
        )

        assert response['statusCode'] == status
        assert response['body'] == error.message
        assert 's3cr3t-XYZ' not in response['body']


class TestAssertHostAccess:
    """Test cases for caller authorization."""

    def test_owner_allowed(self):
        assert_host_access(HOST_CLAIMS, 'h1')

    def test_no_claims(self):
        with pytest.raises(UnauthenticatedError):
            assert_host_access(None, 'h1')

    def test_other_host(self):
        with pytest.raises(PermissionDeniedError):
            assert_host_access(HOST_CLAIMS, 'h2')


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default INFO level."""
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_debug_level(self):
        """Test logging setup with DEBUG level."""
        setup_logging('DEBUG')
        assert logging.getLogger().level == logging.DEBUG

    def test_json_formatter_includes_context(self):
        """Test extra context fields appear in the JSON output."""
        record = logging.LogRecord(
            'sync.fleet_scheduler', logging.ERROR, __file__, 1,
            'Calendar sync failed', None, None
        )
        record.host_id = 'h1'
        record.apartment_slug = 'loft'
        record.error = 'boom'
        record.token = 'must-not-appear'

        output = json.loads(JsonFormatter().format(record))

        assert output['message'] == 'Calendar sync failed'
        assert output['level'] == 'ERROR'
        assert output['host_id'] == 'h1'
        assert output['apartment_slug'] == 'loft'
        assert output['error'] == 'boom'
        assert 'token' not in output
