"""AWS Lambda handlers for Apartment Calendar Sync."""
import json
import logging
import os
import time
from typing import Any, Dict, Optional

from fetcher.ical_fetcher import ICalFeedFetcher
from processor.ics_exporter import ICSExporter
from storage.calendar_store import CalendarStore, busy_range_to_item, conflict_to_item
from sync.errors import (
    CalendarSyncError,
    PermissionDeniedError,
    UnauthenticatedError,
    ValidationError,
)
from sync.export_gateway import ExportGateway
from sync.fleet_scheduler import FleetSyncScheduler
from sync.orchestrator import CalendarSyncOrchestrator

# Context fields passed through logger extra= that end up in the JSON output
LOG_CONTEXT_FIELDS = (
    'host_id',
    'apartment_slug',
    'source_id',
    'error',
    'error_type',
    'duration_seconds',
    'table_name',
    'imported_count',
    'conflict_count',
    'failed_sources',
    'event_count',
    'apartments_synced',
    'apartments_failed',
    'apartments_skipped',
)


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for field_name in LOG_CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

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

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def load_settings() -> Dict[str, Any]:
    """Read handler configuration from environment variables."""
    return {
        'table_name': os.environ.get('TABLE_NAME', 'apartment-calendars'),
        'log_level': os.environ.get('LOG_LEVEL', 'INFO'),
        'fetch_timeout_seconds': int(os.environ.get('FETCH_TIMEOUT_SECONDS', '20')),
        'fetch_max_retries': int(os.environ.get('FETCH_MAX_RETRIES', '2')),
        'fetch_max_workers': int(os.environ.get('FETCH_MAX_WORKERS', '8')),
        'sweep_time_margin_seconds': int(os.environ.get('SWEEP_TIME_MARGIN_SECONDS', '60')),
        'export_cache_max_age': int(os.environ.get('EXPORT_CACHE_MAX_AGE', '60')),
        'export_uid_domain': os.environ.get('EXPORT_UID_DOMAIN', ''),
    }


def build_orchestrator(settings: Dict[str, Any], store: CalendarStore) -> CalendarSyncOrchestrator:
    fetcher = ICalFeedFetcher(
        timeout=settings['fetch_timeout_seconds'],
        max_retries=settings['fetch_max_retries']
    )
    return CalendarSyncOrchestrator(
        store=store,
        fetcher=fetcher,
        max_workers=settings['fetch_max_workers']
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Scheduled handler syncing every apartment of every host.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and sweep statistics
    """
    settings = load_settings()
    setup_logging(settings['log_level'])
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info(
        "Calendar sweep started",
        extra={'table_name': settings['table_name']}
    )

    try:
        store = CalendarStore(table_name=settings['table_name'])
        scheduler = FleetSyncScheduler(
            store,
            build_orchestrator(settings, store),
            time_margin_seconds=settings['sweep_time_margin_seconds']
        )
        sweep_result = scheduler.run_sweep(
            remaining_time_ms=getattr(context, 'get_remaining_time_in_millis', None)
        )
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Calendar sweep failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Calendar sweep failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }

    duration = time.time() - start_time
    logger.info(
        "Calendar sweep completed",
        extra={
            'duration_seconds': round(duration, 2),
            'apartments_synced': sweep_result.apartments_synced,
            'apartments_failed': sweep_result.apartments_failed,
            'apartments_skipped': sweep_result.apartments_skipped
        }
    )

    return {
        'statusCode': 200,
        'body': json.dumps({
            'message': 'Calendar sweep completed',
            'statistics': {
                'apartments_synced': sweep_result.apartments_synced,
                'apartments_failed': sweep_result.apartments_failed,
                'apartments_skipped': sweep_result.apartments_skipped,
                'duration_seconds': round(duration, 2)
            },
            'failures': [
                {
                    'hostId': failure.host_id,
                    'apartmentSlug': failure.apartment_slug,
                    'error': failure.error,
                    'errorType': failure.error_type
                }
                for failure in sweep_result.failures
            ]
        })
    }


def _caller_claims(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Extract authorizer claims from an API Gateway event."""
    authorizer = (event.get('requestContext') or {}).get('authorizer') or {}
    claims = authorizer.get('claims') or (authorizer.get('jwt') or {}).get('claims')
    if not claims or not claims.get('sub'):
        return None
    return claims


def _request_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    body = event.get('body')
    if body is None:
        return event
    if isinstance(body, dict):
        return body
    try:
        payload = json.loads(body or '{}')
    except ValueError:
        raise ValidationError('Request body must be JSON.')
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object.')
    return payload


def assert_host_access(claims: Optional[Dict[str, Any]], host_id: str) -> None:
    """
    Require an authenticated caller that owns the host or is an admin.

    Args:
        claims: Authorizer claims of the caller
        host_id: Host the caller wants to act on

    Raises:
        UnauthenticatedError: If the caller has no identity
        PermissionDeniedError: If the caller may not act on the host
    """
    if claims is None:
        raise UnauthenticatedError('Authentication required.')

    is_admin = str(claims.get('custom:admin', '')).lower() == 'true'
    if not is_admin and claims.get('custom:hostId') != host_id:
        raise PermissionDeniedError('Not allowed for this host.')


def _json_response(status_code: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(payload)
    }


def refresh_calendar_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Host-triggered sync of a single apartment.

    Args:
        event: API Gateway proxy event with a JSON body
            {"hostId": ..., "apartmentSlug": ...}
        context: Lambda context object

    Returns:
        Response dict with the imported ranges, conflicts and sync time
    """
    settings = load_settings()
    setup_logging(settings['log_level'])
    logger = logging.getLogger(__name__)

    try:
        claims = _caller_claims(event)
        if claims is None:
            raise UnauthenticatedError('Authentication required.')

        payload = _request_payload(event)
        host_id = str(payload.get('hostId') or '')
        if not host_id:
            raise ValidationError('hostId is required.')
        assert_host_access(claims, host_id)

        apartment_slug = str(payload.get('apartmentSlug') or '')
        if not apartment_slug:
            raise ValidationError('apartmentSlug is required.')

        store = CalendarStore(table_name=settings['table_name'])
        result = build_orchestrator(settings, store).sync_apartment_calendar(
            host_id, apartment_slug
        )
    except CalendarSyncError as e:
        logger.warning(
            f"Calendar refresh rejected: {e.message}",
            extra={'error_type': type(e).__name__}
        )
        return _json_response(e.status_code, {'message': e.message})
    except Exception as e:
        logger.error(
            f"Calendar refresh failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _json_response(500, {'message': 'Internal error.'})

    return _json_response(200, {
        'importedBusyRanges': [
            busy_range_to_item(r) for r in result.imported_busy_ranges
        ],
        'conflicts': [conflict_to_item(c) for c in result.conflicts],
        'syncedAt': result.synced_at
    })


def export_ics_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Public calendar export gated by the apartment's export token.

    Args:
        event: API Gateway proxy event with hostId, apartmentSlug and
            token query string parameters
        context: Lambda context object

    Returns:
        Response dict with the iCal body, or a short text error
    """
    settings = load_settings()
    setup_logging(settings['log_level'])
    logger = logging.getLogger(__name__)

    params = event.get('queryStringParameters') or {}
    try:
        store = CalendarStore(table_name=settings['table_name'])
        gateway = ExportGateway(
            store,
            exporter=ICSExporter(uid_domain=settings['export_uid_domain']),
            cache_max_age=settings['export_cache_max_age']
        )
        export = gateway.export_ics(
            str(params.get('hostId') or ''),
            str(params.get('apartmentSlug') or ''),
            str(params.get('token') or '')
        )
    except CalendarSyncError as e:
        return {
            'statusCode': e.status_code,
            'headers': {'Content-Type': 'text/plain; charset=utf-8'},
            'body': e.message
        }
    except Exception as e:
        logger.error(
            f"Calendar export failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return {
            'statusCode': 500,
            'headers': {'Content-Type': 'text/plain; charset=utf-8'},
            'body': 'Internal error.'
        }

    return {
        'statusCode': 200,
        'headers': export.headers,
        'body': export.body
    }
