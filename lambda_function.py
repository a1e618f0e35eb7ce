"""AWS Lambda handler for ChurchTools Calendar Sync."""
import json
import logging
import os
from typing import Any, Dict

import requests

from processor.config import EnvironmentConfigProvider, normalize_url
from source.churchtools_client import ChurchToolsClient
from storage.event_store import EventStore
from storage.mapping_store import MappingStore
from storage.state_store import StateStore
from sync.migrations import build_migration_runner
from sync.orchestrator import (
    RESULT_ALREADY_RUNNING,
    RESULT_FAILED,
    SyncOrchestrator,
)
from sync.reconciler import Reconciler, forget_target

# Attributes every LogRecord has; anything else came in through `extra`
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}


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

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS:
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

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create new handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Set log level
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body, default=str)}


def _client_from_env(timeout_seconds: int) -> ChurchToolsClient:
    url = os.environ.get('CHURCHTOOLS_URL', '').strip()
    token = os.environ.get('CHURCHTOOLS_API_TOKEN', '').strip()
    if not url or not token:
        raise ValueError('CHURCHTOOLS_URL and CHURCHTOOLS_API_TOKEN are required')
    return ChurchToolsClient(normalize_url(url), token, timeout=timeout_seconds)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for ChurchTools Calendar Sync.

    EventBridge schedule events start a scheduled sync. Manual invocations
    pass an "action": sync (default), status, validate_connection,
    list_calendars, list_resource_types or target_deleted.

    Args:
        event: EventBridge event payload or manual request
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    # Read configuration from environment variables
    mapping_table = os.environ.get('MAPPING_TABLE_NAME', 'ctsync-mapping')
    events_table = os.environ.get('EVENTS_TABLE_NAME', 'ctsync-events')
    state_table = os.environ.get('STATE_TABLE_NAME', 'ctsync-state')
    attachment_bucket = os.environ.get('ATTACHMENT_BUCKET') or None
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))

    # Initialize logging
    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    event = event or {}
    action = event.get('action', 'sync')
    trigger = 'scheduled' if event.get('detail-type') == 'Scheduled Event' else 'manual'
    logger.info("Lambda execution started", extra={'action': action, 'trigger': trigger})

    try:
        state_store = StateStore(state_table)
        mapping_store = MappingStore(mapping_table)

        if action == 'status':
            status = state_store.get_status()
            return _response(200, {
                'in_progress': status.in_progress,
                'started_at': status.started_at,
                'last_completed_at': status.last_completed_at,
                'last_run_duration_seconds': status.last_run_duration_seconds,
                'last_result': status.last_result,
                'last_error': status.last_error,
                'mapped_occurrences': mapping_store.count(),
            })

        if action in ('validate_connection', 'list_calendars', 'list_resource_types'):
            return _source_action(action, timeout_seconds, logger)

        event_store = EventStore(events_table, attachment_bucket)

        if action == 'target_deleted':
            target_record_id = event.get('target_record_id')
            if not target_record_id:
                return _response(400, {'message': 'target_record_id is required'})
            record = forget_target(mapping_store, event_store, target_record_id)
            return _response(200, {
                'message': 'Mapping removed' if record else 'No mapping for target record',
                'target_record_id': target_record_id,
            })

        if action != 'sync':
            return _response(400, {'message': f"Unknown action '{action}'"})

        orchestrator = SyncOrchestrator(
            state_store=state_store,
            config_provider=EnvironmentConfigProvider(),
            reconciler_factory=lambda config: Reconciler(
                ChurchToolsClient(config.url, config.api_token, timeout=timeout_seconds),
                mapping_store,
                event_store
            ),
            migration_runner=build_migration_runner(state_store, mapping_store, event_store)
        )
        outcome = orchestrator.run(trigger=trigger)

        if outcome.status == RESULT_ALREADY_RUNNING:
            return _response(409, {'message': 'Sync already in progress', **outcome.to_dict()})
        if outcome.status == RESULT_FAILED:
            return _response(500, {'message': 'Sync failed', **outcome.to_dict()})
        return _response(200, {'message': 'Sync completed successfully', **outcome.to_dict()})

    except Exception as e:
        # Log error
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )

        # Return error response
        return _response(500, {
            'message': 'Request failed',
            'error': str(e),
            'error_type': type(e).__name__,
        })


def _source_action(action: str, timeout_seconds: int, logger: logging.Logger) -> Dict[str, Any]:
    """Run a read-only request against ChurchTools for the settings screen."""
    try:
        client = _client_from_env(timeout_seconds)
    except ValueError as e:
        return _response(400, {'message': str(e)})

    try:
        if action == 'validate_connection':
            person = client.whoami()
            name = ' '.join(filter(None, [person.get('firstName'), person.get('lastName')]))
            if not name:
                return _response(200, {'message': 'Connection successful but could not retrieve user info'})
            return _response(200, {'message': f'Connected as: {name}'})
        if action == 'list_calendars':
            return _response(200, {'calendars': client.get_calendars()})
        return _response(200, {'resource_types': client.get_resource_types()})

    except requests.RequestException as e:
        logger.error(f"ChurchTools request for {action} failed: {e}")
        return _response(502, {'message': f'Connection failed: {e}'})
