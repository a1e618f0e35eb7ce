"""Unit tests for SyncOrchestrator."""
from unittest.mock import Mock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from processor.errors import ConfigurationInvalid
from processor.models import SyncResult
from sync.orchestrator import (
    RESULT_ALREADY_RUNNING,
    RESULT_FAILED,
    RESULT_PARTIAL,
    RESULT_SUCCESS,
    SyncOrchestrator,
)


@pytest.fixture
def config_provider(sync_config):
    provider = Mock()
    provider.load.return_value = sync_config
    return provider


@pytest.fixture
def reconciler():
    reconciler = Mock()
    reconciler.run.return_value = SyncResult(created=2, unchanged=3)
    return reconciler


@pytest.fixture
def orchestrator(state_store, config_provider, reconciler, run_start):
    return SyncOrchestrator(
        state_store=state_store,
        config_provider=config_provider,
        reconciler_factory=Mock(return_value=reconciler),
        clock=lambda: run_start
    )


class TestSyncOrchestrator:
    """Test cases for SyncOrchestrator class."""

    def test_successful_run(self, orchestrator, state_store, reconciler, sync_config, run_start):
        outcome = orchestrator.run()

        assert outcome.status == RESULT_SUCCESS
        assert outcome.result.created == 2
        assert outcome.started_at == '2025-10-20T06:00:00.000000Z'
        reconciler.run.assert_called_once_with(sync_config, run_start)

        status = state_store.get_status()
        assert status.in_progress is False
        assert status.last_result == RESULT_SUCCESS
        assert status.last_completed_at == '2025-10-20T06:00:00.000000Z'
        assert status.last_run_duration_seconds is not None

    def test_failed_calendar_makes_run_partial(self, orchestrator, state_store, reconciler):
        reconciler.run.return_value = SyncResult(created=1, failed_calendars=[2], errors=['timeout'])

        outcome = orchestrator.run()

        assert outcome.status == RESULT_PARTIAL
        assert state_store.get_status().last_result == RESULT_PARTIAL
        assert state_store.get_status().last_completed_at is not None

    def test_request_while_running_is_refused(self, orchestrator, state_store, reconciler):
        """Test that a second request during a run is refused, not queued."""
        nested = []
        reconciler.run.side_effect = lambda config, started: (
            nested.append(orchestrator.run(trigger='manual')) or SyncResult()
        )

        outcome = orchestrator.run()

        assert outcome.status == RESULT_SUCCESS
        assert nested[0].status == RESULT_ALREADY_RUNNING
        assert 'already in progress' in nested[0].error
        assert reconciler.run.call_count == 1
        assert state_store.get_status().in_progress is False

    def test_lock_held_by_other_run(self, orchestrator, state_store, config_provider):
        state_store.acquire_lock('2025-10-20T05:59:00.000000Z')

        outcome = orchestrator.run()

        assert outcome.status == RESULT_ALREADY_RUNNING
        assert '2025-10-20T05:59:00.000000Z' in outcome.error
        config_provider.load.assert_not_called()
        status = state_store.get_status()
        assert status.in_progress is True
        assert status.last_result is None

    def test_invalid_configuration_fails_run(self, orchestrator, state_store, config_provider, reconciler):
        config_provider.load.side_effect = ConfigurationInvalid('CHURCHTOOLS_URL is not set')

        outcome = orchestrator.run()

        assert outcome.status == RESULT_FAILED
        assert outcome.error == 'CHURCHTOOLS_URL is not set'
        reconciler.run.assert_not_called()
        status = state_store.get_status()
        assert status.in_progress is False
        assert status.last_result == RESULT_FAILED
        assert status.last_error == 'CHURCHTOOLS_URL is not set'
        assert status.last_completed_at is None

    def test_reconciler_error_releases_lock(self, orchestrator, state_store, reconciler):
        reconciler.run.side_effect = RuntimeError('boom')

        outcome = orchestrator.run()

        assert outcome.status == RESULT_FAILED
        assert outcome.error == 'boom'
        assert state_store.get_status().in_progress is False

        # The next request can run again
        reconciler.run.side_effect = None
        assert orchestrator.run().status == RESULT_SUCCESS

    def test_release_failure_keeps_recorded_status(self, orchestrator, state_store):
        error = ClientError({'Error': {'Code': 'ProvisionedThroughputExceededException'}}, 'PutItem')

        with patch.object(state_store, 'release_lock', side_effect=error):
            outcome = orchestrator.run()

        assert outcome.status == RESULT_SUCCESS
        status = state_store.get_status()
        assert status.last_result == RESULT_SUCCESS
        assert status.last_error is None

    def test_unreachable_state_table_fails_run(self, orchestrator, state_store, config_provider):
        error = EndpointConnectionError(endpoint_url='https://dynamodb.us-east-1.amazonaws.com')

        with patch.object(state_store, 'acquire_lock', side_effect=error):
            outcome = orchestrator.run()

        assert outcome.status == RESULT_FAILED
        assert 'dynamodb.us-east-1' in outcome.error
        config_provider.load.assert_not_called()
        assert state_store.get_status().last_result == RESULT_FAILED

    def test_migrations_run_before_configuration(self, state_store, config_provider, reconciler, run_start):
        calls = Mock()
        calls.attach_mock(config_provider.load, 'load')
        migration_runner = Mock()
        calls.attach_mock(migration_runner.run_pending, 'run_pending')
        orchestrator = SyncOrchestrator(
            state_store=state_store,
            config_provider=config_provider,
            reconciler_factory=Mock(return_value=reconciler),
            migration_runner=migration_runner,
            clock=lambda: run_start
        )

        orchestrator.run()

        assert [name for name, _, _ in calls.mock_calls] == ['run_pending', 'load']

    def test_outcome_to_dict(self, orchestrator):
        data = orchestrator.run().to_dict()

        assert data['status'] == RESULT_SUCCESS
        assert data['result']['created'] == 2
        assert data['error'] is None
