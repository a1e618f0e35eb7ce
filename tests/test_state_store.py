"""Unit tests for StateStore."""
import pytest

from processor.errors import LockContention
from storage.state_store import STATUS_KEY

STARTED = '2025-10-20T06:00:00.000000Z'


class TestRunLock:
    """Test cases for the run lock."""

    def test_acquire_and_release(self, state_store):
        state_store.acquire_lock(STARTED)

        status = state_store.get_status()
        assert status.in_progress is True
        assert status.started_at == STARTED

        state_store.release_lock()

        status = state_store.get_status()
        assert status.in_progress is False
        assert status.started_at is None

    def test_second_acquire_is_refused(self, state_store):
        """Test that the lock is exclusive."""
        state_store.acquire_lock(STARTED)

        with pytest.raises(LockContention) as exc_info:
            state_store.acquire_lock('2025-10-20T06:05:00.000000Z')

        assert exc_info.value.started_at == STARTED
        assert STARTED in str(exc_info.value)

    def test_lock_can_be_taken_again_after_release(self, state_store):
        state_store.acquire_lock(STARTED)
        state_store.release_lock()

        state_store.acquire_lock('2025-10-20T07:00:00.000000Z')

        assert state_store.get_status().started_at == '2025-10-20T07:00:00.000000Z'


class TestRunStatus:
    """Test cases for the run status."""

    def test_empty_status(self, state_store):
        status = state_store.get_status()

        assert status.in_progress is False
        assert status.last_completed_at is None
        assert status.last_result is None

    def test_record_successful_run(self, state_store):
        state_store.record_run('success', 12.345, completed_at='2025-10-20T06:00:12.000000Z')

        status = state_store.get_status()
        assert status.last_result == 'success'
        assert status.last_run_duration_seconds == pytest.approx(12.35)
        assert status.last_completed_at == '2025-10-20T06:00:12.000000Z'
        assert status.last_error is None

    def test_failed_run_keeps_last_completion(self, state_store):
        """Test that a failed run does not move last_completed_at."""
        state_store.record_run('success', 3.0, completed_at='2025-10-20T06:00:03.000000Z')

        state_store.record_run('failed', 0.5, error='CHURCHTOOLS_URL is not set')

        status = state_store.get_status()
        assert status.last_result == 'failed'
        assert status.last_error == 'CHURCHTOOLS_URL is not set'
        assert status.last_completed_at == '2025-10-20T06:00:03.000000Z'

    def test_success_clears_last_error(self, state_store):
        state_store.record_run('failed', 0.5, error='boom')
        state_store.record_run('success', 1.0, completed_at='2025-10-20T07:00:01.000000Z')

        assert state_store.get_status().last_error is None
        item = state_store.table.get_item(Key={'state_key': STATUS_KEY})['Item']
        assert 'last_error' not in item


class TestMigrationFlags:
    """Test cases for migration flags."""

    def test_flags(self, state_store):
        assert state_store.is_migration_completed('mapping_repeating_group_v1') is False

        state_store.mark_migration_completed('mapping_repeating_group_v1', STARTED)

        assert state_store.is_migration_completed('mapping_repeating_group_v1') is True
        assert state_store.is_migration_completed('event_store_archetype_v2') is False
