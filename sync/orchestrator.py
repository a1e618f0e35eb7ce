"""Sync orchestrator: run lock, configuration, reconciliation and run status."""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from processor.config import EnvironmentConfigProvider
from processor.errors import ConfigurationInvalid, LockContention
from processor.models import SyncConfiguration, SyncResult
from processor.normalizer import format_instant
from storage.state_store import StateStore
from sync.migrations import MigrationRunner
from sync.reconciler import Reconciler

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 'success'
RESULT_PARTIAL = 'partial'
RESULT_FAILED = 'failed'
RESULT_ALREADY_RUNNING = 'already_running'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunOutcome:
    """Outcome of a run request."""
    status: str
    started_at: str
    duration_seconds: float = 0.0
    result: Optional[SyncResult] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'started_at': self.started_at,
            'duration_seconds': round(self.duration_seconds, 2),
            'result': self.result.to_dict() if self.result else None,
            'error': self.error,
        }


class SyncOrchestrator:
    """
    Runs one reconciliation under the run lock.

    A run request made while another run holds the lock is refused, never
    queued. The lock is released and the run status recorded on every exit
    path once the lock was taken.
    """

    def __init__(
        self,
        state_store: StateStore,
        config_provider: EnvironmentConfigProvider,
        reconciler_factory: Callable[[SyncConfiguration], Reconciler],
        migration_runner: Optional[MigrationRunner] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the orchestrator.

        Args:
            state_store: Store holding the run lock and status
            config_provider: Source of the configuration snapshot
            reconciler_factory: Builds a Reconciler for a configuration
            migration_runner: Pending migrations are run before each sync
            clock: Returns the current aware instant
        """
        self.state_store = state_store
        self.config_provider = config_provider
        self.reconciler_factory = reconciler_factory
        self.migration_runner = migration_runner
        self.clock = clock

    def run(self, trigger: str = 'scheduled') -> RunOutcome:
        """
        Run a sync unless one is already in progress.

        Args:
            trigger: "scheduled" or "manual", used for logging

        Returns:
            RunOutcome describing the run
        """
        started = self.clock()
        started_key = format_instant(started)
        start_time = time.time()
        logger.info(f"Sync requested ({trigger})", extra={'trigger': trigger})

        try:
            self.state_store.acquire_lock(started_key)
        except LockContention as e:
            logger.warning(f"Sync request ({trigger}) rejected: {e}")
            return RunOutcome(
                status=RESULT_ALREADY_RUNNING,
                started_at=started_key,
                error=str(e)
            )
        except (ClientError, BotoCoreError) as e:
            duration = time.time() - start_time
            logger.error(f"Sync aborted, run lock unavailable: {e}", exc_info=True)
            self._record(RESULT_FAILED, duration, error=str(e))
            return RunOutcome(
                status=RESULT_FAILED,
                started_at=started_key,
                duration_seconds=duration,
                error=str(e)
            )

        try:
            return self._run_locked(started, started_key, start_time)
        finally:
            self._release_lock()

    def _release_lock(self) -> None:
        try:
            self.state_store.release_lock()
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to release run lock: {e}", exc_info=True)

    def _run_locked(self, started: datetime, started_key: str, start_time: float) -> RunOutcome:
        outcome = RunOutcome(status=RESULT_FAILED, started_at=started_key)
        try:
            if self.migration_runner is not None:
                self.migration_runner.run_pending()

            config = self.config_provider.load()
            reconciler = self.reconciler_factory(config)
            outcome.result = reconciler.run(config, started)
            outcome.status = RESULT_PARTIAL if outcome.result.failed_calendars else RESULT_SUCCESS

        except ConfigurationInvalid as e:
            logger.error(f"Sync aborted, configuration invalid: {e}")
            outcome.error = str(e)

        except Exception as e:
            logger.error(f"Sync failed: {e}", extra={'error_type': type(e).__name__}, exc_info=True)
            outcome.error = str(e)

        finally:
            outcome.duration_seconds = time.time() - start_time
            completed_at = None
            if outcome.status != RESULT_FAILED:
                completed_at = format_instant(self.clock())
            self._record(outcome.status, outcome.duration_seconds, completed_at, outcome.error)

        logger.info(
            f"Sync finished with status '{outcome.status}'",
            extra={'duration_seconds': round(outcome.duration_seconds, 2)}
        )
        return outcome

    def _record(
        self,
        status: str,
        duration: float,
        completed_at: Optional[str] = None,
        error: Optional[str] = None
    ) -> None:
        try:
            self.state_store.record_run(status, duration, completed_at=completed_at, error=error)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to record run status: {e}")
