"""One-time, flag-gated upgrades of stored data.

Every migration body must be an idempotent upsert: the flag check and the
flag write are not atomic, so two overlapping invocations may both run a body.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict

from processor.errors import MigrationFailure
from processor.normalizer import format_instant
from storage.event_store import EventStore
from storage.mapping_store import MappingStore
from storage.state_store import StateStore

logger = logging.getLogger(__name__)


class MigrationRunner:
    """Runs registered migrations at most once each."""

    def __init__(self, state_store: StateStore):
        self.state_store = state_store
        self.migrations: Dict[str, Callable[[], object]] = {}

    def register(self, migration_key: str, body: Callable[[], object]) -> None:
        self.migrations[migration_key] = body

    def run_once(self, migration_key: str, body: Callable[[], object]) -> bool:
        """
        Run body unless the migration's flag is already set.

        A failing body is logged and its flag stays unset, so it is retried
        on the next invocation.

        Args:
            migration_key: Name of the completion flag
            body: Idempotent migration

        Returns:
            True if the migration is completed after the call
        """
        if self.state_store.is_migration_completed(migration_key):
            logger.debug(f"Migration {migration_key} already completed")
            return True

        try:
            self.apply(migration_key, body)
        except MigrationFailure as e:
            logger.error(str(e), exc_info=True)
            return False

        self.state_store.mark_migration_completed(
            migration_key, format_instant(datetime.now(timezone.utc))
        )
        return True

    def apply(self, migration_key: str, body: Callable[[], object]) -> None:
        """
        Run a migration body without touching its flag.

        Raises:
            MigrationFailure: If the body raised
        """
        logger.info(f"Running migration {migration_key}")
        try:
            outcome = body()
        except Exception as e:
            raise MigrationFailure(f"Migration {migration_key} failed: {e}", migration_key) from e
        logger.info(f"Migration {migration_key} completed: {outcome}")

    def run_pending(self) -> Dict[str, bool]:
        """
        Run every registered migration that has not completed yet.

        Returns:
            Dict of migration key to completion state
        """
        return {key: self.run_once(key, body) for key, body in self.migrations.items()}


def build_migration_runner(
    state_store: StateStore,
    mapping_store: MappingStore,
    event_store: EventStore
) -> MigrationRunner:
    """
    Create a runner with all known migrations registered.

    Args:
        state_store: Store for the completion flags
        mapping_store: Mapping table
        event_store: Target event table

    Returns:
        MigrationRunner
    """
    runner = MigrationRunner(state_store)
    runner.register('mapping_repeating_group_v1', mapping_store.backfill_repeating_group)
    runner.register(
        'event_store_single_publish_v1',
        lambda: event_store.backfill_defaults({'event_type': 'single', 'event_status': 'publish'})
    )
    runner.register(
        'event_store_archetype_v2',
        lambda: event_store.backfill_defaults({'event_archetype': 'event'})
    )
    return runner
