"""Persisted key-value state: run lock, run status and migration flags.

Documented keys in the state table (partition key ``state_key``):

- ``run_lock``: ``in_progress`` (bool), ``started_at`` (UTC string)
- ``run_status``: ``last_completed_at``, ``last_run_duration_seconds``,
  ``last_result``, ``last_error``
- ``migration:<key>``: ``completed`` (bool), ``completed_at``
"""
import logging
from decimal import Decimal
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from processor.errors import LockContention
from processor.models import RunStatus

logger = logging.getLogger(__name__)

LOCK_KEY = 'run_lock'
STATUS_KEY = 'run_status'
MIGRATION_PREFIX = 'migration:'


class StateStore:
    """Manager for the sync state table."""

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the state table
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)

    def acquire_lock(self, started_at: str) -> None:
        """
        Take the run lock.

        Args:
            started_at: Run start in persisted UTC form

        Raises:
            LockContention: If another run holds the lock
        """
        try:
            self.table.put_item(
                Item={'state_key': LOCK_KEY, 'in_progress': True, 'started_at': started_at},
                ConditionExpression='attribute_not_exists(state_key) OR in_progress = :false',
                ExpressionAttributeValues={':false': False}
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                holder = self._get(LOCK_KEY) or {}
                logger.warning(f"Run lock held since {holder.get('started_at')}")
                raise LockContention(holder.get('started_at')) from e
            logger.error(f"Error acquiring run lock: {e}")
            raise
        logger.info(f"Acquired run lock at {started_at}")

    def release_lock(self) -> None:
        try:
            self.table.put_item(Item={'state_key': LOCK_KEY, 'in_progress': False})
        except ClientError as e:
            logger.error(f"Error releasing run lock: {e}")
            raise
        logger.info("Released run lock")

    def get_status(self) -> RunStatus:
        """
        Read the run status shown to dashboards.

        Returns:
            RunStatus combining the lock and the last run's outcome
        """
        lock = self._get(LOCK_KEY) or {}
        status = self._get(STATUS_KEY) or {}
        duration = status.get('last_run_duration_seconds')

        return RunStatus(
            in_progress=bool(lock.get('in_progress', False)),
            started_at=lock.get('started_at') if lock.get('in_progress') else None,
            last_completed_at=status.get('last_completed_at'),
            last_run_duration_seconds=float(duration) if duration is not None else None,
            last_result=status.get('last_result'),
            last_error=status.get('last_error')
        )

    def record_run(
        self,
        result: str,
        duration_seconds: float,
        completed_at: Optional[str] = None,
        error: Optional[str] = None
    ) -> None:
        """
        Store the outcome of a run.

        last_completed_at only moves forward on runs that completed.

        Args:
            result: "success", "partial" or "failed"
            duration_seconds: Wall time of the run
            completed_at: Completion time, set for completed runs
            error: Error message of a failed run
        """
        names = {'#result': 'last_result'}
        values = {
            ':result': result,
            ':duration': Decimal(str(round(duration_seconds, 2))),
        }
        assignments = ['#result = :result', 'last_run_duration_seconds = :duration']

        if completed_at:
            assignments.append('last_completed_at = :completed')
            values[':completed'] = completed_at
        if error:
            assignments.append('last_error = :error')
            values[':error'] = error

        update = 'SET ' + ', '.join(assignments)
        if not error:
            update += ' REMOVE last_error'

        self.table.update_item(
            Key={'state_key': STATUS_KEY},
            UpdateExpression=update,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values
        )
        logger.info(f"Recorded run result '{result}' ({duration_seconds:.2f}s)")

    def is_migration_completed(self, migration_key: str) -> bool:
        item = self._get(MIGRATION_PREFIX + migration_key)
        return bool(item and item.get('completed'))

    def mark_migration_completed(self, migration_key: str, completed_at: str) -> None:
        self.table.put_item(Item={
            'state_key': MIGRATION_PREFIX + migration_key,
            'completed': True,
            'completed_at': completed_at,
        })

    def _get(self, key: str) -> Optional[dict]:
        try:
            response = self.table.get_item(Key={'state_key': key}, ConsistentRead=True)
        except ClientError as e:
            logger.error(f"Error reading state '{key}': {e}")
            raise
        return response.get('Item')
