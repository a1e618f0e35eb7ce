"""DynamoDB-backed store of source occurrence to target event mappings."""
import logging
import uuid
from typing import Callable, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from processor.models import MappingRecord

logger = logging.getLogger(__name__)


class MappingStore:
    """
    Manager for the mapping table.

    Items are keyed by (source_appointment_id, occurrence_start), so the
    partition key doubles as the lookup index on the source appointment.
    A global secondary index on target_record_id resolves mappings from
    the target side.
    """

    TARGET_INDEX = 'target-index'

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the mapping table
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized MappingStore for table: {table_name}")

    @staticmethod
    def new_record_id() -> str:
        return str(uuid.uuid4())

    def find(self, source_appointment_id: int, occurrence_start: str) -> Optional[MappingRecord]:
        """
        Look up the mapping of one occurrence.

        Args:
            source_appointment_id: Source appointment id
            occurrence_start: Occurrence start in persisted UTC form

        Returns:
            MappingRecord or None if the occurrence was never materialized
        """
        try:
            response = self.table.get_item(
                Key={
                    'source_appointment_id': source_appointment_id,
                    'occurrence_start': occurrence_start
                },
                ConsistentRead=True
            )
        except ClientError as e:
            logger.error(f"Error reading mapping {source_appointment_id}@{occurrence_start}: {e}")
            raise

        item = response.get('Item')
        return self._item_to_record(item) if item else None

    def find_by_appointment(self, source_appointment_id: int) -> List[MappingRecord]:
        """Return all mappings of an appointment, one per occurrence."""
        items = self._paginate(
            self.table.query,
            KeyConditionExpression=Key('source_appointment_id').eq(source_appointment_id)
        )
        return [self._item_to_record(item) for item in items]

    def find_by_target_id(self, target_record_id: str) -> Optional[MappingRecord]:
        items = self._paginate(
            self.table.query,
            IndexName=self.TARGET_INDEX,
            KeyConditionExpression=Key('target_record_id').eq(target_record_id)
        )
        return self._item_to_record(items[0]) if items else None

    def upsert(self, record: MappingRecord) -> None:
        """
        Create or replace a mapping.

        Args:
            record: Mapping to store
        """
        try:
            self.table.put_item(Item=self._record_to_item(record))
        except ClientError as e:
            logger.error(f"Error writing mapping for appointment {record.source_appointment_id}: {e}")
            raise
        logger.debug(
            f"Upserted mapping: {record.source_appointment_id}@{record.occurrence_start} "
            f"-> {record.target_record_id}"
        )

    def mark_seen(self, source_appointment_id: int, occurrence_start: str, run_start: str) -> bool:
        """
        Set last_seen_at of an existing mapping.

        Args:
            source_appointment_id: Source appointment id
            occurrence_start: Occurrence start in persisted UTC form
            run_start: Start of the current run in persisted UTC form

        Returns:
            True if the mapping exists and was updated, False otherwise
        """
        try:
            self.table.update_item(
                Key={
                    'source_appointment_id': source_appointment_id,
                    'occurrence_start': occurrence_start
                },
                UpdateExpression='SET last_seen_at = :seen',
                ConditionExpression='attribute_exists(source_appointment_id)',
                ExpressionAttributeValues={':seen': run_start}
            )
            return True
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                logger.warning(f"Mapping {source_appointment_id}@{occurrence_start} vanished before mark_seen")
                return False
            logger.error(f"Error marking mapping {source_appointment_id}@{occurrence_start} as seen: {e}")
            raise

    def find_stale(self, run_start: str) -> List[MappingRecord]:
        """Return mappings not seen since run_start."""
        items = self._paginate(
            self.table.scan,
            FilterExpression=Attr('last_seen_at').lt(run_start)
        )
        return [self._item_to_record(item) for item in items]

    def sweep_stale(
        self,
        run_start: str,
        skip_calendar_ids: Iterable[int] = (),
        skip_appointment_ids: Iterable[int] = (),
        before_delete: Optional[Callable[[MappingRecord], None]] = None
    ) -> List[MappingRecord]:
        """
        Remove mappings whose occurrence was not observed in the current run.

        Must only be called after a full pass over all calendars. Mappings of
        calendars listed in skip_calendar_ids and of appointments listed in
        skip_appointment_ids are left alone. If before_delete raises, the
        mapping is kept so the removal is retried on the next run.

        Args:
            run_start: Start of the current run in persisted UTC form
            skip_calendar_ids: Calendars whose fetch failed this run
            skip_appointment_ids: Appointments skipped as malformed this run
            before_delete: Callback removing the target side of a mapping

        Returns:
            List of removed MappingRecords
        """
        skipped_calendars = set(skip_calendar_ids)
        skipped_appointments = set(skip_appointment_ids)
        stale = self.find_stale(run_start)
        logger.info(f"Found {len(stale)} stale mappings")

        removed = []
        for record in stale:
            if record.calendar_id in skipped_calendars:
                continue
            if record.source_appointment_id in skipped_appointments:
                continue
            if before_delete is not None:
                try:
                    before_delete(record)
                except Exception as e:
                    logger.error(
                        f"Keeping mapping {record.source_appointment_id}@{record.occurrence_start}, "
                        f"target removal failed: {e}"
                    )
                    continue
            self.delete(record)
            removed.append(record)

        logger.info(f"Swept {len(removed)} stale mappings")
        return removed

    def delete(self, record: MappingRecord) -> None:
        try:
            self.table.delete_item(
                Key={
                    'source_appointment_id': record.source_appointment_id,
                    'occurrence_start': record.occurrence_start
                }
            )
        except ClientError as e:
            logger.error(f"Error deleting mapping {record.source_appointment_id}@{record.occurrence_start}: {e}")
            raise
        logger.debug(f"Deleted mapping {record.source_appointment_id}@{record.occurrence_start}")

    def delete_by_target_id(self, target_record_id: str) -> Optional[MappingRecord]:
        """
        Remove the mapping of a target event that was deleted directly.

        Args:
            target_record_id: Id of the deleted target event

        Returns:
            The removed MappingRecord, or None if there was none
        """
        record = self.find_by_target_id(target_record_id)
        if record is None:
            logger.info(f"No mapping for target record {target_record_id}")
            return None
        self.delete(record)
        return record

    def get_all_records(self) -> List[MappingRecord]:
        return [self._item_to_record(item) for item in self._paginate(self.table.scan)]

    def count(self) -> int:
        response = self.table.scan(Select='COUNT')
        total = response['Count']
        while 'LastEvaluatedKey' in response:
            response = self.table.scan(Select='COUNT', ExclusiveStartKey=response['LastEvaluatedKey'])
            total += response['Count']
        return total

    def backfill_repeating_group(self) -> int:
        """
        Set repeating_group_id to 0 on mappings written without it.

        Safe to run repeatedly: only missing values are written.

        Returns:
            Number of mappings updated
        """
        items = self._paginate(
            self.table.scan,
            FilterExpression=Attr('repeating_group_id').not_exists()
        )
        for item in items:
            self.table.update_item(
                Key={
                    'source_appointment_id': item['source_appointment_id'],
                    'occurrence_start': item['occurrence_start']
                },
                UpdateExpression='SET repeating_group_id = if_not_exists(repeating_group_id, :zero)',
                ExpressionAttributeValues={':zero': 0}
            )
        logger.info(f"Backfilled repeating_group_id on {len(items)} mappings")
        return len(items)

    def _paginate(self, operation, **kwargs) -> List[dict]:
        try:
            response = operation(**kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = operation(ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs)
                items.extend(response.get('Items', []))

            return items
        except ClientError as e:
            logger.error(f"Error reading mapping table {self.table_name}: {e}")
            raise

    @staticmethod
    def _optional_int(value) -> Optional[int]:
        return int(value) if value is not None else None

    def _item_to_record(self, item: dict) -> MappingRecord:
        """
        Convert DynamoDB item to MappingRecord.

        Args:
            item: DynamoDB item dictionary

        Returns:
            MappingRecord object
        """
        return MappingRecord(
            record_id=item['record_id'],
            source_appointment_id=int(item['source_appointment_id']),
            calendar_id=int(item['calendar_id']),
            target_record_id=item['target_record_id'],
            occurrence_start=item['occurrence_start'],
            occurrence_end=item['occurrence_end'],
            last_seen_at=item['last_seen_at'],
            # 0 marks a non-recurring appointment
            repeating_group_id=self._optional_int(item.get('repeating_group_id')) or None,
            source_image_id=self._optional_int(item.get('source_image_id')),
            target_image_id=item.get('target_image_id'),
            source_flyer_id=self._optional_int(item.get('source_flyer_id')),
            target_flyer_id=item.get('target_flyer_id'),
            fingerprint=item.get('fingerprint', '')
        )

    def _record_to_item(self, record: MappingRecord) -> dict:
        item = {
            'record_id': record.record_id,
            'source_appointment_id': record.source_appointment_id,
            'calendar_id': record.calendar_id,
            'target_record_id': record.target_record_id,
            'occurrence_start': record.occurrence_start,
            'occurrence_end': record.occurrence_end,
            'last_seen_at': record.last_seen_at,
            'fingerprint': record.fingerprint,
            'repeating_group_id': record.repeating_group_id or 0,
        }

        # Add optional fields if present
        optional = {
            'source_image_id': record.source_image_id,
            'target_image_id': record.target_image_id,
            'source_flyer_id': record.source_flyer_id,
            'target_flyer_id': record.target_flyer_id,
        }
        item.update({key: value for key, value in optional.items() if value is not None})
        return item
